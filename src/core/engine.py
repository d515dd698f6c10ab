# src/core/engine.py
"""
Сборка движка матчинга.

Один экземпляр на процесс: реестр, планировщик, защита от дублей,
диспетчер уведомлений, цикл матчинга и сервисы запросов.
"""

from __future__ import annotations

from typing import Any

from src.common.clock import Clock, utc_now
from src.common.constants import LifecycleEvent, TypeMsg
from src.common.logger import log_error, log_info
from src.config.engine import EngineConfig
from src.core.geo.scorer import RouteScorer
from src.core.matching.coordinator import MatchingCoordinator
from src.core.matching.guard import DedupGuard
from src.core.matching.proposals import ProposalService
from src.core.matching.repository import MatchRepository
from src.core.notifications.dispatcher import NotificationDispatcher, RealtimeChannel
from src.core.scheduling.state_machine import SchedulingService
from src.core.search.models import SearchSession
from src.core.search.registry import SearchRegistry
from src.core.search.repository import SessionRepository
from src.core.search.service import SearchService
from src.infra.document_store import DocumentStore


class MatchingEngine:
    """Контейнер компонентов движка."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: DocumentStore | None = None,
        channel: RealtimeChannel | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """
        Args:
            config: Параметры движка
            store: Документное хранилище (None — без сохранения)
            channel: Канал реального времени
            clock: Источник времени
        """
        self.config = config or EngineConfig()
        self.store = store
        self.channel = channel
        self._clock = clock

        self.session_repository = SessionRepository(store) if store is not None else None
        self.match_repository = MatchRepository(store) if store is not None else None

        self.dispatcher = NotificationDispatcher(channel, store, clock)
        self.registry = SearchRegistry(self.config, clock, listener=self.on_lifecycle_event)
        self.scheduling = SchedulingService(self.registry, self.config, clock, listener=self.on_lifecycle_event)
        self.guard = DedupGuard(self.match_repository, self.config, clock)
        self.scorer = RouteScorer.from_config(self.config)
        self.coordinator = MatchingCoordinator(
            registry=self.registry,
            guard=self.guard,
            repository=self.match_repository,
            dispatcher=self.dispatcher,
            scorer=self.scorer,
            config=self.config,
            clock=clock,
            listener=self.on_lifecycle_event,
            sessions=self.session_repository,
        )
        self.search = SearchService(
            self.registry,
            self.scheduling,
            self.session_repository,
            self.config,
            clock,
        )
        self.proposals = (
            ProposalService(
                self.match_repository,
                self.registry,
                self.dispatcher,
                clock,
                sessions=self.session_repository,
            )
            if self.match_repository is not None
            else None
        )

    @classmethod
    def build(cls, settings, channel: RealtimeChannel | None = None, store: DocumentStore | None = None) -> MatchingEngine:
        """Собирает движок по настройкам приложения."""
        return cls(
            config=EngineConfig.from_settings(settings),
            store=store or DocumentStore(),
            channel=channel,
        )

    async def on_lifecycle_event(
        self,
        session: SearchSession,
        event: LifecycleEvent,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Сохраняет статус сессии и уведомляет участника."""
        if self.session_repository is not None:
            try:
                await self.session_repository.mark_status(session.search_id, session.status, self._clock())
            except Exception as e:
                await log_error(
                    f"Не удалось сохранить статус сессии {session.search_id}: {e}",
                    extra={"search_id": session.search_id, "event": event.value},
                )
        await self.dispatcher.on_lifecycle_event(session, event, data)

    async def startup(self) -> int:
        """Восстанавливает запланированные сессии после перезапуска."""
        restored = await self.search.restore_scheduled()
        await log_info(
            f"Движок матчинга запущен, восстановлено сессий: {restored}",
            type_msg=TypeMsg.INFO,
        )
        return restored

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "registry": self.registry.get_stats(),
            "dedup": self.guard.get_stats(),
            "matching": self.coordinator.get_stats(),
            "notifications": self.dispatcher.get_stats(),
        }
        channel_stats = getattr(self.channel, "get_stats", None)
        if callable(channel_stats):
            stats["connections"] = channel_stats()
        return stats
