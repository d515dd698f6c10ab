# src/core/search/service.py
"""
Сервис поисковых запросов.
Операции, доступные внешнему слою: начать и остановить поиск,
получить статус, обновить позицию водителя.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from src.common.clock import Clock, utc_now
from src.common.constants import RideMode, SessionStatus, TypeMsg
from src.common.exceptions import SearchValidationError
from src.common.logger import log_error, log_info
from src.config.engine import EngineConfig
from src.core.scheduling.state_machine import SchedulingService
from src.core.search.models import GeoPoint, SearchRequest, SearchSession
from src.core.search.registry import SearchRegistry
from src.core.search.repository import SessionRepository


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "request"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


class SearchService:
    """Точка входа для запросов на поиск."""

    def __init__(
        self,
        registry: SearchRegistry,
        scheduling: SchedulingService,
        repository: SessionRepository | None = None,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.registry = registry
        self.scheduling = scheduling
        self.repository = repository
        self.config = config or EngineConfig()
        self._clock = clock

    async def start_search(self, descriptor: SearchRequest | dict[str, Any]) -> str:
        """
        Начинает поиск, заменяя прежний поиск участника в том же режиме.

        Args:
            descriptor: Описание поиска

        Returns:
            ID зарегистрированной сессии

        Raises:
            SearchValidationError: Некорректное описание поиска
        """
        try:
            request = (
                descriptor if isinstance(descriptor, SearchRequest)
                else SearchRequest.model_validate(descriptor)
            )
        except ValidationError as e:
            raise SearchValidationError(_format_validation_error(e)) from e

        now = self._clock()
        session = SearchSession.from_request(
            request,
            default_capacity=self.config.default_capacity,
            default_seats=self.config.default_seats_requested,
            now=now,
        )

        if (
            session.scheduled_time is not None
            and now - session.scheduled_time > self.config.overrun_window
        ):
            raise SearchValidationError("Время отправления уже прошло")

        previous = self.registry.get(session.participant_id, session.mode)
        steps = self.scheduling.advance(session, now)
        await self.registry.register(session)

        if SessionStatus.ACTIVATING in steps:
            await self.scheduling.notify_activation(session)

        await self._save(session)
        if previous is not None and self.repository is not None:
            await self._mark(previous.search_id, SessionStatus.STOPPED)

        return session.search_id

    async def stop_search(self, participant_id: str, mode: RideMode | str | None = None) -> bool:
        """
        Останавливает поиск участника.

        Args:
            participant_id: ID участника
            mode: Режим; None — все режимы

        Returns:
            True если хотя бы одна сессия остановлена
        """
        modes = [RideMode(mode)] if mode is not None else list(RideMode)
        stopped = False
        for ride_mode in modes:
            session = await self.registry.deregister(str(participant_id), ride_mode, reason="stopped_by_user")
            stopped = stopped or session is not None
        return stopped

    def get_status(self, participant_id: str) -> dict[str, Any]:
        """Снимок состояния поиска участника."""
        now = self._clock()
        sessions = self.registry.sessions_for(str(participant_id))
        return {
            "participant_id": str(participant_id),
            "active": bool(sessions),
            "sessions": [s.snapshot(now) for s in sessions],
        }

    def update_location(self, participant_id: str, latitude: float, longitude: float) -> int:
        """
        Обновляет текущую позицию водителя.

        Returns:
            Количество обновлённых сессий

        Raises:
            SearchValidationError: Некорректные координаты
        """
        try:
            location = GeoPoint(latitude=latitude, longitude=longitude)
        except ValidationError as e:
            raise SearchValidationError(_format_validation_error(e)) from e
        return len(self.registry.update_location(str(participant_id), location))

    async def restore_scheduled(self) -> int:
        """
        Возвращает в реестр сохранённые запланированные сессии.

        Returns:
            Количество восстановленных сессий
        """
        if self.repository is None:
            return 0

        now = self._clock()
        restored = 0
        for session in await self.repository.list_restorable(now, self.config.overrun_window):
            if self.registry.get(session.participant_id, session.mode) is not None:
                continue
            try:
                self.scheduling.advance(session, now)
                await self.registry.register(session, notify=False)
                restored += 1
            except Exception as e:
                await log_error(
                    f"Не удалось восстановить сессию {session.search_id}: {e}",
                    extra={"search_id": session.search_id},
                )

        await log_info(f"Восстановлено запланированных сессий: {restored}", type_msg=TypeMsg.INFO)
        return restored

    async def _save(self, session: SearchSession) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.save(session)
        except Exception as e:
            await log_error(
                f"Не удалось сохранить сессию {session.search_id}: {e}",
                extra={"search_id": session.search_id},
            )

    async def _mark(self, search_id: str, status: SessionStatus) -> None:
        try:
            await self.repository.mark_status(search_id, status, self._clock())
        except Exception as e:
            await log_error(f"Не удалось обновить статус сессии {search_id}: {e}")
