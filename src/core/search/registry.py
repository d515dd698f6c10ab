# src/core/search/registry.py
"""
Реестр активных поисковых сессий.

Хранит не более одной сессии на пару (участник, режим) и единую очередь
дедлайнов (deadline, seq, search_id), которую опрашивает одна фоновая задача.
Все изменения реестра выполняются синхронно, до первого await.
"""

from __future__ import annotations

import heapq
import itertools
from collections import Counter
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from src.common.clock import Clock, utc_now
from src.common.constants import LifecycleEvent, RideMode, Role, SessionStatus, TypeMsg
from src.common.exceptions import SearchValidationError
from src.common.logger import get_logger, log_error, log_info
from src.config.engine import EngineConfig
from src.core.scheduling.state_machine import SessionStateMachine
from src.core.search.models import GeoPoint, SearchSession

logger = get_logger("registry")

# Обработчик событий жизненного цикла: (сессия, событие, данные)
LifecycleListener = Callable[[SearchSession, LifecycleEvent, dict[str, Any]], Awaitable[None]]


class SearchRegistry:
    """Единственный владелец поисковых сессий процесса."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
        listener: LifecycleListener | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._clock = clock
        self._listener = listener

        # (participant_id, mode) -> сессия, в порядке регистрации
        self._sessions: dict[tuple[str, RideMode], SearchSession] = {}
        self._by_id: dict[str, SearchSession] = {}
        # Снятые на время сохранения предложения
        self._held: dict[tuple[str, RideMode], SearchSession] = {}

        # Очередь дедлайнов и актуальный дедлайн каждой сессии
        self._deadlines: list[tuple[datetime, int, str]] = []
        self._armed: dict[str, datetime] = {}
        self._seq = itertools.count()

        self._total_registered = 0
        self._total_expired = 0

    def set_listener(self, listener: LifecycleListener | None) -> None:
        self._listener = listener

    def __len__(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # РЕГИСТРАЦИЯ
    # =========================================================================

    @staticmethod
    def validate(session: SearchSession) -> None:
        """
        Проверяет сессию на границе реестра.

        Raises:
            SearchValidationError: Если сессия не может участвовать в матчинге
        """
        if not session.participant_id or not session.participant_id.strip():
            raise SearchValidationError("Не указан participant_id")
        if not isinstance(session.role, Role):
            raise SearchValidationError(f"Некорректная роль: {session.role}")
        if not isinstance(session.mode, RideMode):
            raise SearchValidationError(f"Некорректный режим: {session.mode}")
        if not session.route:
            raise SearchValidationError("Маршрут пуст")
        if session.mode == RideMode.SCHEDULED and session.scheduled_time is None:
            raise SearchValidationError("Для запланированного поиска нужно время отправления")
        if session.is_terminal:
            raise SearchValidationError(f"Нельзя зарегистрировать сессию в статусе {session.status.value}")

    def deadline_for(self, session: SearchSession) -> datetime | None:
        """Крайний срок жизни сессии."""
        if session.mode == RideMode.SCHEDULED:
            if session.scheduled_time is None:
                return None
            return session.scheduled_time + self.config.overrun_window
        return session.created_at + self.config.immediate_search_timeout

    async def register(self, session: SearchSession, *, notify: bool = True) -> SearchSession:
        """
        Регистрирует сессию, заменяя прежнюю для того же участника и режима,
        и ставит таймер истечения.

        Args:
            session: Новая сессия
            notify: Отправлять ли событие search_started

        Returns:
            Зарегистрированная сессия
        """
        self.validate(session)

        previous = self._remove(session.key)
        if previous is not None and not previous.is_terminal:
            SessionStateMachine.apply(previous, SessionStatus.STOPPED, self._clock())

        self._insert(session)
        self._total_registered += 1

        await log_info(
            f"Сессия {session.search_id} зарегистрирована "
            f"({session.role.value}/{session.mode.value}, участник {session.participant_id})"
            + (f", заменена {previous.search_id}" if previous else ""),
            type_msg=TypeMsg.INFO,
        )

        if notify:
            await self._emit(session, LifecycleEvent.SEARCH_STARTED, {
                "status": session.status.value,
                "expires_at": session.expires_at.isoformat() if session.expires_at else None,
            })
        return session

    def restore(self, session: SearchSession) -> bool:
        """
        Возвращает ранее снятую сессию в реестр без событий.

        Returns:
            False, если слот участника уже занят новой сессией
        """
        if session.key in self._sessions or session.is_terminal:
            return False
        self._insert(session)
        return True

    def _insert(self, session: SearchSession) -> None:
        self._sessions[session.key] = session
        self._by_id[session.search_id] = session
        session.expires_at = self.deadline_for(session)
        if session.expires_at is not None:
            self._arm(session.search_id, session.expires_at)

    def _remove(self, key: tuple[str, RideMode]) -> SearchSession | None:
        session = self._sessions.pop(key, None)
        if session is None:
            return None
        self._by_id.pop(session.search_id, None)
        self.cancel_timer(session.search_id)
        return session

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    def get(self, participant_id: str, mode: RideMode) -> SearchSession | None:
        return self._sessions.get((str(participant_id), RideMode(mode)))

    def get_by_id(self, search_id: str) -> SearchSession | None:
        return self._by_id.get(search_id)

    def sessions_for(self, participant_id: str) -> list[SearchSession]:
        """Все сессии участника (по одной на режим)."""
        return [s for s in self._sessions.values() if s.participant_id == str(participant_id)]

    def list_by_role(
        self,
        role: Role,
        statuses: Iterable[SessionStatus] | None = None,
    ) -> list[SearchSession]:
        """
        Снимок сессий роли в порядке регистрации.

        Args:
            role: Роль участников
            statuses: Фильтр по статусам (None — все)
        """
        allowed = set(statuses) if statuses is not None else None
        return [
            s for s in self._sessions.values()
            if s.role == role and (allowed is None or s.status in allowed)
        ]

    def list_scheduled(self) -> list[SearchSession]:
        """Снимок нетерминальных запланированных сессий."""
        return [
            s for s in self._sessions.values()
            if s.mode == RideMode.SCHEDULED and not s.is_terminal
        ]

    # =========================================================================
    # СНЯТИЕ С РЕГИСТРАЦИИ
    # =========================================================================

    def detach(self, session: SearchSession, *, hold: bool = False) -> bool:
        """
        Синхронно снимает сессию без уведомлений (автоостановка после матча).

        Args:
            session: Сессия
            hold: Запомнить сессию до release_hold: пока идёт сохранение
                предложения, её всё ещё можно остановить через deregister

        Returns:
            True, если сессия была в реестре
        """
        current = self._sessions.get(session.key)
        if current is not session:
            return False
        self._remove(session.key)
        if hold:
            self._held[session.key] = session
        return True

    def release_hold(self, session: SearchSession) -> None:
        """Забывает удержанную сессию."""
        if self._held.get(session.key) is session:
            del self._held[session.key]

    async def deregister(
        self,
        participant_id: str,
        mode: RideMode,
        *,
        reason: str = "stopped",
    ) -> SearchSession | None:
        """
        Останавливает сессию: отменяет таймер, удаляет запись, отправляет событие.
        Удержанная сессия тоже останавливается и уже не вернётся в реестр.

        Returns:
            Снятая сессия или None, если её не было
        """
        key = (str(participant_id), RideMode(mode))
        session = self._remove(key)
        if session is None:
            session = self._held.pop(key, None)
            if session is None or session.is_terminal:
                return None
        SessionStateMachine.apply(session, SessionStatus.STOPPED, self._clock())

        await log_info(
            f"Сессия {session.search_id} остановлена ({reason})",
            type_msg=TypeMsg.INFO,
        )
        await self._emit(session, LifecycleEvent.SEARCH_STOPPED, {"reason": reason})
        return session

    async def expire(
        self,
        participant_id: str,
        mode: RideMode,
        *,
        reason: str = "timeout",
    ) -> SearchSession | None:
        """Переводит сессию в expired и удаляет её из реестра."""
        session = self._remove((str(participant_id), RideMode(mode)))
        if session is None:
            return None
        SessionStateMachine.apply(session, SessionStatus.EXPIRED, self._clock())
        self._total_expired += 1

        await log_info(f"Сессия {session.search_id} истекла ({reason})", type_msg=TypeMsg.INFO)
        await self._emit(session, LifecycleEvent.SEARCH_TIMEOUT, {"reason": reason})
        return session

    # =========================================================================
    # ТАЙМЕРЫ
    # =========================================================================

    def _arm(self, search_id: str, deadline: datetime) -> None:
        self._armed[search_id] = deadline
        heapq.heappush(self._deadlines, (deadline, next(self._seq), search_id))

    def cancel_timer(self, search_id: str) -> bool:
        """
        Отменяет таймер сессии. Запись в очереди остаётся и
        отбрасывается при извлечении.
        """
        return self._armed.pop(search_id, None) is not None

    def has_pending_timer(self, search_id: str) -> bool:
        return search_id in self._armed

    def next_deadline(self) -> datetime | None:
        """Ближайший актуальный дедлайн."""
        while self._deadlines:
            deadline, _, search_id = self._deadlines[0]
            if self._armed.get(search_id) == deadline:
                return deadline
            heapq.heappop(self._deadlines)
        return None

    async def tick(self, now: datetime | None = None) -> list[SearchSession]:
        """
        Снимает все сессии с наступившим дедлайном.
        Сначала изменяется реестр, затем рассылаются события.

        Returns:
            Истёкшие сессии
        """
        now = now or self._clock()
        expired: list[SearchSession] = []

        while self._deadlines and self._deadlines[0][0] <= now:
            deadline, _, search_id = heapq.heappop(self._deadlines)
            if self._armed.get(search_id) != deadline:
                continue
            session = self._by_id.get(search_id)
            try:
                if session is None:
                    self._armed.pop(search_id, None)
                    continue
                self._remove(session.key)
                SessionStateMachine.apply(session, SessionStatus.EXPIRED, now)
                self._total_expired += 1
                expired.append(session)
            except Exception as e:
                logger.error(f"Ошибка истечения сессии {search_id}: {e}", exc_info=True)

        for session in expired:
            await log_info(f"Сессия {session.search_id} истекла по таймеру", type_msg=TypeMsg.INFO)
            await self._emit(session, LifecycleEvent.SEARCH_TIMEOUT, {"reason": "timeout"})

        return expired

    # =========================================================================
    # ПРОЧЕЕ
    # =========================================================================

    def update_location(self, participant_id: str, location: GeoPoint) -> list[SearchSession]:
        """Обновляет текущую позицию во всех сессиях водителя."""
        updated: list[SearchSession] = []
        now = self._clock()
        for session in self.sessions_for(participant_id):
            if session.is_provider:
                session.current_location = location
                session.touch(now)
                updated.append(session)
        return updated

    def get_stats(self) -> dict[str, Any]:
        """Статистика реестра."""
        sessions = list(self._sessions.values())
        return {
            "total_sessions": len(sessions),
            "by_role": dict(Counter(s.role.value for s in sessions)),
            "by_mode": dict(Counter(s.mode.value for s in sessions)),
            "by_status": dict(Counter(s.status.value for s in sessions)),
            "pending_timers": len(self._armed),
            "held": len(self._held),
            "total_registered": self._total_registered,
            "total_expired": self._total_expired,
        }

    async def _emit(self, session: SearchSession, event: LifecycleEvent, data: dict[str, Any]) -> None:
        if self._listener is None:
            return
        try:
            await self._listener(session, event, data)
        except Exception as e:
            await log_error(
                f"Ошибка обработчика события {event.value} для {session.search_id}: {e}",
                extra={"search_id": session.search_id, "event": event.value},
                exc_info=True,
            )
