# src/core/scheduling/state_machine.py
"""
Машина состояний поисковых сессий и периодическая активация
запланированных поисков.

scheduled -> activating -> active; stopped/expired достижимы из любого
нетерминального состояния. Обратных переходов нет.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable

from src.common.clock import Clock, utc_now
from src.common.constants import LifecycleEvent, RideMode, SessionStatus, TypeMsg
from src.common.exceptions import InvalidTransitionError
from src.common.logger import log_error, log_info
from src.config.engine import EngineConfig

if TYPE_CHECKING:
    from src.core.search.models import SearchSession
    from src.core.search.registry import SearchRegistry


class SessionStateMachine:
    """Допустимые переходы статусов сессии."""

    ALLOWED_TRANSITIONS: dict[SessionStatus, tuple[SessionStatus, ...]] = {
        SessionStatus.SCHEDULED: (SessionStatus.ACTIVATING, SessionStatus.STOPPED, SessionStatus.EXPIRED),
        SessionStatus.ACTIVATING: (SessionStatus.ACTIVE, SessionStatus.STOPPED, SessionStatus.EXPIRED),
        SessionStatus.ACTIVE: (SessionStatus.STOPPED, SessionStatus.EXPIRED),
        SessionStatus.STOPPED: (),
        SessionStatus.EXPIRED: (),
    }

    @staticmethod
    def can_transition(current: SessionStatus | str, new: SessionStatus | str) -> bool:
        try:
            curr = SessionStatus(current)
            target = SessionStatus(new)
        except ValueError:
            return False
        return target in SessionStateMachine.ALLOWED_TRANSITIONS.get(curr, ())

    @staticmethod
    def apply(session: SearchSession, new: SessionStatus, now: datetime | None = None) -> None:
        """
        Переводит сессию в новый статус.

        Raises:
            InvalidTransitionError: Если переход запрещён
        """
        if not SessionStateMachine.can_transition(session.status, new):
            raise InvalidTransitionError(session.status.value, SessionStatus(new).value)
        session.status = new
        session.status_history.append(new)
        session.touch(now)


# Уведомление об активации: (сессия, событие, данные)
ActivationListener = Callable[["SearchSession", LifecycleEvent, dict], Awaitable[None]]


@dataclass
class SweepResult:
    """Итог одного прохода планировщика."""
    activated: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)


class SchedulingService:
    """
    Продвигает запланированные сессии по состояниям в зависимости
    от времени до отправления.
    """

    def __init__(
        self,
        registry: SearchRegistry,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
        listener: ActivationListener | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or EngineConfig()
        self._clock = clock
        self._listener = listener

    def set_listener(self, listener: ActivationListener | None) -> None:
        self._listener = listener

    def advance(self, session: SearchSession, now: datetime) -> list[SessionStatus]:
        """
        Синхронно выполняет все положенные переходы сессии.

        Returns:
            Список статусов, в которые перешла сессия (по порядку)
        """
        if session.mode != RideMode.SCHEDULED or session.is_terminal or session.scheduled_time is None:
            return []

        until_departure = session.scheduled_time - now
        steps: list[SessionStatus] = []

        if session.status == SessionStatus.SCHEDULED and until_departure <= self.config.activation_lead:
            SessionStateMachine.apply(session, SessionStatus.ACTIVATING, now)
            steps.append(SessionStatus.ACTIVATING)

        if session.status == SessionStatus.ACTIVATING and until_departure <= self.config.final_window:
            SessionStateMachine.apply(session, SessionStatus.ACTIVE, now)
            steps.append(SessionStatus.ACTIVE)

        return steps

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """
        Один проход по всем нетерминальным запланированным сессиям.
        Переходы выполняются до первого ожидания ввода-вывода.
        """
        now = now or self._clock()
        result = SweepResult()
        activated: list[SearchSession] = []
        overdue: list[SearchSession] = []

        for session in self.registry.list_scheduled():
            try:
                if session.scheduled_time is not None and now - session.scheduled_time > self.config.overrun_window:
                    overdue.append(session)
                    continue
                steps = self.advance(session, now)
            except Exception as e:
                await log_error(
                    f"Ошибка продвижения сессии {session.search_id}: {e}",
                    extra={"search_id": session.search_id},
                    exc_info=True,
                )
                continue

            if SessionStatus.ACTIVATING in steps:
                result.activated.append(session.search_id)
                activated.append(session)
            if SessionStatus.ACTIVE in steps:
                result.promoted.append(session.search_id)

        for session in overdue:
            expired = await self.registry.expire(session.participant_id, session.mode, reason="departure_passed")
            if expired is not None:
                result.expired.append(session.search_id)

        for session in activated:
            await self.notify_activation(session)

        if result.activated or result.promoted or result.expired:
            await log_info(
                f"Планировщик: активировано {len(result.activated)}, "
                f"активно {len(result.promoted)}, истекло {len(result.expired)}",
                type_msg=TypeMsg.INFO,
            )
        return result

    async def notify_activation(self, session: SearchSession) -> None:
        if self._listener is None:
            return
        try:
            await self._listener(
                session,
                LifecycleEvent.SCHEDULED_ACTIVATED,
                {
                    "status": session.status.value,
                    "scheduled_time": session.scheduled_time.isoformat() if session.scheduled_time else None,
                },
            )
        except Exception as e:
            await log_error(f"Ошибка уведомления об активации {session.search_id}: {e}", exc_info=True)
