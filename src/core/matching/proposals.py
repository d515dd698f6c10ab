# src/core/matching/proposals.py
"""
Ответы на предложения и истечение неотвеченных предложений.
"""

from __future__ import annotations

from datetime import datetime

from src.common.clock import Clock, utc_now
from src.common.constants import LifecycleEvent, MatchStatus, TypeMsg
from src.common.exceptions import InvalidTransitionError, MatchNotFoundError, NotParticipantError
from src.common.logger import log_error, log_info
from src.core.matching.models import Match, can_transition
from src.core.matching.repository import MatchRepository
from src.core.notifications.dispatcher import NotificationDispatcher
from src.core.search.registry import SearchRegistry
from src.core.search.repository import SessionRepository


class ProposalService:
    """Переходы статусов предложений: accepted, rejected, expired."""

    def __init__(
        self,
        repository: MatchRepository,
        registry: SearchRegistry,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock = utc_now,
        sessions: SessionRepository | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.dispatcher = dispatcher
        self._clock = clock
        self.sessions = sessions

    async def _release_seats(self, match: Match) -> bool:
        """
        Возвращает места водителю, если его сессия ещё в реестре,
        и сохраняет новое число занятых мест.

        Returns:
            True если места возвращены
        """
        session = self.registry.get_by_id(match.provider_search_id)
        if session is None:
            return False
        session.seats_claimed = max(0, session.seats_claimed - match.seats)
        session.touch(self._clock())

        if self.sessions is not None:
            try:
                await self.sessions.save(session)
            except Exception as e:
                await log_error(
                    f"Не удалось сохранить места сессии {session.search_id}: {e}",
                    extra={"search_id": session.search_id, "match_id": match.match_id},
                )
        return True

    async def respond(self, match_id: str, participant_id: str, accept: bool) -> Match:
        """
        Принимает или отклоняет предложение.

        Статус меняется условно (только из proposed), поэтому из двух
        одновременных ответов побеждает первый записанный.

        Args:
            match_id: ID предложения
            participant_id: Кто отвечает (водитель или пассажир)
            accept: True — принять, False — отклонить

        Returns:
            Обновлённое предложение

        Raises:
            MatchNotFoundError: Предложение не найдено
            NotParticipantError: Участник не относится к предложению
            InvalidTransitionError: Предложение уже не в статусе proposed
        """
        match = await self.repository.get(match_id)
        if match is None:
            raise MatchNotFoundError(f"Предложение {match_id} не найдено")
        if not match.involves(participant_id):
            raise NotParticipantError(f"Участник {participant_id} не относится к предложению {match_id}")

        target = MatchStatus.ACCEPTED if accept else MatchStatus.REJECTED
        if not can_transition(match.status, target):
            raise InvalidTransitionError(match.status.value, target.value)

        now = self._clock()
        updated = await self.repository.update_status(
            match_id,
            target,
            expected=match.status,
            responded_by=str(participant_id),
            responded_at=now,
        )
        if not updated:
            current = await self.repository.get(match_id)
            raise InvalidTransitionError(
                current.status.value if current is not None else match.status.value,
                target.value,
            )

        match.status = target
        match.responded_by = str(participant_id)
        match.responded_at = now

        if target == MatchStatus.REJECTED:
            await self._release_seats(match)

        await log_info(
            f"Предложение {match_id} {target.value} участником {participant_id}",
            type_msg=TypeMsg.INFO,
            extra={"match_id": match_id},
        )

        if self.dispatcher is not None:
            event = LifecycleEvent.MATCH_ACCEPTED if accept else LifecycleEvent.MATCH_REJECTED
            await self.dispatcher.notify_match_status(match, event, {"responded_by": match.responded_by})
        return match

    async def expire_stale(self, now: datetime | None = None) -> list[Match]:
        """
        Переводит неотвеченные просроченные предложения в expired.
        Предложение, на которое успели ответить, пропускается.

        Returns:
            Истёкшие предложения
        """
        now = now or self._clock()
        candidates = await self.repository.list_expired_proposals(now)
        expired: list[Match] = []

        for match in candidates:
            try:
                if not can_transition(match.status, MatchStatus.EXPIRED):
                    continue
                updated = await self.repository.update_status(
                    match.match_id,
                    MatchStatus.EXPIRED,
                    expected=match.status,
                )
                if not updated:
                    continue
                match.status = MatchStatus.EXPIRED
                await self._release_seats(match)
                expired.append(match)
                if self.dispatcher is not None:
                    await self.dispatcher.notify_match_status(match, LifecycleEvent.MATCH_EXPIRED)
            except Exception as e:
                await log_error(
                    f"Ошибка истечения предложения {match.match_id}: {e}",
                    extra={"match_id": match.match_id},
                    exc_info=True,
                )

        if expired:
            await log_info(f"Истекло предложений: {len(expired)}", type_msg=TypeMsg.INFO)
        return expired
