# src/core/matching/coordinator.py
"""
Цикл матчинга.

За один проход берёт снимок водителей и пассажиров из реестра,
оценивает каждую пару, пропускает пары через DedupGuard и создаёт
предложения. Ошибка одной пары не прерывает цикл.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.common.clock import Clock, utc_now
from src.common.constants import (
    MATCHABLE_STATUSES,
    LifecycleEvent,
    RideMode,
    Role,
    SessionStatus,
    TypeMsg,
)
from src.common.logger import log_error, log_info, log_warning
from src.config.engine import EngineConfig
from src.core.geo.scorer import RouteScorer, classify_quality, estimate_eta_minutes, haversine_km
from src.core.matching.guard import DedupGuard
from src.core.matching.models import Match
from src.core.matching.repository import MatchRepository
from src.core.notifications.dispatcher import NotificationDispatcher
from src.core.scheduling.state_machine import SessionStateMachine
from src.core.search.models import SearchSession
from src.core.search.registry import LifecycleListener, SearchRegistry
from src.core.search.repository import SessionRepository


@dataclass
class CycleResult:
    """Итог одного цикла матчинга."""
    providers: int = 0
    seekers: int = 0
    evaluated: int = 0
    below_threshold: int = 0
    skipped_capacity: int = 0
    skipped_schedule: int = 0
    blocked: int = 0
    errors: int = 0
    proposals: list[Match] = field(default_factory=list)
    duration_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "providers": self.providers,
            "seekers": self.seekers,
            "evaluated": self.evaluated,
            "below_threshold": self.below_threshold,
            "skipped_capacity": self.skipped_capacity,
            "skipped_schedule": self.skipped_schedule,
            "blocked": self.blocked,
            "errors": self.errors,
            "proposals": len(self.proposals),
            "duration_ms": round(self.duration_ms, 1),
        }


class MatchingCoordinator:
    """Периодический проход по парам водитель/пассажир."""

    def __init__(
        self,
        registry: SearchRegistry,
        guard: DedupGuard,
        repository: MatchRepository | None,
        dispatcher: NotificationDispatcher | None,
        scorer: RouteScorer | None = None,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
        listener: LifecycleListener | None = None,
        sessions: SessionRepository | None = None,
    ) -> None:
        self.registry = registry
        self.guard = guard
        self.repository = repository
        self.dispatcher = dispatcher
        self.config = config or EngineConfig()
        self.scorer = scorer or RouteScorer.from_config(self.config)
        self._clock = clock
        self._listener = listener
        self.sessions = sessions

        self._cycles = 0
        self._total_proposals = 0
        self._last_result: CycleResult | None = None

    def set_listener(self, listener: LifecycleListener | None) -> None:
        self._listener = listener

    # =========================================================================
    # КАНДИДАТЫ
    # =========================================================================

    def _providers(self) -> list[SearchSession]:
        """Водители, готовые к матчингу и со свободными местами."""
        return [
            p for p in self.registry.list_by_role(Role.PROVIDER, MATCHABLE_STATUSES)
            if self.config.unlimited_capacity or p.free_seats > 0
        ]

    def _seekers(self) -> list[SearchSession]:
        """Пассажиры, готовые к матчингу и без незавершённого предложения."""
        return [
            s for s in self.registry.list_by_role(Role.SEEKER, MATCHABLE_STATUSES)
            if s.outstanding_match_id is None
        ]

    def _has_room(self, provider: SearchSession, seeker: SearchSession) -> bool:
        if self.config.unlimited_capacity:
            return True
        return provider.free_seats >= seeker.seats_requested

    def _schedules_compatible(self, provider: SearchSession, seeker: SearchSession) -> bool:
        if provider.mode != seeker.mode:
            return False
        if provider.mode != RideMode.SCHEDULED:
            return True
        if provider.scheduled_time is None or seeker.scheduled_time is None:
            return False
        return abs(provider.scheduled_time - seeker.scheduled_time) <= self.config.schedule_flexibility

    # =========================================================================
    # ЦИКЛ
    # =========================================================================

    async def run_cycle(self, now: datetime | None = None) -> CycleResult:
        """
        Один проход матчинга по снимку реестра.

        Returns:
            Итог цикла
        """
        started = time.monotonic()
        now = now or self._clock()
        result = CycleResult()

        providers = self._providers()
        seekers = self._seekers()
        result.providers = len(providers)
        result.seekers = len(seekers)

        attempted: set[tuple[str, str]] = set()
        matched_seekers: set[str] = set()

        for provider in providers:
            if len(result.proposals) >= self.config.max_matches_per_cycle:
                break
            for seeker in seekers:
                if len(result.proposals) >= self.config.max_matches_per_cycle:
                    break
                if seeker.search_id in matched_seekers:
                    continue
                if self.registry.get_by_id(provider.search_id) is not provider:
                    # Водитель снят с реестра в этом же цикле
                    break

                pair = (provider.search_id, seeker.search_id)
                if pair in attempted:
                    continue
                attempted.add(pair)

                try:
                    match = await self._evaluate_pair(provider, seeker, now, result)
                except Exception as e:
                    result.errors += 1
                    await log_error(
                        f"Ошибка обработки пары {provider.participant_id}/{seeker.participant_id}: {e}",
                        extra={"provider_id": provider.participant_id, "seeker_id": seeker.participant_id},
                        exc_info=True,
                    )
                    continue

                if match is not None:
                    result.proposals.append(match)
                    matched_seekers.add(seeker.search_id)

        result.duration_ms = (time.monotonic() - started) * 1000
        self._cycles += 1
        self._total_proposals += len(result.proposals)
        self._last_result = result

        await log_info(
            f"Цикл матчинга: {result.as_dict()}",
            type_msg=TypeMsg.INFO if result.proposals else TypeMsg.DEBUG,
        )
        return result

    async def _evaluate_pair(
        self,
        provider: SearchSession,
        seeker: SearchSession,
        now: datetime,
        result: CycleResult,
    ) -> Match | None:
        """Проверки, оценка и создание предложения для одной пары."""
        if not provider.route or not seeker.route:
            return None
        if provider.participant_id == seeker.participant_id:
            return None
        if not self._has_room(provider, seeker):
            result.skipped_capacity += 1
            return None
        if not self._schedules_compatible(provider, seeker):
            result.skipped_schedule += 1
            return None

        result.evaluated += 1
        breakdown = self.scorer.score(
            seeker.route,
            provider.route,
            provider_location=provider.current_location,
            pickup=seeker.pickup,
        )
        threshold = self.config.threshold_for(provider.mode)
        if breakdown.total < threshold:
            result.below_threshold += 1
            return None

        if not await self.guard.allow(provider.participant_id, seeker.participant_id, now):
            result.blocked += 1
            return None

        # После ожидания состояние реестра могло измениться
        if (
            self.registry.get_by_id(provider.search_id) is not provider
            or self.registry.get_by_id(seeker.search_id) is not seeker
            or not provider.is_matchable
            or not seeker.is_matchable
            or seeker.outstanding_match_id is not None
            or not self._has_room(provider, seeker)
        ):
            self.guard.release(provider.participant_id, seeker.participant_id)
            return None

        match = self._build_match(provider, seeker, breakdown.total, now)
        provider_detached = self._claim(provider, seeker, match)

        if not await self._persist(match):
            self._rollback(provider, seeker, match, provider_detached)
            return None

        await self._finalize(provider, seeker, match, provider_detached, now)
        return match

    def _build_match(
        self,
        provider: SearchSession,
        seeker: SearchSession,
        similarity: float,
        now: datetime,
    ) -> Match:
        origin = provider.current_location or provider.route[0]
        pickup = seeker.pickup
        distance = haversine_km(origin.latitude, origin.longitude, pickup.latitude, pickup.longitude)

        return Match(
            provider_id=provider.participant_id,
            seeker_id=seeker.participant_id,
            provider_search_id=provider.search_id,
            seeker_search_id=seeker.search_id,
            provider_name=provider.participant_name,
            seeker_name=seeker.participant_name,
            similarity=similarity,
            quality=classify_quality(similarity),
            mode=provider.mode,
            seats=seeker.seats_requested,
            pickup_name=seeker.pickup_name,
            drop_name=seeker.drop_name,
            pickup_location=pickup,
            provider_location=provider.current_location,
            provider_route=list(provider.route),
            seeker_route=list(seeker.route),
            distance_to_pickup_km=round(distance, 3),
            eta_minutes=estimate_eta_minutes(distance, self.config.average_speed_kph),
            scheduled_time=seeker.scheduled_time,
            created_at=now,
            expires_at=now + self.config.proposal_timeout,
        )

    def _claim(self, provider: SearchSession, seeker: SearchSession, match: Match) -> bool:
        """
        Синхронно занимает места и снимает сессии с реестра.

        Returns:
            True если водитель снят с реестра (места исчерпаны)
        """
        provider.seats_claimed += match.seats
        provider.accepted_matches += 1
        seeker.accepted_matches += 1
        seeker.outstanding_match_id = match.match_id

        self.registry.detach(seeker, hold=True)
        provider_detached = False
        if not self.config.unlimited_capacity and provider.is_full:
            provider_detached = self.registry.detach(provider, hold=True)
        return provider_detached

    def _release_holds(self, provider: SearchSession, seeker: SearchSession) -> None:
        self.registry.release_hold(seeker)
        self.registry.release_hold(provider)

    def _rollback(
        self,
        provider: SearchSession,
        seeker: SearchSession,
        match: Match,
        provider_detached: bool,
    ) -> None:
        """
        Возвращает сессии в реестр после неудачного сохранения.
        Сессия, остановленная участником во время сохранения, не возвращается.
        """
        provider.seats_claimed = max(0, provider.seats_claimed - match.seats)
        provider.accepted_matches = max(0, provider.accepted_matches - 1)
        seeker.accepted_matches = max(0, seeker.accepted_matches - 1)
        seeker.outstanding_match_id = None

        self._release_holds(provider, seeker)
        self.registry.restore(seeker)
        if provider_detached:
            self.registry.restore(provider)
        self.guard.release(provider.participant_id, seeker.participant_id)

    async def _persist(self, match: Match) -> bool:
        """Сохраняет предложение; одна повторная попытка."""
        if self.repository is None:
            return True
        for attempt in (1, 2):
            try:
                await self.repository.create(match)
                return True
            except Exception as e:
                if attempt == 1:
                    await log_warning(f"Повтор сохранения предложения {match.match_id}: {e}")
                    continue
                await log_error(
                    f"Не удалось сохранить предложение {match.match_id}, пара будет оценена повторно: {e}",
                    extra={"provider_id": match.provider_id, "seeker_id": match.seeker_id},
                )
        return False

    async def _finalize(
        self,
        provider: SearchSession,
        seeker: SearchSession,
        match: Match,
        provider_detached: bool,
        now: datetime,
    ) -> None:
        """Статусы, уведомления и логирование после сохранения предложения."""
        self._release_holds(provider, seeker)

        stopped: list[SearchSession] = []
        for session in (seeker, provider) if provider_detached else (seeker,):
            # Уже остановлена участником во время сохранения
            if session.is_terminal:
                continue
            SessionStateMachine.apply(session, SessionStatus.STOPPED, now)
            stopped.append(session)

        await self._save_session(provider)

        await log_info(
            f"Предложение {match.match_id}: водитель {match.provider_id}, пассажир {match.seeker_id}, "
            f"схожесть {match.similarity:.3f} ({match.quality.value}), "
            f"мест {provider.seats_claimed}/{provider.seats_capacity}",
            type_msg=TypeMsg.INFO,
        )

        if self.dispatcher is not None:
            try:
                await self.dispatcher.on_match(match)
            except Exception as e:
                await log_error(f"Ошибка уведомления о предложении {match.match_id}: {e}", exc_info=True)

        for session in stopped:
            await self._emit_stopped(session, match)

    async def _save_session(self, session: SearchSession) -> None:
        """Сохраняет занятые места и счётчик совпадений сессии."""
        if self.sessions is None:
            return
        try:
            await self.sessions.save(session)
        except Exception as e:
            await log_error(
                f"Не удалось сохранить состояние сессии {session.search_id}: {e}",
                extra={"search_id": session.search_id},
            )

    async def _emit_stopped(self, session: SearchSession, match: Match) -> None:
        if self._listener is None:
            return
        try:
            await self._listener(
                session,
                LifecycleEvent.SEARCH_STOPPED,
                {"reason": "matched", "match_id": match.match_id},
            )
        except Exception as e:
            await log_error(f"Ошибка события остановки {session.search_id}: {e}", exc_info=True)

    def get_stats(self) -> dict[str, Any]:
        return {
            "cycles": self._cycles,
            "total_proposals": self._total_proposals,
            "last_cycle": self._last_result.as_dict() if self._last_result else None,
        }
