# tests/core/test_coordinator.py
"""
Тесты цикла матчинга (src/core/matching/coordinator.py).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.common.constants import Collection, LifecycleEvent, MatchStatus, RideMode, Role, SessionStatus
from src.config.engine import EngineConfig
from src.core.geo.scorer import ScoreBreakdown
from src.core.matching.coordinator import MatchingCoordinator
from src.core.matching.guard import DedupGuard
from src.core.matching.repository import MatchRepository
from src.core.notifications.dispatcher import NotificationDispatcher
from src.core.search.models import SearchSession
from src.core.search.registry import SearchRegistry
from src.core.search.repository import SessionRepository

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def listener() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def build(store, channel, clock, listener):
    """Фабрика координатора с общим реестром и хранилищем в памяти."""

    def _build(config: EngineConfig | None = None, scorer=None, sessions=None) -> MatchingCoordinator:
        config = config or EngineConfig()
        registry = SearchRegistry(config, clock=clock)
        repository = MatchRepository(store)
        return MatchingCoordinator(
            registry=registry,
            guard=DedupGuard(repository, config, clock=clock),
            repository=repository,
            dispatcher=NotificationDispatcher(channel, store, clock=clock),
            scorer=scorer,
            config=config,
            clock=clock,
            listener=listener,
            sessions=sessions,
        )

    return _build


async def _add(
    coordinator: MatchingCoordinator,
    participant_id: str,
    role: Role,
    route,
    **kwargs,
) -> SearchSession:
    kwargs.setdefault("created_at", T0)
    session = SearchSession(participant_id=participant_id, role=role, route=route, **kwargs)
    return await coordinator.registry.register(session, notify=False)


class TestProposal:
    """Тесты создания предложения."""

    @pytest.mark.asyncio
    async def test_close_routes_produce_proposal(
        self, build, store, channel, listener, provider_route, seeker_route
    ) -> None:
        """Пара с близкими маршрутами получает одно предложение, пассажир снимается с поиска."""
        channel.connected.add("drv")
        coordinator = build()
        provider = await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        seeker = await _add(coordinator, "pax", Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert len(result.proposals) == 1
        match = result.proposals[0]
        assert match.provider_id == "drv"
        assert match.seeker_id == "pax"
        assert match.similarity > 0.6
        assert match.status == MatchStatus.PROPOSED
        assert match.expires_at == T0 + timedelta(minutes=2)

        assert seeker.status == SessionStatus.STOPPED
        assert seeker.outstanding_match_id == match.match_id
        assert coordinator.registry.get_by_id(seeker.search_id) is None
        assert provider.seats_claimed == 1
        assert coordinator.registry.get_by_id(provider.search_id) is provider

        assert match.match_id in store.collections[Collection.MATCHES.value]
        notifications = store.collections[Collection.NOTIFICATIONS.value].values()
        assert sorted(n["participant_id"] for n in notifications) == ["drv", "pax"]
        assert channel.messages_for("drv")[0]["type"] == LifecycleEvent.MATCH_PROPOSED.value
        assert channel.messages_for("drv")[0]["data"]["recipient_role"] == "provider"

        listener.assert_awaited_once()
        assert listener.call_args.args[0] is seeker
        assert listener.call_args.args[1] == LifecycleEvent.SEARCH_STOPPED
        assert listener.call_args.args[2] == {"reason": "matched", "match_id": match.match_id}

    @pytest.mark.asyncio
    async def test_match_snapshot(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route, current_location={"lat": 9.03, "lng": 38.75})
        await _add(coordinator, "pax", Role.SEEKER, seeker_route, pickup_name="Bole", seats_requested=2)

        match = (await coordinator.run_cycle()).proposals[0]

        assert match.seats == 2
        assert match.pickup_name == "Bole"
        assert match.provider_location.latitude == 9.03
        assert match.distance_to_pickup_km is not None
        assert match.eta_minutes >= 1
        assert len(match.provider_route) == 2

    @pytest.mark.asyncio
    async def test_far_routes_below_threshold(self, build, provider_route, far_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax", Role.SEEKER, far_route)

        result = await coordinator.run_cycle()

        assert result.proposals == []
        assert result.below_threshold == 1

    @pytest.mark.asyncio
    async def test_same_participant_not_paired(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "p", Role.PROVIDER, provider_route)
        await _add(
            coordinator, "p", Role.SEEKER, seeker_route,
            mode=RideMode.SCHEDULED, scheduled_time=T0 + timedelta(minutes=5),
        )

        assert (await coordinator.run_cycle()).proposals == []


class TestCandidates:
    """Тесты отбора кандидатов."""

    @pytest.mark.asyncio
    async def test_full_provider_skipped_without_guard(self, build, provider_route, seeker_route) -> None:
        """Водитель с занятыми местами не оценивается и не доходит до DedupGuard."""
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route, seats_capacity=4, seats_claimed=4)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route)

        with patch.object(DedupGuard, "allow", new_callable=AsyncMock) as allow:
            result = await coordinator.run_cycle()

        allow.assert_not_called()
        assert result.providers == 0
        assert result.proposals == []

    @pytest.mark.asyncio
    async def test_seeker_with_outstanding_excluded(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route, outstanding_match_id="m-1")

        result = await coordinator.run_cycle()

        assert result.seekers == 0
        assert result.proposals == []

    @pytest.mark.asyncio
    async def test_not_enough_free_seats(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route, seats_capacity=4, seats_claimed=3)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route, seats_requested=2)

        result = await coordinator.run_cycle()

        assert result.skipped_capacity == 1
        assert result.proposals == []

    @pytest.mark.asyncio
    async def test_scheduled_not_yet_active_ignored(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        departure = T0 + timedelta(hours=3)
        await _add(coordinator, "drv", Role.PROVIDER, provider_route,
                   mode=RideMode.SCHEDULED, status=SessionStatus.SCHEDULED, scheduled_time=departure)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route,
                   mode=RideMode.SCHEDULED, status=SessionStatus.SCHEDULED, scheduled_time=departure)

        result = await coordinator.run_cycle()

        assert result.providers == 0
        assert result.seekers == 0


class TestCapacity:
    """Тесты вместимости."""

    @pytest.mark.asyncio
    async def test_provider_detached_when_full(self, build, listener, provider_route, seeker_route) -> None:
        coordinator = build()
        provider = await _add(coordinator, "drv", Role.PROVIDER, provider_route, seats_capacity=1)
        await _add(coordinator, "pax-1", Role.SEEKER, seeker_route)
        await _add(coordinator, "pax-2", Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert len(result.proposals) == 1
        assert provider.status == SessionStatus.STOPPED
        assert coordinator.registry.get_by_id(provider.search_id) is None
        assert listener.await_count == 2

    @pytest.mark.asyncio
    async def test_multiple_seekers_share_provider(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        provider = await _add(coordinator, "drv", Role.PROVIDER, provider_route, seats_capacity=3)
        for pid in ("pax-1", "pax-2"):
            await _add(coordinator, pid, Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert len(result.proposals) == 2
        assert provider.seats_claimed == 2
        assert provider.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unlimited_capacity(self, build, provider_route, seeker_route) -> None:
        coordinator = build(EngineConfig(unlimited_capacity=True))
        provider = await _add(coordinator, "drv", Role.PROVIDER, provider_route, seats_capacity=1, seats_claimed=1)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert len(result.proposals) == 1
        assert coordinator.registry.get_by_id(provider.search_id) is provider

    @pytest.mark.asyncio
    async def test_seeker_matched_once_per_cycle(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv-1", Role.PROVIDER, provider_route)
        await _add(coordinator, "drv-2", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert [m.provider_id for m in result.proposals] == ["drv-1"]

    @pytest.mark.asyncio
    async def test_max_matches_per_cycle(self, build, provider_route, seeker_route) -> None:
        coordinator = build(EngineConfig(max_matches_per_cycle=1))
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax-1", Role.SEEKER, seeker_route)
        await _add(coordinator, "pax-2", Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert len(result.proposals) == 1


class TestSchedules:
    """Тесты совместимости расписаний."""

    @pytest.mark.asyncio
    async def test_scheduled_within_flexibility(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route,
                   mode=RideMode.SCHEDULED, status=SessionStatus.ACTIVE, scheduled_time=T0 + timedelta(minutes=10))
        await _add(coordinator, "pax", Role.SEEKER, seeker_route,
                   mode=RideMode.SCHEDULED, status=SessionStatus.ACTIVE, scheduled_time=T0 + timedelta(minutes=30))

        result = await coordinator.run_cycle()

        assert len(result.proposals) == 1
        assert result.proposals[0].mode == RideMode.SCHEDULED
        assert result.proposals[0].scheduled_time == T0 + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_scheduled_outside_flexibility(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route,
                   mode=RideMode.SCHEDULED, status=SessionStatus.ACTIVE, scheduled_time=T0 + timedelta(minutes=5))
        await _add(coordinator, "pax", Role.SEEKER, seeker_route,
                   mode=RideMode.SCHEDULED, status=SessionStatus.ACTIVATING, scheduled_time=T0 + timedelta(minutes=50))

        result = await coordinator.run_cycle()

        assert result.skipped_schedule == 1
        assert result.proposals == []

    @pytest.mark.asyncio
    async def test_mode_mismatch(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route,
                   mode=RideMode.SCHEDULED, status=SessionStatus.ACTIVE, scheduled_time=T0 + timedelta(minutes=5))

        result = await coordinator.run_cycle()

        assert result.skipped_schedule == 1


class TestFailures:
    """Тесты изоляции ошибок и отката."""

    @pytest.mark.asyncio
    async def test_pair_error_does_not_stop_cycle(self, build, provider_route, seeker_route) -> None:
        scorer = MagicMock()
        scorer.score.side_effect = [RuntimeError("boom"), ScoreBreakdown(total=0.9)]
        coordinator = build(scorer=scorer)
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax-1", Role.SEEKER, seeker_route)
        await _add(coordinator, "pax-2", Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert result.errors == 1
        assert [m.seeker_id for m in result.proposals] == ["pax-2"]

    @pytest.mark.asyncio
    async def test_persist_retried_once(self, build, store, provider_route, seeker_route) -> None:
        store.fail_create = 1
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert len(result.proposals) == 1

    @pytest.mark.asyncio
    async def test_persist_failure_rolls_back(self, build, store, listener, provider_route, seeker_route) -> None:
        """После двух неудачных попыток сессии возвращаются, пара оценивается в следующем цикле."""
        store.fail_create = 2
        coordinator = build()
        provider = await _add(coordinator, "drv", Role.PROVIDER, provider_route, seats_capacity=1)
        seeker = await _add(coordinator, "pax", Role.SEEKER, seeker_route)

        failed = await coordinator.run_cycle()

        assert failed.proposals == []
        assert coordinator.registry.get_by_id(seeker.search_id) is seeker
        assert coordinator.registry.get_by_id(provider.search_id) is provider
        assert seeker.status == SessionStatus.ACTIVE
        assert seeker.outstanding_match_id is None
        assert provider.seats_claimed == 0
        assert not coordinator.guard.is_in_cooldown("drv", "pax", T0)
        listener.assert_not_called()

        retried = await coordinator.run_cycle()

        assert len(retried.proposals) == 1

    @pytest.mark.asyncio
    async def test_stop_during_failed_persist(self, build, store, listener, provider_route, seeker_route) -> None:
        """Пассажир остановил поиск, пока предложение сохранялось; откат не возвращает его в реестр."""
        coordinator = build()
        coordinator.registry.set_listener(listener)
        provider = await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        seeker = await _add(coordinator, "pax", Role.SEEKER, seeker_route)
        stops: list = []

        async def failing_create(*args, **kwargs):
            stops.append(await coordinator.registry.deregister("pax", RideMode.IMMEDIATE, reason="stopped_by_user"))
            raise ConnectionError("store unavailable")

        with patch.object(store, "create", new=AsyncMock(side_effect=failing_create)):
            result = await coordinator.run_cycle()

        assert result.proposals == []
        assert stops == [seeker, None]
        assert seeker.status == SessionStatus.STOPPED
        assert coordinator.registry.get("pax", RideMode.IMMEDIATE) is None
        assert coordinator.registry.get_by_id(provider.search_id) is provider
        assert provider.seats_claimed == 0
        assert [c.args[1] for c in listener.call_args_list] == [LifecycleEvent.SEARCH_STOPPED]
        assert coordinator.registry.get_stats()["held"] == 0

    @pytest.mark.asyncio
    async def test_stop_during_successful_persist(self, build, store, listener, provider_route, seeker_route) -> None:
        """Остановка во время сохранения не даёт второго события search_stopped."""
        coordinator = build()
        coordinator.registry.set_listener(listener)
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        seeker = await _add(coordinator, "pax", Role.SEEKER, seeker_route)
        create = store.create

        async def stopping_create(*args, **kwargs):
            await coordinator.registry.deregister("pax", RideMode.IMMEDIATE, reason="stopped_by_user")
            return await create(*args, **kwargs)

        with patch.object(store, "create", new=AsyncMock(side_effect=stopping_create)):
            result = await coordinator.run_cycle()

        assert len(result.proposals) == 1
        assert seeker.status == SessionStatus.STOPPED
        assert listener.await_count == 1
        assert listener.call_args.args[2] == {"reason": "stopped_by_user"}

    @pytest.mark.asyncio
    async def test_provider_seats_saved(self, build, store, provider_route, seeker_route) -> None:
        """Занятые места водителя сохраняются вместе с предложением."""
        coordinator = build(sessions=SessionRepository(store))
        provider = await _add(coordinator, "drv", Role.PROVIDER, provider_route, seats_capacity=2)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route)

        await coordinator.run_cycle()

        document = store.collections[Collection.SEARCH_SESSIONS.value][provider.search_id]
        assert document["seats_claimed"] == 1
        assert document["accepted_matches"] == 1
        assert document["status"] == SessionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_dedup_blocks_repeat(self, build, provider_route, seeker_route) -> None:
        """Повторная регистрация пассажира не даёт второго предложения в окне кулдауна."""
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route)
        await coordinator.run_cycle()
        await _add(coordinator, "pax", Role.SEEKER, seeker_route)

        result = await coordinator.run_cycle()

        assert result.blocked == 1
        assert result.proposals == []

    @pytest.mark.asyncio
    async def test_stats(self, build, provider_route, seeker_route) -> None:
        coordinator = build()
        await _add(coordinator, "drv", Role.PROVIDER, provider_route)
        await _add(coordinator, "pax", Role.SEEKER, seeker_route)
        await coordinator.run_cycle()

        stats = coordinator.get_stats()

        assert stats["cycles"] == 1
        assert stats["total_proposals"] == 1
        assert stats["last_cycle"]["proposals"] == 1
