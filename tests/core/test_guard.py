# tests/core/test_guard.py
"""
Unit тесты для защиты от повторных предложений (src/core/matching/guard.py).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.config.engine import EngineConfig
from src.core.matching.guard import DedupGuard

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def repository() -> AsyncMock:
    repo = AsyncMock()
    repo.has_recent_match = AsyncMock(return_value=False)
    return repo


@pytest.fixture
def guard(repository, clock) -> DedupGuard:
    return DedupGuard(repository, EngineConfig(), clock=clock)


class TestCooldown:
    """Тесты кулдауна в памяти."""

    @pytest.mark.asyncio
    async def test_second_attempt_within_window_blocked(self, guard) -> None:
        """В окне кулдауна пара получает не больше одного предложения."""
        assert await guard.allow("drv", "pax", T0) is True
        assert await guard.allow("drv", "pax", T0 + timedelta(seconds=60)) is False

    @pytest.mark.asyncio
    async def test_allowed_after_window(self, guard) -> None:
        await guard.allow("drv", "pax", T0)

        assert await guard.allow("drv", "pax", T0 + timedelta(minutes=2)) is True

    @pytest.mark.asyncio
    async def test_pairs_are_directional(self, guard) -> None:
        await guard.allow("a", "b", T0)

        assert await guard.allow("b", "a", T0) is True
        assert await guard.allow("a", "c", T0) is True

    @pytest.mark.asyncio
    async def test_release_clears_cooldown(self, guard) -> None:
        await guard.allow("drv", "pax", T0)

        guard.release("drv", "pax")

        assert not guard.is_in_cooldown("drv", "pax", T0)
        assert await guard.allow("drv", "pax", T0) is True

    def test_eviction_drops_stale_entries(self, repository) -> None:
        guard = DedupGuard(repository, EngineConfig(cooldown_eviction_size=2))
        guard.record_attempt("a", "1", T0)
        guard.record_attempt("a", "2", T0)

        guard.record_attempt("a", "3", T0 + timedelta(minutes=5))

        assert len(guard) == 1
        assert guard.get_stats()["evicted"] == 2

    def test_eviction_keeps_fresh_entries(self, repository) -> None:
        guard = DedupGuard(repository, EngineConfig(cooldown_eviction_size=2))
        for seeker in ("1", "2", "3"):
            guard.record_attempt("a", seeker, T0)

        assert len(guard) == 3


class TestExistingMatchCheck:
    """Тесты проверки предложений в хранилище."""

    @pytest.mark.asyncio
    async def test_existing_match_blocks(self, guard, repository) -> None:
        repository.has_recent_match.return_value = True

        assert await guard.allow("drv", "pax", T0) is False
        repository.has_recent_match.assert_awaited_once_with("drv", "pax", T0 - timedelta(minutes=5))
        assert guard.get_stats()["blocked_existing"] == 1

    @pytest.mark.asyncio
    async def test_repository_error_denies(self, guard, repository) -> None:
        repository.has_recent_match.side_effect = ConnectionError("down")

        assert await guard.allow("drv", "pax", T0) is False

    @pytest.mark.asyncio
    async def test_cooldown_checked_before_repository(self, guard, repository) -> None:
        await guard.allow("drv", "pax", T0)
        repository.has_recent_match.reset_mock()

        await guard.allow("drv", "pax", T0 + timedelta(seconds=5))

        repository.has_recent_match.assert_not_called()

    @pytest.mark.asyncio
    async def test_without_repository(self) -> None:
        guard = DedupGuard(None, EngineConfig())

        assert await guard.allow("drv", "pax", T0) is True


class TestBypass:
    """Тесты отключения защиты."""

    @pytest.mark.asyncio
    async def test_bypass_skips_all_checks(self, repository) -> None:
        guard = DedupGuard(repository, EngineConfig(bypass_dedup=True))

        assert await guard.allow("drv", "pax", T0) is True
        assert await guard.allow("drv", "pax", T0) is True
        repository.has_recent_match.assert_not_called()
        assert guard.get_stats()["bypass"] is True
