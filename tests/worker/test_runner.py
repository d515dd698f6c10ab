# tests/worker/test_runner.py
"""
Тесты запуска и остановки воркеров (src/worker/runner.py).
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.config.engine import EngineConfig
from src.core.engine import MatchingEngine
from src.worker.matching import ExpiryWorker, MatchingWorker, ProposalExpiryWorker, SchedulingWorker
from src.worker.runner import create_workers, start_workers, stop_workers


@pytest.fixture
def engine(store, clock) -> MatchingEngine:
    config = EngineConfig(
        matching_interval=15,
        sweep_interval=5,
        tick_interval=0.5,
        proposal_sweep_interval=20,
    )
    return MatchingEngine(config, store=store, clock=clock)


class TestCreateWorkers:

    def test_order_and_intervals(self, engine) -> None:
        workers = create_workers(engine)

        assert [type(w) for w in workers] == [
            ExpiryWorker,
            SchedulingWorker,
            MatchingWorker,
            ProposalExpiryWorker,
        ]
        assert [w.interval for w in workers] == [0.5, 5, 15, 20]
        assert workers[2].coordinator is engine.coordinator
        assert workers[3].proposals is engine.proposals


class TestStartStopWorkers:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine) -> None:
        workers = await start_workers(engine)

        assert all(w.is_running for w in workers)

        await stop_workers(workers)

        assert not any(w.is_running for w in workers)

    @pytest.mark.asyncio
    async def test_stop_continues_on_error(self) -> None:
        """Ошибка одного воркера не мешает остановке остальных."""
        order = []
        broken = MagicMock()
        broken.name = "Broken"
        broken.stop = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        healthy.stop = AsyncMock(side_effect=lambda: order.append("healthy"))

        await stop_workers([healthy, broken])

        broken.stop.assert_awaited_once()
        assert order == ["healthy"]
