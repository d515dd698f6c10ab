# tests/worker/test_base_worker.py
"""
Тесты базового периодического воркера (src/worker/base.py).
"""

import asyncio

import pytest

from src.worker.base import BaseWorker


class DummyWorker(BaseWorker):
    """Воркер, считающий вызовы и падающий по запросу."""

    def __init__(self, interval: float = 0.01, fail: bool = False) -> None:
        super().__init__(interval)
        self.calls = 0
        self.fail = fail

    @property
    def name(self) -> str:
        return "DummyWorker"

    async def run_once(self) -> int:
        self.calls += 1
        if self.fail:
            raise RuntimeError("boom")
        return self.calls


class TestBaseWorkerLifecycle:
    """Запуск и остановка."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        worker = DummyWorker()

        await worker.start()
        await asyncio.sleep(0.05)
        await worker.stop()

        assert worker.is_running is False
        assert worker.calls >= 1
        assert worker._task is None

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self) -> None:
        """Повторный start не создаёт вторую задачу."""
        worker = DummyWorker()

        await worker.start()
        task = worker._task
        await worker.start()

        assert worker._task is task
        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self) -> None:
        worker = DummyWorker()

        await worker.stop()

        assert worker.is_running is False


class TestBaseWorkerErrors:
    """Ошибки итераций."""

    @pytest.mark.asyncio
    async def test_iteration_error_counted(self) -> None:
        """Исключение в итерации логируется и считается, наружу не выходит."""
        worker = DummyWorker(fail=True)

        await worker._iteration()
        await worker._iteration()

        stats = worker.get_stats()
        assert stats["iterations"] == 2
        assert stats["failures"] == 2

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self) -> None:
        worker = DummyWorker(fail=True)

        await worker.start()
        await asyncio.sleep(0.05)
        await worker.stop()

        assert worker.calls >= 2

    def test_stats_shape(self) -> None:
        stats = DummyWorker(interval=5).get_stats()

        assert stats == {
            "name": "DummyWorker",
            "running": False,
            "interval": 5,
            "iterations": 0,
            "failures": 0,
        }
