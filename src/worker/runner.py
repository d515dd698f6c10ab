# src/worker/runner.py
"""
Запускалка воркеров движка матчинга.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List

from src.worker.base import BaseWorker
from src.worker.matching import ExpiryWorker, MatchingWorker, ProposalExpiryWorker, SchedulingWorker
from src.common.logger import log_info, log_error
from src.common.constants import TypeMsg

if TYPE_CHECKING:
    from src.core.engine import MatchingEngine


def create_workers(engine: MatchingEngine) -> List[BaseWorker]:
    """Создаёт воркеры с интервалами из конфигурации движка."""
    config = engine.config
    return [
        ExpiryWorker(engine.registry, config.tick_interval),
        SchedulingWorker(engine.scheduling, config.sweep_interval),
        MatchingWorker(engine.coordinator, config.matching_interval),
        ProposalExpiryWorker(engine.proposals, config.proposal_sweep_interval),
    ]


async def start_workers(engine: MatchingEngine) -> List[BaseWorker]:
    """
    Запускает все воркеры движка.

    Returns:
        Запущенные воркеры
    """
    workers = create_workers(engine)
    for worker in workers:
        await worker.start()

    await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)
    return workers


async def stop_workers(workers: List[BaseWorker]) -> None:
    """Останавливает воркеры в обратном порядке."""
    for worker in reversed(workers):
        try:
            await worker.stop()
        except Exception as e:
            await log_error(f"Ошибка остановки воркера {worker.name}: {e}")


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает движок и воркеры без WebSocket канала.

    Args:
        init_infra: Если True, подключает БД и применяет схему.
                    При запуске из приложения инфраструктура уже поднята.
    """
    from src.config import settings
    from src.core.engine import MatchingEngine
    from src.infra.database import close_db, init_db

    await log_info("Запуск воркеров движка матчинга...", type_msg=TypeMsg.INFO)

    if init_infra:
        await log_info("Инициализация инфраструктуры для воркеров...", type_msg=TypeMsg.DEBUG)
        await init_db()

    engine = MatchingEngine.build(settings)
    workers: List[BaseWorker] = []

    try:
        await engine.startup()
        workers = await start_workers(engine)

        # Ждём завершения (Ctrl+C)
        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
    finally:
        await stop_workers(workers)

        if init_infra:
            await close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
