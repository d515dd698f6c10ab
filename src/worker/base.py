# src/worker/base.py
"""
Базовый класс для периодических воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Вызывает run_once с заданным интервалом в отдельной задаче.
    """

    def __init__(self, interval: float) -> None:
        """
        Инициализирует воркер.

        Args:
            interval: Пауза между итерациями (секунды)
        """
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._iterations = 0
        self._failures = 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""
        pass

    @abstractmethod
    async def run_once(self) -> Any:
        """Одна итерация работы воркера."""
        pass

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        await log_info(
            f"Воркер {self.name} запущен (интервал {self.interval} с)",
            type_msg=TypeMsg.INFO,
        )

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False

        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def _loop(self) -> None:
        while self._running:
            await self._iteration()
            await asyncio.sleep(self.interval)

    async def _iteration(self) -> None:
        """Итерация с перехватом ошибок: воркер не должен падать."""
        self._iterations += 1
        try:
            await self.run_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failures += 1
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                extra={"worker": self.name, "iteration": self._iterations},
                exc_info=True,
            )

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "interval": self.interval,
            "iterations": self._iterations,
            "failures": self._failures,
        }
