#!/usr/bin/env python3
# main.py
"""
Главная точка входа движка подбора попутчиков.
Запускает WebSocket приложение с воркерами, отдельные воркеры
или применение схемы БД в зависимости от аргументов.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import init_db, close_db

VALID_MODES = ("engine", "worker", "migrate")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            # Отменяем все запущенные задачи
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def run_engine() -> None:
    """Запускает приложение движка (WebSocket канал + воркеры)."""
    import uvicorn

    await log_info(
        f"Запуск движка матчинга на {settings.deployment.ENGINE_HOST}:{settings.deployment.ENGINE_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "src.services.realtime_ws.app:app",
        host=settings.deployment.ENGINE_HOST,
        port=settings.deployment.ENGINE_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Движок матчинга: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_worker() -> None:
    """Запускает только воркеры движка, без WebSocket канала."""
    from src.worker.runner import run_workers

    await run_workers(init_infra=True)


async def run_migrate() -> None:
    """Применяет схему БД и завершает работу."""
    await init_db(apply_schema=True)
    await close_db()


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (engine, worker, migrate).
              Если None, берётся COMPONENT_MODE из настроек.
    """
    setup_logging()
    setup_signal_handlers()

    if mode is None:
        mode = settings.system.COMPONENT_MODE if settings.system.COMPONENT_MODE in VALID_MODES else "engine"

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION} — запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    runners = {
        "engine": run_engine,
        "worker": run_worker,
        "migrate": run_migrate,
    }

    task = asyncio.create_task(runners[mode](), name=mode)
    _running_tasks.append(task)

    try:
        await task
    except asyncio.CancelledError:
        await log_info("Задачи отменены", type_msg=TypeMsg.DEBUG)
    except Exception as e:
        await log_error(f"Критическая ошибка в режиме '{mode}': {e}", exc_info=True)
        raise
    finally:
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Ride Match Engine — движок подбора попутчиков

Использование:
    python main.py [mode]

Режимы:
    engine     — WebSocket канал, REST /health и /stats, фоновые воркеры (по умолчанию)
    worker     — только фоновые воркеры (без канала реального времени)
    migrate    — применить migrations/init.sql и выйти

Примеры:
    python main.py
    python main.py migrate
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
