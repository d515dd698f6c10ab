#!/usr/bin/env python3
# entrypoint_engine.py
"""
Entrypoint для движка подбора попутчиков.

Запуск:
    python entrypoint_engine.py

Порт по умолчанию: 8095
"""

import sys
from pathlib import Path

# Добавляем корневую директорию проекта в путь
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

import uvicorn

from src.config import settings


def main() -> None:
    """Запустить движок матчинга."""
    uvicorn.run(
        "src.services.realtime_ws.app:app",
        host=settings.deployment.ENGINE_HOST,
        port=settings.deployment.ENGINE_PORT,
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
