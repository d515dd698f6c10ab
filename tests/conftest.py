# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import copy
import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")

from src.common.clock import ensure_utc
from src.config.engine import EngineConfig


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "ride_match_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "COMPONENT_MODE": "engine",
        "ENGINE_HOST": "127.0.0.1",
        "ENGINE_PORT": 9000,
        "LOG_LEVEL": "DEBUG",
        "LOG_TO_FILE": False,
        "LOG_FILE_PATH": "logs/test.log",
        "LOG_FORMAT": "colored",
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "ride_match_test",
        "DB_USER": "postgres",
        "DB_PASSWORD": "test_password",
        "DB_MIN_POOL_SIZE": 1,
        "DB_MAX_POOL_SIZE": 5,
        "IMMEDIATE_THRESHOLD": 0.6,
        "SCHEDULED_THRESHOLD": 0.4,
        "MATCHING_INTERVAL": 15,
        "MAX_MATCHES_PER_CYCLE": 5,
        "ACTIVATION_LEAD_MINUTES": 30,
        "FINAL_WINDOW_MINUTES": 5,
        "OVERRUN_WINDOW_MINUTES": 120,
        "SWEEP_INTERVAL": 10,
        "IMMEDIATE_SEARCH_TIMEOUT": 300,
        "COOLDOWN_SECONDS": 120,
        "EXISTING_MATCH_WINDOW": 300,
        "MATCH_PROPOSAL_TIMEOUT": 120,
        "ACTIVATION_LEAD_OVERRIDE_MINUTES": None,
        "THRESHOLD_OVERRIDE": None,
        "BYPASS_DEDUP": False,
        "UNLIMITED_CAPACITY": False,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


@pytest.fixture
def engine_config() -> EngineConfig:
    """Конфигурация движка со значениями по умолчанию."""
    return EngineConfig()


# =============================================================================
# ВРЕМЯ
# =============================================================================

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Управляемые часы для тестов."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Часы, стоящие на T0."""
    return FakeClock()


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).timestamp()
    if hasattr(value, "value"):
        return value.value
    return value


class InMemoryDocumentStore:
    """Документное хранилище в памяти с той же семантикой фильтров."""

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict[str, Any]]] = {}
        self.fail_create = 0

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self.collections.setdefault(name, {})

    async def create(self, collection: str, data: dict[str, Any], doc_id: str | None = None) -> str:
        if self.fail_create > 0:
            self.fail_create -= 1
            raise ConnectionError("store unavailable")
        doc_id = doc_id or str(uuid4())
        self._collection(collection)[doc_id] = copy.deepcopy(data)
        return doc_id

    async def upsert(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._collection(collection)[doc_id] = copy.deepcopy(data)

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        data = self._collection(collection).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> bool:
        data = self._collection(collection).get(doc_id)
        if data is None:
            return False
        if any(data.get(name) != _comparable(value) for name, value in (expected or {}).items()):
            return False
        data.update(copy.deepcopy(fields))
        return True

    async def query(
        self,
        collection: str,
        filters: Iterable[tuple[str, str, Any]] = (),
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        filters = list(filters)
        result = []
        for data in self._collection(collection).values():
            if all(self._matches(data, f) for f in filters):
                result.append(copy.deepcopy(data))
        if order_by:
            result.sort(key=lambda d: d.get(order_by) or 0)
        if limit is not None:
            result = result[:limit]
        return result

    @staticmethod
    def _matches(data: dict[str, Any], flt: tuple[str, str, Any]) -> bool:
        name, op, value = flt
        actual = data.get(name)
        if op == "in":
            return actual in [_comparable(v) for v in value]
        expected = _comparable(value)
        if op == "==":
            return actual == expected
        if op == "!=":
            return actual != expected
        if actual is None:
            return False
        return {
            "<": actual < expected,
            "<=": actual <= expected,
            ">": actual > expected,
            ">=": actual >= expected,
        }[op]


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Документное хранилище в памяти."""
    return InMemoryDocumentStore()


class FakeChannel:
    """Канал реального времени, запоминающий отправленные сообщения."""

    def __init__(self, connected: Iterable[str] = ()) -> None:
        self.connected = set(connected)
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.fail = False

    def is_connected(self, participant_id: str) -> bool:
        return participant_id in self.connected

    async def send_personal(self, participant_id: str, message: dict[str, Any]) -> bool:
        if self.fail or participant_id not in self.connected:
            return False
        self.sent.append((participant_id, message))
        return True

    def messages_for(self, participant_id: str) -> list[dict[str, Any]]:
        return [m for pid, m in self.sent if pid == participant_id]


@pytest.fixture
def channel() -> FakeChannel:
    """Канал без подключённых участников."""
    return FakeChannel()


# =============================================================================
# ФИКСТУРЫ МАРШРУТОВ
# =============================================================================

@pytest.fixture
def seeker_route() -> list[dict[str, float]]:
    """Маршрут пассажира Аддис-Абеба -> Адама."""
    return [{"lat": 9.033, "lng": 38.760}, {"lat": 8.546, "lng": 39.268}]


@pytest.fixture
def provider_route() -> list[dict[str, float]]:
    """Маршрут водителя почти совпадает с маршрутом пассажира."""
    return [{"lat": 9.030, "lng": 38.758}, {"lat": 8.550, "lng": 39.270}]


@pytest.fixture
def far_route() -> list[dict[str, float]]:
    """Маршрут на другом континенте."""
    return [{"lat": 53.550, "lng": 10.000}, {"lat": 52.520, "lng": 13.405}]
