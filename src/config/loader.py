# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины — config/config.json.
Секретные данные и адреса переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json(path: Path | None = None) -> dict[str, Any]:
    """Загружает config.json и возвращает словарь без ключей-комментариев."""
    config_path = path or get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    # Фильтруем комментарии (ключи, начинающиеся с _comment_)
    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "ride_match"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "engine"


class DeploymentSettings(BaseModel):
    """Настройки развертывания движка."""
    ENGINE_HOST: str = "0.0.0.0"
    ENGINE_PORT: int = 8095


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/ride_match.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5

    @field_validator("LOG_FORMAT")
    @classmethod
    def check_format(cls, v: str) -> str:
        """Допускаются только colored и json."""
        if v not in ("colored", "json"):
            raise ValueError(f"Неизвестный формат логов: {v}")
        return v


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "ride_match"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 2
    DB_MAX_POOL_SIZE: int = 10
    DB_COMMAND_TIMEOUT: int = 30
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class MatchingSettings(BaseModel):
    """Параметры сопоставления маршрутов и цикла матчинга."""
    IMMEDIATE_THRESHOLD: float = Field(default=0.6, ge=0.0, le=1.0)
    SCHEDULED_THRESHOLD: float = Field(default=0.4, ge=0.0, le=1.0)
    DIRECT_MATCH_DELTA_DEG: float = 0.01
    MAX_DEVIATION_KM: float = Field(default=50.0, gt=0)
    MAX_PROXIMITY_KM: float = Field(default=2.0, gt=0)
    MATCHING_INTERVAL: int = 30
    MAX_MATCHES_PER_CYCLE: int = 10
    DEFAULT_CAPACITY: int = 4
    DEFAULT_SEATS_REQUESTED: int = 1
    SCHEDULE_FLEXIBILITY_MINUTES: int = 30
    AVERAGE_SPEED_KPH: float = Field(default=30.0, gt=0)


class SchedulingSettings(BaseModel):
    """Настройки активации запланированных поисков."""
    ACTIVATION_LEAD_MINUTES: int = 30
    FINAL_WINDOW_MINUTES: int = 5
    OVERRUN_WINDOW_MINUTES: int = 120
    SWEEP_INTERVAL: int = 10

    @model_validator(mode="after")
    def check_windows(self) -> "SchedulingSettings":
        """Финальное окно не может быть больше окна активации."""
        if self.FINAL_WINDOW_MINUTES > self.ACTIVATION_LEAD_MINUTES:
            raise ValueError("FINAL_WINDOW_MINUTES больше ACTIVATION_LEAD_MINUTES")
        return self


class SearchSettings(BaseModel):
    """Настройки поисковых сессий."""
    IMMEDIATE_SEARCH_TIMEOUT: int = 300
    REGISTRY_TICK_INTERVAL: float = 1.0


class DedupSettings(BaseModel):
    """Настройки защиты от повторных предложений."""
    COOLDOWN_SECONDS: int = 120
    COOLDOWN_EVICTION_SIZE: int = 1000
    EXISTING_MATCH_WINDOW: int = 300


class TimeoutSettings(BaseModel):
    """Настройки таймаутов и интервалов."""
    MATCH_PROPOSAL_TIMEOUT: int = 120
    PROPOSAL_SWEEP_INTERVAL: int = 30


class OverrideSettings(BaseModel):
    """
    Явные переключатели для тестовых стендов.
    В продакшене все значения остаются по умолчанию.
    """
    ACTIVATION_LEAD_OVERRIDE_MINUTES: float | None = None
    THRESHOLD_OVERRIDE: float | None = Field(default=None, ge=0.0, le=1.0)
    BYPASS_DEDUP: bool = False
    UNLIMITED_CAPACITY: bool = False


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    overrides: OverrideSettings = Field(default_factory=OverrideSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls, path: Path | None = None) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты и адреса переопределяются из переменных окружения.
        """
        data = load_config_json(path)

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "ride_match"),
                VERSION=data.get("VERSION", "1.0.0"),
                DEBUG=data.get("DEBUG", False),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", data.get("COMPONENT_MODE", "engine")),
            ),
            deployment=DeploymentSettings(
                ENGINE_HOST=os.getenv("ENGINE_HOST", data.get("ENGINE_HOST", "0.0.0.0")),
                ENGINE_PORT=int(os.getenv("ENGINE_PORT", data.get("ENGINE_PORT", 8095))),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=data.get("LOG_LEVEL", "DEBUG"),
                LOG_TO_FILE=data.get("LOG_TO_FILE", False),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/ride_match.log"),
                LOG_FORMAT=data.get("LOG_FORMAT", "colored"),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
                LOG_BACKUP_COUNT=data.get("LOG_BACKUP_COUNT", 5),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "ride_match")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 2),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 10),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 30),
                DB_RETRY_ATTEMPTS=data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=data.get("DB_RETRY_DELAY", 1.0),
            ),
            matching=MatchingSettings(
                IMMEDIATE_THRESHOLD=data.get("IMMEDIATE_THRESHOLD", 0.6),
                SCHEDULED_THRESHOLD=data.get("SCHEDULED_THRESHOLD", 0.4),
                DIRECT_MATCH_DELTA_DEG=data.get("DIRECT_MATCH_DELTA_DEG", 0.01),
                MAX_DEVIATION_KM=data.get("MAX_DEVIATION_KM", 50.0),
                MAX_PROXIMITY_KM=data.get("MAX_PROXIMITY_KM", 2.0),
                MATCHING_INTERVAL=data.get("MATCHING_INTERVAL", 30),
                MAX_MATCHES_PER_CYCLE=data.get("MAX_MATCHES_PER_CYCLE", 10),
                DEFAULT_CAPACITY=data.get("DEFAULT_CAPACITY", 4),
                DEFAULT_SEATS_REQUESTED=data.get("DEFAULT_SEATS_REQUESTED", 1),
                SCHEDULE_FLEXIBILITY_MINUTES=data.get("SCHEDULE_FLEXIBILITY_MINUTES", 30),
                AVERAGE_SPEED_KPH=data.get("AVERAGE_SPEED_KPH", 30.0),
            ),
            scheduling=SchedulingSettings(
                ACTIVATION_LEAD_MINUTES=data.get("ACTIVATION_LEAD_MINUTES", 30),
                FINAL_WINDOW_MINUTES=data.get("FINAL_WINDOW_MINUTES", 5),
                OVERRUN_WINDOW_MINUTES=data.get("OVERRUN_WINDOW_MINUTES", 120),
                SWEEP_INTERVAL=data.get("SWEEP_INTERVAL", 10),
            ),
            search=SearchSettings(
                IMMEDIATE_SEARCH_TIMEOUT=data.get("IMMEDIATE_SEARCH_TIMEOUT", 300),
                REGISTRY_TICK_INTERVAL=data.get("REGISTRY_TICK_INTERVAL", 1.0),
            ),
            dedup=DedupSettings(
                COOLDOWN_SECONDS=data.get("COOLDOWN_SECONDS", 120),
                COOLDOWN_EVICTION_SIZE=data.get("COOLDOWN_EVICTION_SIZE", 1000),
                EXISTING_MATCH_WINDOW=data.get("EXISTING_MATCH_WINDOW", 300),
            ),
            timeouts=TimeoutSettings(
                MATCH_PROPOSAL_TIMEOUT=data.get("MATCH_PROPOSAL_TIMEOUT", 120),
                PROPOSAL_SWEEP_INTERVAL=data.get("PROPOSAL_SWEEP_INTERVAL", 30),
            ),
            overrides=OverrideSettings(
                ACTIVATION_LEAD_OVERRIDE_MINUTES=data.get("ACTIVATION_LEAD_OVERRIDE_MINUTES"),
                THRESHOLD_OVERRIDE=data.get("THRESHOLD_OVERRIDE"),
                BYPASS_DEDUP=data.get("BYPASS_DEDUP", False),
                UNLIMITED_CAPACITY=data.get("UNLIMITED_CAPACITY", False),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    # Загружаем .env файл
    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
