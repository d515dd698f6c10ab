# src/config/engine.py
"""
Явная конфигурация движка матчинга.

Все компоненты движка получают EngineConfig через конструктор
и не читают глобальные настройки или переменные окружения.
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, Field

from src.common.constants import RideMode


class EngineConfig(BaseModel):
    """Эффективные параметры движка (переопределения уже применены)."""

    # Пороги схожести маршрутов
    immediate_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    scheduled_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    threshold_override: float | None = Field(default=None, ge=0.0, le=1.0)

    # Скоринг
    direct_match_delta_deg: float = 0.01
    max_deviation_km: float = Field(default=50.0, gt=0)
    max_proximity_km: float = Field(default=2.0, gt=0)
    average_speed_kph: float = Field(default=30.0, gt=0)

    # Цикл матчинга
    max_matches_per_cycle: int = 10
    default_capacity: int = 4
    default_seats_requested: int = 1
    schedule_flexibility: timedelta = timedelta(minutes=30)
    unlimited_capacity: bool = False

    # Расписание
    activation_lead: timedelta = timedelta(minutes=30)
    final_window: timedelta = timedelta(minutes=5)
    overrun_window: timedelta = timedelta(minutes=120)

    # Сессии и предложения
    immediate_search_timeout: timedelta = timedelta(minutes=5)
    proposal_timeout: timedelta = timedelta(minutes=2)

    # Дедупликация
    cooldown: timedelta = timedelta(minutes=2)
    cooldown_eviction_size: int = 1000
    existing_match_window: timedelta = timedelta(minutes=5)
    bypass_dedup: bool = False

    # Периодичность фоновых задач (секунды)
    matching_interval: float = 30.0
    sweep_interval: float = 10.0
    tick_interval: float = 1.0
    proposal_sweep_interval: float = 30.0

    class Config:
        frozen = True

    def threshold_for(self, mode: RideMode) -> float:
        """
        Возвращает порог принятия пары для режима поездки.

        Args:
            mode: Режим поездки

        Returns:
            Порог схожести в диапазоне [0, 1]
        """
        if self.threshold_override is not None:
            return self.threshold_override
        if mode == RideMode.SCHEDULED:
            return self.scheduled_threshold
        return self.immediate_threshold

    @classmethod
    def from_settings(cls, settings) -> "EngineConfig":
        """Собирает конфигурацию движка из секций Settings."""
        lead_minutes = settings.overrides.ACTIVATION_LEAD_OVERRIDE_MINUTES
        if lead_minutes is None:
            lead_minutes = settings.scheduling.ACTIVATION_LEAD_MINUTES

        final_minutes = min(settings.scheduling.FINAL_WINDOW_MINUTES, lead_minutes)

        return cls(
            immediate_threshold=settings.matching.IMMEDIATE_THRESHOLD,
            scheduled_threshold=settings.matching.SCHEDULED_THRESHOLD,
            threshold_override=settings.overrides.THRESHOLD_OVERRIDE,
            direct_match_delta_deg=settings.matching.DIRECT_MATCH_DELTA_DEG,
            max_deviation_km=settings.matching.MAX_DEVIATION_KM,
            max_proximity_km=settings.matching.MAX_PROXIMITY_KM,
            average_speed_kph=settings.matching.AVERAGE_SPEED_KPH,
            max_matches_per_cycle=settings.matching.MAX_MATCHES_PER_CYCLE,
            default_capacity=settings.matching.DEFAULT_CAPACITY,
            default_seats_requested=settings.matching.DEFAULT_SEATS_REQUESTED,
            schedule_flexibility=timedelta(minutes=settings.matching.SCHEDULE_FLEXIBILITY_MINUTES),
            unlimited_capacity=settings.overrides.UNLIMITED_CAPACITY,
            activation_lead=timedelta(minutes=lead_minutes),
            final_window=timedelta(minutes=final_minutes),
            overrun_window=timedelta(minutes=settings.scheduling.OVERRUN_WINDOW_MINUTES),
            immediate_search_timeout=timedelta(seconds=settings.search.IMMEDIATE_SEARCH_TIMEOUT),
            proposal_timeout=timedelta(seconds=settings.timeouts.MATCH_PROPOSAL_TIMEOUT),
            cooldown=timedelta(seconds=settings.dedup.COOLDOWN_SECONDS),
            cooldown_eviction_size=settings.dedup.COOLDOWN_EVICTION_SIZE,
            existing_match_window=timedelta(seconds=settings.dedup.EXISTING_MATCH_WINDOW),
            bypass_dedup=settings.overrides.BYPASS_DEDUP,
            matching_interval=settings.matching.MATCHING_INTERVAL,
            sweep_interval=settings.scheduling.SWEEP_INTERVAL,
            tick_interval=settings.search.REGISTRY_TICK_INTERVAL,
            proposal_sweep_interval=settings.timeouts.PROPOSAL_SWEEP_INTERVAL,
        )
