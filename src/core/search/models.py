# src/core/search/models.py
"""
Модели поисковых сессий.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from src.common.clock import ensure_utc, utc_now
from src.common.constants import LIVE_STATUSES, MATCHABLE_STATUSES, RideMode, Role, SessionStatus


class GeoPoint(BaseModel):
    """Географическая точка в десятичных градусах."""

    latitude: float = Field(
        ...,
        ge=-90.0,
        le=90.0,
        validation_alias=AliasChoices("latitude", "lat"),
        description="Широта",
    )
    longitude: float = Field(
        ...,
        ge=-180.0,
        le=180.0,
        validation_alias=AliasChoices("longitude", "lng", "lon"),
        description="Долгота",
    )

    @model_validator(mode="before")
    @classmethod
    def from_pair(cls, data: Any) -> Any:
        """Допускает запись точки парой [lat, lng]."""
        if isinstance(data, (list, tuple)) and len(data) == 2:
            return {"latitude": data[0], "longitude": data[1]}
        return data

    def as_dict(self) -> dict[str, float]:
        return {"lat": self.latitude, "lng": self.longitude}


class SearchRequest(BaseModel):
    """Описание поиска, приходящее от внешнего слоя запросов."""

    participant_id: str = Field(..., min_length=1, description="ID участника")
    participant_name: Optional[str] = Field(None, description="Имя участника")
    role: Role = Field(..., description="Роль: provider или seeker")
    mode: RideMode = Field(RideMode.IMMEDIATE, description="Режим поездки")
    route: list[GeoPoint] = Field(..., min_length=1, description="Маршрут")

    pickup_name: Optional[str] = Field(None, description="Название точки посадки")
    drop_name: Optional[str] = Field(None, description="Название точки высадки")
    pickup_location: Optional[GeoPoint] = Field(None, description="Координаты посадки")
    drop_location: Optional[GeoPoint] = Field(None, description="Координаты высадки")

    seats_requested: Optional[int] = Field(None, ge=1, description="Запрошено мест (пассажир)")
    seats_capacity: Optional[int] = Field(None, ge=1, description="Вместимость (водитель)")
    scheduled_time: Optional[datetime] = Field(None, description="Время отправления")
    current_location: Optional[GeoPoint] = Field(None, description="Текущая позиция")

    @field_validator("participant_id", mode="before")
    @classmethod
    def coerce_participant_id(cls, v: Any) -> Any:
        """Числовые ID приводятся к строке."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("scheduled_time")
    @classmethod
    def normalize_time(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_schedule(self) -> "SearchRequest":
        """Запланированный поиск обязан иметь время отправления."""
        if self.mode == RideMode.SCHEDULED and self.scheduled_time is None:
            raise ValueError("scheduled_time обязателен для режима scheduled")
        return self


class SearchSession(BaseModel):
    """
    Поисковая сессия участника.
    Принадлежит реестру; на одного участника не более одной сессии на режим.
    """

    search_id: str = Field(default_factory=lambda: str(uuid4()), description="ID сессии")
    participant_id: str = Field(..., min_length=1, description="ID участника")
    participant_name: Optional[str] = Field(None, description="Имя участника")
    role: Role = Field(..., description="Роль")
    mode: RideMode = Field(RideMode.IMMEDIATE, description="Режим поездки")
    route: list[GeoPoint] = Field(..., min_length=1, description="Маршрут")

    pickup_name: Optional[str] = Field(None, description="Название точки посадки")
    drop_name: Optional[str] = Field(None, description="Название точки высадки")
    pickup_location: Optional[GeoPoint] = Field(None, description="Координаты посадки")
    drop_location: Optional[GeoPoint] = Field(None, description="Координаты высадки")

    # Места
    seats_requested: int = Field(1, ge=1, description="Запрошено мест (пассажир)")
    seats_capacity: int = Field(4, ge=1, description="Вместимость (водитель)")
    seats_claimed: int = Field(0, ge=0, description="Занято мест по предложениям")

    # Статус и время
    status: SessionStatus = Field(SessionStatus.ACTIVE, description="Статус сессии")
    status_history: list[SessionStatus] = Field(default_factory=list, description="Пройденные статусы")
    scheduled_time: Optional[datetime] = Field(None, description="Время отправления")
    expires_at: Optional[datetime] = Field(None, description="Крайний срок сессии")
    created_at: datetime = Field(default_factory=utc_now, description="Время создания")
    last_updated: datetime = Field(default_factory=utc_now, description="Время изменения")

    # Матчинг
    accepted_matches: int = Field(0, ge=0, description="Количество созданных совпадений")
    outstanding_match_id: Optional[str] = Field(None, description="Незавершённое предложение")
    current_location: Optional[GeoPoint] = Field(None, description="Текущая позиция")

    @model_validator(mode="after")
    def init_history(self) -> "SearchSession":
        if not self.status_history:
            self.status_history = [self.status]
        return self

    @classmethod
    def from_request(
        cls,
        request: SearchRequest,
        *,
        default_capacity: int = 4,
        default_seats: int = 1,
        now: datetime | None = None,
    ) -> SearchSession:
        """Создаёт сессию по описанию поиска."""
        now = now or utc_now()
        status = SessionStatus.SCHEDULED if request.mode == RideMode.SCHEDULED else SessionStatus.ACTIVE
        return cls(
            participant_id=request.participant_id,
            participant_name=request.participant_name,
            role=request.role,
            mode=request.mode,
            route=request.route,
            pickup_name=request.pickup_name,
            drop_name=request.drop_name,
            pickup_location=request.pickup_location,
            drop_location=request.drop_location,
            seats_requested=request.seats_requested or default_seats,
            seats_capacity=request.seats_capacity or default_capacity,
            status=status,
            scheduled_time=request.scheduled_time,
            created_at=now,
            last_updated=now,
            current_location=request.current_location,
        )

    # =========================================================================
    # СВОЙСТВА
    # =========================================================================

    @property
    def key(self) -> tuple[str, RideMode]:
        """Ключ уникальности в реестре."""
        return self.participant_id, self.mode

    @property
    def is_provider(self) -> bool:
        return self.role == Role.PROVIDER

    @property
    def free_seats(self) -> int:
        return max(0, self.seats_capacity - self.seats_claimed)

    @property
    def is_full(self) -> bool:
        return self.seats_claimed >= self.seats_capacity

    @property
    def is_terminal(self) -> bool:
        return self.status not in LIVE_STATUSES

    @property
    def is_matchable(self) -> bool:
        return self.status in MATCHABLE_STATUSES

    @property
    def pickup(self) -> GeoPoint:
        """Точка посадки: явная или первая точка маршрута."""
        return self.pickup_location or self.route[0]

    @property
    def drop(self) -> GeoPoint:
        return self.drop_location or self.route[-1]

    def touch(self, now: datetime | None = None) -> None:
        self.last_updated = now or utc_now()

    def remaining(self, now: datetime) -> timedelta | None:
        """Сколько осталось до истечения сессии."""
        if self.expires_at is None:
            return None
        return max(timedelta(0), self.expires_at - now)

    # =========================================================================
    # СЕРИАЛИЗАЦИЯ
    # =========================================================================

    def snapshot(self, now: datetime | None = None) -> dict[str, Any]:
        """Снимок состояния для внешнего слоя."""
        now = now or utc_now()
        remaining = self.remaining(now)
        return {
            "search_id": self.search_id,
            "participant_id": self.participant_id,
            "role": self.role.value,
            "mode": self.mode.value,
            "status": self.status.value,
            "ready_for_matching": self.is_matchable,
            "pickup_name": self.pickup_name,
            "drop_name": self.drop_name,
            "seats_requested": self.seats_requested,
            "seats_capacity": self.seats_capacity,
            "seats_claimed": self.seats_claimed,
            "free_seats": self.free_seats,
            "accepted_matches": self.accepted_matches,
            "outstanding_match_id": self.outstanding_match_id,
            "scheduled_time": self.scheduled_time.isoformat() if self.scheduled_time else None,
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "remaining_seconds": int(remaining.total_seconds()) if remaining is not None else None,
        }

    def to_document(self) -> dict[str, Any]:
        """Документ для хранилища."""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> SearchSession:
        return cls.model_validate(data)
