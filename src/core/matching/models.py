# src/core/matching/models.py
"""
Модель предложения о совпадении (MatchProposal).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.clock import ensure_utc, utc_now
from src.common.constants import MatchQuality, MatchStatus, RideMode
from src.core.search.models import GeoPoint


# Допустимые переходы статусов предложения
MATCH_TRANSITIONS: dict[MatchStatus, tuple[MatchStatus, ...]] = {
    MatchStatus.PROPOSED: (MatchStatus.ACCEPTED, MatchStatus.REJECTED, MatchStatus.EXPIRED),
    MatchStatus.ACCEPTED: (),
    MatchStatus.REJECTED: (),
    MatchStatus.EXPIRED: (),
}


def can_transition(current: MatchStatus | str, new: MatchStatus | str) -> bool:
    """Проверяет возможность перехода статуса предложения."""
    try:
        curr = MatchStatus(current)
        target = MatchStatus(new)
    except ValueError:
        return False
    return target in MATCH_TRANSITIONS.get(curr, ())


class Match(BaseModel):
    """
    Предложение о совпадении водителя и пассажира.
    После создания меняется только статус.
    """

    match_id: str = Field(default_factory=lambda: str(uuid4()), description="ID предложения")

    provider_id: str = Field(..., description="ID водителя")
    seeker_id: str = Field(..., description="ID пассажира")
    provider_search_id: str = Field(..., description="Сессия водителя")
    seeker_search_id: str = Field(..., description="Сессия пассажира")
    provider_name: Optional[str] = Field(None, description="Имя водителя")
    seeker_name: Optional[str] = Field(None, description="Имя пассажира")

    similarity: float = Field(..., ge=0.0, le=1.0, description="Схожесть маршрутов")
    quality: MatchQuality = Field(..., description="Качество совпадения")
    status: MatchStatus = Field(MatchStatus.PROPOSED, description="Статус")
    mode: RideMode = Field(RideMode.IMMEDIATE, description="Режим поездки")
    seats: int = Field(1, ge=1, description="Мест в предложении")

    # Снимок маршрутов и позиции
    pickup_name: Optional[str] = Field(None, description="Название точки посадки")
    drop_name: Optional[str] = Field(None, description="Название точки высадки")
    pickup_location: Optional[GeoPoint] = Field(None, description="Точка посадки пассажира")
    provider_location: Optional[GeoPoint] = Field(None, description="Позиция водителя")
    provider_route: list[GeoPoint] = Field(default_factory=list, description="Маршрут водителя")
    seeker_route: list[GeoPoint] = Field(default_factory=list, description="Маршрут пассажира")
    distance_to_pickup_km: Optional[float] = Field(None, ge=0.0, description="Расстояние до посадки")
    eta_minutes: Optional[int] = Field(None, ge=1, description="Время подачи (мин)")
    scheduled_time: Optional[datetime] = Field(None, description="Время отправления")

    created_at: datetime = Field(default_factory=utc_now, description="Время создания")
    expires_at: datetime = Field(..., description="Срок ответа")
    responded_by: Optional[str] = Field(None, description="Кто ответил")
    responded_at: Optional[datetime] = Field(None, description="Время ответа")

    @property
    def is_terminal(self) -> bool:
        return self.status != MatchStatus.PROPOSED

    def involves(self, participant_id: str) -> bool:
        return str(participant_id) in (self.provider_id, self.seeker_id)

    def to_notification(self) -> dict[str, Any]:
        """Полезная нагрузка уведомления match_proposed."""
        return {
            "match_id": self.match_id,
            "provider_id": self.provider_id,
            "seeker_id": self.seeker_id,
            "provider_name": self.provider_name,
            "seeker_name": self.seeker_name,
            "similarity": round(self.similarity, 4),
            "quality": self.quality.value,
            "mode": self.mode.value,
            "seats": self.seats,
            "pickup_name": self.pickup_name,
            "drop_name": self.drop_name,
            "pickup_location": self.pickup_location.as_dict() if self.pickup_location else None,
            "provider_location": self.provider_location.as_dict() if self.provider_location else None,
            "provider_route": [p.as_dict() for p in self.provider_route],
            "seeker_route": [p.as_dict() for p in self.seeker_route],
            "distance_to_pickup_km": self.distance_to_pickup_km,
            "eta_minutes": self.eta_minutes,
            "expires_at": self.expires_at.isoformat(),
        }

    def to_document(self) -> dict[str, Any]:
        """Документ для хранилища с epoch-полями для выборок по времени."""
        data = self.model_dump(mode="json")
        data["created_ts"] = ensure_utc(self.created_at).timestamp()
        data["expires_ts"] = ensure_utc(self.expires_at).timestamp()
        return data

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> Match:
        payload = {k: v for k, v in data.items() if not k.endswith("_ts")}
        return cls.model_validate(payload)
