# src/core/geo/scorer.py
"""
Оценка схожести маршрутов.

Итоговая оценка в диапазоне [0, 1] складывается из взвешенных компонент:
- совпадение точек по индексу (direct)
- отклонение по Хаусдорфу (hausdorff)
- пересечение ограничивающих прямоугольников (bbox)
- близость начальной и конечной точек (endpoints)
- близость текущей позиции водителя к точке посадки (proximity)

Все расстояния считаются по формуле Haversine.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from src.common.constants import MatchQuality
from src.common.logger import get_logger

logger = get_logger("geo")

EARTH_RADIUS_KM = 6371.0

# Веса компонент оценки
WEIGHT_DIRECT = 0.25
WEIGHT_HAUSDORFF = 0.35
WEIGHT_BBOX = 0.1
WEIGHT_ENDPOINTS = 0.2
WEIGHT_PROXIMITY = 0.1

# Пороги качества (включительно)
QUALITY_TIERS: tuple[tuple[float, MatchQuality], ...] = (
    (0.7, MatchQuality.EXCELLENT),
    (0.5, MatchQuality.GOOD),
    (0.1, MatchQuality.FAIR),
)

Coordinate = tuple[float, float]


# =============================================================================
# БАЗОВАЯ ГЕОМЕТРИЯ
# =============================================================================

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Вычисляет расстояние между двумя точками (в км) по формуле Haversine.
    """
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    a = min(1.0, a)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def _distance(a: Coordinate, b: Coordinate) -> float:
    return haversine_km(a[0], a[1], b[0], b[1])


def to_coordinate(point: Any) -> Coordinate | None:
    """
    Приводит точку к паре (lat, lng).

    Принимает объект с атрибутами latitude/longitude, словарь
    с ключами lat/lng или latitude/longitude, либо пару чисел.

    Returns:
        Пара координат или None, если точка некорректна
    """
    try:
        if hasattr(point, "latitude") and hasattr(point, "longitude"):
            lat, lng = point.latitude, point.longitude
        elif isinstance(point, Mapping):
            lat = point.get("lat", point.get("latitude"))
            lng = point.get("lng", point.get("longitude"))
        elif isinstance(point, Sequence) and not isinstance(point, str) and len(point) == 2:
            lat, lng = point
        else:
            return None
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return None

    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return lat, lng


def normalize_route(route: Iterable[Any] | None) -> list[Coordinate] | None:
    """
    Приводит маршрут к списку координат.

    Returns:
        Список координат (возможно пустой) или None, если хоть одна точка некорректна
    """
    if route is None:
        return []
    try:
        points = list(route)
    except TypeError:
        return None

    coords: list[Coordinate] = []
    for point in points:
        coord = to_coordinate(point)
        if coord is None:
            return None
        coords.append(coord)
    return coords


# =============================================================================
# КОМПОНЕНТЫ ОЦЕНКИ
# =============================================================================

def direct_alignment(route_a: Sequence[Coordinate], route_b: Sequence[Coordinate], delta_deg: float) -> float:
    """
    Доля точек, совпадающих по индексу с точностью delta_deg по обеим осям.
    Нормируется на длину более длинного маршрута.
    """
    longest = max(len(route_a), len(route_b))
    if longest == 0:
        return 0.0

    matched = sum(
        1
        for (lat_a, lng_a), (lat_b, lng_b) in zip(route_a, route_b)
        if abs(lat_a - lat_b) < delta_deg and abs(lng_a - lng_b) < delta_deg
    )
    return matched / longest


def directed_hausdorff_km(route_a: Sequence[Coordinate], route_b: Sequence[Coordinate]) -> float:
    """Максимум по точкам A минимального расстояния до точек B."""
    return max(min(_distance(a, b) for b in route_b) for a in route_a)


def hausdorff_similarity(route_a: Sequence[Coordinate], route_b: Sequence[Coordinate], max_km: float) -> float:
    """Симметричное расстояние Хаусдорфа с линейным затуханием до max_km."""
    if not route_a or not route_b:
        return 0.0
    distance = max(directed_hausdorff_km(route_a, route_b), directed_hausdorff_km(route_b, route_a))
    return max(0.0, 1.0 - distance / max_km)


def bounding_box(route: Sequence[Coordinate]) -> tuple[float, float, float, float]:
    """Возвращает (min_lat, min_lng, max_lat, max_lng)."""
    lats = [lat for lat, _ in route]
    lngs = [lng for _, lng in route]
    return min(lats), min(lngs), max(lats), max(lngs)


def bbox_overlap(route_a: Sequence[Coordinate], route_b: Sequence[Coordinate]) -> float:
    """Отношение площади пересечения к площади объединения прямоугольников."""
    if not route_a or not route_b:
        return 0.0

    box_a = bounding_box(route_a)
    box_b = bounding_box(route_b)

    inter_lat = min(box_a[2], box_b[2]) - max(box_a[0], box_b[0])
    inter_lng = min(box_a[3], box_b[3]) - max(box_a[1], box_b[1])
    if inter_lat < 0 or inter_lng < 0:
        return 0.0

    intersection = inter_lat * inter_lng
    area_a = (box_a[2] - box_a[0]) * (box_a[3] - box_a[1])
    area_b = (box_b[2] - box_b[0]) * (box_b[3] - box_b[1])
    union = area_a + area_b - intersection

    if union <= 0:
        # Вырожденные прямоугольники (точка или отрезок)
        return 1.0 if box_a == box_b else 0.0
    return intersection / union


def endpoint_similarity(route_a: Sequence[Coordinate], route_b: Sequence[Coordinate], max_km: float) -> float:
    """Среднее близостей начальных и конечных точек."""
    if not route_a or not route_b:
        return 0.0
    start = max(0.0, 1.0 - _distance(route_a[0], route_b[0]) / max_km)
    end = max(0.0, 1.0 - _distance(route_a[-1], route_b[-1]) / max_km)
    return (start + end) / 2


def location_proximity(location: Coordinate, pickup: Coordinate, max_km: float) -> float:
    """Экспоненциальное затухание по расстоянию до точки посадки."""
    distance = _distance(location, pickup)
    if distance > max_km:
        return 0.0
    return math.exp(-distance / (max_km / 3))


def classify_quality(score: float) -> MatchQuality:
    """Переводит оценку в уровень качества."""
    for threshold, quality in QUALITY_TIERS:
        if score >= threshold:
            return quality
    return MatchQuality.POOR


def estimate_eta_minutes(distance_km: float, speed_kph: float) -> int:
    """Оценка времени подачи в минутах (не меньше одной)."""
    if speed_kph <= 0:
        return 1
    return max(1, math.ceil(distance_km / speed_kph * 60))


# =============================================================================
# ИТОГОВАЯ ОЦЕНКА
# =============================================================================

@dataclass(frozen=True)
class ScoreBreakdown:
    """Компоненты оценки схожести."""
    direct: float = 0.0
    hausdorff: float = 0.0
    bbox: float = 0.0
    endpoints: float = 0.0
    proximity: float | None = None
    total: float = 0.0

    @property
    def quality(self) -> MatchQuality:
        return classify_quality(self.total)


class RouteScorer:
    """
    Оценщик схожести маршрутов.

    Оценка симметрична относительно маршрутов, если текущая позиция
    водителя не передана. Некорректные данные дают 0 без исключений.
    """

    def __init__(
        self,
        direct_delta_deg: float = 0.01,
        max_deviation_km: float = 50.0,
        max_proximity_km: float = 2.0,
    ) -> None:
        self.direct_delta_deg = direct_delta_deg
        self.max_deviation_km = max_deviation_km
        self.max_proximity_km = max_proximity_km

    @classmethod
    def from_config(cls, config) -> RouteScorer:
        """Создаёт оценщик из EngineConfig."""
        return cls(
            direct_delta_deg=config.direct_match_delta_deg,
            max_deviation_km=config.max_deviation_km,
            max_proximity_km=config.max_proximity_km,
        )

    def score(
        self,
        seeker_route: Iterable[Any] | None,
        provider_route: Iterable[Any] | None,
        provider_location: Any | None = None,
        pickup: Any | None = None,
    ) -> ScoreBreakdown:
        """
        Считает оценку схожести с разбивкой по компонентам.

        Args:
            seeker_route: Маршрут пассажира
            provider_route: Маршрут водителя
            provider_location: Текущая позиция водителя (опционально)
            pickup: Точка посадки (по умолчанию первая точка маршрута пассажира)

        Returns:
            Разбивка оценки; total всегда в [0, 1]
        """
        route_a = normalize_route(seeker_route)
        route_b = normalize_route(provider_route)

        if route_a is None or route_b is None:
            logger.debug("Некорректные координаты маршрута, оценка 0")
            return ScoreBreakdown()
        if not route_a or not route_b:
            return ScoreBreakdown()

        direct = direct_alignment(route_a, route_b, self.direct_delta_deg)
        hausdorff = hausdorff_similarity(route_a, route_b, self.max_deviation_km)
        bbox = bbox_overlap(route_a, route_b)
        endpoints = endpoint_similarity(route_a, route_b, self.max_deviation_km)

        weighted = (
            WEIGHT_DIRECT * direct
            + WEIGHT_HAUSDORFF * hausdorff
            + WEIGHT_BBOX * bbox
            + WEIGHT_ENDPOINTS * endpoints
        )
        weight_sum = WEIGHT_DIRECT + WEIGHT_HAUSDORFF + WEIGHT_BBOX + WEIGHT_ENDPOINTS

        proximity: float | None = None
        location = to_coordinate(provider_location) if provider_location is not None else None
        if location is not None:
            target = to_coordinate(pickup) if pickup is not None else None
            proximity = location_proximity(location, target or route_a[0], self.max_proximity_km)
            weighted += WEIGHT_PROXIMITY * proximity
            weight_sum += WEIGHT_PROXIMITY

        total = min(1.0, max(0.0, weighted / weight_sum))
        return ScoreBreakdown(
            direct=direct,
            hausdorff=hausdorff,
            bbox=bbox,
            endpoints=endpoints,
            proximity=proximity,
            total=total,
        )

    def similarity(
        self,
        seeker_route: Iterable[Any] | None,
        provider_route: Iterable[Any] | None,
        provider_location: Any | None = None,
    ) -> float:
        """Итоговая оценка схожести в диапазоне [0, 1]."""
        return self.score(seeker_route, provider_route, provider_location).total
