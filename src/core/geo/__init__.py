# src/core/geo/__init__.py
"""
Геометрия маршрутов.
Оценка схожести маршрутов водителя и пассажира.
"""

from src.core.geo.scorer import RouteScorer, ScoreBreakdown, classify_quality, haversine_km

__all__ = [
    "RouteScorer",
    "ScoreBreakdown",
    "classify_quality",
    "haversine_km",
]
