# src/core/search/__init__.py
"""
Поисковые сессии участников.
"""

from src.core.search.models import GeoPoint, SearchRequest, SearchSession
from src.core.search.registry import SearchRegistry

__all__ = [
    "GeoPoint",
    "SearchRegistry",
    "SearchRequest",
    "SearchSession",
]
