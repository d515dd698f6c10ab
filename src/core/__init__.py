# src/core/__init__.py
"""
Доменный слой движка матчинга.
Чистая логика, инфраструктура передаётся через конструкторы.
"""

from src.core.engine import MatchingEngine

__all__ = [
    "MatchingEngine",
]
