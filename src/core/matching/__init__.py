# src/core/matching/__init__.py
"""
Домен матчинга.
Цикл подбора пар, защита от дублей, предложения о совпадении.
"""

from src.core.matching.coordinator import CycleResult, MatchingCoordinator
from src.core.matching.guard import DedupGuard
from src.core.matching.models import Match
from src.core.matching.proposals import ProposalService
from src.core.matching.repository import MatchRepository

__all__ = [
    "CycleResult",
    "DedupGuard",
    "Match",
    "MatchRepository",
    "MatchingCoordinator",
    "ProposalService",
]
