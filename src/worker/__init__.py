# src/worker/__init__.py
"""
Фоновые воркеры движка матчинга.
"""

from src.worker.base import BaseWorker
from src.worker.matching import ExpiryWorker, MatchingWorker, ProposalExpiryWorker, SchedulingWorker

__all__ = [
    "BaseWorker",
    "ExpiryWorker",
    "MatchingWorker",
    "ProposalExpiryWorker",
    "SchedulingWorker",
]
