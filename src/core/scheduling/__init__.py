# src/core/scheduling/__init__.py
"""
Активация запланированных поисков.
"""

from src.core.scheduling.state_machine import SchedulingService, SessionStateMachine, SweepResult

__all__ = [
    "SchedulingService",
    "SessionStateMachine",
    "SweepResult",
]
