# src/worker/matching.py
"""
Воркеры движка матчинга.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from src.common.clock import Clock, utc_now
from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.worker.base import BaseWorker

if TYPE_CHECKING:
    from src.core.matching.coordinator import CycleResult, MatchingCoordinator
    from src.core.matching.proposals import ProposalService
    from src.core.scheduling.state_machine import SchedulingService, SweepResult
    from src.core.search.registry import SearchRegistry


class MatchingWorker(BaseWorker):
    """Периодический цикл матчинга."""

    def __init__(self, coordinator: MatchingCoordinator, interval: float) -> None:
        super().__init__(interval)
        self.coordinator = coordinator

    @property
    def name(self) -> str:
        return "MatchingWorker"

    async def run_once(self) -> CycleResult:
        return await self.coordinator.run_cycle()


class SchedulingWorker(BaseWorker):
    """Продвижение запланированных сессий по состояниям."""

    def __init__(self, scheduling: SchedulingService, interval: float) -> None:
        super().__init__(interval)
        self.scheduling = scheduling

    @property
    def name(self) -> str:
        return "SchedulingWorker"

    async def run_once(self) -> SweepResult:
        return await self.scheduling.sweep()


class ExpiryWorker(BaseWorker):
    """Опрос очереди дедлайнов реестра."""

    def __init__(self, registry: SearchRegistry, interval: float, clock: Clock = utc_now) -> None:
        super().__init__(interval)
        self.registry = registry
        self._clock = clock

    @property
    def name(self) -> str:
        return "ExpiryWorker"

    async def run_once(self) -> int:
        expired = await self.registry.tick(self._clock())
        return len(expired)


class ProposalExpiryWorker(BaseWorker):
    """Истечение неотвеченных предложений."""

    def __init__(self, proposals: Optional[ProposalService], interval: float) -> None:
        super().__init__(interval)
        self.proposals = proposals

    @property
    def name(self) -> str:
        return "ProposalExpiryWorker"

    async def run_once(self) -> int:
        if self.proposals is None:
            return 0
        expired = await self.proposals.expire_stale()
        if expired:
            await log_info(f"{self.name}: истекло {len(expired)} предложений", type_msg=TypeMsg.DEBUG)
        return len(expired)
