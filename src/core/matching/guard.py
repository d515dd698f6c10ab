# src/core/matching/guard.py
"""
Защита от повторных предложений для одной пары.

Две независимые проверки, обе должны пройти:
1. Кулдаун в памяти по паре (водитель, пассажир).
2. Наличие незавершённого предложения в хранилище за последнее окно.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.common.clock import Clock, utc_now
from src.common.logger import get_logger, log_error, log_info
from src.common.constants import TypeMsg
from src.config.engine import EngineConfig
from src.core.matching.repository import MatchRepository

logger = get_logger("dedup")

PairKey = tuple[str, str]


class DedupGuard:
    """Кулдаун и проверка существующих предложений."""

    def __init__(
        self,
        repository: MatchRepository | None,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self.config = config or EngineConfig()
        self._clock = clock

        # (provider_id, seeker_id) -> время последней попытки
        self._cooldowns: dict[PairKey, datetime] = {}

        self._allowed = 0
        self._blocked_cooldown = 0
        self._blocked_existing = 0
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._cooldowns)

    # =========================================================================
    # КУЛДАУН
    # =========================================================================

    def is_in_cooldown(self, provider_id: str, seeker_id: str, now: datetime | None = None) -> bool:
        now = now or self._clock()
        last = self._cooldowns.get((provider_id, seeker_id))
        return last is not None and now - last < self.config.cooldown

    def record_attempt(self, provider_id: str, seeker_id: str, now: datetime | None = None) -> None:
        """Запоминает попытку и при необходимости чистит старые записи."""
        now = now or self._clock()
        self._cooldowns[(provider_id, seeker_id)] = now
        if len(self._cooldowns) > self.config.cooldown_eviction_size:
            self._evict(now)

    def release(self, provider_id: str, seeker_id: str) -> None:
        """Снимает кулдаун пары (откат неудачного сохранения)."""
        self._cooldowns.pop((provider_id, seeker_id), None)

    def _evict(self, now: datetime) -> int:
        """Удаляет записи старше двух окон кулдауна."""
        horizon = self.config.cooldown * 2
        stale = [key for key, ts in self._cooldowns.items() if now - ts > horizon]
        for key in stale:
            del self._cooldowns[key]
        self._evicted += len(stale)
        if stale:
            logger.debug(f"Очищено {len(stale)} записей кулдауна, осталось {len(self._cooldowns)}")
        return len(stale)

    # =========================================================================
    # ПРОВЕРКА
    # =========================================================================

    async def allow(self, provider_id: str, seeker_id: str, now: datetime | None = None) -> bool:
        """
        Решает, можно ли создать предложение для пары.
        Попытка фиксируется в кулдауне до обращения к хранилищу.

        Returns:
            True если обе проверки пройдены
        """
        now = now or self._clock()

        if self.config.bypass_dedup:
            self._allowed += 1
            return True

        if self.is_in_cooldown(provider_id, seeker_id, now):
            self._blocked_cooldown += 1
            await log_info(
                f"Пара {provider_id}/{seeker_id} в кулдауне",
                type_msg=TypeMsg.DEBUG,
            )
            return False

        self.record_attempt(provider_id, seeker_id, now)

        if self._repository is not None:
            since = now - self.config.existing_match_window
            try:
                exists = await self._repository.has_recent_match(provider_id, seeker_id, since)
            except Exception as e:
                await log_error(
                    f"Ошибка проверки существующих предложений {provider_id}/{seeker_id}: {e}",
                    extra={"provider_id": provider_id, "seeker_id": seeker_id},
                )
                self._blocked_existing += 1
                return False
            if exists:
                self._blocked_existing += 1
                await log_info(
                    f"Для пары {provider_id}/{seeker_id} уже есть предложение",
                    type_msg=TypeMsg.DEBUG,
                )
                return False

        self._allowed += 1
        return True

    def get_stats(self) -> dict[str, Any]:
        return {
            "cooldown_entries": len(self._cooldowns),
            "allowed": self._allowed,
            "blocked_cooldown": self._blocked_cooldown,
            "blocked_existing": self._blocked_existing,
            "evicted": self._evicted,
            "bypass": self.config.bypass_dedup,
        }
