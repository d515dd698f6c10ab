# src/core/matching/repository.py
"""
Репозиторий предложений о совпадении.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.common.clock import ensure_utc
from src.common.constants import BLOCKING_MATCH_STATUSES, Collection, MatchStatus, TypeMsg
from src.common.exceptions import PersistenceError
from src.common.logger import log_error, log_info
from src.core.matching.models import Match
from src.infra.document_store import DocumentStore


class MatchRepository:
    """Репозиторий предложений (коллекция matches)."""

    def __init__(self, store: DocumentStore) -> None:
        """
        Инициализация репозитория.

        Args:
            store: Документное хранилище (Dependency Injection)
        """
        self._store = store

    async def create(self, match: Match) -> str:
        """
        Сохраняет новое предложение.

        Returns:
            ID предложения

        Raises:
            PersistenceError: Хранилище не приняло запись
        """
        try:
            match_id = await self._store.create(
                Collection.MATCHES.value,
                match.to_document(),
                doc_id=match.match_id,
            )
        except Exception as e:
            raise PersistenceError(f"Не удалось сохранить предложение {match.match_id}: {e}") from e
        await log_info(
            f"Предложение {match_id} сохранено: {match.provider_id} <-> {match.seeker_id}",
            type_msg=TypeMsg.DEBUG,
        )
        return match_id

    async def get(self, match_id: str) -> Match | None:
        """Получает предложение по ID."""
        data = await self._store.get(Collection.MATCHES.value, match_id)
        if data is None:
            return None
        return Match.from_document(data)

    async def update_status(
        self,
        match_id: str,
        status: MatchStatus,
        *,
        expected: MatchStatus | None = None,
        responded_by: str | None = None,
        responded_at: datetime | None = None,
    ) -> bool:
        """
        Обновляет статус предложения.

        Args:
            match_id: ID предложения
            status: Новый статус
            expected: Статус, в котором предложение должно находиться;
                при несовпадении документ не меняется

        Returns:
            True если документ найден и обновлён
        """
        fields: dict[str, Any] = {"status": status.value}
        if responded_by is not None:
            fields["responded_by"] = responded_by
        if responded_at is not None:
            fields["responded_at"] = ensure_utc(responded_at).isoformat()
        return await self._store.update(
            Collection.MATCHES.value,
            match_id,
            fields,
            expected={"status": expected.value} if expected is not None else None,
        )

    async def has_recent_match(self, provider_id: str, seeker_id: str, since: datetime) -> bool:
        """
        Есть ли незавершённое предложение для пары, созданное не раньше since.
        """
        documents = await self._store.query(
            Collection.MATCHES.value,
            filters=[
                ("provider_id", "==", provider_id),
                ("seeker_id", "==", seeker_id),
                ("status", "in", [s.value for s in BLOCKING_MATCH_STATUSES]),
                ("created_ts", ">=", since),
            ],
            limit=1,
        )
        return bool(documents)

    async def list_expired_proposals(self, now: datetime, limit: int | None = None) -> list[Match]:
        """Предложения в статусе proposed с истёкшим сроком ответа."""
        documents = await self._store.query(
            Collection.MATCHES.value,
            filters=[
                ("status", "==", MatchStatus.PROPOSED.value),
                ("expires_ts", "<", now),
            ],
            order_by="expires_ts",
            limit=limit,
        )

        matches: list[Match] = []
        for data in documents:
            try:
                matches.append(Match.from_document(data))
            except ValueError as e:
                await log_error(
                    f"Повреждённый документ предложения {data.get('match_id')}: {e}",
                    extra={"match_id": data.get("match_id")},
                )
        return matches
