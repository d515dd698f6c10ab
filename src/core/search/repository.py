# src/core/search/repository.py
"""
Репозиторий поисковых сессий в документном хранилище.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from src.common.clock import ensure_utc
from src.common.constants import Collection, RideMode, SessionStatus, TypeMsg
from src.common.logger import log_error, log_info
from src.core.search.models import SearchSession
from src.infra.document_store import DocumentStore


class SessionRepository:
    """Репозиторий поисковых сессий."""

    def __init__(self, store: DocumentStore) -> None:
        """
        Инициализация репозитория.

        Args:
            store: Документное хранилище (Dependency Injection)
        """
        self._store = store

    @staticmethod
    def _to_document(session: SearchSession) -> dict[str, Any]:
        data = session.to_document()
        data["scheduled_ts"] = (
            ensure_utc(session.scheduled_time).timestamp() if session.scheduled_time else None
        )
        data["created_ts"] = ensure_utc(session.created_at).timestamp()
        return data

    async def save(self, session: SearchSession) -> None:
        """Создаёт или перезаписывает документ сессии."""
        await self._store.upsert(
            Collection.SEARCH_SESSIONS.value,
            session.search_id,
            self._to_document(session),
        )

    async def get(self, search_id: str) -> SearchSession | None:
        """
        Получает сессию по ID.

        Returns:
            Сессия или None
        """
        data = await self._store.get(Collection.SEARCH_SESSIONS.value, search_id)
        if data is None:
            return None
        return SearchSession.from_document(data)

    async def mark_status(self, search_id: str, status: SessionStatus, now: datetime | None = None) -> bool:
        """
        Обновляет статус сохранённой сессии.

        Returns:
            True если документ найден
        """
        fields: dict[str, Any] = {"status": status.value}
        if now is not None:
            fields["last_updated"] = ensure_utc(now).isoformat()
        return await self._store.update(Collection.SEARCH_SESSIONS.value, search_id, fields)

    async def list_restorable(self, now: datetime, overrun: timedelta) -> list[SearchSession]:
        """
        Незавершённые запланированные сессии, чьё отправление
        не ушло дальше окна просрочки.
        """
        documents = await self._store.query(
            Collection.SEARCH_SESSIONS.value,
            filters=[
                ("mode", "==", RideMode.SCHEDULED.value),
                ("status", "in", [
                    SessionStatus.SCHEDULED.value,
                    SessionStatus.ACTIVATING.value,
                    SessionStatus.ACTIVE.value,
                ]),
                ("scheduled_ts", ">=", now - overrun),
            ],
            order_by="created_ts",
        )

        sessions: list[SearchSession] = []
        for data in documents:
            try:
                sessions.append(SearchSession.from_document(data))
            except ValueError as e:
                await log_error(
                    f"Повреждённый документ сессии {data.get('search_id')}: {e}",
                    extra={"search_id": data.get("search_id")},
                )

        await log_info(f"Найдено {len(sessions)} сессий для восстановления", type_msg=TypeMsg.DEBUG)
        return sessions
