# src/core/notifications/dispatcher.py
"""
Диспетчер уведомлений жизненного цикла.

Если у участника открыт канал реального времени, событие доставляется сразу.
Иначе событие сохраняется в коллекцию notifications с delivered=false
и досылается при следующем подключении. Предложение о совпадении
сохраняется всегда, независимо от результата доставки.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.clock import Clock, ensure_utc, utc_now
from src.common.constants import Collection, LifecycleEvent, TypeMsg
from src.common.logger import log_error, log_info, log_warning
from src.infra.document_store import DocumentStore

if TYPE_CHECKING:
    from src.core.matching.models import Match
    from src.core.search.models import SearchSession


class RealtimeChannel(Protocol):
    """Канал реального времени, адресуемый по ID участника."""

    def is_connected(self, participant_id: str) -> bool: ...

    async def send_personal(self, participant_id: str, message: dict[str, Any]) -> bool: ...


class NotificationRecord(BaseModel):
    """Сохранённое уведомление."""

    notification_id: str = Field(default_factory=lambda: str(uuid4()), description="ID уведомления")
    participant_id: str = Field(..., description="Получатель")
    event: LifecycleEvent = Field(..., description="Тип события")
    payload: dict[str, Any] = Field(default_factory=dict, description="Данные события")
    delivered: bool = Field(False, description="Доставлено по каналу")
    created_at: datetime = Field(default_factory=utc_now, description="Время создания")
    delivered_at: Optional[datetime] = Field(None, description="Время доставки")

    def to_message(self) -> dict[str, Any]:
        """Сообщение для канала реального времени."""
        return {
            "type": self.event.value,
            "notification_id": self.notification_id,
            "data": self.payload,
            "timestamp": self.created_at.isoformat(),
        }

    def to_document(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["created_ts"] = ensure_utc(self.created_at).timestamp()
        return data

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> NotificationRecord:
        return cls.model_validate({k: v for k, v in data.items() if not k.endswith("_ts")})


class NotificationDispatcher:
    """
    Доставка событий участникам с сохранением недоставленных.
    """

    def __init__(
        self,
        channel: RealtimeChannel | None = None,
        store: DocumentStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """
        Args:
            channel: Канал реального времени (None — только сохранение)
            store: Хранилище для недоставленных уведомлений
            clock: Источник времени
        """
        self._channel = channel
        self._store = store
        self._clock = clock

        self._delivered = 0
        self._persisted = 0
        self._persist_failures = 0

    def set_channel(self, channel: RealtimeChannel | None) -> None:
        self._channel = channel

    # =========================================================================
    # ДОСТАВКА
    # =========================================================================

    async def dispatch(
        self,
        participant_id: str,
        event: LifecycleEvent,
        payload: dict[str, Any] | None = None,
        *,
        persist_always: bool = False,
    ) -> bool:
        """
        Отправляет событие участнику.

        Args:
            participant_id: Получатель
            event: Тип события
            payload: Данные события
            persist_always: Сохранять запись даже при успешной доставке

        Returns:
            True если событие доставлено по каналу
        """
        record = NotificationRecord(
            participant_id=str(participant_id),
            event=event,
            payload=payload or {},
            created_at=self._clock(),
        )

        delivered = await self._send(record)
        if delivered:
            record.delivered = True
            record.delivered_at = record.created_at
            self._delivered += 1

        if not delivered or persist_always:
            await self._persist(record)

        await log_info(
            f"Событие {event.value} для {participant_id}: "
            + ("доставлено" if delivered else "отложено"),
            type_msg=TypeMsg.DEBUG,
        )
        return delivered

    async def _send(self, record: NotificationRecord) -> bool:
        if self._channel is None or not self._channel.is_connected(record.participant_id):
            return False
        try:
            return await self._channel.send_personal(record.participant_id, record.to_message())
        except Exception as e:
            await log_warning(
                f"Не удалось доставить {record.event.value} участнику {record.participant_id}: {e}",
                extra={"participant_id": record.participant_id},
            )
            return False

    async def _persist(self, record: NotificationRecord) -> bool:
        """Сохраняет запись; одна повторная попытка при ошибке."""
        if self._store is None:
            await log_warning(
                f"Хранилище не подключено, событие {record.event.value} для {record.participant_id} потеряно",
            )
            return False

        for attempt in (1, 2):
            try:
                await self._store.create(
                    Collection.NOTIFICATIONS.value,
                    record.to_document(),
                    doc_id=record.notification_id,
                )
                self._persisted += 1
                return True
            except Exception as e:
                if attempt == 1:
                    await log_warning(f"Повтор сохранения уведомления {record.notification_id}: {e}")
                    continue
                self._persist_failures += 1
                await log_error(
                    f"Не удалось сохранить уведомление {record.notification_id}: {e}",
                    extra={"participant_id": record.participant_id, "event": record.event.value},
                )
        return False

    # =========================================================================
    # ОБРАБОТЧИКИ ДВИЖКА
    # =========================================================================

    async def on_lifecycle_event(
        self,
        session: SearchSession,
        event: LifecycleEvent,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Событие жизненного цикла поисковой сессии."""
        payload = {
            "search_id": session.search_id,
            "role": session.role.value,
            "mode": session.mode.value,
            "status": session.status.value,
            **(data or {}),
        }
        return await self.dispatch(session.participant_id, event, payload)

    async def on_match(self, match: Match) -> dict[str, bool]:
        """
        Уведомляет обе стороны о новом предложении.

        Returns:
            participant_id -> доставлено ли по каналу
        """
        payload = match.to_notification()
        results: dict[str, bool] = {}
        for participant_id, role in ((match.provider_id, "provider"), (match.seeker_id, "seeker")):
            results[participant_id] = await self.dispatch(
                participant_id,
                LifecycleEvent.MATCH_PROPOSED,
                {**payload, "recipient_role": role},
                persist_always=True,
            )
        return results

    async def notify_match_status(
        self,
        match: Match,
        event: LifecycleEvent,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Уведомляет обе стороны об изменении статуса предложения."""
        payload = {
            "match_id": match.match_id,
            "status": match.status.value,
            "provider_id": match.provider_id,
            "seeker_id": match.seeker_id,
            **(data or {}),
        }
        for participant_id in (match.provider_id, match.seeker_id):
            await self.dispatch(participant_id, event, payload)

    # =========================================================================
    # ДОСЫЛКА
    # =========================================================================

    async def replay_pending(self, participant_id: str) -> int:
        """
        Досылает недоставленные уведомления участнику в порядке создания.

        Returns:
            Количество доставленных уведомлений
        """
        if self._store is None or self._channel is None:
            return 0

        documents = await self._store.query(
            Collection.NOTIFICATIONS.value,
            filters=[
                ("participant_id", "==", str(participant_id)),
                ("delivered", "==", False),
            ],
            order_by="created_ts",
        )

        sent = 0
        for data in documents:
            record = NotificationRecord.from_document(data)
            if not await self._send(record):
                break
            now = self._clock()
            await self._store.update(
                Collection.NOTIFICATIONS.value,
                record.notification_id,
                {"delivered": True, "delivered_at": ensure_utc(now).isoformat()},
            )
            sent += 1

        if sent:
            await log_info(f"Участнику {participant_id} дослано {sent} уведомлений", type_msg=TypeMsg.INFO)
        return sent

    def get_stats(self) -> dict[str, Any]:
        return {
            "delivered": self._delivered,
            "persisted": self._persisted,
            "persist_failures": self._persist_failures,
        }
