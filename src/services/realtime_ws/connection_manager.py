# src/services/realtime_ws/connection_manager.py
"""
Менеджер WebSocket соединений.
Канал реального времени, адресуемый по ID участника.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import WebSocket

from src.common.clock import utc_now
from src.common.constants import TypeMsg
from src.common.logger import log_info


@dataclass
class ConnectionInfo:
    """Информация о соединении."""
    websocket: WebSocket
    participant_id: str
    role: str  # provider, seeker
    connected_at: datetime = field(default_factory=utc_now)


class ConnectionManager:
    """
    Менеджер WebSocket соединений.

    Поддерживает:
    - Подключение/отключение участников
    - Персональные сообщения
    """

    def __init__(self) -> None:
        # participant_id -> ConnectionInfo
        self._connections: dict[str, ConnectionInfo] = {}

        # Для статистики
        self._total_connections: int = 0
        self._total_messages_sent: int = 0
        self._failed_sends: int = 0

    @property
    def active_connections(self) -> int:
        """Количество активных соединений."""
        return len(self._connections)

    def is_connected(self, participant_id: str) -> bool:
        return str(participant_id) in self._connections

    async def connect(
        self,
        websocket: WebSocket,
        participant_id: str,
        role: str = "seeker",
    ) -> None:
        """
        Подключить участника.

        Если у участника уже есть соединение — закрываем старое.
        """
        participant_id = str(participant_id)
        previous = self._connections.get(participant_id)
        if previous is not None:
            await self._close_connection(previous)

        await websocket.accept()

        self._connections[participant_id] = ConnectionInfo(
            websocket=websocket,
            participant_id=participant_id,
            role=role,
        )
        self._total_connections += 1
        await log_info(f"Участник {participant_id} подключился ({role})", type_msg=TypeMsg.DEBUG)

    async def disconnect(self, participant_id: str, websocket: WebSocket | None = None) -> None:
        """
        Отключить участника.

        Args:
            participant_id: ID участника
            websocket: Если передан, отключаем только это соединение
        """
        participant_id = str(participant_id)
        conn = self._connections.get(participant_id)
        if conn is None:
            return
        if websocket is not None and conn.websocket is not websocket:
            # Соединение уже заменено новым
            return
        del self._connections[participant_id]
        await log_info(f"Участник {participant_id} отключился", type_msg=TypeMsg.DEBUG)

    async def send_personal(self, participant_id: str, message: dict[str, Any]) -> bool:
        """
        Отправить сообщение конкретному участнику.

        Returns:
            True если сообщение отправлено, False если участник не подключен
        """
        participant_id = str(participant_id)
        conn = self._connections.get(participant_id)
        if conn is None:
            return False

        try:
            await conn.websocket.send_json(message)
            self._total_messages_sent += 1
            return True
        except Exception:
            # Соединение разорвано
            self._failed_sends += 1
            await self.disconnect(participant_id, conn.websocket)
            return False

    def get_stats(self) -> dict[str, Any]:
        """Получить статистику."""
        return {
            "active_connections": len(self._connections),
            "total_connections_ever": self._total_connections,
            "total_messages_sent": self._total_messages_sent,
            "failed_sends": self._failed_sends,
            "connections_by_role": self._count_by_role(),
        }

    def _count_by_role(self) -> dict[str, int]:
        """Подсчёт соединений по роли."""
        counts: dict[str, int] = {}
        for conn in self._connections.values():
            counts[conn.role] = counts.get(conn.role, 0) + 1
        return counts

    async def _close_connection(self, conn: ConnectionInfo) -> None:
        """Закрыть соединение."""
        try:
            await conn.websocket.close()
        except RuntimeError:
            # Сокет уже закрыт клиентом
            pass


# Глобальный экземпляр
manager = ConnectionManager()
