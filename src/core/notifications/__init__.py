# src/core/notifications/__init__.py
"""
Домен уведомлений.
Доставка событий жизненного цикла участникам.
"""

from src.core.notifications.dispatcher import NotificationDispatcher, NotificationRecord, RealtimeChannel

__all__ = [
    "NotificationDispatcher",
    "NotificationRecord",
    "RealtimeChannel",
]
