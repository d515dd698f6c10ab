# src/services/__init__.py
"""
Внешние поверхности движка матчинга.

Сервисы:
- realtime_ws: WebSocket канал уведомлений участников, REST /health и /stats
"""

__all__: list[str] = []
