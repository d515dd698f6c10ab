# src/services/realtime_ws/__init__.py
"""
Realtime WebSocket канал движка.

Обеспечивает:
- WebSocket соединения участников (водителей и пассажиров)
- Доставку событий поиска и матчинга
- Досылку недоставленных уведомлений при подключении
"""
