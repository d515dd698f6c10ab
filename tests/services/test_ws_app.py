# tests/services/test_ws_app.py
"""
Тесты FastAPI приложения движка: REST и WebSocket.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.common.constants import Collection, LifecycleEvent, MatchQuality, Role
from src.config.engine import EngineConfig
from src.core.engine import MatchingEngine
from src.core.matching.models import Match
from src.core.notifications.dispatcher import NotificationRecord
from src.core.search.models import SearchSession
from src.services.realtime_ws.app import create_app
from src.services.realtime_ws.connection_manager import ConnectionManager

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
ROUTE = [{"lat": 9.030, "lng": 38.758}, {"lat": 8.550, "lng": 39.270}]


@pytest.fixture
def connections() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture
def engine(store, connections, clock) -> MatchingEngine:
    return MatchingEngine(EngineConfig(), store=store, channel=connections, clock=clock)


@pytest.fixture
def client(engine, connections):
    app = create_app(engine=engine, connections=connections, run_workers=False)
    with TestClient(app) as test_client:
        yield test_client


class TestRest:
    """Тесты REST endpoints."""

    def test_health_without_database(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "ride_match_engine"
        assert body["status"] == "healthy"
        assert body["dependencies"] == {"postgres": "disabled"}

    def test_health_degraded(self, client, store) -> None:
        store.db = MagicMock()
        store.db.health_check = AsyncMock(return_value=False)

        body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["dependencies"]["postgres"] == "unhealthy"

    def test_stats(self, client) -> None:
        body = client.get("/stats").json()

        assert body["registry"]["total_sessions"] == 0
        assert body["connections"]["active_connections"] == 0


class TestWebSocket:
    """Тесты WebSocket канала."""

    def test_ping(self, client) -> None:
        with client.websocket_connect("/ws/pax?role=seeker") as ws:
            ws.send_json({"action": "ping"})

            assert ws.receive_json() == {"type": "pong"}

    def test_pending_notifications_replayed(self, client, store) -> None:
        record = NotificationRecord(
            participant_id="pax",
            event=LifecycleEvent.SEARCH_TIMEOUT,
            payload={"reason": "timeout"},
            created_at=T0,
        )
        store.collections.setdefault(Collection.NOTIFICATIONS.value, {})[record.notification_id] = (
            record.to_document()
        )

        with client.websocket_connect("/ws/pax") as ws:
            message = ws.receive_json()
            ws.send_json({"action": "ping"})
            ws.receive_json()

        assert message["type"] == "search_timeout"
        assert message["notification_id"] == record.notification_id
        assert store.collections[Collection.NOTIFICATIONS.value][record.notification_id]["delivered"] is True

    def test_location_update(self, client, engine) -> None:
        engine.registry.restore(SearchSession(participant_id="drv", role=Role.PROVIDER, route=ROUTE, created_at=T0))

        with client.websocket_connect("/ws/drv?role=provider") as ws:
            ws.send_json({"action": "location", "lat": 9.01, "lng": 38.75})

            assert ws.receive_json() == {"type": "location_ack", "updated": 1}

    @pytest.mark.parametrize("payload", [
        {"action": "location", "lat": 9.01},
        {"action": "location", "lat": "north", "lng": 38.75},
        {"action": "location", "lat": 95.0, "lng": 38.75},
    ])
    def test_location_invalid(self, client, payload) -> None:
        with client.websocket_connect("/ws/drv?role=provider") as ws:
            ws.send_json(payload)

            message = ws.receive_json()

        assert message["type"] == "error"
        assert message["code"] == "validation_error"

    def test_unknown_action(self, client) -> None:
        with client.websocket_connect("/ws/pax") as ws:
            ws.send_json({"action": "dance"})

            assert ws.receive_json()["code"] == "unknown_action"

    def test_non_object_message(self, client) -> None:
        with client.websocket_connect("/ws/pax") as ws:
            ws.send_json([1, 2, 3])

            assert ws.receive_json()["code"] == "validation_error"

    def test_respond_accept(self, client, store) -> None:
        match = Match(
            provider_id="drv",
            seeker_id="pax",
            provider_search_id="s-drv",
            seeker_search_id="s-pax",
            similarity=0.9,
            quality=MatchQuality.EXCELLENT,
            created_at=T0,
            expires_at=T0 + timedelta(minutes=2),
        )
        store.collections.setdefault(Collection.MATCHES.value, {})[match.match_id] = match.to_document()

        with client.websocket_connect("/ws/pax") as ws:
            ws.send_json({"action": "respond", "match_id": match.match_id, "accept": True})
            status_event = ws.receive_json()
            ack = ws.receive_json()

        assert status_event["type"] == "match_accepted"
        assert ack == {"type": "respond_ack", "match_id": match.match_id, "status": "accepted"}

    def test_respond_unknown_match(self, client) -> None:
        with client.websocket_connect("/ws/pax") as ws:
            ws.send_json({"action": "respond", "match_id": "missing", "accept": False})

            assert ws.receive_json()["code"] == "match_not_found"

    def test_respond_without_store(self, clock) -> None:
        connections = ConnectionManager()
        engine = MatchingEngine(EngineConfig(), channel=connections, clock=clock)
        app = create_app(engine=engine, connections=connections, run_workers=False)

        with TestClient(app) as client, client.websocket_connect("/ws/pax") as ws:
            ws.send_json({"action": "respond", "match_id": "m-1", "accept": True})

            assert ws.receive_json()["code"] == "unavailable"

