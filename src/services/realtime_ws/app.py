# src/services/realtime_ws/app.py
"""
FastAPI приложение движка матчинга.

WebSocket endpoints:
- /ws/{participant_id}?role=provider|seeker — канал уведомлений участника

REST endpoints:
- GET /health — проверка здоровья
- GET /stats — статистика движка и соединений
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect

from src.common.constants import Role, TypeMsg
from src.common.exceptions import MatchingEngineError
from src.common.logger import log_error, log_info, setup_logging
from src.core.engine import MatchingEngine
from src.services.realtime_ws.connection_manager import ConnectionManager, manager
from src.shared.models.common import HealthStatus

SERVICE_NAME = "ride_match_engine"


# === CLIENT MESSAGES ===

async def handle_client_message(
    engine: MatchingEngine,
    connections: ConnectionManager,
    participant_id: str,
    data: dict[str, Any],
) -> None:
    """
    Обработать сообщение от клиента.

    Входящие сообщения:
    - {"action": "ping"}
    - {"action": "location", "lat": 9.03, "lng": 38.76}
    - {"action": "respond", "match_id": "...", "accept": true}
    """
    if not isinstance(data, dict):
        raise MatchingEngineError("Сообщение должно быть JSON объектом", code="validation_error")
    action = data.get("action")

    if action == "ping":
        await connections.send_personal(participant_id, {"type": "pong"})

    elif action == "location":
        lat = data.get("lat", data.get("latitude"))
        lng = data.get("lng", data.get("lon", data.get("longitude")))
        if lat is None or lng is None:
            raise MatchingEngineError("Не переданы координаты", code="validation_error")
        try:
            latitude, longitude = float(lat), float(lng)
        except (TypeError, ValueError):
            raise MatchingEngineError("Некорректные координаты", code="validation_error")
        updated = engine.search.update_location(participant_id, latitude, longitude)
        await connections.send_personal(participant_id, {"type": "location_ack", "updated": updated})

    elif action == "respond":
        match_id = data.get("match_id")
        if not match_id:
            raise MatchingEngineError("Не передан match_id", code="validation_error")
        if engine.proposals is None:
            raise MatchingEngineError("Хранилище предложений недоступно", code="unavailable")
        match = await engine.proposals.respond(str(match_id), participant_id, bool(data.get("accept")))
        await connections.send_personal(participant_id, {
            "type": "respond_ack",
            "match_id": match.match_id,
            "status": match.status.value,
        })

    else:
        raise MatchingEngineError(f"Неизвестное действие: {action}", code="unknown_action")


# === APP FACTORY ===

def create_app(
    engine: MatchingEngine | None = None,
    connections: ConnectionManager | None = None,
    run_workers: bool = True,
) -> FastAPI:
    """
    Создаёт приложение.

    Args:
        engine: Готовый движок; если None — собирается по настройкам
            вместе с подключением к БД
        connections: Менеджер соединений (по умолчанию глобальный)
        run_workers: Запускать ли фоновые воркеры
    """
    connections = connections or manager

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Жизненный цикл приложения."""
        from src.config import settings
        from src.infra.database import close_db, init_db
        from src.worker.runner import start_workers, stop_workers

        setup_logging()
        owns_infra = engine is None

        # Startup
        if owns_infra:
            await init_db()
            app.state.engine = MatchingEngine.build(settings, channel=connections)
        else:
            app.state.engine = engine
        app.state.connections = connections
        app.state.started_at = time.monotonic()

        await app.state.engine.startup()
        workers = await start_workers(app.state.engine) if run_workers else []
        await log_info(f"{SERVICE_NAME} запущен", type_msg=TypeMsg.INFO)

        yield

        # Shutdown
        await stop_workers(workers)
        if owns_infra:
            await close_db()
        await log_info(f"{SERVICE_NAME} остановлен", type_msg=TypeMsg.INFO)

    app = FastAPI(
        title="Ride Match Engine",
        description="Движок подбора попутчиков: поиск, матчинг, уведомления в реальном времени.",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # === HEALTH CHECK ===

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check(request: Request) -> HealthStatus:
        """Проверка здоровья сервиса."""
        from src.config import settings

        current: MatchingEngine = request.app.state.engine
        db = getattr(current.store, "db", None)
        if db is None:
            postgres = "disabled"
        else:
            postgres = "healthy" if await db.health_check() else "unhealthy"

        return HealthStatus(
            service=SERVICE_NAME,
            status="degraded" if postgres == "unhealthy" else "healthy",
            version=settings.system.VERSION,
            uptime_seconds=round(time.monotonic() - request.app.state.started_at, 1),
            dependencies={"postgres": postgres},
        )

    # === STATS ===

    @app.get("/stats", tags=["Stats"])
    async def get_stats(request: Request) -> dict[str, Any]:
        """Статистика движка и соединений."""
        return request.app.state.engine.get_stats()

    # === WEBSOCKET ===

    @app.websocket("/ws/{participant_id}")
    async def websocket_participant(
        websocket: WebSocket,
        participant_id: str,
        role: Role = Query(default=Role.SEEKER),
    ) -> None:
        """
        WebSocket участника.
        При подключении досылаются недоставленные уведомления.
        """
        current: MatchingEngine = websocket.app.state.engine
        await connections.connect(websocket, participant_id, role.value)

        try:
            await current.dispatcher.replay_pending(participant_id)
        except Exception as e:
            await log_error(f"Ошибка досылки уведомлений участнику {participant_id}: {e}", exc_info=True)

        try:
            while True:
                data = await websocket.receive_json()
                try:
                    await handle_client_message(current, connections, participant_id, data)
                except MatchingEngineError as e:
                    await connections.send_personal(participant_id, {"type": "error", **e.to_dict()})
        except WebSocketDisconnect:
            await connections.disconnect(participant_id, websocket)
        except Exception as e:
            await log_error(f"Ошибка WebSocket участника {participant_id}: {e}")
            await connections.disconnect(participant_id, websocket)

    return app


app = create_app()


# === STARTUP ===

if __name__ == "__main__":
    import uvicorn
    from src.config import settings

    uvicorn.run(app, host=settings.deployment.ENGINE_HOST, port=settings.deployment.ENGINE_PORT)
