"""FastAPI entry-point for the batch provisioning controller."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import VALIDATION_CODES, CommandRejected, OrchestratorUnavailable, StaleSessionError
from .logging_config import configure_logging
from .session_manager import ProvisioningEngine


class StartSessionRequest(BaseModel):
    target_ssid: str = Field(..., min_length=1)
    target_password: str = Field(..., repr=False)
    config: Optional[Dict[str, int]] = None


def create_app(engine: Optional[ProvisioningEngine] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (engine.settings if engine else get_settings())
    manager = engine or ProvisioningEngine(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await manager.start()
        try:
            yield
        finally:
            await manager.stop()

    app = FastAPI(title="batch-provisioning-controller", version="0.1.0", lifespan=lifespan)
    app.state.engine = manager

    @app.exception_handler(CommandRejected)
    async def on_rejected(request: Request, exc: CommandRejected) -> JSONResponse:
        if isinstance(exc, OrchestratorUnavailable):
            status = 503
        elif exc.code in VALIDATION_CODES:
            status = 422
        else:
            status = 409
        return JSONResponse(exc.to_dict(), status_code=status)

    @app.exception_handler(StaleSessionError)
    async def on_stale(request: Request, exc: StaleSessionError) -> JSONResponse:
        return JSONResponse(
            {"code": exc.reason, "message": exc.user_message, "session_id": exc.session_id}, status_code=410
        )

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        session = manager.snapshot.session
        return JSONResponse(
            {
                "status": "ok",
                "session_state": session.state.value if session else None,
                "connection": manager.connection_state.value,
            }
        )

    @app.get("/session")
    async def current_session() -> JSONResponse:
        return JSONResponse(manager.describe())

    @app.post("/session/start")
    async def start_session(body: StartSessionRequest) -> JSONResponse:
        session = await manager.start_session(body.target_ssid, body.target_password, body.config)
        return JSONResponse({"session": session.model_dump(mode="json")}, status_code=202)

    @app.post("/session/stop")
    async def stop_session() -> JSONResponse:
        session = await manager.stop_session()
        return JSONResponse({"session": session.model_dump(mode="json")}, status_code=202)

    @app.post("/session/pause")
    async def pause_session() -> JSONResponse:
        session = await manager.pause_session()
        return JSONResponse({"session": session.model_dump(mode="json")}, status_code=202)

    @app.post("/session/resume")
    async def resume_session() -> JSONResponse:
        session = await manager.resume_session()
        return JSONResponse({"session": session.model_dump(mode="json")}, status_code=202)

    @app.post("/devices/provision-all")
    async def provision_all() -> JSONResponse:
        result = await manager.provision_all()
        return JSONResponse(result.model_dump(mode="json"), status_code=202)

    @app.post("/devices/{mac}/provision")
    async def provision_device(mac: str) -> JSONResponse:
        result = await manager.provision(mac)
        return JSONResponse(result.model_dump(mode="json"), status_code=202)

    @app.post("/devices/{mac}/retry")
    async def retry_device(mac: str) -> JSONResponse:
        result = await manager.retry(mac)
        return JSONResponse(result.model_dump(mode="json"), status_code=202)

    @app.post("/devices/{mac}/skip")
    async def skip_device(mac: str) -> JSONResponse:
        result = await manager.skip(mac)
        return JSONResponse(result.model_dump(mode="json"), status_code=202)

    @app.post("/stream/reconnect")
    async def reconnect_stream() -> JSONResponse:
        await manager.reconnect()
        return JSONResponse({"status": "scheduled"}, status_code=202)

    @app.get("/network")
    async def network_status() -> JSONResponse:
        status = await manager.commands.network_status()
        return JSONResponse(status.model_dump(mode="json"))

    @app.get("/recovery")
    async def recoverable_sessions() -> JSONResponse:
        candidates = await manager.recovery.list_recoverable()
        return JSONResponse(
            {
                "sessions": [candidate.to_dict() for candidate in candidates],
                "primary": candidates[0].id if candidates else None,
            }
        )

    @app.get("/recovery/history")
    async def session_history(limit: int = 10) -> JSONResponse:
        sessions = await manager.recovery.history(limit)
        return JSONResponse({"sessions": [session.model_dump(mode="json") for session in sessions]})

    @app.post("/recovery/{session_id}/resume")
    async def resume_recoverable(session_id: str) -> JSONResponse:
        data = await manager.resume_recoverable(session_id)
        return JSONResponse({"session": data.session.model_dump(mode="json")}, status_code=202)

    @app.delete("/recovery/{session_id}")
    async def discard_recoverable(session_id: str) -> JSONResponse:
        result = await manager.discard_recoverable(session_id)
        return JSONResponse(
            {
                "session_id": result.session_id,
                "removed_locally": result.removed_locally,
                "remote_closed": result.remote_closed,
            }
        )

    @app.websocket("/ws/ui")
    async def ui_socket(ws: WebSocket) -> None:
        await ws.accept()
        queue = manager.register_ui()
        try:
            while True:
                event = await queue.get()
                payload = {
                    "type": event.type,
                    "session_state": event.session_state.value if event.session_state else None,
                    "connection": event.connection.value if event.connection else None,
                    "data": event.data,
                }
                if event.error:
                    payload["error"] = event.error
                await ws.send_json(payload)
        except WebSocketDisconnect:
            pass
        finally:
            manager.unregister_ui(queue)

    return app


settings: Settings = get_settings()
configure_logging(settings.log_level)
app = create_app(settings=settings)


def run() -> None:
    uvicorn.run(app, host=settings.controller_host, port=settings.controller_port, log_config=None)
