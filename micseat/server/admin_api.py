from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from micseat.shared.protocol import (
    ADMIN_CONTROL_PATH,
    ROOM_INFO_PATH,
    AdminControlRequest,
)

from .session_manager import SessionManager

logger = logging.getLogger(__name__)


_LOG_BUFFER_LIMIT = 200
_log_buffer = deque(maxlen=_LOG_BUFFER_LIMIT)


class _InMemoryLogHandler(logging.Handler):
    """Collect recent log records for admin diagnostics."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging side effect
        try:
            message = self.format(record)
        except Exception:
            message = record.getMessage()
        _log_buffer.append(
            {
                "message": message,
                "level": record.levelname.lower(),
                "logger": record.name,
                "timestamp": record.created,
            }
        )


def _ensure_log_handler() -> None:
    root_logger = logging.getLogger()
    if any(isinstance(handler, _InMemoryLogHandler) for handler in root_logger.handlers):
        return
    handler = _InMemoryLogHandler(level=logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(handler)


def _get_log_tail(limit: int = 50) -> list[dict[str, object]]:
    if limit <= 0:
        return []
    return list(_log_buffer)[-limit:]


def _failure(status_code: int, error: str, code: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": error, "code": code}, status_code=status_code)


class AdminApi:
    """FastAPI application for administrative mic actions and room diagnostics.

    ``POST /admin-control-participants`` is the only path that changes a
    participant's publish grant; it updates ``mic_status`` and the grant in
    one step and replicates both to the room.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        *,
        bearer_token: Optional[str] = None,
        shutdown_handler: Optional[Callable[[], Awaitable[bool]]] = None,
        kick_handler: Optional[Callable[[str], Awaitable[bool]]] = None,
    ) -> None:
        _ensure_log_handler()
        self._session_manager = session_manager
        self._bearer_token = bearer_token
        self._shutdown_handler = shutdown_handler
        self._kick_handler = kick_handler
        self._app = FastAPI(title="micseat admin")

        guarded = [Depends(self._check_token)]

        @self._app.post(ADMIN_CONTROL_PATH, dependencies=guarded)
        async def control_participant(payload: dict = Body(...)):
            try:
                request = AdminControlRequest.from_dict(payload)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Malformed admin control request: %s", exc)
                return _failure(400, f"invalid request: {exc}", "bad_request")
            result = await self._session_manager.apply_admin_action(request)
            return result.to_dict()

        @self._app.get(ROOM_INFO_PATH)
        async def room_info(room_id: str = Query(...)):
            info = await self._session_manager.room_info()
            if room_id != info.room_name:
                return _failure(404, f"room {room_id} not found", "room_not_found")
            return {"success": True, "data": info.to_dict()}

        @self._app.get("/api/state", dependencies=guarded)
        async def state() -> dict:
            snapshot = await self._session_manager.snapshot()
            snapshot["timestamp"] = time.time()
            snapshot["log_tail"] = _get_log_tail(40)
            return snapshot

        @self._app.get("/api/health")
        async def health() -> dict:
            snapshot = await self._session_manager.snapshot()
            return {
                "status": "ok",
                "participant_count": snapshot.get("participant_count", 0),
                "timestamp": time.time(),
            }

        @self._app.post("/api/actions/max-mic-slots", dependencies=guarded)
        async def configure_max_mic_slots(payload: dict = Body(...)) -> dict:
            raw = payload.get("max_mic_slots")
            actor = str(payload.get("actor") or "admin")
            if isinstance(raw, bool):
                raise HTTPException(status_code=400, detail="max_mic_slots must be a positive integer")
            try:
                value = int(raw)
            except (TypeError, ValueError) as exc:
                raise HTTPException(status_code=400, detail="max_mic_slots must be a positive integer") from exc
            if value <= 0:
                raise HTTPException(status_code=400, detail="max_mic_slots must be a positive integer")
            metadata = await self._session_manager.set_max_mic_slots(value, actor=actor)
            logger.info("Admin set max mic slots to %s (actor=%s)", value, actor)
            return {"status": "ok", "metadata": metadata}

        @self._app.post("/api/actions/user-status", dependencies=guarded)
        async def set_user_status(payload: dict = Body(...)) -> dict:
            identity = str(payload.get("identity", "")).strip()
            if not identity:
                raise HTTPException(status_code=400, detail="identity required")
            disabled = bool(payload.get("disabled", True))
            actor = str(payload.get("actor") or "admin")
            updated = await self._session_manager.set_user_disabled(identity, disabled=disabled, actor=actor)
            if not updated:
                raise HTTPException(status_code=404, detail=f"{identity} is not connected")
            logger.info("Admin %s %s", "disabled" if disabled else "enabled", identity)
            return {"status": "ok", "disabled": disabled}

        @self._app.post("/api/actions/remove", dependencies=guarded)
        async def remove(payload: dict = Body(...)) -> dict:
            identity = str(payload.get("identity", "")).strip()
            if not identity:
                raise HTTPException(status_code=400, detail="identity required")
            if self._kick_handler is not None:
                removed = await self._kick_handler(identity)
            else:
                removed = await self._session_manager.unregister(
                    identity,
                    event_type="participant_removed",
                    details={"actor": "admin"},
                )
            if not removed:
                raise HTTPException(status_code=404, detail=f"{identity} is not connected")
            logger.info("Admin removed participant %s", identity)
            return {"status": "ok"}

        @self._app.post("/api/actions/shutdown", dependencies=guarded)
        async def shutdown() -> dict:
            if self._shutdown_handler is None:
                raise HTTPException(status_code=503, detail="shutdown handler not configured")
            initiated = await self._shutdown_handler()
            logger.info("Admin requested server shutdown (initiated=%s)", initiated)
            return {
                "status": "ok" if initiated else "in_progress",
                "initiated": initiated,
            }

        @self._app.get("/api/export/events", dependencies=guarded)
        async def export_events() -> JSONResponse:
            events = await self._session_manager.get_recent_events(limit=600)
            response = JSONResponse(events)
            response.headers["Content-Disposition"] = "attachment; filename=\"room-events.json\""
            return response

    @property
    def app(self) -> FastAPI:
        return self._app

    async def _check_token(self, authorization: Optional[str] = Header(default=None)) -> None:
        if not self._bearer_token:
            return
        if authorization != f"Bearer {self._bearer_token}":
            raise HTTPException(status_code=401, detail="unauthorized")


class AdminServer:
    """Background task helper for running the admin FastAPI server."""

    def __init__(
        self,
        session_manager: SessionManager,
        *,
        host: str,
        port: int,
        bearer_token: Optional[str] = None,
        shutdown_handler: Optional[Callable[[], Awaitable[bool]]] = None,
        kick_handler: Optional[Callable[[str], Awaitable[bool]]] = None,
    ) -> None:
        self._api = AdminApi(
            session_manager,
            bearer_token=bearer_token,
            shutdown_handler=shutdown_handler,
            kick_handler=kick_handler,
        )
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def app(self) -> FastAPI:
        return self._api.app

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._api.app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Admin API available at http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
