from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from micseat.shared.models import ParticipantRole
from micseat.shared.protocol import (
    DEFAULT_MAX_MIC_SLOTS,
    DEFAULT_TCP_PORT,
    RECONCILE_INTERVAL_SECONDS,
    ClientIdentity,
    ControlAction,
)

from .admin_gateway import AdminActionGateway
from .control_client import ControlClient
from .mic_controller import MicController
from .notices import Notice
from .reconciliation import ReconciliationLoop
from .room import RoomHandle
from .room_policy import RoomPolicyWatcher

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY_SECONDS = 2.0
RECONNECT_MAX_DELAY_SECONDS = 30.0
NOTICE_HISTORY_LIMIT = 50


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send WebSocket message")


class ClientApp:
    """Client runtime wiring the room mirror, the mic engine and the local UI API."""

    def __init__(
        self,
        identity: ClientIdentity,
        server_host: str,
        tcp_port: int = DEFAULT_TCP_PORT,
        *,
        admin_url: Optional[str] = None,
        bearer_token: Optional[str] = None,
        gateway: Optional[AdminActionGateway] = None,
        reconcile_interval: float = RECONCILE_INTERVAL_SECONDS,
    ) -> None:
        self._identity = identity
        self._server_host = server_host
        self._tcp_port = tcp_port
        self._room = RoomHandle(identity.room_name or "main", identity.identity)
        if gateway is None and admin_url:
            gateway = AdminActionGateway(admin_url, bearer_token=bearer_token)
        self._gateway = gateway
        self._policy = RoomPolicyWatcher(
            self._room,
            gateway,
            fallback_slots=DEFAULT_MAX_MIC_SLOTS,
            on_change=lambda _policy: self._publish_roster(),
        )
        self._controller = MicController(
            self._room,
            gateway,
            lambda: self._policy.policy,
            on_notice=self._on_notice,
        )
        self._reconciliation: Optional[ReconciliationLoop] = None
        if gateway is not None:
            self._reconciliation = ReconciliationLoop(
                self._room,
                gateway,
                interval=reconcile_interval,
                on_notice=self._on_notice,
            )
        self._client: Optional[ControlClient] = None
        self._ws_hub = WebSocketHub()
        self._notices: List[Dict[str, object]] = []
        self._connected = False
        self._should_reconnect = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempt = 0
        self._uvicorn_server = None
        self._app = FastAPI(title="micseat client")
        self._room.on_attributes_changed(lambda *_: self._publish_roster())
        self._room.on_permissions_changed(lambda *_: self._publish_roster())
        self._room.on_membership_changed(lambda *_: self._publish_roster())
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def room(self) -> RoomHandle:
        return self._room

    @property
    def controller(self) -> MicController:
        return self._controller

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _configure_routes(self) -> None:
        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self._build_snapshot()

        @self._app.post("/api/mic/request")
        async def request_mic() -> Dict[str, object]:
            self._require_connected()
            decision = await self._controller.request_mic()
            return {
                "submitted": bool(decision and decision.allow),
                "decision": decision.to_dict() if decision else None,
            }

        @self._app.post("/api/mic/leave")
        async def leave_mic() -> Dict[str, object]:
            self._require_connected()
            return {"submitted": await self._controller.leave_mic()}

        @self._app.post("/api/mic/{action}/{target}")
        async def admin_action(action: str, target: str) -> Dict[str, object]:
            self._require_connected()
            handlers = {
                "approve": self._controller.approve,
                "kick": self._controller.kick,
                "mute": self._controller.mute,
                "unmute": self._controller.unmute,
            }
            handler = handlers.get(action)
            if handler is None:
                raise HTTPException(status_code=404, detail=f"unknown mic action {action}")
            return {"success": await handler(target)}

        @self._app.post("/api/repair/retry")
        async def retry_repair() -> Dict[str, object]:
            self._require_connected()
            if self._reconciliation is None:
                raise HTTPException(status_code=412, detail="admin backend not configured")
            issued = await self._reconciliation.retry()
            return {"issued": issued, "state": self._reconciliation.state.value}

        @self._app.websocket("/ws/control")
        async def ws_control(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json({"type": "state_snapshot", "payload": self._build_snapshot()})
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    def _require_connected(self) -> None:
        if not self._connected:
            raise HTTPException(status_code=412, detail="Not connected to room")

    def _build_snapshot(self) -> Dict[str, object]:
        return {
            "connected": self._connected,
            "identity": self._identity.identity,
            "room": self._room.name,
            "policy_source": self._policy.source,
            "repair_state": self._reconciliation.state.value if self._reconciliation else None,
            "roster": self._controller.roster(),
            "notices": list(self._notices),
        }

    async def _publish_roster(self) -> None:
        await self._ws_hub.broadcast({"type": "roster", "payload": self._controller.roster()})

    async def _on_notice(self, notice: Notice) -> None:
        entry = notice.to_dict()
        self._notices.append(entry)
        if len(self._notices) > NOTICE_HISTORY_LIMIT:
            del self._notices[: len(self._notices) - NOTICE_HISTORY_LIMIT]
        await self._ws_hub.broadcast({"type": "notice", "payload": entry})

    async def _broadcast_session_status(self, state: str, **payload: object) -> None:
        await self._ws_hub.broadcast(
            {
                "type": "session_status",
                "payload": {
                    "state": state,
                    "identity": self._identity.identity,
                    **payload,
                },
            }
        )

    async def _handle_ui_message(self, data: Dict[str, object]) -> None:
        """Handle messages coming from the web UI via WebSocket."""

        kind = data.get("type")
        payload = data.get("payload") or {}
        target = str(payload.get("identity", "")) if isinstance(payload, dict) else ""
        if not self._connected:
            await self._on_notice(Notice("error", "not_connected", "尚未连接到房间"))
            return
        if kind == "mic_request":
            await self._controller.request_mic()
        elif kind == "mic_leave":
            await self._controller.leave_mic()
        elif kind == "mic_approve" and target:
            await self._controller.approve(target)
        elif kind == "mic_kick" and target:
            await self._controller.kick(target)
        elif kind == "mic_mute" and target:
            await self._controller.mute(target)
        elif kind == "mic_unmute" and target:
            await self._controller.unmute(target)
        elif kind == "repair_retry" and self._reconciliation is not None:
            await self._reconciliation.retry()
        else:
            logger.warning("Unhandled UI message: %s", data)

    async def handle_control_message(self, action: ControlAction, payload: Dict[str, object]) -> None:
        logger.debug("Control action %s payload %s", action, payload)
        if action == ControlAction.WELCOME:
            participants = payload.get("participants") or []
            metadata = payload.get("metadata")
            self._room.load_snapshot(
                [entry for entry in participants if isinstance(entry, dict)],
                str(metadata) if metadata is not None else None,
            )
            await self._room.apply_metadata(self._room.metadata)
            self._controller.clear_pending_request()
            if self._reconciliation is not None:
                self._reconciliation.notify()
            await self._publish_roster()
        elif action == ControlAction.PARTICIPANT_JOINED:
            participant = payload.get("participant")
            if isinstance(participant, dict):
                await self._room.apply_participant_joined(participant)
        elif action == ControlAction.PARTICIPANT_LEFT:
            await self._room.apply_participant_left(str(payload.get("identity", "")))
        elif action == ControlAction.ATTRIBUTES_CHANGED:
            attributes = payload.get("attributes")
            if isinstance(attributes, dict):
                await self._room.apply_attributes(str(payload.get("identity", "")), attributes)
        elif action == ControlAction.PERMISSIONS_CHANGED:
            permissions = payload.get("permissions")
            if isinstance(permissions, dict):
                await self._room.apply_permissions(str(payload.get("identity", "")), permissions)
        elif action == ControlAction.ROOM_METADATA_CHANGED:
            metadata = payload.get("metadata")
            await self._room.apply_metadata(str(metadata) if metadata is not None else None)
            await self._publish_roster()
        elif action == ControlAction.ERROR:
            reason = str(payload.get("reason") or "room server error")
            logger.warning("Room server reported error: %s", reason)
            await self._on_notice(Notice("error", str(payload.get("code") or "server_error"), reason))
        else:
            logger.debug("Unhandled control action %s", action)

    async def start_session(self) -> None:
        await self._broadcast_session_status("connecting")
        self._should_reconnect = True
        self._cancel_reconnect()
        if self._client:
            await self._client.close()
        self._connected = False
        self._client = ControlClient(
            host=self._server_host,
            port=self._tcp_port,
            identity=self._identity,
            on_message=self.handle_control_message,
            on_disconnect=self._on_control_disconnect,
        )
        try:
            await self._client.connect()
        except Exception as exc:
            logger.warning("Failed to join room %s: %s", self._room.name, exc)
            await self._broadcast_session_status("error", message=str(exc))
            self._client = None
            self._schedule_reconnect()
            return
        self._room.set_attribute_writer(self._client.set_attributes)
        self._connected = True
        self._reconnect_attempt = 0
        await self._policy.start()
        if self._reconciliation is not None:
            await self._reconciliation.start()
        await self._broadcast_session_status("connected")
        logger.info("Joined room %s as %s", self._room.name, self._identity.identity)

    async def leave_session(self) -> None:
        self._should_reconnect = False
        self._cancel_reconnect()
        await self._teardown()
        if self._gateway is not None:
            await self._gateway.close()
        await self._broadcast_session_status("idle")

    async def _teardown(self) -> None:
        self._connected = False
        self._room.set_attribute_writer(None)
        if self._reconciliation is not None:
            await self._reconciliation.stop()
        await self._policy.stop()
        if self._client:
            try:
                await self._client.close()
            except Exception:
                logger.exception("Error while closing control client")
            finally:
                self._client = None

    async def _on_control_disconnect(self, reason: Optional[str]) -> None:
        if not self._should_reconnect:
            return
        logger.warning("Control connection lost: %s", reason or "unknown")
        self._connected = False
        self._room.set_attribute_writer(None)
        if self._reconciliation is not None:
            await self._reconciliation.stop()
        await self._policy.stop()
        await self._broadcast_session_status("reconnecting", message=reason)
        if reason in {"auth_failed", "removed", "room_not_found", "duplicate_identity"}:
            self._should_reconnect = False
            return
        self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is None:
            return
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not asyncio.current_task():
            task.cancel()

    def _schedule_reconnect(self) -> None:
        if not self._should_reconnect:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        delay = min(
            RECONNECT_BASE_DELAY_SECONDS * (2 ** self._reconnect_attempt),
            RECONNECT_MAX_DELAY_SECONDS,
        )
        self._reconnect_attempt += 1

        async def _worker(delay_seconds: float) -> None:
            try:
                await asyncio.sleep(delay_seconds)
                if self._should_reconnect:
                    self._reconnect_task = None
                    await self.start_session()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconnect attempt failed")

        self._reconnect_task = asyncio.create_task(_worker(delay))

    async def run(self, host: str = "127.0.0.1", port: int = 8100) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        await self.start_session()
        try:
            await server.serve()
        finally:
            self._uvicorn_server = None
            await self.leave_session()


def build_identity(identity: str, display_name: Optional[str], role: int, room: Optional[str]) -> ClientIdentity:
    return ClientIdentity(
        identity=identity,
        display_name=display_name or identity,
        role=int(ParticipantRole.parse(str(role))),
        room_name=room,
    )
