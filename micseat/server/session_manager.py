from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Dict, Optional, Set, Tuple

from micseat.shared.admission import AdmissionController, RoomMicPolicy
from micseat.shared.errors import PolicyRejection
from micseat.shared.models import (
    ATTR_DISPLAY_STATUS,
    ATTR_KICK_TIME,
    ATTR_MIC_STATUS,
    ATTR_OPERATOR_ID,
    ATTR_ROLE,
    ATTR_USER_STATUS,
    SEATED_STATUSES,
    USER_STATUS_DISABLED,
    MicStatus,
    ParticipantPermissions,
    ParticipantRole,
    ParticipantSnapshot,
    count_occupancy,
    default_attributes,
    display_status_for,
)
from micseat.shared.protocol import (
    DEFAULT_MAX_MIC_SLOTS,
    AdminAction,
    AdminControlRequest,
    AdminControlResult,
    ControlAction,
    RoomInfo,
    encode_control_message,
)
from micseat.shared.state_machine import MicStateMachine, MicTransition

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT = 30.0  # seconds

# keys only the administrative path may write
PROTECTED_ATTRIBUTES = frozenset({ATTR_ROLE, ATTR_USER_STATUS, ATTR_OPERATOR_ID, ATTR_KICK_TIME})
SELF_WRITABLE_STATUSES = frozenset({MicStatus.OFF_MIC.value, MicStatus.REQUESTING.value})

_ADMIN_TRANSITIONS = {
    AdminAction.APPROVE_MIC: MicTransition.APPROVE,
    AdminAction.KICK_FROM_MIC: MicTransition.KICK,
    AdminAction.MUTE_MIC: MicTransition.MUTE,
    AdminAction.UNMUTE_MIC: MicTransition.UNMUTE,
}


@dataclass(slots=True)
class ConnectedParticipant:
    identity: str
    display_name: str
    writer: asyncio.StreamWriter
    attributes: Dict[str, str] = field(default_factory=dict)
    permissions: ParticipantPermissions = field(default_factory=ParticipantPermissions)
    last_seen: float = field(default_factory=lambda: time.monotonic())
    connected_at: float = field(default_factory=lambda: time.time())
    peer_ip: Optional[str] = None
    peer_port: Optional[int] = None
    bytes_sent: int = 0
    bytes_received: int = 0

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def send(self, action: ControlAction, data: Dict[str, object]) -> None:
        payload = encode_control_message(action, data)
        self.bytes_sent += len(payload)
        self.writer.write(payload)

    def snapshot(self) -> ParticipantSnapshot:
        return ParticipantSnapshot(
            identity=self.identity,
            display_name=self.display_name,
            attributes=dict(self.attributes),
            permissions=ParticipantPermissions(**self.permissions.to_dict()),
        )


class SessionManager:
    """Holds one room's replicated attributes and permission ledger and broadcasts changes."""

    def __init__(
        self,
        room_name: str = "main",
        *,
        max_mic_slots: int = DEFAULT_MAX_MIC_SLOTS,
        state_machine: Optional[MicStateMachine] = None,
        admission: Optional[AdmissionController] = None,
    ) -> None:
        self._room_name = room_name
        self._clients: Dict[str, ConnectedParticipant] = {}
        self._lock = asyncio.Lock()
        self._event_log: list[dict] = []
        self._banned_identities: Set[str] = set()
        self._metadata: Dict[str, object] = {"maxMicSlots": max(1, int(max_mic_slots))}
        self._room_state = 1
        self._session_started_at: float = time.time()
        self._state_machine = state_machine or MicStateMachine()
        self._admission = admission or AdmissionController()

    @property
    def room_name(self) -> str:
        return self._room_name

    async def register(
        self,
        identity: str,
        writer: asyncio.StreamWriter,
        *,
        display_name: Optional[str] = None,
        role: ParticipantRole = ParticipantRole.MEMBER,
        peername: Optional[Tuple[str, ...]] = None,
    ) -> ConnectedParticipant:
        async with self._lock:
            if identity in self._clients:
                raise ValueError(f"Identity '{identity}' already connected")
            if identity in self._banned_identities:
                raise PermissionError(f"Identity '{identity}' is not allowed to join")
            name = display_name or identity
            client = ConnectedParticipant(
                identity=identity,
                display_name=name,
                writer=writer,
                attributes=default_attributes(role, name),
                permissions=ParticipantPermissions.for_role(role),
            )
            if peername:
                client.peer_ip = peername[0]
                if len(peername) > 1:
                    try:
                        client.peer_port = int(peername[1])
                    except (TypeError, ValueError):
                        client.peer_port = None
            if not self._clients:
                self._session_started_at = time.time()
            self._clients[identity] = client
            logger.info("Registered participant %s (role=%s)", identity, role.name.lower())
            self._record_event(
                "participant_joined",
                {
                    "identity": identity,
                    "role": int(role),
                },
            )
            return client

    async def unregister(
        self,
        identity: str,
        *,
        event_type: str = "participant_left",
        details: Optional[Dict[str, object]] = None,
    ) -> bool:
        async with self._lock:
            client = self._clients.pop(identity, None)
            if client is None:
                return False
            try:
                client.writer.close()
            except Exception:  # pragma: no cover - cleanup best effort
                logger.exception("Error while closing writer for %s", identity)
            logger.info("Unregistered participant %s", identity)
            event_details: Dict[str, object] = {"identity": identity}
            if details:
                event_details.update(details)
            self._record_event(event_type, event_details)
            return True

    async def get_participant(self, identity: str) -> Optional[ParticipantSnapshot]:
        async with self._lock:
            client = self._clients.get(identity)
            return client.snapshot() if client else None

    async def list_participants(self) -> list[dict[str, object]]:
        async with self._lock:
            return [client.snapshot().to_dict() for client in self._clients.values()]

    async def list_identities(self) -> list[str]:
        async with self._lock:
            return list(self._clients.keys())

    # -- self-service attribute writes -----------------------------------------

    async def set_attributes(self, identity: str, delta: Dict[str, object]) -> Optional[dict[str, str]]:
        """Apply a participant's write to its own attributes and replicate it.

        Returns the new attribute map, or None if the participant is gone.
        Raises PermissionError for writes the participant may not make.
        """
        revoked: Optional[dict[str, bool]] = None
        async with self._lock:
            client = self._clients.get(identity)
            if client is None:
                return None
            if not client.permissions.can_update_metadata:
                raise PermissionError(f"{identity} may not update its attributes")
            cleaned = {str(key): str(value) for key, value in delta.items()}
            protected = PROTECTED_ATTRIBUTES.intersection(cleaned)
            if protected:
                raise PermissionError(f"{identity} may not write {', '.join(sorted(protected))}")
            new_status = cleaned.get(ATTR_MIC_STATUS)
            if new_status is not None and new_status not in SELF_WRITABLE_STATUSES:
                raise PermissionError(f"{identity} may not declare mic_status={new_status}")

            previous = MicStatus.parse(client.attributes.get(ATTR_MIC_STATUS))
            client.attributes.update(cleaned)
            current = MicStatus.parse(client.attributes.get(ATTR_MIC_STATUS))
            client.attributes[ATTR_DISPLAY_STATUS] = display_status_for(current).value
            # leaving the mic list drops the publish grant for queue-managed roles
            if (
                previous in SEATED_STATUSES
                and current not in SEATED_STATUSES
                and not client.snapshot().is_privileged
                and client.permissions.can_publish
            ):
                client.permissions.can_publish = False
                revoked = client.permissions.to_dict()
            attributes = dict(client.attributes)
            self._record_event(
                "attributes_updated",
                {
                    "identity": identity,
                    "keys": sorted(cleaned),
                    "mic_status": current.value,
                },
            )
        await self.broadcast(ControlAction.ATTRIBUTES_CHANGED, {"identity": identity, "attributes": attributes})
        if revoked is not None:
            await self.broadcast(ControlAction.PERMISSIONS_CHANGED, {"identity": identity, "permissions": revoked})
        return attributes

    # -- administrative path ---------------------------------------------------

    async def apply_admin_action(self, request: AdminControlRequest) -> AdminControlResult:
        """Validate and apply one admin mic action, updating attributes and grant together."""
        async with self._lock:
            if request.room_name != self._room_name:
                return AdminControlResult(False, error=f"room {request.room_name} not found", code="room_not_found")
            operator = self._clients.get(request.operator_identity)
            if operator is None:
                return AdminControlResult(False, error="operator is not in the room", code="operator_not_found")
            target = self._clients.get(request.target_identity)
            if target is None:
                return AdminControlResult(False, error="target is not in the room", code="target_not_found")

            transition = _ADMIN_TRANSITIONS[request.action]
            operator_view = operator.snapshot()
            target_view = target.snapshot()
            try:
                if transition is MicTransition.APPROVE and operator.identity == target.identity:
                    rule = self._state_machine.authorize_self_repair(target_view)
                else:
                    rule = self._state_machine.authorize(transition, operator_view, target_view)
                if transition is MicTransition.APPROVE:
                    decision = self._admission.can_approve(
                        target_view,
                        self._policy_locked(),
                        [client.snapshot() for client in self._clients.values()],
                    )
                    if not decision.allow:
                        raise decision.to_rejection()
            except PolicyRejection as rejection:
                logger.info(
                    "Rejected %s of %s by %s: %s",
                    request.action.value,
                    target.identity,
                    operator.identity,
                    rejection.reason,
                )
                return AdminControlResult(False, error=rejection.message, code=rejection.reason)

            target.attributes.update(self._state_machine.admin_attributes(transition, operator.identity))
            if rule.grants_publish is not None:
                target.permissions.can_publish = rule.grants_publish
            attributes = dict(target.attributes)
            permissions = target.permissions.to_dict()
            self._record_event(
                request.action.value,
                {
                    "identity": target.identity,
                    "operator": operator.identity,
                    "mic_status": attributes.get(ATTR_MIC_STATUS),
                },
            )
        logger.info("Applied %s to %s (operator=%s)", request.action.value, request.target_identity, request.operator_identity)
        await self.broadcast(ControlAction.ATTRIBUTES_CHANGED, {"identity": request.target_identity, "attributes": attributes})
        await self.broadcast(ControlAction.PERMISSIONS_CHANGED, {"identity": request.target_identity, "permissions": permissions})
        return AdminControlResult(True)

    async def set_user_disabled(self, identity: str, *, disabled: bool, actor: str = "admin") -> bool:
        async with self._lock:
            client = self._clients.get(identity)
            if client is None:
                return False
            if disabled:
                client.attributes[ATTR_USER_STATUS] = USER_STATUS_DISABLED
            else:
                client.attributes.pop(ATTR_USER_STATUS, None)
            attributes = dict(client.attributes)
            self._record_event(
                "user_disabled" if disabled else "user_enabled",
                {
                    "identity": identity,
                    "actor": actor,
                },
            )
        await self.broadcast(ControlAction.ATTRIBUTES_CHANGED, {"identity": identity, "attributes": attributes})
        return True

    # -- room metadata ---------------------------------------------------------

    def _policy_locked(self) -> RoomMicPolicy:
        return RoomMicPolicy(max_mic_slots=int(self._metadata.get("maxMicSlots") or DEFAULT_MAX_MIC_SLOTS))

    async def get_policy(self) -> RoomMicPolicy:
        async with self._lock:
            return self._policy_locked()

    async def room_metadata(self) -> str:
        async with self._lock:
            return json.dumps(self._metadata, separators=(",", ":"))

    async def room_info(self) -> RoomInfo:
        async with self._lock:
            return RoomInfo(
                max_mic_slots=self._policy_locked().max_mic_slots,
                room_name=self._room_name,
                room_state=self._room_state,
            )

    async def set_max_mic_slots(self, max_mic_slots: int, *, actor: str = "admin") -> str:
        if max_mic_slots <= 0:
            raise ValueError("max_mic_slots must be positive")
        async with self._lock:
            self._metadata["maxMicSlots"] = int(max_mic_slots)
            metadata = json.dumps(self._metadata, separators=(",", ":"))
            self._record_event(
                "max_mic_slots_set",
                {
                    "actor": actor,
                    "max_mic_slots": int(max_mic_slots),
                },
            )
        await self.broadcast(ControlAction.ROOM_METADATA_CHANGED, {"metadata": metadata})
        return metadata

    # -- transport -------------------------------------------------------------

    async def record_received(self, identity: str, num_bytes: int) -> None:
        if num_bytes <= 0:
            return
        async with self._lock:
            client = self._clients.get(identity)
            if client:
                client.bytes_received += num_bytes

    async def broadcast(self, action: ControlAction, data: Dict[str, object], *, exclude: Optional[Set[str]] = None) -> None:
        if exclude is None:
            exclude = set()
        drains: list[Awaitable[None]] = []
        async with self._lock:
            for identity, client in self._clients.items():
                if identity in exclude:
                    continue
                try:
                    client.send(action, data)
                    drains.append(client.writer.drain())
                except Exception:
                    logger.exception("Failed to queue message to %s", identity)
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)

    async def send_to(self, identity: str, action: ControlAction, data: Dict[str, object]) -> None:
        drain: Optional[Awaitable[None]] = None
        async with self._lock:
            client = self._clients.get(identity)
            if client is None:
                return
            try:
                client.send(action, data)
                drain = client.writer.drain()
            except Exception:
                logger.exception("Failed to send direct message to %s", identity)
        if drain is not None:
            await asyncio.gather(drain, return_exceptions=True)

    async def snapshot(self) -> dict:
        async with self._lock:
            now_monotonic = time.monotonic()
            participants: list[dict[str, object]] = []
            views: list[ParticipantSnapshot] = []
            for client in self._clients.values():
                view = client.snapshot()
                views.append(view)
                participants.append(
                    {
                        "identity": client.identity,
                        "display_name": client.display_name,
                        "role": int(view.role),
                        "mic_status": view.mic_status.value,
                        "display_status": view.display_status.value,
                        "can_publish": client.permissions.can_publish,
                        "disabled": view.is_disabled,
                        "last_seen_seconds": max(0.0, now_monotonic - client.last_seen),
                        "connected_at": client.connected_at,
                        "peer_ip": client.peer_ip,
                        "peer_port": client.peer_port,
                        "bytes_sent": client.bytes_sent,
                        "bytes_received": client.bytes_received,
                    }
                )
            policy = self._policy_locked()
            return {
                "room_name": self._room_name,
                "participants": participants,
                "participant_count": len(participants),
                "max_mic_slots": policy.max_mic_slots,
                "occupancy": count_occupancy(views),
                "events": list(self._event_log[-300:]),
                "banned_identities": sorted(self._banned_identities),
                "session_started_at": self._session_started_at,
            }

    async def heartbeat_watcher(self) -> None:
        while True:
            await asyncio.sleep(HEARTBEAT_TIMEOUT)
            stale: list[str] = []
            async with self._lock:
                now = time.monotonic()
                for identity, client in list(self._clients.items()):
                    if now - client.last_seen > HEARTBEAT_TIMEOUT * 2:
                        stale.append(identity)
            for identity in stale:
                logger.warning("Participant %s timed out", identity)
                if await self.unregister(identity, event_type="participant_timed_out"):
                    await self.broadcast(ControlAction.PARTICIPANT_LEFT, {"identity": identity})

    async def mark_heartbeat(self, identity: str) -> None:
        async with self._lock:
            client = self._clients.get(identity)
            if client:
                elapsed = time.monotonic() - client.last_seen
                client.touch()
                logger.debug("Heartbeat received from %s (%.2fs since last)", identity, elapsed)

    async def ban_user(self, identity: str) -> None:
        async with self._lock:
            self._banned_identities.add(identity)

    async def unban_user(self, identity: str) -> None:
        async with self._lock:
            self._banned_identities.discard(identity)

    async def is_banned(self, identity: str) -> bool:
        async with self._lock:
            return identity in self._banned_identities

    async def record_blocked_attempt(self, identity: str) -> None:
        async with self._lock:
            self._record_event(
                "participant_blocked",
                {
                    "identity": identity,
                },
            )

    async def disconnect_all(self, *, reason: str = "Server shutting down") -> None:
        """Disconnect every participant with a shutdown reason."""

        drains: list[Awaitable[None]] = []
        waiters: list[Awaitable[None]] = []
        async with self._lock:
            if not self._clients:
                return
            clients = list(self._clients.values())
            for client in clients:
                try:
                    client.send(ControlAction.ERROR, {"reason": reason, "code": "shutdown"})
                    drains.append(client.writer.drain())
                except Exception:
                    logger.exception("Failed to notify %s about shutdown", client.identity)
                try:
                    client.writer.close()
                    waiters.append(client.writer.wait_closed())
                except Exception:
                    logger.exception("Error while closing writer for %s during shutdown", client.identity)
            self._clients.clear()
            self._record_event(
                "server_shutdown",
                {
                    "reason": reason,
                    "disconnected": len(clients),
                },
            )
        pending = drains + waiters
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > 1000:
            self._event_log.pop(0)
