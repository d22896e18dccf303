"""Wire primitives shared between the room server and participant clients.

Room state travels over a TCP control channel as length-prefixed JSON
envelopes. Administrative mic actions travel over HTTP. This module holds the
envelope codec, the control actions, the admin request/response shapes and the
protocol defaults so both halves stay in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json
import struct


class ControlAction(str, Enum):
    """Control-plane events exchanged over TCP."""

    HELLO = "hello"
    WELCOME = "welcome"
    HEARTBEAT = "heartbeat"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    SET_ATTRIBUTES = "set_attributes"
    ATTRIBUTES_CHANGED = "attributes_changed"
    PERMISSIONS_CHANGED = "permissions_changed"
    ROOM_METADATA_CHANGED = "room_metadata_changed"
    ERROR = "error"


class AdminAction(str, Enum):
    """Actions accepted by ``POST /admin-control-participants``."""

    APPROVE_MIC = "approve_mic"
    KICK_FROM_MIC = "kick_from_mic"
    MUTE_MIC = "mute_mic"
    UNMUTE_MIC = "unmute_mic"


class ControlEnvelope(TypedDict):
    """Generic representation of control messages sent over TCP."""

    action: str
    data: Dict[str, Any]


def encode_control_message(action: ControlAction, data: Dict[str, Any]) -> bytes:
    """Serialize a control message using length-prefixed JSON."""

    envelope: ControlEnvelope = {
        "action": action.value,
        "data": data,
    }
    payload = json.dumps(envelope, separators=(',', ':'), ensure_ascii=False).encode("utf-8")
    return struct.pack("!I", len(payload)) + payload


def decode_control_stream(buffer: bytes) -> tuple[list[ControlEnvelope], bytes]:
    """Decode as many complete control messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer).
    """

    offset = 0
    messages: list[ControlEnvelope] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        envelope = json.loads(buffer[start:end].decode("utf-8"))
        messages.append(envelope)  # type: ignore[arg-type]
        offset = end

    return messages, buffer[offset:]


@dataclass(slots=True)
class ClientIdentity:
    """Identity packet exchanged during TCP handshake."""

    identity: str
    display_name: str
    role: int = 1
    room_name: Optional[str] = None
    client_version: str = "0.1.0"
    pre_shared_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "identity": self.identity,
            "display_name": self.display_name,
            "role": self.role,
            "client_version": self.client_version,
        }
        if self.room_name:
            data["room_name"] = self.room_name
        if self.pre_shared_key:
            data["pre_shared_key"] = self.pre_shared_key
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientIdentity":
        identity = str(data["identity"])
        return cls(
            identity=identity,
            display_name=str(data.get("display_name") or identity),
            role=int(data.get("role", 1)),
            room_name=data.get("room_name"),
            client_version=data.get("client_version", "0.1.0"),
            pre_shared_key=data.get("pre_shared_key"),
        )


@dataclass(slots=True)
class AdminControlRequest:
    """Body of ``POST /admin-control-participants``."""

    room_name: str
    target_identity: str
    operator_identity: str
    action: AdminAction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room_name": self.room_name,
            "target_identity": self.target_identity,
            "operator_identity": self.operator_identity,
            "action": self.action.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdminControlRequest":
        return cls(
            room_name=str(data["room_name"]),
            target_identity=str(data["target_identity"]),
            operator_identity=str(data["operator_identity"]),
            action=AdminAction(data["action"]),
        )


@dataclass(slots=True)
class AdminControlResult:
    """Response of ``POST /admin-control-participants``."""

    success: bool
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.error:
            data["error"] = self.error
        if self.code:
            data["code"] = self.code
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdminControlResult":
        error = data.get("error")
        code = data.get("code")
        return cls(
            success=bool(data.get("success", False)),
            error=str(error) if error else None,
            code=str(code) if code else None,
        )


@dataclass(slots=True)
class RoomInfo:
    """Snapshot returned by ``GET /room-info``."""

    max_mic_slots: int
    room_name: str
    room_state: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_mic_slots": self.max_mic_slots,
            "room_name": self.room_name,
            "room_state": self.room_state,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoomInfo":
        return cls(
            max_mic_slots=int(data.get("max_mic_slots") or DEFAULT_MAX_MIC_SLOTS),
            room_name=str(data.get("room_name", "")),
            room_state=int(data.get("room_state", 1)),
        )


def parse_max_mic_slots(metadata: Optional[str]) -> Optional[int]:
    """Extract ``maxMicSlots`` from replicated room metadata JSON.

    Returns None when the metadata is empty, malformed or lacks a positive
    integer value.
    """
    if not metadata:
        return None
    try:
        decoded = json.loads(metadata)
    except (TypeError, ValueError):
        return None
    if not isinstance(decoded, dict):
        return None
    value = decoded.get("maxMicSlots")
    # bool is an int subclass; a JSON true is not a slot count
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return value


DEFAULT_TCP_PORT = 55000
DEFAULT_ADMIN_PORT = 8700
DEFAULT_UI_PORT = 8100
DEFAULT_MAX_MIC_SLOTS = 5

ADMIN_CONTROL_PATH = "/admin-control-participants"
ROOM_INFO_PATH = "/room-info"

HEARTBEAT_INTERVAL_SECONDS = 3.0
RECONCILE_INTERVAL_SECONDS = 5.0
REPAIR_SETTLE_DELAY_SECONDS = 2.0
ROOM_INFO_POLL_INTERVAL_SECONDS = 30.0
