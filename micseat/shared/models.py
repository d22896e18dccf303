"""Participant data model shared by the room server and the mic engine.

A participant carries two independently owned records: the replicated
``attributes`` map that any participant may write for itself, and the
``permissions`` grant that only the administrative path may change.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, Mapping, Optional

ATTR_MIC_STATUS = "mic_status"
ATTR_DISPLAY_STATUS = "display_status"
ATTR_REQUEST_TIME = "request_time"
ATTR_LAST_ACTION = "last_action"
ATTR_OPERATOR_ID = "operator_id"
ATTR_KICK_TIME = "kick_time"
ATTR_USER_NAME = "user_name"
ATTR_ROLE = "role"
ATTR_USER_STATUS = "user_status"

USER_STATUS_DISABLED = "disabled"


class ParticipantRole(IntEnum):
    GUEST = 0
    MEMBER = 1
    HOST = 2
    ADMIN = 3

    @property
    def is_privileged(self) -> bool:
        return self >= ParticipantRole.HOST

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ParticipantRole":
        """Read a role attribute, treating missing or unknown values as MEMBER."""
        try:
            return cls(int(raw)) if raw not in (None, "") else cls.MEMBER
        except (TypeError, ValueError):
            return cls.MEMBER


class MicStatus(str, Enum):
    OFF_MIC = "off_mic"
    REQUESTING = "requesting"
    ON_MIC = "on_mic"
    MUTED = "muted"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "MicStatus":
        try:
            return cls(raw) if raw else cls.OFF_MIC
        except ValueError:
            return cls.OFF_MIC


class DisplayStatus(str, Enum):
    HIDDEN = "hidden"
    VISIBLE = "visible"


class LastAction(str, Enum):
    REQUEST = "request"
    APPROVED = "approved"
    KICKED = "kicked"
    LEFT = "left"
    MUTED = "muted"
    UNMUTED = "unmuted"


# seated in the mic list; only ON_MIC consumes a slot
SEATED_STATUSES = frozenset({MicStatus.ON_MIC, MicStatus.MUTED})


def display_status_for(status: MicStatus) -> DisplayStatus:
    """Anyone requesting or holding a slot shows in the mic roster."""
    if status is MicStatus.OFF_MIC:
        return DisplayStatus.HIDDEN
    return DisplayStatus.VISIBLE


def now_ms() -> str:
    return str(int(time.time() * 1000))


def default_attributes(role: ParticipantRole, display_name: str) -> Dict[str, str]:
    return {
        ATTR_MIC_STATUS: MicStatus.OFF_MIC.value,
        ATTR_DISPLAY_STATUS: DisplayStatus.HIDDEN.value,
        ATTR_ROLE: str(int(role)),
        ATTR_USER_NAME: display_name,
    }


@dataclass(slots=True)
class ParticipantPermissions:
    """Publish/subscribe grant held by the permission ledger."""

    can_publish: bool = False
    can_subscribe: bool = True
    can_publish_data: bool = True
    can_update_metadata: bool = True

    def to_dict(self) -> Dict[str, bool]:
        return {
            "can_publish": self.can_publish,
            "can_subscribe": self.can_subscribe,
            "can_publish_data": self.can_publish_data,
            "can_update_metadata": self.can_update_metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParticipantPermissions":
        return cls(
            can_publish=bool(data.get("can_publish", False)),
            can_subscribe=bool(data.get("can_subscribe", True)),
            can_publish_data=bool(data.get("can_publish_data", True)),
            can_update_metadata=bool(data.get("can_update_metadata", True)),
        )

    @classmethod
    def for_role(cls, role: ParticipantRole) -> "ParticipantPermissions":
        # hosts and admins publish without going through the mic queue
        return cls(can_publish=role.is_privileged)


@dataclass(slots=True)
class ParticipantSnapshot:
    """Point-in-time copy of one participant's attributes and permissions."""

    identity: str
    display_name: str
    attributes: Dict[str, str] = field(default_factory=dict)
    permissions: ParticipantPermissions = field(default_factory=ParticipantPermissions)

    @property
    def role(self) -> ParticipantRole:
        return ParticipantRole.parse(self.attributes.get(ATTR_ROLE))

    @property
    def mic_status(self) -> MicStatus:
        return MicStatus.parse(self.attributes.get(ATTR_MIC_STATUS))

    @property
    def display_status(self) -> DisplayStatus:
        raw = self.attributes.get(ATTR_DISPLAY_STATUS)
        if raw == DisplayStatus.VISIBLE.value:
            return DisplayStatus.VISIBLE
        return DisplayStatus.HIDDEN

    @property
    def is_disabled(self) -> bool:
        return self.attributes.get(ATTR_USER_STATUS) == USER_STATUS_DISABLED

    @property
    def is_privileged(self) -> bool:
        return self.role.is_privileged

    @property
    def shows_in_mic_list(self) -> bool:
        return self.display_status is DisplayStatus.VISIBLE or self.mic_status is not MicStatus.OFF_MIC

    def copy(self) -> "ParticipantSnapshot":
        return ParticipantSnapshot(
            identity=self.identity,
            display_name=self.display_name,
            attributes=dict(self.attributes),
            permissions=ParticipantPermissions(**self.permissions.to_dict()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "display_name": self.display_name,
            "attributes": dict(self.attributes),
            "permissions": self.permissions.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParticipantSnapshot":
        identity = str(data["identity"])
        raw_attributes = data.get("attributes") or {}
        return cls(
            identity=identity,
            display_name=str(data.get("display_name") or identity),
            attributes={str(key): str(value) for key, value in raw_attributes.items()},
            permissions=ParticipantPermissions.from_dict(data.get("permissions") or {}),
        )


def count_occupancy(participants: Iterable[ParticipantSnapshot], *, exclude: Optional[str] = None) -> int:
    """Number of participants counted against room capacity (``on_mic`` only)."""
    return sum(
        1
        for participant in participants
        if participant.identity != exclude and participant.mic_status is MicStatus.ON_MIC
    )


def host_present(participants: Iterable[ParticipantSnapshot]) -> bool:
    return any(participant.is_privileged for participant in participants)
