"""Local mirror of a room's replicated participant state.

``RoomHandle`` is the client's view of the two external records: the
attribute store (readable for everyone, writable only for the local
participant) and the permission ledger (read-only). The transport feeds it
with ``apply_*`` calls; the mic engine reads it and subscribes to changes.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from micseat.shared.errors import TransportError
from micseat.shared.models import (
    ATTR_ROLE,
    ParticipantPermissions,
    ParticipantSnapshot,
)

logger = logging.getLogger(__name__)

AttributesCallback = Callable[[str, Dict[str, str]], Awaitable[None] | None]
PermissionsCallback = Callable[[str, ParticipantPermissions], Awaitable[None] | None]
MetadataCallback = Callable[[Optional[str]], Awaitable[None] | None]
MembershipCallback = Callable[[str, bool], Awaitable[None] | None]
AttributeWriter = Callable[[Dict[str, str]], Awaitable[None]]
Unsubscribe = Callable[[], None]


class RoomHandle:
    """Explicitly passed room context holding the replicated participant set."""

    def __init__(
        self,
        room_name: str,
        local_identity: str,
        *,
        attribute_writer: Optional[AttributeWriter] = None,
    ) -> None:
        self._room_name = room_name
        self._local_identity = local_identity
        self._attribute_writer = attribute_writer
        self._participants: Dict[str, ParticipantSnapshot] = {}
        self._metadata: Optional[str] = None
        self._attribute_listeners: List[tuple[Optional[str], AttributesCallback]] = []
        self._permission_listeners: List[tuple[Optional[str], PermissionsCallback]] = []
        self._metadata_listeners: List[MetadataCallback] = []
        self._membership_listeners: List[MembershipCallback] = []

    @property
    def name(self) -> str:
        return self._room_name

    @property
    def local_identity(self) -> str:
        return self._local_identity

    @property
    def metadata(self) -> Optional[str]:
        return self._metadata

    def set_attribute_writer(self, writer: Optional[AttributeWriter]) -> None:
        self._attribute_writer = writer

    # -- reads ---------------------------------------------------------------

    def get_participant(self, identity: str) -> Optional[ParticipantSnapshot]:
        participant = self._participants.get(identity)
        return participant.copy() if participant else None

    def local_participant(self) -> Optional[ParticipantSnapshot]:
        return self.get_participant(self._local_identity)

    def participants(self) -> List[ParticipantSnapshot]:
        return [participant.copy() for participant in self._participants.values()]

    def get_attributes(self, identity: str) -> Dict[str, str]:
        participant = self._participants.get(identity)
        return dict(participant.attributes) if participant else {}

    def get_permissions(self, identity: str) -> ParticipantPermissions:
        participant = self._participants.get(identity)
        if participant is None:
            return ParticipantPermissions(can_publish=False)
        return ParticipantPermissions(**participant.permissions.to_dict())

    # -- local writes --------------------------------------------------------

    async def set_attributes(self, delta: Mapping[str, str]) -> None:
        """Write attributes of the local participant.

        The write is fire-and-forget: the mirror only changes once the room
        replicates the new attributes back through ``apply_attributes``.
        """
        if ATTR_ROLE in delta:
            raise ValueError("role is assigned at join time and cannot be self-written")
        if self._attribute_writer is None:
            raise TransportError("room transport is not connected")
        payload = {str(key): str(value) for key, value in delta.items()}
        try:
            await self._attribute_writer(payload)
        except (ConnectionError, RuntimeError, OSError) as exc:
            raise TransportError(str(exc) or "attribute write failed") from exc

    # -- subscriptions -------------------------------------------------------

    def on_attributes_changed(self, callback: AttributesCallback, *, identity: Optional[str] = None) -> Unsubscribe:
        entry = (identity, callback)
        self._attribute_listeners.append(entry)
        return lambda: self._discard(self._attribute_listeners, entry)

    def on_permissions_changed(self, callback: PermissionsCallback, *, identity: Optional[str] = None) -> Unsubscribe:
        entry = (identity, callback)
        self._permission_listeners.append(entry)
        return lambda: self._discard(self._permission_listeners, entry)

    def on_metadata_changed(self, callback: MetadataCallback) -> Unsubscribe:
        self._metadata_listeners.append(callback)
        return lambda: self._discard(self._metadata_listeners, callback)

    def on_membership_changed(self, callback: MembershipCallback) -> Unsubscribe:
        self._membership_listeners.append(callback)
        return lambda: self._discard(self._membership_listeners, callback)

    @staticmethod
    def _discard(listeners: list, entry: object) -> None:
        if entry in listeners:
            listeners.remove(entry)

    # -- transport inbound ---------------------------------------------------

    def load_snapshot(self, participants: List[Mapping[str, object]], metadata: Optional[str]) -> None:
        self._participants = {}
        for raw in participants:
            participant = ParticipantSnapshot.from_dict(raw)
            self._participants[participant.identity] = participant
        self._metadata = metadata
        logger.debug("Loaded room snapshot with %d participants", len(self._participants))

    async def apply_participant_joined(self, raw: Mapping[str, object]) -> None:
        participant = ParticipantSnapshot.from_dict(raw)
        self._participants[participant.identity] = participant
        await self._emit_membership(participant.identity, True)

    async def apply_participant_left(self, identity: str) -> None:
        if self._participants.pop(identity, None) is None:
            return
        await self._emit_membership(identity, False)

    async def apply_attributes(self, identity: str, attributes: Mapping[str, str]) -> None:
        """Replace a participant's attributes with the latest replicated snapshot."""
        participant = self._participants.get(identity)
        if participant is None:
            logger.debug("Ignoring attributes for unknown participant %s", identity)
            return
        participant.attributes = {str(key): str(value) for key, value in attributes.items()}
        snapshot = dict(participant.attributes)
        for wanted, callback in list(self._attribute_listeners):
            if wanted is None or wanted == identity:
                await self._invoke(callback, identity, dict(snapshot))

    async def apply_permissions(self, identity: str, permissions: Mapping[str, object]) -> None:
        participant = self._participants.get(identity)
        if participant is None:
            logger.debug("Ignoring permissions for unknown participant %s", identity)
            return
        participant.permissions = ParticipantPermissions.from_dict(permissions)
        for wanted, callback in list(self._permission_listeners):
            if wanted is None or wanted == identity:
                await self._invoke(callback, identity, ParticipantPermissions(**participant.permissions.to_dict()))

    async def apply_metadata(self, metadata: Optional[str]) -> None:
        self._metadata = metadata
        for callback in list(self._metadata_listeners):
            await self._invoke(callback, metadata)

    async def _emit_membership(self, identity: str, joined: bool) -> None:
        for callback in list(self._membership_listeners):
            await self._invoke(callback, identity, joined)

    async def _invoke(self, callback: Callable[..., Awaitable[None] | None], *args: object) -> None:
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Room listener %r failed", callback)
