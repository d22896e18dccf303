from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from micseat.shared.admission import RoomMicPolicy
from micseat.shared.errors import AdminCallFailure
from micseat.shared.protocol import (
    DEFAULT_MAX_MIC_SLOTS,
    ROOM_INFO_POLL_INTERVAL_SECONDS,
    parse_max_mic_slots,
)

from .admin_gateway import AdminActionGateway
from .room import RoomHandle, Unsubscribe

logger = logging.getLogger(__name__)

PolicyCallback = Callable[[RoomMicPolicy], Awaitable[None] | None]


class RoomPolicyWatcher:
    """Tracks ``max_mic_slots`` for a room.

    Replicated room metadata wins when it carries ``maxMicSlots``; otherwise
    the last ``/room-info`` snapshot is used, and failing both, the last value
    seen (initially the configured fallback). The HTTP snapshot is re-polled
    periodically to catch missed metadata notifications.
    """

    def __init__(
        self,
        room: RoomHandle,
        gateway: Optional[AdminActionGateway] = None,
        *,
        fallback_slots: int = DEFAULT_MAX_MIC_SLOTS,
        poll_interval: float = ROOM_INFO_POLL_INTERVAL_SECONDS,
        on_change: Optional[PolicyCallback] = None,
    ) -> None:
        self._room = room
        self._gateway = gateway
        self._cached_slots = max(1, fallback_slots)
        self._http_slots: Optional[int] = None
        self._poll_interval = max(0.01, poll_interval)
        self._on_change = on_change
        self._task: Optional[asyncio.Task[None]] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._last_reported: Optional[int] = None

    @property
    def policy(self) -> RoomMicPolicy:
        return RoomMicPolicy(max_mic_slots=self._resolve()[0])

    @property
    def source(self) -> str:
        return self._resolve()[1]

    def _resolve(self) -> tuple[int, str]:
        from_metadata = parse_max_mic_slots(self._room.metadata)
        if from_metadata is not None:
            self._cached_slots = from_metadata
            return from_metadata, "metadata"
        if self._http_slots is not None:
            self._cached_slots = self._http_slots
            return self._http_slots, "room_info"
        return self._cached_slots, "fallback"

    async def start(self) -> None:
        if self._task is not None:
            return
        self._unsubscribe = self._room.on_metadata_changed(self._handle_metadata)
        await self.refresh()
        self._task = asyncio.create_task(self._run())
        logger.debug("Room policy watcher started for %s", self._room.name)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:  # pragma: no cover - task cancellation
                pass
        self._task = None

    async def refresh(self) -> RoomMicPolicy:
        if self._gateway is not None:
            try:
                info = await self._gateway.fetch_room_info(self._room.name)
            except AdminCallFailure as exc:
                logger.warning("Failed to fetch room info for %s: %s", self._room.name, exc.reason)
            else:
                if info.max_mic_slots > 0:
                    self._http_slots = info.max_mic_slots
        await self._report()
        return self.policy

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._poll_interval)
                try:
                    await self.refresh()
                except Exception:
                    logger.exception("Room info poll failed for %s", self._room.name)
        except asyncio.CancelledError:  # pragma: no cover - task cancellation
            return

    async def _handle_metadata(self, metadata: Optional[str]) -> None:
        if metadata and parse_max_mic_slots(metadata) is None:
            logger.warning("Room metadata for %s has no usable maxMicSlots", self._room.name)
        await self._report()

    async def _report(self) -> None:
        policy = self.policy
        if policy.max_mic_slots == self._last_reported:
            return
        self._last_reported = policy.max_mic_slots
        logger.info("Room %s max mic slots: %d (source=%s)", self._room.name, policy.max_mic_slots, self.source)
        if self._on_change is None:
            return
        try:
            result = self._on_change(policy)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Policy change callback failed")
