"""Drift detection and repair between declared mic state and the publish grant.

Only the local participant is reconciled, and only one drift pattern is
repaired: ``mic_status == on_mic`` while ``can_publish`` is false. The inverse
(granted but declared off) is left to the server. Each detected fault gets a
single re-approve call; if that fails, or the grant has still not arrived once
the settle delay has passed, auto-repair stops until ``retry()`` is called.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Optional

from micseat.shared.errors import AdminCallFailure, ConsistencyFault
from micseat.shared.models import MicStatus, ParticipantSnapshot
from micseat.shared.protocol import REPAIR_SETTLE_DELAY_SECONDS, RECONCILE_INTERVAL_SECONDS

from .admin_gateway import AdminActionGateway
from .notices import Notice, NoticeCallback, deliver_notice
from .room import RoomHandle, Unsubscribe

logger = logging.getLogger(__name__)


class RepairState(str, Enum):
    CONSISTENT = "consistent"
    DRIFTED = "drifted"
    REPAIRING = "repairing"
    SUSPENDED = "suspended"


def detect_fault(participant: Optional[ParticipantSnapshot]) -> Optional[ConsistencyFault]:
    if participant is None:
        return None
    if participant.mic_status is MicStatus.ON_MIC and not participant.permissions.can_publish:
        return ConsistencyFault(participant.identity)
    return None


class ReconciliationLoop:
    """Event-driven checks with a fixed-interval poll as fallback."""

    def __init__(
        self,
        room: RoomHandle,
        gateway: AdminActionGateway,
        *,
        interval: float = RECONCILE_INTERVAL_SECONDS,
        settle_delay: float = REPAIR_SETTLE_DELAY_SECONDS,
        on_notice: Optional[NoticeCallback] = None,
    ) -> None:
        self._room = room
        self._gateway = gateway
        self._interval = max(0.01, interval)
        self._settle_delay = max(0.0, settle_delay)
        self._on_notice = on_notice
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._subscriptions: List[Unsubscribe] = []
        self._fault: Optional[ConsistencyFault] = None
        self._attempted = False
        self._suspended = False
        self._repairing = False
        self.repair_attempts = 0

    @property
    def state(self) -> RepairState:
        if self._repairing:
            return RepairState.REPAIRING
        if self._suspended:
            return RepairState.SUSPENDED
        if self._fault is not None:
            return RepairState.DRIFTED
        return RepairState.CONSISTENT

    @property
    def is_running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        identity = self._room.local_identity
        self._subscriptions = [
            self._room.on_attributes_changed(lambda *_: self.notify(), identity=identity),
            self._room.on_permissions_changed(lambda *_: self.notify(), identity=identity),
        ]
        self._wake.set()
        self._task = asyncio.create_task(self._run())
        logger.debug("Reconciliation loop started for %s", identity)

    async def stop(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:  # pragma: no cover - task cancellation
                pass
        self._task = None
        logger.debug("Reconciliation loop stopped for %s", self._room.local_identity)

    def notify(self) -> None:
        """Schedule a check; safe to call from any change notification."""
        self._wake.set()

    async def retry(self) -> bool:
        """Manual retry after a failed repair; grants the current fault one more attempt."""
        async with self._lock:
            self._attempted = False
            self._suspended = False
        return await self.check_once()

    async def check_once(self) -> bool:
        """Compare declared and granted state once. Returns True if a repair call was issued."""
        async with self._lock:
            participant = self._room.local_participant()
            fault = detect_fault(participant)
            if fault is None:
                if self._fault is not None:
                    logger.info("Mic state of %s is consistent again", self._fault.identity)
                self._fault = None
                self._attempted = False
                self._suspended = False
                return False

            if self._fault is None:
                logger.warning("Consistency fault detected: %s", fault)
                self._fault = fault
            if self._attempted or self._suspended:
                return False

            self._attempted = True
            await self._repair(fault)
            return True

    async def _repair(self, fault: ConsistencyFault) -> None:
        identity = fault.identity
        self._repairing = True
        self.repair_attempts += 1
        try:
            try:
                await self._gateway.approve_mic(self._room.name, identity, identity)
            except AdminCallFailure as exc:
                self._suspended = True
                logger.warning("Re-approve for %s failed: %s", identity, exc.reason)
                await deliver_notice(
                    self._on_notice,
                    Notice("error", "repair_failed", f"麦克风权限修复失败：{exc.reason}，请重试或联系主持人"),
                )
                return

            if self._settle_delay:
                await asyncio.sleep(self._settle_delay)

            if detect_fault(self._room.local_participant()) is not None:
                self._suspended = True
                logger.warning("Publish permission for %s still missing after repair", identity)
                await deliver_notice(
                    self._on_notice,
                    Notice("error", "repair_unconfirmed", "麦克风权限仍未生效，请重试或联系主持人重新批准上麦"),
                )
                return

            self._fault = None
            self._attempted = False
            logger.info("Publish permission for %s restored", identity)
            await deliver_notice(self._on_notice, Notice("success", "repair_succeeded", "麦克风权限已恢复"))
        finally:
            self._repairing = False

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
                try:
                    await self.check_once()
                except Exception:
                    logger.exception("Reconciliation check failed")
        except asyncio.CancelledError:  # pragma: no cover - task cancellation
            return
