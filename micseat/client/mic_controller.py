from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from micseat.shared.admission import AdmissionController, AdmissionDecision, AdmissionReason, RoomMicPolicy
from micseat.shared.errors import AdminCallFailure, PolicyRejection, TransportError
from micseat.shared.models import (
    ATTR_REQUEST_TIME,
    MicStatus,
    ParticipantRole,
    ParticipantSnapshot,
    count_occupancy,
    host_present,
)
from micseat.shared.state_machine import MicStateMachine, MicTransition

from .admin_gateway import AdminActionGateway
from .notices import Notice, NoticeCallback, deliver_notice
from .room import RoomHandle

logger = logging.getLogger(__name__)

PolicyProvider = Callable[[], RoomMicPolicy]
AdminCall = Callable[[str, str, str], Awaitable[object]]

_WARNING_REASONS = {"capacity", "guest", "not_privileged", "target_privileged"}
_ERROR_REASONS = {"disabled"}


def _level_for(reason: str) -> str:
    if reason in _ERROR_REASONS:
        return "error"
    if reason in _WARNING_REASONS:
        return "warning"
    return "info"


def can_use_mic(participant: ParticipantSnapshot) -> bool:
    """Whether the participant may open its microphone right now."""
    role = participant.role
    if role.is_privileged:
        return True
    if role is ParticipantRole.GUEST:
        return False
    status = participant.mic_status
    if status is MicStatus.MUTED:
        return False
    if status is MicStatus.ON_MIC:
        return True
    return participant.permissions.can_publish


class MicController:
    """Entry point for user-initiated mic actions.

    All actions run one at a time behind a single lock and re-read the room
    mirror when they start. Self-service actions write the local participant's
    attributes; host actions go through the admin gateway. Nothing here
    changes local state optimistically, the outcome arrives by replication.
    """

    def __init__(
        self,
        room: RoomHandle,
        gateway: Optional[AdminActionGateway],
        policy_provider: PolicyProvider,
        *,
        state_machine: Optional[MicStateMachine] = None,
        admission: Optional[AdmissionController] = None,
        on_notice: Optional[NoticeCallback] = None,
    ) -> None:
        self._room = room
        self._gateway = gateway
        self._policy_provider = policy_provider
        self._state_machine = state_machine or MicStateMachine()
        self._admission = admission or AdmissionController()
        self._on_notice = on_notice
        self._lock = asyncio.Lock()
        # set once a request write is sent, cleared when the room echoes our attributes
        self._request_pending = False
        self._room.on_attributes_changed(self._on_local_attributes, identity=room.local_identity)

    @property
    def room(self) -> RoomHandle:
        return self._room

    @property
    def policy(self) -> RoomMicPolicy:
        return self._policy_provider()

    def clear_pending_request(self) -> None:
        self._request_pending = False

    def _on_local_attributes(self, identity: str, attributes: Dict[str, str]) -> None:
        self._request_pending = False

    def evaluate_request(self) -> Optional[AdmissionDecision]:
        me = self._room.local_participant()
        if me is None:
            return None
        return self._admission.evaluate(me, self.policy, self._room.participants())

    async def request_mic(self) -> Optional[AdmissionDecision]:
        async with self._lock:
            me = self._room.local_participant()
            if me is None:
                await self._notify("error", "not_connected", "尚未连接到房间")
                return None
            try:
                self._state_machine.authorize_actor(MicTransition.REQUEST, me, me)
            except PolicyRejection as rejection:
                await self._reject(rejection)
                return None

            decision = self._admission.evaluate(me, self.policy, self._room.participants())
            if decision.allow and self._request_pending:
                decision = dataclasses.replace(decision, allow=False, reason=AdmissionReason.ALREADY_REQUESTING)
            if not decision.allow:
                await self._reject(decision.to_rejection())
                return decision

            logger.info(
                "Mic request for %s passed admission (%d/%d)",
                me.identity,
                decision.occupancy,
                decision.max_slots,
            )
            delta = self._state_machine.self_attributes(MicTransition.REQUEST, me)
            if await self._write(delta, failure_message="申请上麦失败，请重试"):
                self._request_pending = True
                await self._notify("info", "request_sent", "已提交上麦申请，请等待主持人批准")
            return decision

    async def leave_mic(self) -> bool:
        async with self._lock:
            me = self._room.local_participant()
            if me is None:
                await self._notify("error", "not_connected", "尚未连接到房间")
                return False
            try:
                self._state_machine.authorize(MicTransition.LEAVE, me, me)
            except PolicyRejection as rejection:
                await self._reject(rejection)
                return False
            delta = self._state_machine.self_attributes(MicTransition.LEAVE, me)
            if not await self._write(delta, failure_message="下麦失败，请重试"):
                return False
            await self._notify("info", "left_mic", "您已下麦")
            return True

    async def approve(self, target_identity: str) -> bool:
        return await self._admin_action(MicTransition.APPROVE, target_identity)

    async def kick(self, target_identity: str) -> bool:
        return await self._admin_action(MicTransition.KICK, target_identity)

    async def mute(self, target_identity: str) -> bool:
        return await self._admin_action(MicTransition.MUTE, target_identity)

    async def unmute(self, target_identity: str) -> bool:
        return await self._admin_action(MicTransition.UNMUTE, target_identity)

    async def _admin_action(self, transition: MicTransition, target_identity: str) -> bool:
        async with self._lock:
            me = self._room.local_participant()
            target = self._room.get_participant(target_identity)
            if me is None:
                await self._notify("error", "not_connected", "尚未连接到房间")
                return False
            if target is None:
                await self._notify("warning", "target_absent", "该用户已离开房间")
                return False
            try:
                self._state_machine.authorize(transition, me, target)
            except PolicyRejection as rejection:
                await self._reject(rejection)
                return False

            if transition is MicTransition.APPROVE:
                decision = self._admission.can_approve(target, self.policy, self._room.participants())
                if not decision.allow:
                    await self._reject(decision.to_rejection())
                    return False

            if self._gateway is None:
                await self._notify("error", "admin_unavailable", "管理接口不可用")
                return False
            call = self._admin_call(transition)
            try:
                await call(self._room.name, target.identity, me.identity)
            except AdminCallFailure as exc:
                logger.warning("%s of %s failed: %s", transition.value, target.identity, exc.reason)
                await self._notify("error", "admin_failed", f"操作失败：{exc.reason}")
                return False
            logger.info("%s applied to %s by %s", transition.value, target.identity, me.identity)
            await self._notify("success", f"{transition.value}_ok", f"已{_ACTION_LABELS[transition]}：{target.display_name}")
            return True

    def _admin_call(self, transition: MicTransition) -> AdminCall:
        assert self._gateway is not None
        calls: Dict[MicTransition, AdminCall] = {
            MicTransition.APPROVE: self._gateway.approve_mic,
            MicTransition.KICK: self._gateway.kick_from_mic,
            MicTransition.MUTE: self._gateway.mute_mic,
            MicTransition.UNMUTE: self._gateway.unmute_mic,
        }
        return calls[transition]

    async def _write(self, delta: Dict[str, str], *, failure_message: str) -> bool:
        try:
            await self._room.set_attributes(delta)
        except TransportError as exc:
            logger.warning("Attribute write failed: %s", exc)
            await self._notify("error", "transport_error", failure_message)
            return False
        return True

    async def _reject(self, rejection: PolicyRejection) -> None:
        logger.info("Mic action rejected locally (%s)", rejection.reason)
        await self._notify(_level_for(rejection.reason), rejection.reason, rejection.message)

    async def _notify(self, level: str, code: str, message: str) -> None:
        await deliver_notice(self._on_notice, Notice(level, code, message))

    def roster(self) -> Dict[str, object]:
        """Mic roster view: slot holders, pending requests and the local state."""
        participants = self._room.participants()
        policy = self.policy
        on_mic: List[Dict[str, object]] = []
        requesting: List[ParticipantSnapshot] = []
        for participant in participants:
            status = participant.mic_status
            if status in (MicStatus.ON_MIC, MicStatus.MUTED):
                on_mic.append(
                    {
                        "identity": participant.identity,
                        "display_name": participant.display_name,
                        "mic_status": status.value,
                        "can_speak": can_use_mic(participant) and participant.permissions.can_publish,
                    }
                )
            elif status is MicStatus.REQUESTING:
                requesting.append(participant)
        requesting.sort(key=lambda p: int(p.attributes.get(ATTR_REQUEST_TIME) or 0))
        me = self._room.local_participant()
        decision = self.evaluate_request()
        return {
            "room": self._room.name,
            "max_mic_slots": policy.max_mic_slots,
            "occupancy": count_occupancy(participants),
            "host_present": host_present(participants),
            "on_mic": on_mic,
            "requesting": [
                {"identity": p.identity, "display_name": p.display_name, "request_time": p.attributes.get(ATTR_REQUEST_TIME)}
                for p in requesting
            ],
            "local": None
            if me is None
            else {
                "identity": me.identity,
                "role": int(me.role),
                "mic_status": me.mic_status.value,
                "display_status": me.display_status.value,
                "can_publish": me.permissions.can_publish,
                "can_use_mic": can_use_mic(me),
                "request": decision.to_dict() if decision else None,
            },
        }


_ACTION_LABELS = {
    MicTransition.APPROVE: "批准上麦",
    MicTransition.KICK: "踢下麦",
    MicTransition.MUTE: "静音",
    MicTransition.UNMUTE: "取消静音",
}
