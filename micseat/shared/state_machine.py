"""Mic state machine: legal transitions, who may trigger them, and their writes.

The state lives in the ``mic_status`` attribute. Self-service transitions
(request, leave) are written by the participant; administrative transitions
(approve, kick, mute, unmute) are applied by the admin backend together with
the matching publish grant. None of the writes produced here touch ``role``.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import PolicyRejection
from .models import (
    ATTR_DISPLAY_STATUS,
    ATTR_KICK_TIME,
    ATTR_LAST_ACTION,
    ATTR_MIC_STATUS,
    ATTR_OPERATOR_ID,
    ATTR_REQUEST_TIME,
    ATTR_USER_NAME,
    LastAction,
    MicStatus,
    ParticipantRole,
    ParticipantSnapshot,
    display_status_for,
    now_ms,
)


class MicTransition(str, Enum):
    REQUEST = "request"
    APPROVE = "approve"
    LEAVE = "leave"
    KICK = "kick"
    MUTE = "mute"
    UNMUTE = "unmute"


class Actor(str, Enum):
    SELF = "self"
    ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class TransitionRule:
    sources: FrozenSet[MicStatus]
    target: MicStatus
    actor: Actor
    last_action: LastAction
    grants_publish: Optional[bool] = None


_ALL_STATUSES = frozenset(MicStatus)

TRANSITIONS: Dict[MicTransition, TransitionRule] = {
    MicTransition.REQUEST: TransitionRule(
        frozenset({MicStatus.OFF_MIC}), MicStatus.REQUESTING, Actor.SELF, LastAction.REQUEST
    ),
    # on_mic -> on_mic keeps approval idempotent and carries the self-repair path
    MicTransition.APPROVE: TransitionRule(
        frozenset({MicStatus.REQUESTING, MicStatus.ON_MIC}), MicStatus.ON_MIC, Actor.ADMIN, LastAction.APPROVED, True
    ),
    MicTransition.LEAVE: TransitionRule(
        frozenset({MicStatus.REQUESTING, MicStatus.ON_MIC, MicStatus.MUTED}), MicStatus.OFF_MIC, Actor.SELF, LastAction.LEFT
    ),
    MicTransition.KICK: TransitionRule(
        _ALL_STATUSES, MicStatus.OFF_MIC, Actor.ADMIN, LastAction.KICKED, False
    ),
    MicTransition.MUTE: TransitionRule(
        frozenset({MicStatus.ON_MIC, MicStatus.MUTED}), MicStatus.MUTED, Actor.ADMIN, LastAction.MUTED, False
    ),
    MicTransition.UNMUTE: TransitionRule(
        frozenset({MicStatus.MUTED, MicStatus.ON_MIC}), MicStatus.ON_MIC, Actor.ADMIN, LastAction.UNMUTED, True
    ),
}

REJECTION_MESSAGES: Dict[str, str] = {
    "guest": "游客必须注册为会员才能使用上麦功能",
    "privileged": "主持人和管理员无需申请上麦",
    "not_privileged": "只有主持人或管理员可以执行该操作",
    "not_self": "只能修改自己的麦位状态",
    "target_privileged": "不能对主持人或管理员执行麦位操作",
    "already_requesting": "您已经在申请中，请等待主持人批准",
    "already_on_mic": "您已经在麦位上了",
    "not_requesting": "该用户当前没有上麦申请",
    "not_on_mic": "当前不在麦位上",
    "not_muted": "该用户当前未被静音",
}


def _reject(reason: str) -> PolicyRejection:
    return PolicyRejection(reason, REJECTION_MESSAGES.get(reason, reason))


class MicStateMachine:
    """Validates mic transitions and builds the attribute writes they imply."""

    def rule(self, transition: MicTransition) -> TransitionRule:
        return TRANSITIONS[transition]

    def authorize(
        self,
        transition: MicTransition,
        actor: ParticipantSnapshot,
        target: ParticipantSnapshot,
    ) -> TransitionRule:
        """Raise ``PolicyRejection`` unless ``actor`` may apply ``transition`` to ``target``."""
        rule = self.authorize_actor(transition, actor, target)
        status = target.mic_status
        if status not in rule.sources:
            raise _reject(self._source_reason(transition, status))
        return rule

    def authorize_actor(
        self,
        transition: MicTransition,
        actor: ParticipantSnapshot,
        target: ParticipantSnapshot,
    ) -> TransitionRule:
        """Role and ownership gate only; the target's current status is not checked."""
        rule = TRANSITIONS[transition]
        if rule.actor is Actor.SELF:
            if actor.identity != target.identity:
                raise _reject("not_self")
            if transition is MicTransition.REQUEST:
                if target.role is ParticipantRole.GUEST:
                    raise _reject("guest")
                if target.role.is_privileged:
                    raise _reject("privileged")
        else:
            if not actor.is_privileged:
                raise _reject("not_privileged")
            if target.role.is_privileged:
                raise _reject("target_privileged")
            if transition is MicTransition.APPROVE and target.role is ParticipantRole.GUEST:
                raise _reject("guest")
        return rule

    def authorize_self_repair(self, actor: ParticipantSnapshot) -> TransitionRule:
        """A participant may re-approve itself only while it already declares ``on_mic``."""
        if actor.role is ParticipantRole.GUEST:
            raise _reject("guest")
        if actor.mic_status is not MicStatus.ON_MIC:
            raise _reject("not_on_mic")
        return TRANSITIONS[MicTransition.APPROVE]

    @staticmethod
    def _source_reason(transition: MicTransition, status: MicStatus) -> str:
        if transition is MicTransition.REQUEST:
            if status is MicStatus.REQUESTING:
                return "already_requesting"
            return "already_on_mic"
        if transition is MicTransition.APPROVE:
            return "not_requesting"
        if transition is MicTransition.UNMUTE:
            return "not_muted"
        return "not_on_mic"

    def self_attributes(
        self,
        transition: MicTransition,
        participant: ParticipantSnapshot,
        *,
        timestamp: Optional[str] = None,
    ) -> Dict[str, str]:
        """Attribute delta a participant writes for a self-service transition."""
        rule = TRANSITIONS[transition]
        if rule.actor is not Actor.SELF:
            raise ValueError(f"{transition.value} is not a self-service transition")
        delta = {
            ATTR_MIC_STATUS: rule.target.value,
            ATTR_DISPLAY_STATUS: display_status_for(rule.target).value,
            ATTR_LAST_ACTION: rule.last_action.value,
        }
        if transition is MicTransition.REQUEST:
            delta[ATTR_REQUEST_TIME] = timestamp or now_ms()
            delta[ATTR_USER_NAME] = participant.display_name or participant.identity
        return delta

    def admin_attributes(
        self,
        transition: MicTransition,
        operator_identity: str,
        *,
        timestamp: Optional[str] = None,
    ) -> Dict[str, str]:
        """Attribute delta the admin backend applies for an administrative transition."""
        rule = TRANSITIONS[transition]
        if rule.actor is not Actor.ADMIN:
            raise ValueError(f"{transition.value} is not an administrative transition")
        delta = {
            ATTR_MIC_STATUS: rule.target.value,
            ATTR_DISPLAY_STATUS: display_status_for(rule.target).value,
            ATTR_LAST_ACTION: rule.last_action.value,
            ATTR_OPERATOR_ID: operator_identity,
        }
        if transition is MicTransition.KICK:
            delta[ATTR_KICK_TIME] = timestamp or now_ms()
        return delta
