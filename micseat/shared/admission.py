"""Room-wide mic capacity gate.

Occupancy is recomputed from the live participant set on every evaluation and
never reserved. Two members near the boundary can both pass the local check
and be approved in quick succession; that one-slot overshoot is tolerated and
converges once someone leaves or is kicked.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .errors import PolicyRejection
from .models import MicStatus, ParticipantSnapshot, count_occupancy, host_present
from .protocol import DEFAULT_MAX_MIC_SLOTS
from .state_machine import REJECTION_MESSAGES


class AdmissionReason(str, Enum):
    OK = "ok"
    DISABLED = "disabled"
    NO_HOST = "no_host"
    CAPACITY = "capacity"
    ALREADY_REQUESTING = "already_requesting"
    ALREADY_ON_MIC = "already_on_mic"


@dataclass(frozen=True, slots=True)
class RoomMicPolicy:
    max_mic_slots: int = DEFAULT_MAX_MIC_SLOTS

    def __post_init__(self) -> None:
        if self.max_mic_slots <= 0:
            raise ValueError("max_mic_slots must be positive")


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    allow: bool
    reason: AdmissionReason
    occupancy: int
    max_slots: int

    @property
    def message(self) -> str:
        if self.reason is AdmissionReason.OK:
            return f"申请上麦 ({self.occupancy}/{self.max_slots})"
        if self.reason is AdmissionReason.CAPACITY:
            return f"麦位已满 ({self.occupancy}/{self.max_slots})，请等待有人退出后再申请"
        if self.reason is AdmissionReason.DISABLED:
            return "您的账号已被管理员禁用，无法申请上麦"
        if self.reason is AdmissionReason.NO_HOST:
            return "请等待主持人进入房间后再申请上麦"
        return REJECTION_MESSAGES[self.reason.value]

    def to_rejection(self) -> PolicyRejection:
        return PolicyRejection(self.reason.value, self.message)

    def to_dict(self) -> dict[str, object]:
        return {
            "allow": self.allow,
            "reason": self.reason.value,
            "occupancy": self.occupancy,
            "max_slots": self.max_slots,
            "message": self.message,
        }


class AdmissionController:
    """Evaluates the ordered admission rules; the first failing rule wins."""

    def can_admit(
        self,
        participant: ParticipantSnapshot,
        policy: RoomMicPolicy,
        current_occupancy: int,
        *,
        host_present: bool,
    ) -> AdmissionDecision:
        def decide(reason: AdmissionReason) -> AdmissionDecision:
            return AdmissionDecision(
                allow=reason is AdmissionReason.OK,
                reason=reason,
                occupancy=current_occupancy,
                max_slots=policy.max_mic_slots,
            )

        if participant.is_disabled:
            return decide(AdmissionReason.DISABLED)
        if not host_present:
            return decide(AdmissionReason.NO_HOST)
        if current_occupancy >= policy.max_mic_slots:
            return decide(AdmissionReason.CAPACITY)
        status = participant.mic_status
        if status is MicStatus.REQUESTING:
            return decide(AdmissionReason.ALREADY_REQUESTING)
        if status is not MicStatus.OFF_MIC:
            return decide(AdmissionReason.ALREADY_ON_MIC)
        return decide(AdmissionReason.OK)

    def evaluate(
        self,
        participant: ParticipantSnapshot,
        policy: RoomMicPolicy,
        participants: Iterable[ParticipantSnapshot],
    ) -> AdmissionDecision:
        """Evaluate a self-service request against the live participant set."""
        members = list(participants)
        return self.can_admit(
            participant,
            policy,
            count_occupancy(members),
            host_present=host_present(members),
        )

    def can_approve(
        self,
        target: ParticipantSnapshot,
        policy: RoomMicPolicy,
        participants: Iterable[ParticipantSnapshot],
    ) -> AdmissionDecision:
        """Capacity check for a host approval; the target's own slot is not counted."""
        occupancy = count_occupancy(participants, exclude=target.identity)
        if target.is_disabled:
            reason = AdmissionReason.DISABLED
        elif occupancy >= policy.max_mic_slots:
            reason = AdmissionReason.CAPACITY
        else:
            reason = AdmissionReason.OK
        return AdmissionDecision(
            allow=reason is AdmissionReason.OK,
            reason=reason,
            occupancy=occupancy,
            max_slots=policy.max_mic_slots,
        )
