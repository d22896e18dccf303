from unittest.mock import AsyncMock

import pytest

from micseat.client.mic_controller import MicController, can_use_mic
from micseat.client.room import RoomHandle
from micseat.shared.admission import RoomMicPolicy
from micseat.shared.errors import AdminCallFailure
from micseat.shared.models import (
    MicStatus,
    ParticipantPermissions,
    ParticipantRole,
    ParticipantSnapshot,
    default_attributes,
)


def make_entry(identity: str, role: ParticipantRole = ParticipantRole.MEMBER, status: MicStatus = MicStatus.OFF_MIC, *, can_publish: bool = False) -> dict:
    attributes = default_attributes(role, identity)
    attributes["mic_status"] = status.value
    return ParticipantSnapshot(
        identity=identity,
        display_name=identity,
        attributes=attributes,
        permissions=ParticipantPermissions(can_publish=can_publish or role.is_privileged),
    ).to_dict()


class Harness:
    def __init__(self, local: str, entries: list[dict], *, slots: int = 5) -> None:
        self.writes: list[dict] = []
        self.notices = []
        self.room = RoomHandle("main", local, attribute_writer=self._write)
        self.room.load_snapshot(entries, None)
        self.gateway = AsyncMock()
        self.policy = RoomMicPolicy(slots)
        self.controller = MicController(
            self.room,
            self.gateway,
            lambda: self.policy,
            on_notice=self.notices.append,
        )

    async def _write(self, delta: dict) -> None:
        self.writes.append(delta)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_request_writes_requesting() -> None:
    harness = Harness("alice", [make_entry("host", ParticipantRole.HOST), make_entry("alice")])
    decision = await harness.controller.request_mic()
    assert decision is not None and decision.allow
    assert len(harness.writes) == 1
    assert harness.writes[0]["mic_status"] == "requesting"
    assert harness.writes[0]["display_status"] == "visible"
    assert harness.notices[-1].code == "request_sent"
    # nothing changes locally until the room echoes the write
    assert harness.room.local_participant().mic_status is MicStatus.OFF_MIC


@pytest.mark.anyio
async def test_request_rejected_when_full_makes_no_write() -> None:
    harness = Harness(
        "carol",
        [
            make_entry("host", ParticipantRole.HOST),
            make_entry("alice", status=MicStatus.ON_MIC, can_publish=True),
            make_entry("bob", status=MicStatus.ON_MIC, can_publish=True),
            make_entry("carol"),
        ],
        slots=2,
    )
    decision = await harness.controller.request_mic()
    assert decision is not None and not decision.allow
    assert harness.writes == []
    assert harness.notices[-1].level == "warning"
    assert "麦位已满 (2/2)" in harness.notices[-1].message


@pytest.mark.anyio
async def test_duplicate_request_is_a_no_op() -> None:
    harness = Harness("alice", [make_entry("host", ParticipantRole.HOST), make_entry("alice", status=MicStatus.REQUESTING)])
    decision = await harness.controller.request_mic()
    assert decision is not None and decision.reason.value == "already_requesting"
    assert harness.writes == []
    harness.gateway.approve_mic.assert_not_awaited()


@pytest.mark.anyio
async def test_second_request_before_echo_keeps_queue_position() -> None:
    harness = Harness("alice", [make_entry("host", ParticipantRole.HOST), make_entry("alice")])
    assert (await harness.controller.request_mic()).allow
    again = await harness.controller.request_mic()
    assert again is not None and again.reason.value == "already_requesting"
    assert len(harness.writes) == 1

    # the echo clears the pending flag; leaving then requesting again writes anew
    await harness.room.apply_attributes("alice", {**harness.room.get_attributes("alice"), **harness.writes[0]})
    await harness.room.apply_attributes("alice", {**harness.room.get_attributes("alice"), "mic_status": "off_mic"})
    assert (await harness.controller.request_mic()).allow
    assert len(harness.writes) == 2


@pytest.mark.anyio
async def test_guest_rejected_before_admission() -> None:
    harness = Harness("guest", [make_entry("host", ParticipantRole.HOST), make_entry("guest", ParticipantRole.GUEST)])
    assert await harness.controller.request_mic() is None
    assert harness.writes == []
    assert harness.notices[-1].code == "guest"


@pytest.mark.anyio
async def test_request_reports_transport_failure() -> None:
    harness = Harness("alice", [make_entry("host", ParticipantRole.HOST), make_entry("alice")])
    harness.room.set_attribute_writer(None)
    await harness.controller.request_mic()
    assert harness.notices[-1].code == "transport_error"
    assert harness.notices[-1].level == "error"


@pytest.mark.anyio
async def test_leave_from_on_mic() -> None:
    harness = Harness("alice", [make_entry("host", ParticipantRole.HOST), make_entry("alice", status=MicStatus.ON_MIC, can_publish=True)])
    assert await harness.controller.leave_mic()
    assert harness.writes[-1]["mic_status"] == "off_mic"


@pytest.mark.anyio
async def test_host_approve_calls_gateway() -> None:
    harness = Harness("host", [make_entry("host", ParticipantRole.HOST), make_entry("bob", status=MicStatus.REQUESTING)])
    assert await harness.controller.approve("bob")
    harness.gateway.approve_mic.assert_awaited_once_with("main", "bob", "host")
    assert harness.notices[-1].level == "success"


@pytest.mark.anyio
async def test_member_cannot_kick() -> None:
    harness = Harness("alice", [make_entry("host", ParticipantRole.HOST), make_entry("alice"), make_entry("bob", status=MicStatus.ON_MIC)])
    assert not await harness.controller.kick("bob")
    harness.gateway.kick_from_mic.assert_not_awaited()
    assert harness.notices[-1].code == "not_privileged"


@pytest.mark.anyio
async def test_approve_blocked_at_capacity() -> None:
    harness = Harness(
        "host",
        [
            make_entry("host", ParticipantRole.HOST),
            make_entry("alice", status=MicStatus.ON_MIC, can_publish=True),
            make_entry("bob", status=MicStatus.REQUESTING),
        ],
        slots=1,
    )
    assert not await harness.controller.approve("bob")
    harness.gateway.approve_mic.assert_not_awaited()


@pytest.mark.anyio
async def test_admin_failure_surfaces_notice() -> None:
    harness = Harness("host", [make_entry("host", ParticipantRole.HOST), make_entry("bob", status=MicStatus.ON_MIC, can_publish=True)])
    harness.gateway.mute_mic.side_effect = AdminCallFailure("timeout")
    assert not await harness.controller.mute("bob")
    assert harness.notices[-1].code == "admin_failed"
    assert "timeout" in harness.notices[-1].message


@pytest.mark.anyio
async def test_action_on_absent_target() -> None:
    harness = Harness("host", [make_entry("host", ParticipantRole.HOST)])
    assert not await harness.controller.kick("ghost")
    assert harness.notices[-1].code == "target_absent"


def test_roster_orders_requests_by_time() -> None:
    late = make_entry("late", status=MicStatus.REQUESTING)
    late["attributes"]["request_time"] = "2000"
    early = make_entry("early", status=MicStatus.REQUESTING)
    early["attributes"]["request_time"] = "1000"
    harness = Harness(
        "host",
        [make_entry("host", ParticipantRole.HOST), late, early, make_entry("speaker", status=MicStatus.MUTED)],
        slots=3,
    )
    roster = harness.controller.roster()
    assert [entry["identity"] for entry in roster["requesting"]] == ["early", "late"]
    assert roster["occupancy"] == 0
    assert roster["on_mic"][0]["mic_status"] == "muted"
    assert roster["local"]["can_use_mic"] is True


def test_can_use_mic_rules() -> None:
    def build(entry: dict) -> ParticipantSnapshot:
        return ParticipantSnapshot.from_dict(entry)

    assert can_use_mic(build(make_entry("host", ParticipantRole.HOST)))
    assert not can_use_mic(build(make_entry("guest", ParticipantRole.GUEST, can_publish=True)))
    assert not can_use_mic(build(make_entry("muted", status=MicStatus.MUTED, can_publish=True)))
    assert can_use_mic(build(make_entry("speaker", status=MicStatus.ON_MIC)))
    assert not can_use_mic(build(make_entry("listener")))
    assert can_use_mic(build(make_entry("granted", can_publish=True)))
