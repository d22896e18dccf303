import asyncio

import pytest

from micseat.server.session_manager import SessionManager
from micseat.shared.models import ParticipantRole
from micseat.shared.protocol import (
    AdminAction,
    AdminControlRequest,
    ControlAction,
    decode_control_stream,
)


class DummyWriter:
    def __init__(self) -> None:
        self.closed = False
        self.buffer = bytearray()

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        await asyncio.sleep(0)

    def messages(self) -> list[dict]:
        decoded, _ = decode_control_stream(bytes(self.buffer))
        return decoded


def request(action: AdminAction, target: str, operator: str = "host", room: str = "main") -> AdminControlRequest:
    return AdminControlRequest(room_name=room, target_identity=target, operator_identity=operator, action=action)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def seeded_manager(max_mic_slots: int = 5) -> tuple[SessionManager, dict[str, DummyWriter]]:
    manager = SessionManager("main", max_mic_slots=max_mic_slots)
    writers = {name: DummyWriter() for name in ("host", "alice", "bob")}
    await manager.register("host", writers["host"], role=ParticipantRole.HOST)
    await manager.register("alice", writers["alice"])
    await manager.register("bob", writers["bob"])
    return manager, writers


@pytest.mark.anyio
async def test_register_assigns_role_and_grant() -> None:
    manager, _ = await seeded_manager()
    host = await manager.get_participant("host")
    alice = await manager.get_participant("alice")
    assert host.role is ParticipantRole.HOST and host.permissions.can_publish
    assert alice.role is ParticipantRole.MEMBER and not alice.permissions.can_publish
    assert alice.mic_status.value == "off_mic"


@pytest.mark.anyio
async def test_duplicate_and_banned_identities_rejected() -> None:
    manager, _ = await seeded_manager()
    with pytest.raises(ValueError):
        await manager.register("alice", DummyWriter())
    await manager.ban_user("mallory")
    with pytest.raises(PermissionError):
        await manager.register("mallory", DummyWriter())


@pytest.mark.anyio
async def test_self_request_is_replicated() -> None:
    manager, writers = await seeded_manager()
    await manager.set_attributes("alice", {"mic_status": "requesting", "display_status": "visible"})
    last = writers["bob"].messages()[-1]
    assert last["action"] == ControlAction.ATTRIBUTES_CHANGED.value
    assert last["data"]["identity"] == "alice"
    assert last["data"]["attributes"]["mic_status"] == "requesting"


@pytest.mark.anyio
async def test_display_status_follows_self_written_mic_status() -> None:
    manager, writers = await seeded_manager()
    await manager.set_attributes("alice", {"mic_status": "requesting", "display_status": "hidden"})
    alice = await manager.get_participant("alice")
    assert alice.display_status.value == "visible"
    assert writers["bob"].messages()[-1]["data"]["attributes"]["display_status"] == "visible"

    await manager.set_attributes("alice", {"mic_status": "off_mic", "display_status": "visible"})
    alice = await manager.get_participant("alice")
    assert alice.display_status.value == "hidden"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "delta",
    [
        {"role": "3"},
        {"user_status": ""},
        {"operator_id": "alice"},
        {"mic_status": "on_mic"},
        {"mic_status": "muted"},
    ],
)
async def test_self_writes_cannot_escalate(delta: dict) -> None:
    manager, _ = await seeded_manager()
    with pytest.raises(PermissionError):
        await manager.set_attributes("alice", delta)
    alice = await manager.get_participant("alice")
    assert alice.role is ParticipantRole.MEMBER
    assert alice.mic_status.value == "off_mic"


@pytest.mark.anyio
async def test_approve_grants_publish_atomically() -> None:
    manager, writers = await seeded_manager()
    await manager.set_attributes("alice", {"mic_status": "requesting"})
    result = await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))
    assert result.success
    alice = await manager.get_participant("alice")
    assert alice.mic_status.value == "on_mic"
    assert alice.attributes["operator_id"] == "host"
    assert alice.permissions.can_publish
    actions = [message["action"] for message in writers["bob"].messages()[-2:]]
    assert actions == [ControlAction.ATTRIBUTES_CHANGED.value, ControlAction.PERMISSIONS_CHANGED.value]


@pytest.mark.anyio
async def test_approve_twice_is_idempotent() -> None:
    manager, _ = await seeded_manager()
    await manager.set_attributes("alice", {"mic_status": "requesting"})
    assert (await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))).success
    first = await manager.get_participant("alice")
    assert (await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))).success
    second = await manager.get_participant("alice")
    assert second.attributes == first.attributes
    assert second.permissions == first.permissions
    assert (await manager.snapshot())["occupancy"] == 1


@pytest.mark.anyio
async def test_kick_preserves_role_and_revokes_publish() -> None:
    manager, _ = await seeded_manager()
    await manager.set_attributes("alice", {"mic_status": "requesting"})
    await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))
    result = await manager.apply_admin_action(request(AdminAction.KICK_FROM_MIC, "alice"))
    assert result.success
    alice = await manager.get_participant("alice")
    assert alice.mic_status.value == "off_mic"
    assert alice.display_status.value == "hidden"
    assert alice.attributes["last_action"] == "kicked"
    assert "kick_time" in alice.attributes
    assert alice.attributes["role"] == "1"
    assert not alice.permissions.can_publish


@pytest.mark.anyio
async def test_mute_frees_capacity_and_unmute_restores() -> None:
    manager, _ = await seeded_manager(max_mic_slots=1)
    await manager.set_attributes("alice", {"mic_status": "requesting"})
    await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))
    assert (await manager.apply_admin_action(request(AdminAction.MUTE_MIC, "alice"))).success
    alice = await manager.get_participant("alice")
    assert alice.mic_status.value == "muted" and not alice.permissions.can_publish

    assert (await manager.snapshot())["occupancy"] == 0

    await manager.set_attributes("bob", {"mic_status": "requesting"})
    assert (await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "bob"))).success
    await manager.set_attributes("bob", {"mic_status": "off_mic"})

    assert (await manager.apply_admin_action(request(AdminAction.UNMUTE_MIC, "alice"))).success
    alice = await manager.get_participant("alice")
    assert alice.mic_status.value == "on_mic" and alice.permissions.can_publish
    assert (await manager.snapshot())["occupancy"] == 1


@pytest.mark.anyio
async def test_admin_action_rejections() -> None:
    manager, _ = await seeded_manager()
    await manager.set_attributes("bob", {"mic_status": "requesting"})

    by_member = await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "bob", operator="alice"))
    assert by_member.code == "not_privileged"

    wrong_room = await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "bob", room="other"))
    assert wrong_room.code == "room_not_found"

    missing = await manager.apply_admin_action(request(AdminAction.KICK_FROM_MIC, "ghost"))
    assert missing.code == "target_not_found"

    on_host = await manager.apply_admin_action(request(AdminAction.KICK_FROM_MIC, "host", operator="host"))
    assert on_host.code == "target_privileged"


@pytest.mark.anyio
async def test_self_repair_only_for_declared_on_mic() -> None:
    manager, _ = await seeded_manager()
    refused = await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice", operator="alice"))
    assert not refused.success and refused.code == "not_on_mic"

    await manager.set_attributes("alice", {"mic_status": "requesting"})
    await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))
    repaired = await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice", operator="alice"))
    assert repaired.success


@pytest.mark.anyio
async def test_leaving_a_slot_revokes_publish() -> None:
    manager, writers = await seeded_manager()
    await manager.set_attributes("alice", {"mic_status": "requesting"})
    await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))
    await manager.set_attributes("alice", {"mic_status": "off_mic", "last_action": "left"})
    alice = await manager.get_participant("alice")
    assert not alice.permissions.can_publish
    last = writers["bob"].messages()[-1]
    assert last["action"] == ControlAction.PERMISSIONS_CHANGED.value
    assert last["data"]["permissions"]["can_publish"] is False


@pytest.mark.anyio
async def test_disabled_participant_cannot_be_approved() -> None:
    manager, _ = await seeded_manager()
    await manager.set_attributes("alice", {"mic_status": "requesting"})
    assert await manager.set_user_disabled("alice", disabled=True)
    result = await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))
    assert result.code == "disabled"
    assert await manager.set_user_disabled("alice", disabled=False)
    assert (await manager.apply_admin_action(request(AdminAction.APPROVE_MIC, "alice"))).success


@pytest.mark.anyio
async def test_max_mic_slots_updates_metadata_and_room_info() -> None:
    manager, writers = await seeded_manager()
    metadata = await manager.set_max_mic_slots(2)
    assert metadata == '{"maxMicSlots":2}'
    assert (await manager.room_info()).max_mic_slots == 2
    last = writers["alice"].messages()[-1]
    assert last["action"] == ControlAction.ROOM_METADATA_CHANGED.value
    with pytest.raises(ValueError):
        await manager.set_max_mic_slots(0)


@pytest.mark.anyio
async def test_disconnect_all_notifies_participants() -> None:
    manager, writers = await seeded_manager()
    await manager.disconnect_all(reason="maintenance")
    for writer in writers.values():
        assert writer.closed
        assert writer.messages()[-1]["data"]["reason"] == "maintenance"
    assert await manager.list_participants() == []
    events = await manager.get_recent_events()
    assert events[-1]["type"] == "server_shutdown"
