import asyncio

import pytest

from micseat.client.control_client import ControlClient
from micseat.server.control_server import ControlServer
from micseat.server.session_manager import SessionManager
from micseat.shared.models import ParticipantRole
from micseat.shared.protocol import ClientIdentity, ControlAction


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


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def wait_for_action(queue: asyncio.Queue, action: ControlAction, timeout: float = 2.0) -> dict:
    async def _next() -> dict:
        while True:
            received, payload = await queue.get()
            if received == action:
                return payload

    return await asyncio.wait_for(_next(), timeout)


@pytest.mark.anyio
async def test_force_disconnect_bans_participant() -> None:
    manager = SessionManager()
    writer = DummyWriter()
    await manager.register("alice", writer)

    control_server = ControlServer("127.0.0.1", 0, manager)
    removed = await control_server.force_disconnect("alice")

    assert removed is True
    assert writer.closed
    assert await manager.is_banned("alice")
    assert await manager.list_participants() == []
    assert not await control_server.force_disconnect("alice")


@pytest.mark.anyio
async def test_handshake_and_attribute_replication_over_tcp() -> None:
    manager = SessionManager("main")
    server = ControlServer("127.0.0.1", 0, manager)
    await server.start()
    host_inbox: asyncio.Queue = asyncio.Queue()
    member_inbox: asyncio.Queue = asyncio.Queue()
    host = ControlClient(
        "127.0.0.1",
        server.port,
        ClientIdentity("host", "Host", role=int(ParticipantRole.HOST), room_name="main"),
        lambda action, payload: host_inbox.put_nowait((action, payload)),
    )
    member = ControlClient(
        "127.0.0.1",
        server.port,
        ClientIdentity("alice", "Alice", room_name="main"),
        lambda action, payload: member_inbox.put_nowait((action, payload)),
    )
    try:
        welcome = await host.connect()
        assert welcome["room_name"] == "main"
        assert [entry["identity"] for entry in welcome["participants"]] == ["host"]

        welcome = await member.connect()
        assert {entry["identity"] for entry in welcome["participants"]} == {"host", "alice"}
        joined = await wait_for_action(host_inbox, ControlAction.PARTICIPANT_JOINED)
        assert joined["participant"]["identity"] == "alice"

        await member.set_attributes({"mic_status": "requesting", "display_status": "visible"})
        changed = await wait_for_action(host_inbox, ControlAction.ATTRIBUTES_CHANGED)
        assert changed["identity"] == "alice"
        assert changed["attributes"]["mic_status"] == "requesting"

        await member.set_attributes({"role": "3"})
        error = await wait_for_action(member_inbox, ControlAction.ERROR)
        assert error["code"] == "forbidden"
    finally:
        await member.close()
        await host.close()
        await server.stop()


@pytest.mark.anyio
async def test_handshake_rejects_wrong_pre_shared_key() -> None:
    manager = SessionManager("main")
    server = ControlServer("127.0.0.1", 0, manager, pre_shared_key="letmein")
    await server.start()
    reasons: list = []
    client = ControlClient(
        "127.0.0.1",
        server.port,
        ClientIdentity("alice", "Alice", pre_shared_key="wrong"),
        lambda action, payload: None,
        on_disconnect=reasons.append,
    )
    try:
        with pytest.raises(ConnectionError):
            await client.connect()
        for _ in range(50):
            if reasons:
                break
            await asyncio.sleep(0.01)
        assert reasons == ["auth_failed"]
        assert await manager.list_participants() == []
    finally:
        await client.close()
        await server.stop()
