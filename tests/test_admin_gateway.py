import asyncio
import json

import httpx
import pytest

from micseat.client.admin_gateway import AdminActionGateway
from micseat.server.admin_api import AdminApi
from micseat.server.session_manager import SessionManager
from micseat.shared.errors import AdminCallFailure
from micseat.shared.models import ParticipantRole


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


def mock_gateway(handler, **kwargs) -> AdminActionGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://admin.test")
    return AdminActionGateway("http://admin.test", client=client, **kwargs)


@pytest.mark.anyio
async def test_approve_posts_expected_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    gateway = mock_gateway(handler, bearer_token="secret")
    result = await gateway.approve_mic("main", "bob", "host")
    assert result.success
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/admin-control-participants"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {
        "room_name": "main",
        "target_identity": "bob",
        "operator_identity": "host",
        "action": "approve_mic",
    }


@pytest.mark.anyio
async def test_success_false_raises_with_code() -> None:
    gateway = mock_gateway(lambda request: httpx.Response(200, json={"success": False, "error": "麦位已满", "code": "capacity"}))
    with pytest.raises(AdminCallFailure) as excinfo:
        await gateway.kick_from_mic("main", "bob", "host")
    assert excinfo.value.reason == "麦位已满"
    assert excinfo.value.code == "capacity"


@pytest.mark.anyio
async def test_http_error_status_maps_to_reason() -> None:
    gateway = mock_gateway(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(AdminCallFailure) as excinfo:
        await gateway.mute_mic("main", "bob", "host")
    assert excinfo.value.reason == "http_502"
    assert excinfo.value.status_code == 502


@pytest.mark.anyio
async def test_timeout_maps_to_timeout_reason() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    gateway = mock_gateway(handler)
    with pytest.raises(AdminCallFailure) as excinfo:
        await gateway.unmute_mic("main", "bob", "host")
    assert excinfo.value.reason == "timeout"


@pytest.mark.anyio
async def test_malformed_body_is_a_failure() -> None:
    gateway = mock_gateway(lambda request: httpx.Response(200, json=["not", "a", "dict"]))
    with pytest.raises(AdminCallFailure) as excinfo:
        await gateway.approve_mic("main", "bob", "host")
    assert excinfo.value.reason == "malformed response"


@pytest.mark.anyio
async def test_fetch_room_info_sends_room_id() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"max_mic_slots": 6, "room_name": "main", "room_state": 1}})

    gateway = mock_gateway(handler)
    info = await gateway.fetch_room_info("main")
    assert info.max_mic_slots == 6
    assert seen[0].url.params["room_id"] == "main"


@pytest.mark.anyio
async def test_malformed_room_info_is_a_failure() -> None:
    gateway = mock_gateway(lambda request: httpx.Response(200, json={"success": True, "data": {"max_mic_slots": "six"}}))
    with pytest.raises(AdminCallFailure) as excinfo:
        await gateway.fetch_room_info("main")
    assert excinfo.value.reason == "malformed room info"


async def _room_with_backend(*, max_mic_slots: int = 5, bearer_token=None):
    manager = SessionManager("main", max_mic_slots=max_mic_slots)
    await manager.register("host", DummyWriter(), role=ParticipantRole.HOST)
    await manager.register("alice", DummyWriter())
    await manager.register("bob", DummyWriter())
    api = AdminApi(manager, bearer_token=bearer_token)
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=api.app), base_url="http://admin.test")
    return manager, AdminActionGateway("http://admin.test", client=client, bearer_token=bearer_token)


@pytest.mark.anyio
async def test_gateway_against_admin_api_approve_and_kick() -> None:
    manager, gateway = await _room_with_backend()
    await manager.set_attributes("bob", {"mic_status": "requesting"})

    await gateway.approve_mic("main", "bob", "host")
    bob = await manager.get_participant("bob")
    assert bob.mic_status.value == "on_mic"
    assert bob.permissions.can_publish

    await gateway.kick_from_mic("main", "bob", "host")
    bob = await manager.get_participant("bob")
    assert bob.mic_status.value == "off_mic"
    assert not bob.permissions.can_publish
    assert bob.attributes["role"] == "1"


@pytest.mark.anyio
async def test_gateway_against_admin_api_capacity_rejection() -> None:
    manager, gateway = await _room_with_backend(max_mic_slots=1)
    await manager.set_attributes("alice", {"mic_status": "requesting"})
    await manager.set_attributes("bob", {"mic_status": "requesting"})
    await gateway.approve_mic("main", "alice", "host")

    with pytest.raises(AdminCallFailure) as excinfo:
        await gateway.approve_mic("main", "bob", "host")
    assert excinfo.value.code == "capacity"
    assert "(1/1)" in excinfo.value.reason


@pytest.mark.anyio
async def test_gateway_against_admin_api_room_info() -> None:
    manager, gateway = await _room_with_backend(max_mic_slots=3)
    info = await gateway.fetch_room_info("main")
    assert (info.room_name, info.max_mic_slots) == ("main", 3)

    with pytest.raises(AdminCallFailure) as excinfo:
        await gateway.fetch_room_info("other")
    assert excinfo.value.status_code == 404


@pytest.mark.anyio
async def test_admin_api_requires_bearer_token() -> None:
    manager, _ = await _room_with_backend(bearer_token="secret")
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=AdminApi(manager, bearer_token="secret").app), base_url="http://admin.test")
    anonymous = AdminActionGateway("http://admin.test", client=client)
    with pytest.raises(AdminCallFailure) as excinfo:
        await anonymous.approve_mic("main", "bob", "host")
    assert excinfo.value.status_code == 401
