from micseat.shared.protocol import (
    AdminAction,
    AdminControlRequest,
    AdminControlResult,
    ClientIdentity,
    ControlAction,
    RoomInfo,
    decode_control_stream,
    encode_control_message,
    parse_max_mic_slots,
)


def test_encode_decode_control_roundtrip() -> None:
    payload = {"identity": "alice", "attributes": {"user_name": "小明"}}
    encoded = encode_control_message(ControlAction.ATTRIBUTES_CHANGED, payload)
    messages, remaining = decode_control_stream(encoded)
    assert remaining == b""
    assert len(messages) == 1
    assert messages[0]["action"] == ControlAction.ATTRIBUTES_CHANGED.value
    assert messages[0]["data"] == payload


def test_decode_keeps_partial_frames_buffered() -> None:
    first = encode_control_message(ControlAction.HEARTBEAT, {"timestamp_ms": 1})
    second = encode_control_message(ControlAction.HEARTBEAT, {"timestamp_ms": 2})
    messages, remaining = decode_control_stream(first + second[:5])
    assert [m["data"]["timestamp_ms"] for m in messages] == [1]
    assert remaining == second[:5]

    messages, remaining = decode_control_stream(remaining + second[5:])
    assert [m["data"]["timestamp_ms"] for m in messages] == [2]
    assert remaining == b""


def test_client_identity_defaults_display_name_to_identity() -> None:
    identity = ClientIdentity.from_dict({"identity": "bob"})
    assert identity.display_name == "bob"
    assert identity.role == 1
    assert "pre_shared_key" not in identity.to_dict()


def test_admin_request_and_result_shapes() -> None:
    request = AdminControlRequest("main", "bob", "host", AdminAction.KICK_FROM_MIC)
    assert AdminControlRequest.from_dict(request.to_dict()) == request
    assert request.to_dict()["action"] == "kick_from_mic"

    result = AdminControlResult.from_dict({"success": False, "error": "麦位已满", "code": "capacity"})
    assert not result.success
    assert result.code == "capacity"
    assert AdminControlResult(True).to_dict() == {"success": True}


def test_room_info_falls_back_to_default_slots() -> None:
    info = RoomInfo.from_dict({"room_name": "main", "max_mic_slots": 0})
    assert info.max_mic_slots == 5


def test_parse_max_mic_slots() -> None:
    assert parse_max_mic_slots('{"maxMicSlots": 8}') == 8
    assert parse_max_mic_slots(None) is None
    assert parse_max_mic_slots("") is None
    assert parse_max_mic_slots("not json") is None
    assert parse_max_mic_slots("[1, 2]") is None
    assert parse_max_mic_slots('{"maxMicSlots": 0}') is None
    assert parse_max_mic_slots('{"maxMicSlots": true}') is None
    assert parse_max_mic_slots('{"maxMicSlots": "4"}') is None
