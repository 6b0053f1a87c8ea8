import json

import pytest

from shared.codes import StatusCode


pytestmark = pytest.mark.asyncio


def _cmd(cmd, **fields):
    return json.dumps({"cmd": cmd, **fields})


async def test_malformed_frame_closes_only_that_connection(relay, open_client):
    bad, bad_t = await open_client()
    good, good_t = await open_client()
    good_t.clear()

    keep_reading = await relay.handle_frame(bad, "{not json")

    assert keep_reading is False
    assert bad_t.statuses() == [StatusCode.JSON_ERROR]
    assert bad_t.closed_with == 1003
    assert bad not in relay.registry
    assert good in relay.registry
    assert good_t.closed_with is None
    assert good_t.frames("ulist") == [
        {"cmd": "ulist", "mode": "remove", "val": {"id": bad.public_id}, "rooms": "default"}
    ]


async def test_deeply_nested_frame_is_treated_as_malformed(relay, open_client):
    conn, t = await open_client()
    nested = "[" * 200000 + "]" * 200000

    assert await relay.handle_frame(conn, nested) is False

    assert t.statuses() == [StatusCode.JSON_ERROR]
    assert t.closed_with == 1003
    assert conn not in relay.registry


async def test_malformed_frame_before_handshake_is_still_fatal(relay, open_client):
    conn, t = await open_client(handshake=False)

    assert await relay.handle_frame(conn, "}{") is False
    assert t.closed_with == 1003
    assert len(relay.registry) == 0


async def test_frames_after_removal_are_ignored(relay, open_client):
    conn, t = await open_client()
    await relay.disconnect(conn)

    assert await relay.handle_frame(conn, _cmd("gmsg", val="late")) is False
    assert t.sent == []


async def test_missing_command_replies_syntax_once(relay, open_client):
    conn, t = await open_client()

    await relay.handle_frame(conn, json.dumps({"val": 1, "listener": "x"}))
    await relay.handle_frame(conn, json.dumps({"cmd": 5}))
    await relay.handle_frame(conn, "[1, 2]")

    assert t.statuses() == [StatusCode.SYNTAX, StatusCode.SYNTAX, StatusCode.SYNTAX]
    assert t.sent[0]["listener"] == "x"
    assert t.closed_with is None


async def test_unknown_command_replies_invalid_command(relay, open_client):
    conn, t = await open_client()

    await relay.handle_frame(conn, _cmd("teleport", val=1, listener="tp"))

    assert t.sent == [{"cmd": "statuscode", "code": "I:109 | Invalid command", "code_id": 109, "listener": "tp"}]


async def test_custom_command_receives_connection_value_and_target(relay, open_client):
    calls = []

    @relay.command("ping")
    def ping(conn, value, target):
        calls.append((conn, value, target))

    async def pong(conn, value, target):
        calls.append(("pong", value, target))

    relay.register_command("pong", pong)
    conn, t = await open_client()

    await relay.handle_frame(conn, _cmd("ping", val={"a": 1}, id="bob"))
    await relay.handle_frame(conn, _cmd("pong", val=[1, 2]))

    assert calls == [(conn, {"a": 1}, "bob"), ("pong", [1, 2], None)]
    assert t.sent == []
    assert set(relay.commands) == {"ping", "pong"}


async def test_failing_custom_command_replies_internal_error(relay, open_client):
    def boom(conn, value, target):
        raise RuntimeError("handler exploded")

    relay.register_command("boom", boom)
    conn, t = await open_client()

    assert await relay.handle_frame(conn, _cmd("boom", listener="b")) is True

    assert t.statuses() == [StatusCode.INTERNAL_ERROR]
    assert t.sent[0]["listener"] == "b"
    assert conn in relay.registry


async def test_unregistered_command_becomes_unknown(relay, open_client):
    relay.register_command("temp", lambda conn, value, target: None)
    relay.unregister_command("temp")
    conn, t = await open_client()

    await relay.handle_frame(conn, _cmd("temp"))

    assert t.statuses() == [StatusCode.INVALID_COMMAND]


async def test_builtin_names_cannot_be_overridden(relay):
    for name in ("handshake", "gmsg", "pvar"):
        with pytest.raises(ValueError):
            relay.register_command(name, lambda conn, value, target: None)
    with pytest.raises(TypeError):
        relay.register_command("custom", "not callable")
    assert relay.commands == {}


async def test_empty_frames_reply_empty_packet(relay, open_client):
    conn, t = await open_client()

    await relay.handle_frame(conn, "")
    await relay.handle_frame(conn, "   \n")

    assert t.statuses() == [StatusCode.EMPTY_PACKET, StatusCode.EMPTY_PACKET]
    assert t.closed_with is None


async def test_oversized_frame_replies_too_large(relay_factory, make_transport):
    relay = relay_factory(max_frame_bytes=64)
    t = make_transport()
    conn = await relay.connect(t)
    await relay.handle_frame(conn, _cmd("handshake", val={}))
    t.clear()

    assert await relay.handle_frame(conn, _cmd("gmsg", val="x" * 100)) is True

    assert t.statuses() == [StatusCode.TOO_LARGE]
    assert t.closed_with is None


@pytest.mark.parametrize(
    "frame",
    [
        {"cmd": "setid", "val": 5},
        {"cmd": "setid", "val": ""},
        {"cmd": "link", "val": []},
        {"cmd": "link", "val": ["ok", ""]},
        {"cmd": "link", "val": {"room": "x"}},
        {"cmd": "gvar", "val": 1},
        {"cmd": "pvar", "id": "bob", "val": 1},
    ],
)
async def test_wrong_payload_types_reply_datatype(relay, open_client, frame):
    conn, t = await open_client()

    await relay.handle_frame(conn, json.dumps({**frame, "listener": "dt"}))

    assert t.sent == [{"cmd": "statuscode", "code": "I:102 | Datatype", "code_id": 102, "listener": "dt"}]
    assert conn.rooms == ["default"]
    assert conn.username is None


async def test_binary_frames_are_decoded(relay, open_client):
    conn, t = await open_client()

    await relay.handle_frame(conn, b'{"cmd":"gmsg","val":"bytes","listener":"g"}')

    assert t.frames("gmsg") == [{"cmd": "gmsg", "val": "bytes", "rooms": "default"}]
    assert t.statuses() == [StatusCode.OK]


async def test_max_users_refuses_extra_connections(relay_factory, make_transport):
    relay = relay_factory(max_users=1)
    first = make_transport()
    second = make_transport()

    assert await relay.connect(first) is not None
    assert await relay.connect(second) is None

    assert second.statuses() == [StatusCode.REFUSED]
    assert second.closed_with == 1013
    assert len(relay.registry) == 1
