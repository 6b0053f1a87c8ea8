import pytest

from domain.connection.entity import Connection
from infrastructure.realtime.connection_manager import ConnectionRegistry


def _populate(registry, transport_cls, layout):
    conns = []
    for username, rooms in layout:
        conn = Connection(username=username)
        registry.add(conn, transport_cls())
        if rooms is not None:
            registry.link(conn, rooms)
        conns.append(conn)
    return conns


LAYOUT = [
    ("ann", ["lobby", "red"]),
    ("ben", None),
    ("cat", ["red"]),
    ("dan", ["lobby"]),
]


@pytest.mark.parametrize("optimize", [False, True], ids=["scan", "indexed"])
def test_members_follow_creation_order(optimize, make_transport):
    registry = ConnectionRegistry(optimize_sending=optimize)
    ann, ben, cat, dan = _populate(registry, make_transport, LAYOUT)

    # creation order wins over join order
    registry.link(dan, ["red", "lobby"])
    registry.link(ann, ["red"])

    assert registry.members_of("red") == [ann, cat, dan]
    assert registry.members_of("lobby") == [dan]
    assert registry.members_of("default") == [ben]
    assert registry.members_of("nowhere") == []


def test_scan_and_index_strategies_agree(make_transport):
    results = []
    for optimize in (False, True):
        registry = ConnectionRegistry(optimize_sending=optimize)
        ann, ben, cat, dan = _populate(registry, make_transport, LAYOUT)
        registry.unlink(ann)
        registry.link(ben, ["lobby", "blue"])
        registry.remove(cat)
        snapshot = {
            room: [c.username for c in registry.members_of(room)]
            for room in ("default", "lobby", "red", "blue")
        }
        results.append((snapshot, sorted(registry.rooms())))

    assert results[0] == results[1]
    assert results[0][0] == {
        "default": ["ann"],
        "lobby": ["ben", "dan"],
        "red": [],
        "blue": ["ben"],
    }
    assert results[0][1] == ["blue", "default", "lobby"]


def test_add_twice_is_rejected(make_transport):
    registry = ConnectionRegistry()
    conn = Connection()
    registry.add(conn, make_transport())

    with pytest.raises(ValueError):
        registry.add(conn, make_transport())
    assert len(registry) == 1


def test_remove_is_idempotent(make_transport):
    registry = ConnectionRegistry(optimize_sending=True)
    conn = Connection()
    registry.add(conn, make_transport())

    assert registry.remove(conn) is conn
    assert registry.remove(conn) is None
    assert conn not in registry
    assert registry.rooms() == []


def test_lookup_helpers(make_transport):
    registry = ConnectionRegistry()
    ann, ben, _, _ = _populate(registry, make_transport, LAYOUT)

    assert registry.get(ann.connection_id) is ann
    assert registry.get_by_public_id(ben.public_id) is ben
    assert registry.get_by_public_id("0" * 20) is None
    assert registry.all()[0] is ann


def test_find_private_target_requires_shared_room(make_transport):
    registry = ConnectionRegistry()
    _populate(
        registry,
        make_transport,
        [("bob", ["red"]), ("bob", ["lobby"]), ("bob", ["lobby"])],
    )
    first_in_lobby = registry.all()[1]

    assert registry.find_private_target("bob", ["lobby"]) is first_in_lobby
    assert registry.find_private_target("bob", ["blue"]) is None
    assert registry.find_private_target("carl", ["lobby"]) is None


def test_empty_link_is_rejected(make_transport):
    registry = ConnectionRegistry(optimize_sending=True)
    conn = Connection()
    registry.add(conn, make_transport())

    with pytest.raises(ValueError):
        registry.link(conn, [])
    assert conn.rooms == ["default"]
    assert registry.members_of("default") == [conn]


@pytest.mark.asyncio
async def test_send_failure_is_isolated(make_transport):
    registry = ConnectionRegistry()
    ok_a, broken, ok_b = Connection(), Connection(), Connection()
    transports = [make_transport(), make_transport(fail=True), make_transport()]
    for conn, transport in zip((ok_a, broken, ok_b), transports):
        registry.add(conn, transport)

    delivered = await registry.send_many(registry.all(), {"cmd": "gmsg", "val": 1})

    assert delivered == 2
    assert transports[0].sent == [{"cmd": "gmsg", "val": 1}]
    assert transports[2].sent == [{"cmd": "gmsg", "val": 1}]
    assert broken in registry


@pytest.mark.asyncio
async def test_send_to_unknown_connection_returns_false():
    registry = ConnectionRegistry()

    assert await registry.send(Connection(), {"cmd": "motd", "val": "hi"}) is False
