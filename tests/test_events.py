import pytest

from ubusbroker.acl import AclStore, StatusError
from ubusbroker.blob import (
    blobmsg_decode_table,
    blobmsg_encode_table,
    iter_attrs,
    parse_attrs,
    put_string,
)
from ubusbroker.client import Client
from ubusbroker.events import EventRegistry
from ubusbroker.objects import ObjectRegistry
from ubusbroker.protocol import ATTR_MAX, HEADER_SIZE, Attr, MsgHeader, MsgType, Status


class FakeSock:
    def __init__(self):
        self.sent = []

    def sendmsg(self, buffers, ancillary=()):
        data = b"".join(buffers)
        self.sent.append(data)
        return len(data)

    def close(self):
        pass


def make_client(uid=0):
    return Client(FakeSock(), uid, uid, "root" if uid == 0 else "nobody", "root")


def received(client):
    result = []
    for data in client.sock.sent:
        header = MsgHeader.unpack(data)
        root = next(iter_attrs(data[HEADER_SIZE:]))
        result.append((header, {a.id: a for a in root.children()}))
    return result


@pytest.fixture
def world():
    acl = AclStore()
    reg = ObjectRegistry(acl)
    events = EventRegistry(acl)
    reg.events = events
    listener = make_client()
    sender = make_client()
    obj = reg.create_internal(None, 5000)
    obj.client = listener
    return reg, events, listener, sender, obj


def test_send_delivers_to_matching_pattern(world):
    reg, events, listener, sender, obj = world
    events.register(listener, obj, "foo.*")
    payload = blobmsg_encode_table({"x": 1})
    assert events.send(sender, "foo.bar", payload) == 1
    [(header, attrs)] = received(listener)
    assert header.type == MsgType.INVOKE
    assert header.peer == 0
    assert header.seq == 1
    assert attrs[Attr.OBJID].as_int() == 5000
    assert attrs[Attr.METHOD].as_string() == "foo.bar"
    assert attrs[Attr.DATA].payload == payload


def test_exact_pattern_is_not_prefix(world):
    reg, events, listener, sender, obj = world
    events.register(listener, obj, "foo")
    assert events.send(sender, "foobar", b"") == 0
    assert events.send(sender, "foo", b"") == 1
    assert len(listener.sock.sent) == 1


def test_no_loopback(world):
    reg, events, listener, sender, obj = world
    events.register(listener, obj, "foo")
    assert events.send(listener, "foo", b"") == 0
    assert listener.sock.sent == []


def test_duplicate_patterns_single_delivery(world):
    reg, events, listener, sender, obj = world
    events.register(listener, obj, "foo.*")
    events.register(listener, obj, "foo.bar")
    assert events.send(sender, "foo.bar", b"") == 1
    assert len(listener.sock.sent) == 1


def test_seq_increments(world):
    reg, events, listener, sender, obj = world
    events.register(listener, obj, "*")
    events.send(sender, "a", b"")
    events.send(sender, "b", b"")
    seqs = [header.seq for header, _ in received(listener)]
    assert seqs == [1, 2]


def test_cleanup_object_stops_delivery(world):
    reg, events, listener, sender, obj = world
    events.register(listener, obj, "foo")
    events.cleanup_object(obj)
    assert obj.events == []
    assert events.send(sender, "foo", b"") == 0


def test_register_other_clients_object_denied(world):
    reg, events, listener, sender, obj = world
    with pytest.raises(StatusError) as info:
        events.register(sender, obj, "foo")
    assert info.value.status == Status.PERMISSION_DENIED


def test_register_listen_acl():
    acl = AclStore()
    reg = ObjectRegistry(acl)
    events = EventRegistry(acl)
    user = make_client(uid=1000)
    obj = reg.create(user, {})
    with pytest.raises(StatusError) as info:
        events.register(user, obj, "foo")
    assert info.value.status == Status.PERMISSION_DENIED
    events.register(user, obj, "*")
    assert events.send(make_client(), "anything", b"") == 1


def test_send_denied_for_unprivileged_sender(world):
    reg, events, listener, sender, obj = world
    with pytest.raises(StatusError) as info:
        events.send(make_client(uid=1000), "foo", b"")
    assert info.value.status == Status.PERMISSION_DENIED


def test_handle_register_and_send(world):
    reg, events, listener, sender, obj = world
    data = blobmsg_encode_table({"pattern": "net.*", "object": 5000})
    assert events.handle(listener, reg, "register", data) == Status.OK
    body = blobmsg_encode_table({"id": "net.up", "data": {"iface": "lan"}})
    assert events.handle(sender, reg, "send", body) == Status.OK
    [(header, attrs)] = received(listener)
    assert attrs[Attr.METHOD].as_string() == "net.up"
    assert attrs[Attr.DATA].payload == blobmsg_encode_table({"iface": "lan"})


@pytest.mark.parametrize(
    "method, document, status",
    [
        ("register", None, Status.INVALID_ARGUMENT),
        ("register", {"pattern": "x"}, Status.INVALID_ARGUMENT),
        ("register", {"pattern": "x", "object": 3}, Status.PERMISSION_DENIED),
        ("register", {"pattern": "x", "object": 9999}, Status.NOT_FOUND),
        ("send", {"id": "ubus.object.add", "data": {}}, Status.PERMISSION_DENIED),
        ("send", {"id": "x"}, Status.INVALID_ARGUMENT),
        ("send", None, Status.INVALID_ARGUMENT),
        ("bogus", {}, Status.INVALID_COMMAND),
    ],
)
def test_handle_errors(world, method, document, status):
    reg, events, listener, sender, obj = world
    data = None if document is None else blobmsg_encode_table(document)
    with pytest.raises(StatusError) as info:
        events.handle(listener, reg, method, data)
    assert info.value.status == status


def test_object_add_and_remove_events(world):
    reg, events, listener, sender, obj = world
    events.register(listener, obj, "ubus.object.*")
    owner = make_client()
    published = reg.create(
        owner, parse_attrs(put_string(Attr.OBJPATH, "system"), [None] * ATTR_MAX)
    )
    reg.free(published)
    messages = received(listener)
    assert [a[Attr.METHOD].as_string() for _, a in messages] == [
        "ubus.object.add",
        "ubus.object.remove",
    ]
    table = blobmsg_decode_table(messages[0][1][Attr.DATA].payload)
    assert table["path"] == "system"
    assert table["id"] & 0xFFFFFFFF == published.id