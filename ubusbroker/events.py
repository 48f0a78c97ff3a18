"""Event patterns registered by clients and the delivery of events to them."""

from __future__ import annotations

import bisect
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from .acl import AclStore, AclType, StatusError
from .blob import (
    BlobAttr,
    BlobmsgType,
    blobmsg_decode,
    blobmsg_encode,
    iter_attrs,
    put_int32,
    put_nested,
    put_string,
)
from .client import Message
from .protocol import SYSTEM_OBJECT_MAX, Attr, MsgHeader, MsgType, Status, strmatch_len

OBJECT_ADD_EVENT = "ubus.object.add"
OBJECT_REMOVE_EVENT = "ubus.object.remove"


@dataclass(eq=False)
class _EventSource:
    key: str
    partial: bool
    obj: Any


def _u32_field(name: str, value: int) -> bytes:
    value &= 0xFFFFFFFF
    return blobmsg_encode(name, value - (1 << 32) if value >= 1 << 31 else value)


def _fields(data: bytes, policy: dict[str, BlobmsgType]) -> dict[str, BlobAttr]:
    result: dict[str, BlobAttr] = {}
    for attr in iter_attrs(data):
        try:
            name, _ = blobmsg_decode(attr)
        except ValueError:
            continue
        kind = policy.get(name)
        if kind is None or attr.id != kind:
            continue
        result[name] = attr
    return result


def _field_body(attr: BlobAttr) -> bytes:
    payload = attr.payload
    name_len = int.from_bytes(payload[:2], "big")
    return payload[(2 + name_len + 1 + 3) & ~3:]


class EventRegistry:
    """Patterns that objects listen on, kept in key order."""

    def __init__(self, acl: AclStore) -> None:
        self.acl = acl
        self.event_seq = 0
        self._obj_event_seq = 1
        self._sources: list[_EventSource] = []

    def register(self, client: Any, obj: Any, pattern: str) -> None:
        """Let ``obj`` receive events matching ``pattern`` (a trailing ``*`` matches a prefix)."""
        if obj.client is not client:
            raise StatusError(Status.PERMISSION_DENIED)
        partial = pattern.endswith("*")
        if partial:
            pattern = pattern[:-1]
        if pattern and not self.acl.check(client, pattern, None, AclType.LISTEN):
            raise StatusError(Status.PERMISSION_DENIED)
        source = _EventSource(key=pattern, partial=partial, obj=obj)
        bisect.insort_right(self._sources, source, key=lambda s: s.key)
        obj.events.insert(0, source)

    def cleanup_object(self, obj: Any) -> None:
        """Forget every pattern registered for ``obj``."""
        for source in obj.events:
            self._sources.remove(source)
        obj.events.clear()

    def _matching(self, event_id: str) -> Iterator[_EventSource]:
        match_len = 0
        for source in self._sources:
            full, cur_len = strmatch_len(event_id, source.key)
            if cur_len < match_len:
                break
            match_len = cur_len
            if not full and not (source.partial and match_len == len(source.key)):
                continue
            yield source

    def send(self, sender: Any, event_id: str, payload: bytes) -> int:
        """Deliver an event to every matching listener except the sender's own objects.

        Returns the number of objects it was sent to.
        """
        if not self.acl.check(sender, event_id, None, AclType.SEND):
            raise StatusError(Status.PERMISSION_DENIED)
        self._obj_event_seq += 1

        tail = put_string(Attr.METHOD, event_id) + put_nested(Attr.DATA, payload)
        delivered = 0
        for source in self._matching(event_id):
            obj = source.obj
            if obj.client is None or obj.client is sender:
                continue
            if obj.event_seen == self._obj_event_seq:
                continue
            obj.event_seen = self._obj_event_seq
            self.event_seq += 1
            data = BlobAttr(0, put_int32(Attr.OBJID, obj.id) + tail).pack()
            obj.client.send(Message(MsgHeader(MsgType.INVOKE, seq=self.event_seq, peer=0), data))
            delivered += 1
        return delivered

    def send_object_event(self, obj: Any, add: bool) -> int:
        """Announce that an object with a path appeared or went away."""
        event_id = OBJECT_ADD_EVENT if add else OBJECT_REMOVE_EVENT
        payload = _u32_field("id", obj.id) + blobmsg_encode("path", obj.path)
        return self.send(None, event_id, payload)

    def handle(self, client: Any, objects: Any, method: str, data: bytes | None) -> Status:
        """Serve a call on the event object; raises StatusError on failure."""
        if method == "register":
            return self._handle_register(client, objects, data)
        if method == "send":
            return self._handle_send(client, data)
        raise StatusError(Status.INVALID_COMMAND)

    def _handle_register(self, client: Any, objects: Any, data: bytes | None) -> Status:
        if data is None:
            raise StatusError(Status.INVALID_ARGUMENT)
        fields = _fields(data, {"pattern": BlobmsgType.STRING, "object": BlobmsgType.INT32})
        if "pattern" not in fields or "object" not in fields:
            raise StatusError(Status.INVALID_ARGUMENT)
        obj_id = blobmsg_decode(fields["object"])[1] & 0xFFFFFFFF
        pattern = blobmsg_decode(fields["pattern"])[1]
        if obj_id < SYSTEM_OBJECT_MAX:
            raise StatusError(Status.PERMISSION_DENIED)
        obj = objects.find(obj_id)
        if obj is None:
            raise StatusError(Status.NOT_FOUND)
        self.register(client, obj, pattern)
        return Status.OK

    def _handle_send(self, client: Any, data: bytes | None) -> Status:
        if data is None:
            raise StatusError(Status.INVALID_ARGUMENT)
        fields = _fields(data, {"id": BlobmsgType.STRING, "data": BlobmsgType.TABLE})
        if "id" not in fields or "data" not in fields:
            raise StatusError(Status.INVALID_ARGUMENT)
        event_id = blobmsg_decode(fields["id"])[1]
        if event_id.startswith("ubus."):
            raise StatusError(Status.PERMISSION_DENIED)
        self.send(client, event_id, _field_body(fields["data"]))
        return Status.OK