"""The broker: dispatches client messages to objects, lookups, calls and subscriptions."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .acl import DEFAULT_ACL_DIR, AclStore, AclType, StatusError, client_credentials
from .blob import (
    BlobAttr,
    BlobType,
    blobmsg_encode_table,
    iter_attrs,
    parse_attrs,
    put_int8,
    put_int32,
    put_nested,
    put_string,
)
from .client import Client, Message
from .events import EventRegistry
from .ids import IdRegistry
from .monitor import Monitor
from .objects import ObjectRegistry, Subscription, UbusObject
from .protocol import (
    ATTR_MAX,
    SYSTEM_OBJECT_ACL,
    SYSTEM_OBJECT_EVENT,
    SYSTEM_OBJECT_MONITOR,
    Attr,
    MsgHeader,
    MsgType,
    Status,
)

_POLICY: list[BlobType | None] = [None] * ATTR_MAX
_POLICY[Attr.SIGNATURE] = BlobType.NESTED
_POLICY[Attr.OBJTYPE] = BlobType.INT32
_POLICY[Attr.OBJPATH] = BlobType.STRING
_POLICY[Attr.OBJID] = BlobType.INT32
_POLICY[Attr.STATUS] = BlobType.INT32
_POLICY[Attr.METHOD] = BlobType.STRING
_POLICY[Attr.USER] = BlobType.STRING
_POLICY[Attr.GROUP] = BlobType.STRING

# Handler outcomes other than a status code to report back.
_NO_REPLY = object()
_QUEUED = object()

Attrs = Mapping[int, BlobAttr]


def parse_msg(data: bytes) -> dict[int, BlobAttr]:
    """Index the attributes of a message blob by id, dropping those of the wrong type."""
    container = next(iter_attrs(data), None)
    if container is None:
        return {}
    return parse_attrs(container.payload, _POLICY)


def _blob(body: bytes) -> bytes:
    return BlobAttr(0, body).pack()


def _u32(attr: BlobAttr) -> int:
    return int.from_bytes(attr.payload[:4], "big")


@dataclass(eq=False)
class _Command:
    """A lookup that was deferred because the client's transmit queue was busy."""

    msg: Message
    resume: str | None = None


class Broker:
    """All clients, objects, events and monitors of one bus."""

    def __init__(self, acl_dir: str = DEFAULT_ACL_DIR) -> None:
        self.acl = AclStore(acl_dir)
        self.objects = ObjectRegistry(self.acl, notifier=self)
        self.events = EventRegistry(self.acl)
        self.objects.events = self.events
        self.monitor = Monitor()
        self.clients = IdRegistry()
        self.acl.on_reload = self._acl_reloaded

        self.objects.create_internal(None, SYSTEM_OBJECT_EVENT).recv_msg = self._event_recv
        self.objects.create_internal(None, SYSTEM_OBJECT_ACL).recv_msg = self._acl_recv
        self.objects.create_internal(None, SYSTEM_OBJECT_MONITOR).recv_msg = self._monitor_recv

        self._handlers: dict[int, Callable[[Client, Message, Attrs], Any]] = {
            MsgType.PING: self._handle_ping,
            MsgType.ADD_OBJECT: self._handle_add_object,
            MsgType.REMOVE_OBJECT: self._handle_remove_object,
            MsgType.LOOKUP: self._handle_lookup,
            MsgType.INVOKE: self._handle_invoke,
            MsgType.STATUS: self._handle_response,
            MsgType.DATA: self._handle_response,
            MsgType.SUBSCRIBE: self._handle_add_watch,
            MsgType.UNSUBSCRIBE: self._handle_remove_watch,
            MsgType.NOTIFY: self._handle_notify,
        }

    # clients

    def new_client(
        self,
        sock: Any,
        uid: int | None = None,
        gid: int | None = None,
        user: str | None = None,
        group: str | None = None,
    ) -> Client:
        """Register a connection and greet it; credentials are read from the socket if not given."""
        if uid is None:
            uid, gid, user, group = client_credentials(sock)
        client = Client(sock, uid, gid or 0, user or "", group or "")
        client.on_send = self._report_send
        client.id = self.clients.alloc(client)
        client.send(Message(MsgHeader(MsgType.HELLO, seq=0, peer=client.id), _blob(b"")))
        return client

    def free_client(self, client: Client) -> None:
        """Remove a client's objects, deferred commands, monitor registration and id."""
        for obj in list(client.objects):
            self.objects.free(obj)
        while client.cmd_queue:
            client.cmd_queue.popleft().msg.close_fd()
        self.monitor.disconnect(client)
        if client.id in self.clients:
            self.clients.free(client.id)

    def _report_send(self, client: Client, msg: Message) -> None:
        self.monitor.message(client, msg, True)

    # message plumbing

    def _send_status(self, client: Client, seq: int, peer: int, status: int) -> None:
        data = _blob(put_int32(Attr.STATUS, int(status)))
        client.send(Message(MsgHeader(MsgType.STATUS, seq=seq, peer=peer), data))

    def _send_from_blob(self, client: Client, orig: Message, body: bytes, msg_type: MsgType) -> None:
        header = MsgHeader(msg_type, seq=orig.header.seq, peer=orig.header.peer)
        client.send(Message(header, _blob(body), fd=orig.fd))

    def receive(self, client: Client, msg: Message) -> None:
        """Handle one complete message from ``client`` and send its status reply."""
        self.monitor.message(client, msg, False)
        seq, peer = msg.header.seq, msg.header.peer
        msg_type = msg.header.type
        handler = self._handlers.get(msg_type)

        if msg_type not in (MsgType.STATUS, MsgType.INVOKE):
            msg.close_fd()

        if handler is None:
            result: Any = Status.INVALID_COMMAND
        else:
            try:
                result = handler(client, msg, parse_msg(msg.data))
            except StatusError as exc:
                result = exc.status

        if result is _QUEUED:
            return
        msg.close_fd()
        if result is _NO_REPLY:
            return
        self._send_status(client, seq, peer, result)

    # handlers

    def _handle_ping(self, client: Client, msg: Message, attrs: Attrs) -> Status:
        msg.header.type = MsgType.DATA
        client.send(msg)
        return Status.OK

    def _handle_add_object(self, client: Client, msg: Message, attrs: Attrs) -> Status:
        obj = self.objects.create(client, attrs)
        body = put_int32(Attr.OBJID, obj.id)
        if Attr.SIGNATURE in attrs and obj.type is not None:
            body += put_int32(Attr.OBJTYPE, obj.type.id)
        self._send_from_blob(client, msg, body, MsgType.DATA)
        return Status.OK

    def _handle_remove_object(self, client: Client, msg: Message, attrs: Attrs) -> Status:
        if Attr.OBJID not in attrs:
            raise StatusError(Status.INVALID_ARGUMENT)
        obj = self.objects.find(_u32(attrs[Attr.OBJID]))
        if obj is None:
            raise StatusError(Status.NOT_FOUND)
        if obj.client is not client:
            raise StatusError(Status.PERMISSION_DENIED)

        body = put_int32(Attr.OBJID, obj.id)
        if obj.type is not None and obj.type.refcount == 1:
            body += put_int32(Attr.OBJTYPE, obj.type.id)
        self._send_from_blob(client, msg, body, MsgType.DATA)
        self.objects.free(obj)
        return Status.OK

    def _send_obj(self, client: Client, msg: Message, obj: UbusObject) -> None:
        if obj.type is None:
            return
        allowed = [
            encoded
            for name, encoded in obj.type.methods
            if self.acl.check(client, obj.path, name, AclType.ACCESS)
        ]
        body = (
            put_string(Attr.OBJPATH, obj.path or "")
            + put_int32(Attr.OBJID, obj.id)
            + put_int32(Attr.OBJTYPE, obj.type.id)
            + put_nested(Attr.SIGNATURE, b"".join(allowed))
        )
        if allowed or not obj.type.methods:
            self._send_from_blob(client, msg, body, MsgType.DATA)

    def _lookup(self, client: Client, msg: Message, attrs: Attrs, cmd: _Command | None) -> Any:
        path_attr = attrs.get(Attr.OBJPATH)
        if path_attr is None:
            start = cmd.resume if cmd is not None else None
            for obj in self.objects.paths():
                if start is not None and obj.path < start:
                    continue
                if client.tx_queue:
                    if cmd is None:
                        client.cmd_queue.append(_Command(msg, obj.path))
                    else:
                        cmd.resume = obj.path
                    return _QUEUED
                self._send_obj(client, msg, obj)
            return Status.OK

        objpath = path_attr.as_string()
        if not objpath.endswith("*"):
            obj = self.objects.find_path(objpath)
            if obj is None:
                raise StatusError(Status.NOT_FOUND)
            self._send_obj(client, msg, obj)
            return Status.OK

        prefix = objpath[:-1]
        found = False
        for obj in self.objects.paths():
            if obj.path < prefix:
                continue
            if not obj.path.startswith(prefix):
                break
            found = True
            self._send_obj(client, msg, obj)
        if not found:
            raise StatusError(Status.NOT_FOUND)
        return Status.OK

    def _handle_lookup(self, client: Client, msg: Message, attrs: Attrs) -> Any:
        if client.tx_queue:
            client.cmd_queue.append(_Command(msg))
            return _QUEUED
        return self._lookup(client, msg, attrs, None)

    def process_cmd_queue(self, client: Client) -> bool:
        """Resume deferred lookups; True once none is left waiting."""
        while client.cmd_queue:
            cmd = client.cmd_queue[0]
            try:
                result = self._lookup(client, cmd.msg, parse_msg(cmd.msg.data), cmd)
            except StatusError as exc:
                result = exc.status
            if result is _QUEUED:
                return False
            self._send_status(client, cmd.msg.header.seq, cmd.msg.header.peer, result)
            client.cmd_queue.popleft()
            cmd.msg.close_fd()
        return True

    @staticmethod
    def _forward_body(client: Client, obj: UbusObject, method: str, data: BlobAttr | None) -> bytes:
        body = put_int32(Attr.OBJID, obj.id) + put_string(Attr.METHOD, method)
        if client.user:
            body += put_string(Attr.USER, client.user)
        if client.group:
            body += put_string(Attr.GROUP, client.group)
        if data is not None:
            body += put_nested(Attr.DATA, data.payload)
        return body

    def _handle_invoke(self, client: Client, msg: Message, attrs: Attrs) -> Any:
        if Attr.METHOD not in attrs or Attr.OBJID not in attrs:
            raise StatusError(Status.INVALID_ARGUMENT)
        obj = self.objects.find(_u32(attrs[Attr.OBJID]))
        if obj is None:
            raise StatusError(Status.NOT_FOUND)

        method = attrs[Attr.METHOD].as_string()
        if not self.acl.check(client, obj.path, method, AclType.ACCESS):
            raise StatusError(Status.PERMISSION_DENIED)

        data = attrs.get(Attr.DATA)
        if obj.client is None:
            if obj.recv_msg is None:
                raise StatusError(Status.INVALID_COMMAND)
            return obj.recv_msg(client, msg, method, data)

        msg.header.peer = client.id
        body = self._forward_body(client, obj, method, data)
        self._send_from_blob(obj.client, msg, body, MsgType.INVOKE)
        return _NO_REPLY

    def _handle_notify(self, client: Client, msg: Message, attrs: Attrs) -> Any:
        if Attr.METHOD not in attrs or Attr.OBJID not in attrs:
            raise StatusError(Status.INVALID_ARGUMENT)
        no_reply = False
        if Attr.NO_REPLY in attrs:
            payload = attrs[Attr.NO_REPLY].payload
            no_reply = bool(payload[0]) if payload else False

        obj = self.objects.find(_u32(attrs[Attr.OBJID]))
        if obj is None:
            raise StatusError(Status.NOT_FOUND)
        if obj.client is not client:
            raise StatusError(Status.PERMISSION_DENIED)

        if not no_reply:
            subscribers = b"".join(put_int32(0, sub.subscriber.id) for sub in obj.subscribers)
            body = (
                put_int32(Attr.OBJID, obj.id)
                + put_nested(Attr.SUBSCRIBERS, subscribers)
                + put_int32(Attr.STATUS, 0)
            )
            self._send_from_blob(client, msg, body, MsgType.STATUS)

        msg.header.peer = client.id
        method = attrs[Attr.METHOD].as_string()
        data = attrs.get(Attr.DATA)
        for sub in list(obj.subscribers):
            prefix = put_int8(Attr.NO_REPLY, 1) if no_reply else b""
            body = prefix + self._forward_body(client, sub.subscriber, method, data)
            self._send_from_blob(sub.subscriber.client, msg, body, MsgType.INVOKE)
        return _NO_REPLY

    def _handle_response(self, client: Client, msg: Message, attrs: Attrs) -> Any:
        if (
            Attr.OBJID not in attrs
            or (msg.header.type == MsgType.STATUS and Attr.STATUS not in attrs)
            or (msg.header.type == MsgType.DATA and Attr.DATA not in attrs)
        ):
            return _NO_REPLY
        obj_id = _u32(attrs[Attr.OBJID])
        obj = self.objects.find(obj_id)
        if obj is None or obj.client is not client:
            return _NO_REPLY
        target = self.clients.find(msg.header.peer)
        if target is None:
            return _NO_REPLY
        msg.header.peer = obj_id
        target.send(msg)
        return _NO_REPLY

    def _handle_add_watch(self, client: Client, msg: Message, attrs: Attrs) -> Status:
        if Attr.OBJID not in attrs or Attr.TARGET not in attrs:
            raise StatusError(Status.INVALID_ARGUMENT)
        obj = self.objects.find(_u32(attrs[Attr.OBJID]))
        if obj is None:
            raise StatusError(Status.NOT_FOUND)
        if obj.client is not client:
            raise StatusError(Status.INVALID_ARGUMENT)

        target = self.objects.find(_u32(attrs[Attr.TARGET]))
        if target is None or target.client is None:
            raise StatusError(Status.NOT_FOUND)
        if target.client is client:
            raise StatusError(Status.INVALID_ARGUMENT)

        if target.path is None:
            owner = target.client
            if owner.user != client.user and owner.group != client.group:
                raise StatusError(Status.NOT_FOUND)
        elif not self.acl.check(client, target.path, None, AclType.SUBSCRIBE):
            raise StatusError(Status.NOT_FOUND)

        self.objects.subscribe(obj, target)
        return Status.OK

    def _handle_remove_watch(self, client: Client, msg: Message, attrs: Attrs) -> Status:
        if Attr.OBJID not in attrs or Attr.TARGET not in attrs:
            raise StatusError(Status.INVALID_ARGUMENT)
        obj = self.objects.find(_u32(attrs[Attr.OBJID]))
        if obj is None:
            raise StatusError(Status.NOT_FOUND)
        if obj.client is not client:
            raise StatusError(Status.INVALID_ARGUMENT)

        target_id = _u32(attrs[Attr.TARGET])
        for sub in obj.target_list:
            if sub.target.id == target_id:
                self.objects.unsubscribe(sub)
                return Status.OK
        raise StatusError(Status.NOT_FOUND)

    # system objects

    def _event_recv(self, client: Client, msg: Message, method: str, data: BlobAttr | None) -> Status:
        return self.events.handle(client, self.objects, method, None if data is None else data.payload)

    def _acl_recv(self, client: Client, msg: Message, method: str, data: BlobAttr | None) -> Status:
        if method != "query":
            raise StatusError(Status.INVALID_COMMAND)
        obj_attr = parse_msg(msg.data).get(Attr.OBJID)
        body = self.acl.query(client, None if obj_attr is None else _u32(obj_attr), self.objects)
        self._send_from_blob(client, msg, body, MsgType.DATA)
        return Status.OK

    def _monitor_recv(self, client: Client, msg: Message, method: str, data: BlobAttr | None) -> Status:
        return self.monitor.handle(client, method, None if data is None else data.payload)

    # subscription notices

    def notify_subscription(self, obj: UbusObject) -> None:
        """Tell an object's owner whether it has subscribers."""
        if obj.client is None:
            return
        active = bool(obj.subscribers)
        body = put_int32(Attr.OBJID, obj.id) + put_int8(Attr.ACTIVE, int(active))
        obj.invoke_seq += 1
        header = MsgHeader(MsgType.NOTIFY, seq=obj.invoke_seq, peer=0)
        obj.client.send(Message(header, _blob(body)))

    def notify_unsubscribe(self, sub: Subscription) -> None:
        """Tell a subscriber that the object it watched went away.

        Dropping the subscription itself is left to the object registry.
        """
        subscriber = sub.subscriber
        if subscriber.client is None:
            return
        body = put_int32(Attr.OBJID, subscriber.id) + put_int32(Attr.TARGET, sub.target.id)
        subscriber.invoke_seq += 1
        header = MsgHeader(MsgType.UNSUBSCRIBE, seq=subscriber.invoke_seq, peer=0)
        subscriber.client.send(Message(header, _blob(body)))

    # access control

    def _acl_reloaded(self, event_id: str, payload: dict[str, Any]) -> None:
        self.events.send(None, event_id, blobmsg_encode_table(payload))

    def reload_acl(self) -> None:
        """Reload the ACL directory and announce the new sequence number."""
        self.acl.load()