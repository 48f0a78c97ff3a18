"""Copies of all bus traffic for clients that asked to monitor it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .acl import StatusError
from .blob import BlobAttr, iter_attrs, put_int8, put_int32, put_nested
from .client import Message
from .protocol import MonitorAttr, MsgHeader, MsgType, Status


@dataclass(eq=False)
class _Watcher:
    client: Any
    seq: int = 0


def _blob_body(data: bytes) -> bytes:
    first = next(iter_attrs(data), None)
    return first.payload if first is not None else b""


class Monitor:
    """The set of monitoring clients, each with its own message counter."""

    def __init__(self) -> None:
        self._watchers: list[_Watcher] = []

    @property
    def clients(self) -> list[Any]:
        """The monitoring clients, oldest first."""
        return [watcher.client for watcher in self._watchers]

    def connect(self, client: Any) -> None:
        """Start monitoring for ``client``, resetting any earlier registration."""
        self.disconnect(client)
        self._watchers.append(_Watcher(client))

    def disconnect(self, client: Any) -> None:
        """Stop monitoring for ``client``."""
        for watcher in self._watchers:
            if watcher.client is client:
                self._watchers.remove(watcher)
                return

    def message(self, client: Any, msg: Message, send: bool) -> None:
        """Report a message sent to (``send``) or received from ``client``."""
        if not self._watchers:
            return
        header = msg.header
        body = (
            put_int32(MonitorAttr.CLIENT, client.id)
            + put_int32(MonitorAttr.PEER, header.peer)
            + put_int32(MonitorAttr.SEQ, header.seq)
            + put_int32(MonitorAttr.TYPE, header.type)
            + put_int8(MonitorAttr.SEND, int(bool(send)))
            + put_nested(MonitorAttr.DATA, _blob_body(msg.data))
        )
        data = BlobAttr(0, body).pack()
        for watcher in list(self._watchers):
            watcher.seq += 1
            watcher.client.send(Message(MsgHeader(MsgType.MONITOR, seq=watcher.seq), data))

    def handle(self, client: Any, method: str, data: bytes | None = None) -> Status:
        """Serve a call on the monitor object; only root may use it."""
        if client.uid != 0 or client.gid != 0:
            raise StatusError(Status.PERMISSION_DENIED)
        if method == "add":
            self.connect(client)
            return Status.OK
        if method == "remove":
            self.disconnect(client)
            return Status.OK
        raise StatusError(Status.METHOD_NOT_FOUND)