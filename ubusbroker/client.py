"""Messages held by the broker and the per-connection transmit queue."""

from __future__ import annotations

import array
import os
import socket
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from .protocol import HEADER_SIZE, MAX_MSGLEN, MsgHeader, MsgType

MAX_TXQ_LEN = MAX_MSGLEN


@dataclass
class Message:
    """A header, the encoded blob that follows it, and an optional passed descriptor."""

    header: MsgHeader
    data: bytes = b""
    fd: int = -1

    def wire_len(self) -> int:
        """Number of bytes the message takes on the wire."""
        return HEADER_SIZE + len(self.data)

    def pack(self, offset: int = 0) -> bytes:
        """The wire bytes of the message from ``offset`` on."""
        return (self.header.pack() + bytes(self.data))[offset:]

    def copy(self) -> Message:
        """A copy with its own header; data and descriptor are shared."""
        return Message(replace(self.header), self.data, self.fd)

    def close_fd(self) -> None:
        """Close the attached descriptor, if any."""
        if self.fd >= 0:
            try:
                os.close(self.fd)
            except OSError:
                pass
            self.fd = -1


class Client:
    """One connected peer: its socket, credentials and queued outgoing data."""

    def __init__(
        self,
        sock: Any,
        uid: int = 0,
        gid: int = 0,
        user: str = "",
        group: str = "",
    ) -> None:
        self.sock = sock
        self.uid = uid
        self.gid = gid
        self.user = user
        self.group = group
        self.id = 0
        self.objects: list[Any] = []
        self.cmd_queue: deque[Any] = deque()
        self.tx_queue: deque[Message] = deque()
        self.txq_ofs = 0
        self.txq_len = 0
        self.want_write = False
        self.on_send: Callable[[Client, Message], None] | None = None
        self.recv_buf = bytearray()
        self.pending_fd = -1
        self.closed = False

    def _write(self, msg: Message, offset: int) -> int:
        data = msg.pack(offset)
        ancillary = []
        if msg.fd >= 0 and offset == 0:
            ancillary = [
                (socket.SOL_SOCKET, socket.SCM_RIGHTS, array.array("i", [msg.fd]).tobytes())
            ]
        while True:
            try:
                return self.sock.sendmsg([data], ancillary)
            except InterruptedError:
                continue

    def _enqueue(self, msg: Message) -> None:
        size = msg.wire_len()
        if self.txq_len + size > MAX_TXQ_LEN:
            return
        queued = msg.copy()
        if msg.fd >= 0:
            queued.fd = os.dup(msg.fd)
        self.tx_queue.append(queued)
        self.txq_len += size

    def send(self, msg: Message) -> None:
        """Send a message now if possible, otherwise queue it (dropped if the queue is full)."""
        if msg.header.type != MsgType.MONITOR and self.on_send is not None:
            self.on_send(self, msg)

        if not self.tx_queue:
            try:
                written = self._write(msg, 0)
            except OSError:
                written = 0
            if written >= msg.wire_len():
                return
            self.txq_ofs = written
            self.txq_len = -written
            self.want_write = True

        self._enqueue(msg)

    def flush(self) -> bool:
        """Write queued data; True once the queue is empty.

        Stops quietly when the socket would block; other socket errors propagate.
        """
        while self.tx_queue:
            msg = self.tx_queue[0]
            while self.txq_ofs < msg.wire_len():
                try:
                    written = self._write(msg, self.txq_ofs)
                except (BlockingIOError, PermissionError):
                    return False
                if written <= 0:
                    return False
                self.txq_ofs += written
                self.txq_len -= written
            self.txq_ofs = 0
            self.tx_queue.popleft().close_fd()
        self.want_write = False
        return True

    def has_pending(self) -> bool:
        """Whether outgoing data is still queued."""
        return bool(self.tx_queue)

    def close(self) -> None:
        """Drop queued data, release descriptors and close the socket."""
        if self.closed:
            return
        self.closed = True
        while self.tx_queue:
            self.tx_queue.popleft().close_fd()
        self.txq_len = 0
        self.txq_ofs = 0
        if self.pending_fd >= 0:
            try:
                os.close(self.pending_fd)
            except OSError:
                pass
            self.pending_fd = -1
        self.sock.close()