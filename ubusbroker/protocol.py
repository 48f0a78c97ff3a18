"""Message header, message types, attribute ids and status codes of the bus protocol."""

from __future__ import annotations

import os.path
import struct
from dataclasses import dataclass
from enum import IntEnum

UNIX_SOCKET = "/var/run/ubus/ubus.sock"
MAX_MSGLEN = 1048576
MSG_CHUNK_SIZE = 65536

CLIENT_ID_CHANNEL = 1

SYSTEM_OBJECT_EVENT = 1
SYSTEM_OBJECT_ACL = 2
SYSTEM_OBJECT_MONITOR = 3
SYSTEM_OBJECT_MAX = 1024


class MsgType(IntEnum):
    """Type of a message on the bus."""

    HELLO = 0
    STATUS = 1
    DATA = 2
    PING = 3
    LOOKUP = 4
    INVOKE = 5
    ADD_OBJECT = 6
    REMOVE_OBJECT = 7
    SUBSCRIBE = 8
    UNSUBSCRIBE = 9
    NOTIFY = 10
    MONITOR = 11


MSG_TYPE_COUNT = len(MsgType)


class Attr(IntEnum):
    """Attribute ids of the top-level message blob."""

    UNSPEC = 0
    STATUS = 1
    OBJPATH = 2
    OBJID = 3
    METHOD = 4
    OBJTYPE = 5
    SIGNATURE = 6
    DATA = 7
    TARGET = 8
    ACTIVE = 9
    NO_REPLY = 10
    SUBSCRIBERS = 11
    USER = 12
    GROUP = 13


ATTR_MAX = len(Attr)


class MonitorAttr(IntEnum):
    """Attribute ids of a monitor message."""

    CLIENT = 0
    PEER = 1
    SEND = 2
    SEQ = 3
    TYPE = 4
    DATA = 5


MONITOR_ATTR_MAX = len(MonitorAttr)


class Status(IntEnum):
    """Status codes returned in STATUS messages."""

    OK = 0
    INVALID_COMMAND = 1
    INVALID_ARGUMENT = 2
    METHOD_NOT_FOUND = 3
    NOT_FOUND = 4
    NO_DATA = 5
    PERMISSION_DENIED = 6
    TIMEOUT = 7
    NOT_SUPPORTED = 8
    UNKNOWN_ERROR = 9
    CONNECTION_FAILED = 10
    NO_MEMORY = 11
    PARSE_ERROR = 12
    SYSTEM_ERROR = 13


_HEADER = struct.Struct(">BBHI")
HEADER_SIZE = _HEADER.size


@dataclass
class MsgHeader:
    """The fixed eight-byte header that precedes every message."""

    type: int
    seq: int = 0
    peer: int = 0
    version: int = 0

    def pack(self) -> bytes:
        """Encode the header in network byte order."""
        return _HEADER.pack(
            self.version & 0xFF,
            self.type & 0xFF,
            self.seq & 0xFFFF,
            self.peer & 0xFFFFFFFF,
        )

    @classmethod
    def unpack(cls, data: bytes) -> MsgHeader:
        """Decode a header from the start of ``data``."""
        if len(data) < HEADER_SIZE:
            raise ValueError(f"message header needs {HEADER_SIZE} bytes, got {len(data)}")
        version, msg_type, seq, peer = _HEADER.unpack_from(data)
        return cls(type=msg_type, seq=seq, peer=peer, version=version)


def strmatch_len(s1: str, s2: str) -> tuple[bool, int]:
    """Return whether two strings are equal and the length of their common prefix."""
    if s1 == s2:
        return True, len(s1)
    return False, len(os.path.commonprefix([s1, s2]))