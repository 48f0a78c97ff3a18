"""Binary attribute containers and the typed, named message format built on them."""

from __future__ import annotations

import json
import struct
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

BLOB_ATTR_EXTENDED = 0x80000000
_ID_MASK = 0x7F000000
_ID_SHIFT = 24
_LEN_MASK = 0x00FFFFFF
_ATTR_HDR_LEN = 4

_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1
_INT64_MIN, _UINT64_MAX = -(2**63), 2**64 - 1


def _pad(length: int) -> int:
    return (length + 3) & ~3


class BlobType(IntEnum):
    """Value kinds that a plain attribute policy can demand."""

    UNSPEC = 0
    NESTED = 1
    BINARY = 2
    STRING = 3
    INT8 = 4
    INT16 = 5
    INT32 = 6
    INT64 = 7
    DOUBLE = 8


class BlobmsgType(IntEnum):
    """Type ids of named message fields."""

    UNSPEC = 0
    ARRAY = 1
    TABLE = 2
    STRING = 3
    INT64 = 4
    INT32 = 5
    INT16 = 6
    INT8 = 7
    DOUBLE = 8
    BOOL = 7


BLOBMSG_TYPE_LAST = BlobmsgType.DOUBLE

_BLOB_INT_LEN = {BlobType.INT8: 1, BlobType.INT16: 2, BlobType.INT32: 4, BlobType.INT64: 8}


@dataclass(frozen=True)
class BlobAttr:
    """One attribute: an id, its payload and whether it carries a name header."""

    id: int
    payload: bytes = b""
    extended: bool = False

    def pack(self) -> bytes:
        """Encode the attribute, padded to a multiple of four bytes."""
        if not 0 <= self.id <= (_ID_MASK >> _ID_SHIFT):
            raise ValueError(f"attribute id {self.id} out of range")
        raw_len = _ATTR_HDR_LEN + len(self.payload)
        if raw_len > _LEN_MASK:
            raise ValueError("attribute payload too large")
        word = (BLOB_ATTR_EXTENDED if self.extended else 0) | (self.id << _ID_SHIFT) | raw_len
        return word.to_bytes(4, "big") + bytes(self.payload) + b"\0" * (_pad(raw_len) - raw_len)

    def as_int(self) -> int:
        """The payload read as an unsigned big-endian integer."""
        return int.from_bytes(self.payload, "big")

    def as_string(self) -> str:
        """The payload read as a NUL-terminated string."""
        return self.payload.split(b"\0", 1)[0].decode("utf-8", "replace")

    def children(self) -> list[BlobAttr]:
        """The attributes nested in the payload."""
        return list(iter_attrs(self.payload))


def iter_attrs(data: bytes) -> Iterator[BlobAttr]:
    """Yield the attributes stored back to back in ``data``, stopping at a malformed one."""
    data = bytes(data)
    pos = 0
    while len(data) - pos >= _ATTR_HDR_LEN:
        word = int.from_bytes(data[pos:pos + _ATTR_HDR_LEN], "big")
        raw_len = word & _LEN_MASK
        if raw_len < _ATTR_HDR_LEN or raw_len > len(data) - pos:
            return
        yield BlobAttr(
            id=(word & _ID_MASK) >> _ID_SHIFT,
            payload=data[pos + _ATTR_HDR_LEN:pos + raw_len],
            extended=bool(word & BLOB_ATTR_EXTENDED),
        )
        pos += _pad(raw_len)


def _check_type(payload: bytes, kind: BlobType) -> bool:
    expected = _BLOB_INT_LEN.get(kind)
    if expected is not None:
        return len(payload) == expected
    if kind == BlobType.STRING:
        return bool(payload) and payload[-1] == 0
    return True


def parse_attrs(data: bytes, policy: Sequence[BlobType | None]) -> dict[int, BlobAttr]:
    """Index the attributes in ``data`` by id.

    ``policy`` holds one entry per accepted id; ids beyond it are dropped, and an
    attribute whose payload does not fit its policy type is ignored. A later
    attribute with the same id replaces an earlier one.
    """
    result: dict[int, BlobAttr] = {}
    for attr in iter_attrs(data):
        if attr.id >= len(policy):
            continue
        kind = policy[attr.id]
        if kind is not None and not _check_type(attr.payload, BlobType(kind)):
            continue
        result[attr.id] = attr
    return result


def put_int32(attr_id: int, value: int) -> bytes:
    """Encode a 32-bit integer attribute."""
    return BlobAttr(attr_id, (int(value) & 0xFFFFFFFF).to_bytes(4, "big")).pack()


def put_int8(attr_id: int, value: int) -> bytes:
    """Encode an 8-bit integer attribute."""
    return BlobAttr(attr_id, bytes([int(value) & 0xFF])).pack()


def put_string(attr_id: int, value: str) -> bytes:
    """Encode a NUL-terminated string attribute."""
    return BlobAttr(attr_id, value.encode("utf-8") + b"\0").pack()


def put_nested(attr_id: int, payload: bytes) -> bytes:
    """Encode an attribute wrapping already encoded attributes or raw bytes."""
    return BlobAttr(attr_id, bytes(payload)).pack()


def _blobmsg_attr(kind: BlobmsgType, name: str, data: bytes) -> bytes:
    encoded = name.encode("utf-8")
    if len(encoded) > 0xFFFF:
        raise ValueError("field name too long")
    head = len(encoded).to_bytes(2, "big") + encoded + b"\0"
    head += b"\0" * (_pad(len(head)) - len(head))
    return BlobAttr(int(kind), head + data, extended=True).pack()


def blobmsg_encode(name: str | None, value: Any) -> bytes:
    """Encode one named field holding a Python value."""
    name = name or ""
    if value is None:
        return _blobmsg_attr(BlobmsgType.UNSPEC, name, b"")
    if isinstance(value, bool):
        return _blobmsg_attr(BlobmsgType.BOOL, name, bytes([int(value)]))
    if isinstance(value, int):
        if _INT32_MIN <= value <= _INT32_MAX:
            return _blobmsg_attr(BlobmsgType.INT32, name, value.to_bytes(4, "big", signed=True))
        if _INT64_MIN <= value <= _UINT64_MAX:
            return _blobmsg_attr(
                BlobmsgType.INT64, name, (value & _UINT64_MAX).to_bytes(8, "big")
            )
        raise ValueError(f"integer {value} does not fit in 64 bits")
    if isinstance(value, float):
        return _blobmsg_attr(BlobmsgType.DOUBLE, name, struct.pack(">d", value))
    if isinstance(value, str):
        return _blobmsg_attr(BlobmsgType.STRING, name, value.encode("utf-8") + b"\0")
    if isinstance(value, Mapping):
        return _blobmsg_attr(BlobmsgType.TABLE, name, blobmsg_encode_table(value))
    if isinstance(value, (list, tuple)):
        body = b"".join(blobmsg_encode("", item) for item in value)
        return _blobmsg_attr(BlobmsgType.ARRAY, name, body)
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def _blobmsg_split(attr: BlobAttr) -> tuple[str, bytes]:
    if not attr.extended:
        raise ValueError("attribute has no field header")
    payload = attr.payload
    if len(payload) < 2:
        raise ValueError("truncated field header")
    name_len = int.from_bytes(payload[:2], "big")
    hdr_len = _pad(2 + name_len + 1)
    if hdr_len > len(payload) or payload[2 + name_len] != 0:
        raise ValueError("malformed field name")
    name = payload[2:2 + name_len].decode("utf-8", "replace")
    return name, payload[hdr_len:]


def _fixed(data: bytes, size: int) -> bytes:
    if len(data) != size:
        raise ValueError(f"expected {size} bytes of field data, got {len(data)}")
    return data


def blobmsg_decode(attr: BlobAttr) -> tuple[str, Any]:
    """Decode one named field into its name and Python value."""
    name, data = _blobmsg_split(attr)
    kind = attr.id
    if kind == BlobmsgType.UNSPEC:
        return name, None
    if kind == BlobmsgType.INT8:
        return name, bool(_fixed(data, 1)[0])
    if kind == BlobmsgType.INT16:
        return name, int.from_bytes(_fixed(data, 2), "big", signed=True)
    if kind == BlobmsgType.INT32:
        return name, int.from_bytes(_fixed(data, 4), "big", signed=True)
    if kind == BlobmsgType.INT64:
        return name, int.from_bytes(_fixed(data, 8), "big", signed=True)
    if kind == BlobmsgType.DOUBLE:
        return name, struct.unpack(">d", _fixed(data, 8))[0]
    if kind == BlobmsgType.STRING:
        if not data or data[-1] != 0:
            raise ValueError("string field is not NUL-terminated")
        return name, data.split(b"\0", 1)[0].decode("utf-8", "replace")
    if kind == BlobmsgType.ARRAY:
        return name, [blobmsg_decode(child)[1] for child in iter_attrs(data)]
    if kind == BlobmsgType.TABLE:
        table: dict[str, Any] = {}
        for child in iter_attrs(data):
            key, value = blobmsg_decode(child)
            if not key:
                raise ValueError("table entry without a name")
            table[key] = value
        return name, table
    raise ValueError(f"unknown field type {kind}")


def blobmsg_encode_table(mapping: Mapping[str, Any]) -> bytes:
    """Encode a mapping as the body of a table."""
    parts = []
    for key, value in mapping.items():
        if not isinstance(key, str):
            raise TypeError(f"table keys must be strings, got {type(key).__name__}")
        parts.append(blobmsg_encode(key, value))
    return b"".join(parts)


def blobmsg_decode_table(data: bytes) -> dict[str, Any]:
    """Decode the body of a table, skipping unnamed or malformed entries."""
    result: dict[str, Any] = {}
    for attr in iter_attrs(data):
        try:
            name, value = blobmsg_decode(attr)
        except ValueError:
            continue
        if name:
            result[name] = value
    return result


def blobmsg_from_json(text: str) -> bytes:
    """Encode a JSON object as the body of a table."""
    document = json.loads(text)
    if not isinstance(document, dict):
        raise ValueError("JSON document is not an object")
    return blobmsg_encode_table(document)