import pytest

from ubusbroker.protocol import HEADER_SIZE, MsgHeader, MsgType, strmatch_len


def test_header_wire_format():
    header = MsgHeader(type=MsgType.INVOKE, seq=0x0102, peer=0x03040506)
    assert header.pack() == b"\x00\x05\x01\x02\x03\x04\x05\x06"


def test_header_roundtrip_ignores_trailing_data():
    header = MsgHeader(type=MsgType.DATA, seq=65535, peer=0xDEADBEEF, version=0)
    decoded = MsgHeader.unpack(header.pack() + b"payload")
    assert decoded == header
    assert len(header.pack()) == HEADER_SIZE


def test_header_type_byte():
    assert MsgHeader(MsgType.NOTIFY).pack()[1] == MsgType.NOTIFY


def test_header_unpack_short_raises():
    with pytest.raises(ValueError):
        MsgHeader.unpack(b"\x00\x01\x02")


def test_header_unknown_type_preserved():
    decoded = MsgHeader.unpack(bytes([0, 200, 0, 0, 0, 0, 0, 0]))
    assert decoded.type == 200


def test_header_values_are_masked():
    header = MsgHeader(type=MsgType.PING, seq=0x10001, peer=-1)
    decoded = MsgHeader.unpack(header.pack())
    assert decoded.seq == 0x10001 & 0xFFFF
    assert decoded.peer == 2**32 - 1


def test_strmatch_full_match():
    assert strmatch_len("ubus.object", "ubus.object") == (True, len("ubus.object"))


def test_strmatch_prefix():
    assert strmatch_len("ubus.object", "ubus.acl") == (False, len("ubus."))


def test_strmatch_key_is_prefix_of_string():
    full, length = strmatch_len("network.interface", "network")
    assert full is False
    assert length == len("network")


def test_strmatch_nothing_in_common():
    assert strmatch_len("abc", "xyz") == (False, 0)