import pytest

from ubusbroker.blob import (
    BlobAttr,
    BlobType,
    blobmsg_decode,
    blobmsg_decode_table,
    blobmsg_encode,
    blobmsg_encode_table,
    blobmsg_from_json,
    iter_attrs,
    parse_attrs,
    put_int8,
    put_int32,
    put_nested,
    put_string,
)
from ubusbroker.protocol import Attr


def test_put_int32_wire_format():
    assert put_int32(Attr.OBJID, 5) == b"\x03\x00\x00\x08\x00\x00\x00\x05"


def test_put_string_is_padded_and_roundtrips():
    data = put_string(Attr.OBJPATH, "ab")
    assert len(data) % 4 == 0
    attrs = list(iter_attrs(data))
    assert len(attrs) == 1
    assert attrs[0].id == Attr.OBJPATH
    assert attrs[0].as_string() == "ab"
    assert attrs[0].pack() == data


def test_put_int8_roundtrip():
    attr = next(iter_attrs(put_int8(Attr.NO_REPLY, True)))
    assert attr.id == Attr.NO_REPLY
    assert attr.as_int() == 1


def test_negative_int32_is_masked():
    assert put_int32(1, -1) == put_int32(1, 2**32 - 1)


def test_nested_children():
    data = put_nested(Attr.SUBSCRIBERS, put_int32(0, 1) + put_int32(0, 2))
    attr = next(iter_attrs(data))
    assert [child.as_int() for child in attr.children()] == [1, 2]


def test_iter_attrs_stops_at_truncated_attribute():
    data = put_int32(3, 1) + put_int32(3, 2)[:6]
    assert [attr.as_int() for attr in iter_attrs(data)] == [1]


def test_attr_pack_roundtrip_keeps_extended_flag():
    attr = BlobAttr(5, b"abcd", extended=True)
    assert next(iter_attrs(attr.pack())) == attr


def test_attr_id_out_of_range():
    with pytest.raises(ValueError):
        BlobAttr(200, b"").pack()


def test_parse_attrs_applies_policy():
    policy = [None, BlobType.INT32, BlobType.STRING]
    data = put_int32(1, 7) + put_string(2, "x") + put_int32(5, 1)
    result = parse_attrs(data, policy)
    assert sorted(result) == [1, 2]
    assert result[1].as_int() == 7
    assert result[2].as_string() == "x"


def test_parse_attrs_rejects_wrong_types():
    policy = [None, BlobType.INT32, BlobType.STRING]
    data = put_int8(1, 1) + put_nested(2, b"ab")
    assert parse_attrs(data, policy) == {}


def test_parse_attrs_later_duplicate_wins():
    policy = [None, BlobType.INT32]
    result = parse_attrs(put_int32(1, 1) + put_int32(1, 2), policy)
    assert result[1].as_int() == 2


def test_blobmsg_encode_wire_format():
    assert blobmsg_encode("a", 1) == b"\x85\x00\x00\x0c\x00\x01a\x00\x00\x00\x00\x01"


def test_blobmsg_table_roundtrip():
    document = {
        "s": "text",
        "i": -5,
        "big": 2**40,
        "f": 1.5,
        "b": True,
        "n": None,
        "l": [1, "x", [False]],
        "t": {"k": "v"},
    }
    decoded = blobmsg_decode_table(blobmsg_encode_table(document))
    assert decoded == document
    assert isinstance(decoded["b"], bool)
    assert isinstance(decoded["l"][2][0], bool)


def test_blobmsg_decode_single_field():
    attr = next(iter_attrs(blobmsg_encode("key", [1, 2])))
    assert blobmsg_decode(attr) == ("key", [1, 2])


def test_blobmsg_decode_rejects_plain_attr():
    with pytest.raises(ValueError):
        blobmsg_decode(next(iter_attrs(put_int32(3, 1))))


def test_decode_table_skips_unnamed_and_invalid():
    data = blobmsg_encode("", 1) + blobmsg_encode("ok", 2) + put_int32(3, 1)
    assert blobmsg_decode_table(data) == {"ok": 2}


def test_encode_unsupported_values():
    with pytest.raises(TypeError):
        blobmsg_encode("x", object())
    with pytest.raises(ValueError):
        blobmsg_encode("x", 2**70)
    with pytest.raises(TypeError):
        blobmsg_encode_table({1: "x"})


def test_from_json_object():
    text = '{"user": "root", "access": {"network.*": {"methods": ["*"]}}}'
    assert blobmsg_decode_table(blobmsg_from_json(text)) == {
        "user": "root",
        "access": {"network.*": {"methods": ["*"]}},
    }


def test_from_json_rejects_non_object_and_garbage():
    with pytest.raises(ValueError):
        blobmsg_from_json("[1, 2]")
    with pytest.raises(ValueError):
        blobmsg_from_json("{")