"""Tests for the structured record codec"""

import io
from dataclasses import dataclass, field
from typing import Dict, Optional

import cbor2
import pytest

from netdispatch.config import Limits
from netdispatch.handlers import ComplexData, sample_data
from netdispatch.record import (
    RecordEncoder,
    RecordDecoder,
    encode_record,
    decode_record,
    record_schema,
    EncodeError,
    EncodeCycleError,
    SchemaError,
    DecodeError,
    KIND_INT,
    KIND_MAP,
    KIND_REF,
    TYPE_DEF,
    VALUE,
)


@dataclass
class Tree:
    label: str = ""
    left: Optional["Tree"] = None
    right: Optional["Tree"] = None


@dataclass
class Short:
    n: int = 0
    s: str = ""


@dataclass
class WrongKind:
    n: str = ""
    s: str = ""
    m: Dict[str, int] = field(default_factory=dict)
    p: bytes = b""
    c: Optional["WrongKind"] = None


@dataclass
class Owner:
    name: str = ""
    pet: Optional[Short] = None


def roundtrip(value, cls, limits=None):
    buf = io.BytesIO()
    encode_record(buf, value, limits)
    buf.seek(0)
    return decode_record(buf, cls, limits)


def chain(depth: int) -> ComplexData:
    head = ComplexData(n=0)
    node = head
    for i in range(1, depth):
        node.c = ComplexData(n=i, s=f"level {i}")
        node = node.c
    return head


def read_items(data: bytes) -> list:
    fp = io.BytesIO(data)
    decoder = cbor2.CBORDecoder(fp)
    items = []
    while fp.tell() < len(data):
        items.append(decoder.decode())
    return items


# TEST101: sample record with nested record round-trips field for field
def test_101_roundtrip_sample():
    original = sample_data()
    decoded = roundtrip(original, ComplexData)

    assert decoded == original
    assert decoded is not original
    assert decoded.c is not original.c
    assert decoded.m == {"three": 3, "two": 2, "one": 1}


# TEST102: record without nested reference round-trips
def test_102_roundtrip_flat():
    original = ComplexData(n=-5, s="", m={}, p=b"")
    assert roundtrip(original, ComplexData) == original


# TEST103: nesting up to max_depth round-trips
def test_103_roundtrip_deep_chain():
    limits = Limits(max_line=1024, max_depth=32)
    original = chain(32)
    assert roundtrip(original, ComplexData, limits) == original


# TEST104: nesting beyond max_depth is rejected by the encoder without being a cycle
def test_104_encode_depth_limit():
    limits = Limits(max_line=1024, max_depth=3)
    buf = io.BytesIO()
    with pytest.raises(EncodeError) as excinfo:
        encode_record(buf, chain(4), limits)
    assert not isinstance(excinfo.value, EncodeCycleError)


# TEST105: a record pointing to itself is rejected with EncodeCycleError and nothing is written
def test_105_self_reference_cycle():
    record = ComplexData(n=1)
    record.c = record

    buf = io.BytesIO()
    with pytest.raises(EncodeCycleError):
        encode_record(buf, record)
    assert buf.getvalue() == b""


# TEST106: an indirect cycle through an ancestor is rejected
def test_106_indirect_cycle():
    a = ComplexData(n=1)
    b = ComplexData(n=2)
    c = ComplexData(n=3)
    a.c = b
    b.c = c
    c.c = a

    with pytest.raises(EncodeCycleError):
        encode_record(io.BytesIO(), a)


# TEST107: a record reached twice through different fields is encoded by value
def test_107_shared_value_is_copied():
    shared = Tree(label="shared")
    root = Tree(label="root", left=shared, right=shared)

    decoded = roundtrip(root, Tree)

    assert decoded == root
    assert decoded.left == decoded.right
    assert decoded.left is not decoded.right


# TEST108: type definitions are sent once per encoder
def test_108_type_definition_sent_once():
    buf = io.BytesIO()
    encoder = RecordEncoder(buf)

    encoder.encode(ComplexData(n=1))
    first = buf.tell()
    encoder.encode(ComplexData(n=2))
    second = buf.tell() - first

    items = read_items(buf.getvalue())
    assert [item[0] for item in items] == [TYPE_DEF, VALUE, VALUE]
    assert second < first

    buf.seek(0)
    decoder = RecordDecoder(buf)
    assert decoder.decode(ComplexData).n == 1
    assert decoder.decode(ComplexData).n == 2


# TEST109: the type definition lists fields in declaration order with their kinds
def test_109_type_definition_layout():
    buf = io.BytesIO()
    encode_record(buf, ComplexData(n=7))

    definition, value = read_items(buf.getvalue())
    assert definition == [
        TYPE_DEF, 1, "ComplexData",
        [["n", "int"], ["s", "str"], ["m", "map"], ["p", "bytes"], ["c", ["ref", 1]]],
    ]
    assert value == [VALUE, 1, [7, "", {}, b"", None]]


# TEST110: nested records of another type get their own definition first
def test_110_nested_type_definitions():
    buf = io.BytesIO()
    encode_record(buf, Owner(name="ann", pet=Short(n=3, s="cat")))

    items = read_items(buf.getvalue())
    assert [item[0] for item in items] == [TYPE_DEF, TYPE_DEF, VALUE]
    assert items[0][2] == "Owner"
    assert items[1][2] == "Short"

    buf.seek(0)
    assert decode_record(buf, Owner) == Owner(name="ann", pet=Short(n=3, s="cat"))


# TEST111: truncated input raises DecodeError
def test_111_truncated_input():
    buf = io.BytesIO()
    encode_record(buf, sample_data())
    data = buf.getvalue()

    with pytest.raises(DecodeError):
        decode_record(io.BytesIO(data[:-3]), ComplexData)


# TEST112: empty input raises DecodeError
def test_112_empty_input():
    with pytest.raises(DecodeError):
        decode_record(io.BytesIO(b""), ComplexData)


# TEST113: decoding into a type with a different field count raises DecodeError
def test_113_field_count_mismatch():
    buf = io.BytesIO()
    encode_record(buf, Short(n=1, s="x"))
    buf.seek(0)

    with pytest.raises(DecodeError):
        decode_record(buf, ComplexData)


# TEST114: decoding into a type with a different field kind raises DecodeError
def test_114_field_kind_mismatch():
    buf = io.BytesIO()
    encode_record(buf, WrongKind(n="not a number"))
    buf.seek(0)

    with pytest.raises(DecodeError):
        decode_record(buf, ComplexData)


# TEST115: fields are matched by name, not position
def test_115_fields_matched_by_name():
    data = cbor2.dumps([TYPE_DEF, 9, "Short", [["s", "str"], ["n", "int"]]])
    data += cbor2.dumps([VALUE, 9, ["hi", 42]])

    assert decode_record(io.BytesIO(data), Short) == Short(n=42, s="hi")


# TEST116: ill-formed items raise DecodeError
@pytest.mark.parametrize("item", [
    42,
    [],
    [7, 1, []],
    [TYPE_DEF, 1, "Short"],
    [TYPE_DEF, 0, "Short", []],
    [TYPE_DEF, 1, "Short", [["n", "float"]]],
    [VALUE, 5, [1, "x"]],
])
def test_116_ill_formed_items(item):
    with pytest.raises(DecodeError):
        decode_record(io.BytesIO(cbor2.dumps(item)), Short)


# TEST117: a value whose field has the wrong wire type raises DecodeError
def test_117_wrong_value_type():
    data = cbor2.dumps([TYPE_DEF, 1, "Short", [["n", KIND_INT], ["s", "str"]]])
    data += cbor2.dumps([VALUE, 1, ["seven", "x"]])

    with pytest.raises(DecodeError):
        decode_record(io.BytesIO(data), Short)


# TEST118: a map with non-integer values raises DecodeError
def test_118_bad_map_values():
    data = cbor2.dumps([TYPE_DEF, 1, "M", [["m", KIND_MAP]]])
    data += cbor2.dumps([VALUE, 1, [{"one": "1"}]])

    @dataclass
    class M:
        m: Dict[str, int]

    with pytest.raises(DecodeError):
        decode_record(io.BytesIO(data), M)


# TEST119: nesting beyond the decoder's max_depth raises DecodeError
def test_119_decode_depth_limit():
    buf = io.BytesIO()
    encode_record(buf, chain(10))
    buf.seek(0)

    with pytest.raises(DecodeError):
        decode_record(buf, ComplexData, Limits(max_line=1024, max_depth=5))


# TEST120: the decoder stops exactly at the end of the record
def test_120_decoder_does_not_read_past_record():
    buf = io.BytesIO()
    encode_record(buf, sample_data())
    end = buf.tell()
    buf.write(b"TRAILING")
    buf.seek(0)

    decode_record(buf, ComplexData)
    assert buf.tell() == end
    assert buf.read() == b"TRAILING"


# TEST121: large byte fields round-trip
def test_121_large_bytes():
    original = ComplexData(n=1, p=bytes(range(256)) * 4096)
    assert roundtrip(original, ComplexData) == original


# TEST122: encoder rejects values of the wrong Python type
@pytest.mark.parametrize("record", [
    ComplexData(n="23"),
    ComplexData(n=True),
    ComplexData(s=b"bytes"),
    ComplexData(m={"one": "1"}),
    ComplexData(m={1: 1}),
    ComplexData(p="text"),
])
def test_122_encode_rejects_wrong_types(record):
    with pytest.raises(EncodeError):
        encode_record(io.BytesIO(), record)


# TEST123: a nested record of the wrong class is rejected
def test_123_encode_rejects_wrong_nested_type():
    with pytest.raises(EncodeError):
        encode_record(io.BytesIO(), ComplexData(c=Short()))


# TEST124: unsupported annotations raise SchemaError
def test_124_schema_errors():
    @dataclass
    class WithFloat:
        x: float

    @dataclass
    class WithList:
        x: list

    class NotADataclass:
        pass

    for cls in (WithFloat, WithList, NotADataclass):
        with pytest.raises(SchemaError):
            record_schema(cls)

    with pytest.raises(SchemaError):
        encode_record(io.BytesIO(), ComplexData)


# TEST125: record_schema describes fields in declaration order
def test_125_record_schema():
    schema = record_schema(ComplexData)
    assert schema.name == "ComplexData"
    assert schema.field_names() == ["n", "s", "m", "p", "c"]
    assert schema.fields[4].kind == KIND_REF
    assert schema.fields[4].target is ComplexData
    assert record_schema(ComplexData) is schema
