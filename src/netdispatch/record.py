"""Structured Payload Codec - self-describing record graphs over a stream

Records are plain dataclasses. Each field must be annotated with one of:

- `int`
- `str`
- `bytes`
- `Dict[str, int]`
- `Optional[<record dataclass>]` (a nested record, possibly of the same type)

The codec writes CBOR items directly to a FramedStream (or any object with
`write`/`flush`) and reads them back one item at a time, so decoding stops
exactly at the end of the record and never touches the bytes after it.

## Wire Format

```
┌─────────────────────────────────────────────────────────┐
│  [0, type_id, type_name, [[field, kind], ...]]          │  once per type
├─────────────────────────────────────────────────────────┤
│  [1, type_id, [value, value, ...]]                      │  one per record
└─────────────────────────────────────────────────────────┘
```

`kind` is "int", "str", "bytes", "map" or ["ref", type_id]. A ref value is
null or the nested record's value list, written inline. References are
encoded by value: a record reachable twice is written twice, and a record
that points back to one of its own ancestors cannot be written at all.
"""

import dataclasses
import logging
import threading
import types
import typing
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import cbor2

from netdispatch.config import Limits
from netdispatch.framing import DispatchError


logger = logging.getLogger(__name__)

# Item tags
TYPE_DEF = 0
VALUE = 1

KIND_INT = "int"
KIND_STR = "str"
KIND_BYTES = "bytes"
KIND_MAP = "map"
KIND_REF = "ref"

SCALAR_KINDS = (KIND_INT, KIND_STR, KIND_BYTES, KIND_MAP)

# A stream may not define more types than this before sending a value
MAX_TYPE_DEFINITIONS = 1024


class CodecError(DispatchError):
    """Base record codec error"""
    pass


class EncodeError(CodecError):
    """Record encoding error"""
    pass


class EncodeCycleError(EncodeError):
    """Record graph contains a pointer cycle"""
    pass


class SchemaError(EncodeError):
    """Dataclass cannot be described as a record type"""
    pass


class DecodeError(CodecError):
    """Record decoding error"""
    pass


@dataclass(frozen=True)
class FieldSpec:
    """One record field"""
    name: str
    kind: str
    target: Optional[type] = None  # Record class for KIND_REF fields


@dataclass(frozen=True)
class RecordSchema:
    """Field layout of a record dataclass, in declaration order"""
    cls: type
    name: str
    fields: Tuple[FieldSpec, ...]

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


_schemas: Dict[type, RecordSchema] = {}
_schemas_lock = threading.Lock()


def _unwrap_optional(hint) -> Optional[type]:
    origin = typing.get_origin(hint)
    if origin is typing.Union or (hasattr(types, "UnionType") and origin is types.UnionType):
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(args) == 1 and len(typing.get_args(hint)) == 2:
            return args[0]
    return None


def _field_spec(owner: type, name: str, hint) -> FieldSpec:
    if hint is bool:
        raise SchemaError(f"{owner.__name__}.{name}: bool fields are not supported")
    if hint is int:
        return FieldSpec(name, KIND_INT)
    if hint is str:
        return FieldSpec(name, KIND_STR)
    if hint is bytes:
        return FieldSpec(name, KIND_BYTES)

    if typing.get_origin(hint) is dict:
        if typing.get_args(hint) == (str, int):
            return FieldSpec(name, KIND_MAP)
        raise SchemaError(f"{owner.__name__}.{name}: only Dict[str, int] maps are supported")

    target = _unwrap_optional(hint)
    if target is not None:
        if isinstance(target, type) and dataclasses.is_dataclass(target):
            return FieldSpec(name, KIND_REF, target)
        raise SchemaError(f"{owner.__name__}.{name}: Optional must wrap a record dataclass")

    raise SchemaError(f"{owner.__name__}.{name}: unsupported field type {hint!r}")


def record_schema(cls: type) -> RecordSchema:
    """Describe a record dataclass

    Args:
        cls: A dataclass type

    Returns:
        The (cached) RecordSchema for cls

    Raises:
        SchemaError: If cls is not a dataclass or has unsupported fields
    """
    with _schemas_lock:
        cached = _schemas.get(cls)
    if cached is not None:
        return cached

    if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
        raise SchemaError(f"{cls!r} is not a dataclass")

    try:
        hints = typing.get_type_hints(cls)
    except Exception as e:
        raise SchemaError(f"cannot resolve annotations of {cls.__name__}: {e}") from e

    specs = []
    for f in dataclasses.fields(cls):
        if not f.init:
            raise SchemaError(f"{cls.__name__}.{f.name}: init=False fields are not supported")
        specs.append(_field_spec(cls, f.name, hints[f.name]))

    schema = RecordSchema(cls=cls, name=cls.__name__, fields=tuple(specs))
    with _schemas_lock:
        _schemas[cls] = schema
    return schema


def reachable_schemas(schema: RecordSchema) -> List[RecordSchema]:
    """All record schemas reachable from schema through ref fields, schema first"""
    ordered = [schema]
    seen = {schema.cls}
    i = 0
    while i < len(ordered):
        for f in ordered[i].fields:
            if f.kind == KIND_REF and f.target not in seen:
                seen.add(f.target)
                ordered.append(record_schema(f.target))
        i += 1
    return ordered


class RecordEncoder:
    """Writes records to one stream

    Type definitions are sent the first time a record type appears on this
    encoder; later records of the same type only carry values.
    """

    def __init__(self, stream, limits: Optional[Limits] = None):
        """Create an encoder

        Args:
            stream: Object with write() and flush(), usually a FramedStream
            limits: Optional limits (defaults to the stream's, then Limits.default())
        """
        self.stream = stream
        if limits is None:
            limits = getattr(stream, "limits", None) or Limits.default()
        self.limits = limits
        self._cbor = cbor2.CBOREncoder(stream)
        self._type_ids: Dict[type, int] = {}
        self._sent: set = set()

    def _type_id(self, cls: type) -> int:
        if cls not in self._type_ids:
            self._type_ids[cls] = len(self._type_ids) + 1
        return self._type_ids[cls]

    def _definition(self, schema: RecordSchema) -> list:
        fields = []
        for f in schema.fields:
            if f.kind == KIND_REF:
                fields.append([f.name, [KIND_REF, self._type_id(f.target)]])
            else:
                fields.append([f.name, f.kind])
        return [TYPE_DEF, self._type_id(schema.cls), schema.name, fields]

    def _flatten(self, value: Any, schema: RecordSchema, path: Dict[int, int], depth: int) -> list:
        # path is the arena of records on the current branch: id -> depth
        if depth > self.limits.max_depth:
            raise EncodeError(f"{schema.name} nested deeper than {self.limits.max_depth}")

        key = id(value)
        if key in path:
            raise EncodeCycleError(
                f"{schema.name} at depth {depth} points back to its ancestor at depth {path[key]}"
            )
        path[key] = depth
        try:
            return [
                self._flatten_field(schema, f, getattr(value, f.name), path, depth)
                for f in schema.fields
            ]
        finally:
            del path[key]

    def _flatten_field(self, schema: RecordSchema, f: FieldSpec, v: Any, path: Dict[int, int], depth: int):
        where = f"{schema.name}.{f.name}"
        if f.kind == KIND_INT:
            if not isinstance(v, int) or isinstance(v, bool):
                raise EncodeError(f"{where}: expected int, got {type(v).__name__}")
            return v
        if f.kind == KIND_STR:
            if not isinstance(v, str):
                raise EncodeError(f"{where}: expected str, got {type(v).__name__}")
            return v
        if f.kind == KIND_BYTES:
            if not isinstance(v, (bytes, bytearray, memoryview)):
                raise EncodeError(f"{where}: expected bytes, got {type(v).__name__}")
            return bytes(v)
        if f.kind == KIND_MAP:
            if not isinstance(v, dict):
                raise EncodeError(f"{where}: expected dict, got {type(v).__name__}")
            for k, item in v.items():
                if not isinstance(k, str) or not isinstance(item, int) or isinstance(item, bool):
                    raise EncodeError(f"{where}: map entries must be str -> int, got {k!r}: {item!r}")
            return dict(v)

        # KIND_REF
        if v is None:
            return None
        if not isinstance(v, f.target):
            raise EncodeError(f"{where}: expected {f.target.__name__}, got {type(v).__name__}")
        return self._flatten(v, record_schema(f.target), path, depth + 1)

    def encode(self, value: Any) -> None:
        """Write one record and flush

        Args:
            value: A record dataclass instance

        Raises:
            SchemaError: If the value's type is not a record dataclass
            EncodeCycleError: If the record graph contains a pointer cycle
            EncodeError: If a field has the wrong type or nesting is too deep
            StreamIOError: If the write fails
        """
        if isinstance(value, type):
            raise SchemaError(f"expected a record instance, got the class {value.__name__}")
        schema = record_schema(type(value))

        # Nothing is written unless the whole graph flattens cleanly
        body = self._flatten(value, schema, {}, 1)

        reachable = reachable_schemas(schema)
        for s in reachable:
            self._type_id(s.cls)
        items = [self._definition(s) for s in reachable if s.cls not in self._sent]
        items.append([VALUE, self._type_id(schema.cls), body])

        for item in items:
            try:
                self._cbor.encode(item)
            except DispatchError:
                raise
            except (cbor2.CBOREncodeError, ValueError, TypeError) as e:
                raise EncodeError(f"CBOR encoding failed: {e}") from e
        self._sent.update(s.cls for s in reachable)
        self.stream.flush()


@dataclass
class _WireType:
    type_id: int
    name: str
    fields: List[Tuple[str, Any]]  # (name, kind) in wire order

    def index(self) -> Dict[str, int]:
        return {name: i for i, (name, _) in enumerate(self.fields)}


class RecordDecoder:
    """Reads records from one stream

    Keeps the type definitions seen so far, so a decoder must stay paired
    with the encoder that wrote the stream.
    """

    def __init__(self, stream, limits: Optional[Limits] = None):
        """Create a decoder

        Args:
            stream: Object with read(n), usually a FramedStream
            limits: Optional limits (defaults to the stream's, then Limits.default())
        """
        self.stream = stream
        if limits is None:
            limits = getattr(stream, "limits", None) or Limits.default()
        self.limits = limits
        self._cbor = cbor2.CBORDecoder(stream)
        self._types: Dict[int, _WireType] = {}
        self._compatible: set = set()

    def _read_item(self) -> Any:
        try:
            return self._cbor.decode()
        except DispatchError:
            raise
        except EOFError as e:
            raise DecodeError("truncated record payload") from e
        except (cbor2.CBORDecodeError, ValueError) as e:
            raise DecodeError(f"malformed record payload: {e}") from e

    def _define(self, item: list) -> None:
        if len(item) != 4:
            raise DecodeError(f"type definition has {len(item)} elements, expected 4")
        _, type_id, name, fields = item
        if not isinstance(type_id, int) or isinstance(type_id, bool) or type_id < 1:
            raise DecodeError(f"invalid type id {type_id!r}")
        if not isinstance(name, str):
            raise DecodeError(f"invalid type name {name!r}")
        if type_id in self._types:
            raise DecodeError(f"type id {type_id} defined twice")
        if len(self._types) >= MAX_TYPE_DEFINITIONS:
            raise DecodeError(f"more than {MAX_TYPE_DEFINITIONS} type definitions")
        if not isinstance(fields, list):
            raise DecodeError(f"type {name}: field list expected")

        parsed = []
        for entry in fields:
            if not isinstance(entry, list) or len(entry) != 2 or not isinstance(entry[0], str):
                raise DecodeError(f"type {name}: malformed field entry {entry!r}")
            fname, kind = entry
            if isinstance(kind, list):
                if len(kind) != 2 or kind[0] != KIND_REF or not isinstance(kind[1], int):
                    raise DecodeError(f"type {name}.{fname}: malformed ref kind {kind!r}")
                kind = (KIND_REF, kind[1])
            elif kind not in SCALAR_KINDS:
                raise DecodeError(f"type {name}.{fname}: unknown kind {kind!r}")
            parsed.append((fname, kind))

        if len({fname for fname, _ in parsed}) != len(parsed):
            raise DecodeError(f"type {name}: duplicate field names")

        self._types[type_id] = _WireType(type_id, name, parsed)
        logger.debug("defined wire type %d %s %s", type_id, name, parsed)

    def _wire_type(self, type_id: Any) -> _WireType:
        wire = self._types.get(type_id) if isinstance(type_id, int) else None
        if wire is None:
            raise DecodeError(f"value refers to undefined type id {type_id!r}")
        return wire

    def _check_compatible(self, type_id: int, schema: RecordSchema, checking: set) -> None:
        key = (type_id, schema.cls)
        if key in self._compatible or key in checking:
            return
        checking.add(key)

        wire = self._wire_type(type_id)
        if len(wire.fields) != len(schema.fields):
            raise DecodeError(
                f"type {wire.name} has {len(wire.fields)} fields, {schema.name} expects {len(schema.fields)}"
            )
        kinds = dict(wire.fields)
        for f in schema.fields:
            if f.name not in kinds:
                raise DecodeError(f"type {wire.name} lacks field {f.name} of {schema.name}")
            kind = kinds[f.name]
            if f.kind == KIND_REF:
                if not isinstance(kind, tuple):
                    raise DecodeError(f"{schema.name}.{f.name}: expected a record, wire has {kind}")
                self._check_compatible(kind[1], record_schema(f.target), checking)
            elif kind != f.kind:
                raise DecodeError(f"{schema.name}.{f.name}: expected {f.kind}, wire has {kind!r}")

        self._compatible.add(key)

    def _build(self, type_id: int, values: Any, schema: RecordSchema, depth: int) -> Any:
        if depth > self.limits.max_depth:
            raise DecodeError(f"{schema.name} nested deeper than {self.limits.max_depth}")

        wire = self._wire_type(type_id)
        if not isinstance(values, list) or len(values) != len(wire.fields):
            raise DecodeError(f"{schema.name}: value list does not match type {wire.name}")

        index = wire.index()
        kwargs = {}
        for f in schema.fields:
            i = index[f.name]
            v = values[i]
            where = f"{schema.name}.{f.name}"
            if f.kind == KIND_INT:
                if not isinstance(v, int) or isinstance(v, bool):
                    raise DecodeError(f"{where}: expected int, got {type(v).__name__}")
            elif f.kind == KIND_STR:
                if not isinstance(v, str):
                    raise DecodeError(f"{where}: expected str, got {type(v).__name__}")
            elif f.kind == KIND_BYTES:
                if not isinstance(v, bytes):
                    raise DecodeError(f"{where}: expected bytes, got {type(v).__name__}")
            elif f.kind == KIND_MAP:
                if not isinstance(v, dict) or not all(
                    isinstance(k, str) and isinstance(n, int) and not isinstance(n, bool)
                    for k, n in v.items()
                ):
                    raise DecodeError(f"{where}: expected a str -> int map")
            elif v is not None:
                ref_id = wire.fields[i][1][1]
                v = self._build(ref_id, v, record_schema(f.target), depth + 1)
            kwargs[f.name] = v

        try:
            return schema.cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"cannot construct {schema.name}: {e}") from e

    def decode(self, cls: type) -> Any:
        """Read one record of the given type

        Type definitions preceding the value are consumed and remembered.
        Reading stops right after the value item.

        Args:
            cls: The expected record dataclass

        Returns:
            A freshly allocated record graph

        Raises:
            DecodeError: On truncated or malformed input or a shape mismatch
            StreamIOError: If the read fails
        """
        schema = record_schema(cls)
        while True:
            item = self._read_item()
            if not isinstance(item, list) or not item:
                raise DecodeError(f"expected a tagged item, got {type(item).__name__}")

            tag = item[0]
            if tag == TYPE_DEF and not isinstance(tag, bool):
                self._define(item)
                continue
            if tag == VALUE and not isinstance(tag, bool):
                if len(item) != 3:
                    raise DecodeError(f"value item has {len(item)} elements, expected 3")
                _, type_id, values = item
                wire = self._wire_type(type_id)
                self._check_compatible(wire.type_id, schema, set())
                return self._build(wire.type_id, values, schema, 1)
            raise DecodeError(f"unknown item tag {tag!r}")


def encode_record(stream, value: Any, limits: Optional[Limits] = None) -> None:
    """Write one record, with its type definitions, and flush"""
    RecordEncoder(stream, limits).encode(value)


def decode_record(stream, cls: type, limits: Optional[Limits] = None) -> Any:
    """Read one record written by encode_record"""
    return RecordDecoder(stream, limits).decode(cls)
