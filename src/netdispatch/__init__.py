"""netdispatch - newline-framed command dispatch over TCP

A client writes a command name terminated by a newline, followed by a
command-specific payload. The endpoint reads the name, looks up the handler
registered for it and lets the handler consume the rest of the stream.
Payloads are either plain text lines or self-describing records encoded
with CBOR.
"""

from netdispatch.config import (
    Limits,
    EndpointConfig,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_MAX_LINE,
    DEFAULT_MAX_DEPTH,
)

from netdispatch.framing import (
    FramedStream,
    DispatchError,
    StreamIOError,
    EndOfStreamError,
    FramingError,
    validate_command_name,
)

from netdispatch.record import (
    RecordEncoder,
    RecordDecoder,
    RecordSchema,
    FieldSpec,
    record_schema,
    encode_record,
    decode_record,
    CodecError,
    EncodeError,
    EncodeCycleError,
    SchemaError,
    DecodeError,
)

from netdispatch.registry import (
    CommandRegistry,
    HandlerFn,
    RegistryError,
    NotFoundError,
    DuplicateCommandError,
    InvalidCommandNameError,
    RegistryFrozenError,
)

from netdispatch.endpoint import (
    Endpoint,
    ConnectionState,
    ListenerError,
)

from netdispatch.handlers import (
    ComplexData,
    handle_strings,
    handle_gob,
    default_registry,
    sample_data,
    STRING_COMMAND,
    GOB_COMMAND,
    STRING_REPLY,
)

from netdispatch.client import Node

__all__ = [
    # Config
    "Limits",
    "EndpointConfig",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "DEFAULT_MAX_LINE",
    "DEFAULT_MAX_DEPTH",
    # Framing
    "FramedStream",
    "DispatchError",
    "StreamIOError",
    "EndOfStreamError",
    "FramingError",
    "validate_command_name",
    # Record codec
    "RecordEncoder",
    "RecordDecoder",
    "RecordSchema",
    "FieldSpec",
    "record_schema",
    "encode_record",
    "decode_record",
    "CodecError",
    "EncodeError",
    "EncodeCycleError",
    "SchemaError",
    "DecodeError",
    # Registry
    "CommandRegistry",
    "HandlerFn",
    "RegistryError",
    "NotFoundError",
    "DuplicateCommandError",
    "InvalidCommandNameError",
    "RegistryFrozenError",
    # Endpoint
    "Endpoint",
    "ConnectionState",
    "ListenerError",
    # Handlers
    "ComplexData",
    "handle_strings",
    "handle_gob",
    "default_registry",
    "sample_data",
    "STRING_COMMAND",
    "GOB_COMMAND",
    "STRING_REPLY",
    # Client
    "Node",
]
