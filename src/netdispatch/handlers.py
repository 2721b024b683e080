"""Reference handlers: STRING and GOB

- STRING: reads one text line, replies "Thank you.".
- GOB: reads one ComplexData record, sends nothing back.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from netdispatch.framing import EndOfStreamError, FramedStream, FramingError, StreamIOError
from netdispatch.record import DecodeError, RecordDecoder
from netdispatch.registry import CommandRegistry


logger = logging.getLogger(__name__)

STRING_COMMAND = "STRING"
GOB_COMMAND = "GOB"
STRING_REPLY = "Thank you."


@dataclass
class ComplexData:
    """Sample record: scalars, a byte string, a map and a nested record"""
    n: int = 0
    s: str = ""
    m: Dict[str, int] = field(default_factory=dict)
    p: bytes = b""
    c: Optional["ComplexData"] = None


def sample_data() -> ComplexData:
    """Two-level record sent by the CLI client"""
    return ComplexData(
        n=23,
        s="string data",
        m={"one": 1, "two": 2, "three": 3},
        p=b"abc",
        c=ComplexData(
            n=256,
            s="Recursive structs? Piece of cake!",
            m={"01": 1, "10": 2, "11": 3},
        ),
    )


def handle_strings(stream: FramedStream) -> None:
    """Log one text line and acknowledge it

    Payload errors are logged and re-raised so the endpoint closes the
    connection instead of reading past a partly consumed payload.
    """
    try:
        text = stream.read_line()
    except (EndOfStreamError, FramingError, StreamIOError) as e:
        logger.error("STRING from %s: cannot read payload: %s", stream.peer, e)
        raise

    logger.info("received STRING message from %s: %s", stream.peer, text)
    stream.write_line(STRING_REPLY)
    stream.flush()


def handle_gob(stream: FramedStream) -> None:
    """Decode one ComplexData record and log it"""
    try:
        data = RecordDecoder(stream).decode(ComplexData)
    except (DecodeError, EndOfStreamError, StreamIOError) as e:
        logger.error("GOB from %s: cannot decode payload: %s", stream.peer, e)
        raise

    logger.info("received GOB from %s: outer %r", stream.peer, data)
    if data.c is not None:
        logger.info("received GOB from %s: inner %r", stream.peer, data.c)


def default_registry() -> CommandRegistry:
    """Registry with the STRING and GOB handlers"""
    registry = CommandRegistry()
    registry.register(STRING_COMMAND, handle_strings)
    registry.register(GOB_COMMAND, handle_gob)
    return registry
