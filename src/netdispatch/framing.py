"""Framed Reader/Writer - line and raw access over one connection

A FramedStream wraps a connected socket in one buffered reader and one
buffered writer. Command names and text payloads are read as lines; the
structured record codec reads and writes raw bytes through the same buffers,
so bytes already pulled into the read buffer are never lost between the two.

## Wire Format

```
┌─────────────────────────────────────────────────────────┐
│  command name, ASCII, terminated by '\\n'                │
├─────────────────────────────────────────────────────────┤
│  payload, format chosen by the command                  │
└─────────────────────────────────────────────────────────┘
```
"""

import logging
import socket
from typing import BinaryIO, Optional

from netdispatch.config import Limits


logger = logging.getLogger(__name__)

DELIMITER = b"\n"


class DispatchError(Exception):
    """Base error for everything raised by netdispatch"""
    pass


class StreamIOError(DispatchError):
    """Transport-level read, write, accept or dial failure"""
    pass


class EndOfStreamError(DispatchError):
    """Peer closed the connection before the expected data arrived"""
    pass


class FramingError(DispatchError):
    """Line too long, not decodable, or not a valid command name"""
    pass


def validate_command_name(name: str) -> str:
    """Check that a command name is a non-empty ASCII token

    Args:
        name: Candidate command name

    Returns:
        The name, unchanged

    Raises:
        FramingError: If the name is empty, non-ASCII or contains whitespace
    """
    if not name:
        raise FramingError("empty command name")
    if not name.isascii() or not name.isprintable():
        raise FramingError(f"command name must be printable ASCII: {name!r}")
    if any(c.isspace() for c in name):
        raise FramingError(f"command name must not contain whitespace: {name!r}")
    return name


class FramedStream:
    """Buffered line/raw access to one connection

    A FramedStream is owned by exactly one thread at a time. Writes are
    buffered; nothing reaches the peer until flush() is called.
    """

    def __init__(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        limits: Optional[Limits] = None,
        peer: str = "-",
        sock: Optional[socket.socket] = None,
    ):
        """Create a framed stream over existing file objects

        Args:
            reader: Buffered binary input stream
            writer: Buffered binary output stream
            limits: Optional limits (defaults to Limits.default())
            peer: Printable peer address for log messages
            sock: Underlying socket, closed together with the stream
        """
        self.reader = reader
        self.writer = writer
        self.limits = limits if limits is not None else Limits.default()
        self.peer = peer
        self.sock = sock
        self._closed = False

    @classmethod
    def from_socket(
        cls,
        sock: socket.socket,
        limits: Optional[Limits] = None,
        peer: Optional[str] = None,
    ) -> "FramedStream":
        """Wrap a connected socket"""
        if peer is None:
            try:
                peer = format_address(sock.getpeername())
            except OSError:
                peer = "-"
        return cls(
            sock.makefile("rb"),
            sock.makefile("wb"),
            limits=limits,
            peer=peer,
            sock=sock,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    # File-object protocol used by cbor2. A non-seekable stream keeps the
    # decoder from reading ahead past the end of a record.
    def readable(self) -> bool:
        return True

    def writable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def read_line(self) -> str:
        """Read one newline-terminated line

        Returns:
            The line, decoded as UTF-8, with surrounding whitespace stripped

        Raises:
            EndOfStreamError: If the peer closed before sending a delimiter
            FramingError: If max_line bytes arrive without a delimiter
            StreamIOError: If the read fails
        """
        max_line = self.limits.max_line
        try:
            raw = self.reader.readline(max_line)
        except (OSError, ValueError) as e:
            raise StreamIOError(f"read from {self.peer} failed: {e}") from e

        if not raw.endswith(DELIMITER):
            if len(raw) >= max_line:
                raise FramingError(f"no delimiter within {max_line} bytes from {self.peer}")
            # Partial bytes before EOF are never handed out as a token
            raise EndOfStreamError(f"{self.peer} closed the connection")

        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FramingError(f"line from {self.peer} is not valid UTF-8: {e}") from e
        return text.strip()

    def read_command(self) -> str:
        """Read a command name line and validate it"""
        return validate_command_name(self.read_line())

    def read(self, n: int = -1) -> bytes:
        """Read up to n raw bytes from the buffered reader

        May return fewer bytes at end of stream. The record decoder reads
        through this method.
        """
        try:
            return self.reader.read(n)
        except (OSError, ValueError) as e:
            raise StreamIOError(f"read from {self.peer} failed: {e}") from e

    def read_exact(self, n: int) -> bytes:
        """Read exactly n raw bytes

        Raises:
            EndOfStreamError: On a short read
            StreamIOError: If the read fails
        """
        data = self.read(n)
        if len(data) < n:
            raise EndOfStreamError(f"{self.peer} closed after {len(data)} of {n} bytes")
        return data

    def write(self, data: bytes) -> int:
        """Buffer raw bytes for the peer"""
        try:
            return self.writer.write(data)
        except (OSError, ValueError) as e:
            raise StreamIOError(f"write to {self.peer} failed: {e}") from e

    def write_line(self, line: str) -> None:
        """Buffer one line followed by the delimiter

        Raises:
            FramingError: If the line itself contains the delimiter
            StreamIOError: If the write fails
        """
        if "\n" in line:
            raise FramingError(f"line must not contain a newline: {line!r}")
        self.write(line.encode("utf-8") + DELIMITER)

    def write_command(self, name: str) -> None:
        """Buffer a validated command name line"""
        self.write_line(validate_command_name(name))

    def flush(self) -> None:
        """Push buffered bytes onto the transport"""
        try:
            self.writer.flush()
        except (OSError, ValueError) as e:
            raise StreamIOError(f"flush to {self.peer} failed: {e}") from e

    def close(self) -> None:
        """Close the stream and the socket behind it; safe to call twice"""
        if self._closed:
            return
        self._closed = True

        try:
            self.writer.close()
        except OSError as e:
            # Unflushed bytes are lost here; handlers flush before returning
            logger.debug("closing writer for %s: %s", self.peer, e)
        try:
            self.reader.close()
        except OSError as e:
            logger.debug("closing reader for %s: %s", self.peer, e)
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError as e:
                logger.debug("closing socket for %s: %s", self.peer, e)

    def __enter__(self) -> "FramedStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self):
        state = "closed" if self._closed else "open"
        return f"FramedStream(peer={self.peer}, {state})"


def format_address(address) -> str:
    """Render a socket address as host:port"""
    if isinstance(address, tuple) and len(address) >= 2:
        host, port = address[0], address[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(address) or "-"
