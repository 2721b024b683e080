"""Client driver - send commands to a remote endpoint

Each request uses its own connection: dial, write the command line and
payload, flush, read a reply line only if the command defines one, close.
"""

import logging
import socket
from typing import Any, Callable, Optional, Tuple

from netdispatch.config import DEFAULT_PORT, Limits
from netdispatch.framing import FramedStream, StreamIOError, format_address
from netdispatch.handlers import GOB_COMMAND, STRING_COMMAND
from netdispatch.record import RecordEncoder


logger = logging.getLogger(__name__)


class Node:
    """A remote process we can send commands to"""

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        local_address: Optional[Tuple[str, int]] = None,
        timeout: Optional[float] = None,
        limits: Optional[Limits] = None,
    ):
        """Create a node

        Args:
            host: Peer host name or address
            port: Peer TCP port
            local_address: Optional (host, port) to dial from
            timeout: Per-operation socket timeout in seconds
            limits: Optional limits (defaults to Limits.default())
        """
        self.host = host
        self.port = port
        self.local_address = local_address
        self.timeout = timeout
        self.limits = limits if limits is not None else Limits.default()

    @classmethod
    def parse(cls, address: str, default_port: int = DEFAULT_PORT, **kwargs) -> "Node":
        """Create a node from "host", "host:port" or "[v6addr]:port"

        default_port is used when the address carries no port.

        Raises:
            ValueError: If the port is not a number
        """
        address = address.strip()
        if address.startswith("["):
            host, _, rest = address[1:].partition("]")
            port = rest[1:] if rest.startswith(":") else ""
        elif address.count(":") == 1:
            host, _, port = address.partition(":")
        else:
            host, port = address, ""

        if not host:
            raise ValueError(f"missing host in {address!r}")
        if not port:
            return cls(host, default_port, **kwargs)
        try:
            return cls(host, int(port), **kwargs)
        except ValueError:
            raise ValueError(f"invalid port in {address!r}") from None

    @property
    def address(self) -> str:
        return format_address((self.host, self.port))

    def open(self) -> FramedStream:
        """Dial the node

        Returns:
            A FramedStream for the new connection; the caller closes it

        Raises:
            StreamIOError: If dialing fails
        """
        try:
            sock = socket.create_connection(
                (self.host, self.port),
                timeout=self.timeout,
                source_address=self.local_address,
            )
        except OSError as e:
            raise StreamIOError(f"dialing {self.address} failed: {e}") from e
        return FramedStream.from_socket(sock, self.limits, self.address)

    def request(
        self,
        command: str,
        write_payload: Optional[Callable[[FramedStream], None]] = None,
        expect_reply: bool = False,
    ) -> Optional[str]:
        """Send one command over a fresh connection

        Args:
            command: Command name
            write_payload: Writes the payload to the stream; may be None
            expect_reply: Read one reply line after sending

        Returns:
            The reply line, or None when no reply is expected

        Raises:
            StreamIOError: If dialing or I/O fails
            EndOfStreamError: If a reply is expected but the peer closes first
        """
        with self.open() as stream:
            stream.write_command(command)
            if write_payload is not None:
                write_payload(stream)
            stream.flush()
            logger.debug("sent %s to %s", command, self.address)

            if not expect_reply:
                return None
            reply = stream.read_line()
            logger.debug("reply to %s from %s: %s", command, self.address, reply)
            return reply

    def send_string(self, text: str) -> str:
        """Send a STRING command and return the reply line"""
        return self.request(
            STRING_COMMAND,
            lambda stream: stream.write_line(text),
            expect_reply=True,
        )

    def send_record(self, value: Any, command: str = GOB_COMMAND) -> None:
        """Send one record; the peer does not reply"""
        self.request(
            command,
            lambda stream: RecordEncoder(stream).encode(value),
        )

    def __repr__(self):
        return f"Node({self.address})"
