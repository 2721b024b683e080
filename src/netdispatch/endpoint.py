"""Endpoint - accept connections and dispatch commands to handlers

Each accepted connection is handed to its own thread, which walks the
connection through these states:

```
ACCEPTED -> READING_COMMAND -> DISPATCHED -> CLOSED
                 |                 |
                 +-----------------+--> CLOSED (EOF, I/O, framing,
                                                unknown command, handler error)
```

With multi_command enabled, DISPATCHED returns to READING_COMMAND once the
handler is done. Unknown commands are closed without a reply. The only
error that leaves serve_forever() is a failure of the listening socket.
"""

import errno
import logging
import socket
import threading
from enum import Enum
from typing import Optional, Set, Tuple

from netdispatch.config import EndpointConfig
from netdispatch.framing import (
    DispatchError,
    EndOfStreamError,
    FramedStream,
    FramingError,
    StreamIOError,
    format_address,
)
from netdispatch.registry import CommandRegistry, NotFoundError


logger = logging.getLogger(__name__)

# How often a blocked accept() wakes up to notice close()
POLL_INTERVAL = 0.5

# accept() failures that leave the listening socket usable
TRANSIENT_ACCEPT_ERRNOS = frozenset(
    code for code in (
        getattr(errno, "EMFILE", None),
        getattr(errno, "ENFILE", None),
        getattr(errno, "ENOBUFS", None),
        getattr(errno, "ENOMEM", None),
        getattr(errno, "ECONNABORTED", None),
        getattr(errno, "EINTR", None),
        getattr(errno, "EAGAIN", None),
        getattr(errno, "EPROTO", None),
        getattr(errno, "EPERM", None),
    )
    if code is not None
)


class ListenerError(DispatchError):
    """Listening socket could not be set up or failed while accepting"""
    pass


class ConnectionState(Enum):
    """Per-connection dispatch state"""
    ACCEPTED = "accepted"
    READING_COMMAND = "reading_command"
    DISPATCHED = "dispatched"
    CLOSED = "closed"


def is_transient_accept_error(err: OSError) -> bool:
    """True if accept() may succeed again after this error"""
    if isinstance(err, socket.timeout):
        return True
    return err.errno in TRANSIENT_ACCEPT_ERRNOS


class Endpoint:
    """Server side: owns the listening socket and the command registry

    The registry is frozen when serve_forever() starts, so handlers can be
    looked up from connection threads without locking.
    """

    def __init__(self, registry: CommandRegistry, config: Optional[EndpointConfig] = None):
        """Create an endpoint

        Args:
            registry: Handlers to dispatch to
            config: Optional configuration (defaults to EndpointConfig())
        """
        self.registry = registry
        self.config = config if config is not None else EndpointConfig()
        self._listener: Optional[socket.socket] = None
        self._address: Optional[Tuple[str, int]] = None
        self._closing = threading.Event()
        self._threads: Set[threading.Thread] = set()
        self._threads_lock = threading.Lock()

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """The bound (host, port), or None before bind()"""
        return self._address

    def bind(self) -> Tuple[str, int]:
        """Create, bind and listen on the listening socket

        Returns:
            The bound (host, port); useful when the configured port is 0

        Raises:
            ListenerError: If the socket cannot be bound
        """
        if self._listener is not None:
            return self._address

        host, port = self.config.address
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            listener = socket.create_server(
                (host, port), family=family, backlog=self.config.backlog
            )
        except OSError as e:
            raise ListenerError(f"cannot listen on {format_address((host, port))}: {e}") from e

        listener.settimeout(POLL_INTERVAL)
        self._listener = listener
        bound = listener.getsockname()
        self._address = (bound[0], bound[1])
        logger.info("listening on %s", format_address(self._address))
        return self._address

    def serve_forever(self) -> None:
        """Accept connections until close() is called

        Raises:
            ListenerError: If no handlers are registered, the socket cannot
                be bound, or the listening socket fails
        """
        if len(self.registry) == 0:
            raise ListenerError("no handlers registered")
        self.bind()
        self.registry.freeze()
        logger.info("serving commands %s", ", ".join(self.registry.names()))

        while not self._closing.is_set():
            try:
                conn, addr = self._listener.accept()
            except OSError as e:
                if self._closing.is_set():
                    break
                if isinstance(e, socket.timeout):
                    continue
                if is_transient_accept_error(e):
                    logger.warning("failed accepting a connection request: %s", e)
                    continue
                raise ListenerError(f"listening socket failed: {e}") from e

            self._spawn(conn, addr)

        logger.info("stopped listening on %s", format_address(self._address))

    def _spawn(self, conn: socket.socket, addr) -> None:
        peer = format_address(addr)
        thread = threading.Thread(
            target=self._run_connection,
            args=(conn, peer),
            name=f"netdispatch-conn-{peer}",
            daemon=True,
        )
        with self._threads_lock:
            self._threads.add(thread)
        thread.start()

    def _run_connection(self, conn: socket.socket, peer: str) -> None:
        try:
            self.dispatch(conn, peer)
        finally:
            with self._threads_lock:
                self._threads.discard(threading.current_thread())

    def dispatch(self, conn: socket.socket, peer: str = "-") -> ConnectionState:
        """Serve one accepted connection and close it

        Runs in the connection's own thread. Never raises: every failure is
        logged with the peer and command and ends the connection.

        Returns:
            The state the connection was in when it was closed
        """
        state = ConnectionState.ACCEPTED
        served = 0
        stream = None
        try:
            conn.settimeout(self.config.timeout)
            stream = FramedStream.from_socket(conn, self.config.limits, peer)

            while True:
                state = ConnectionState.READING_COMMAND
                try:
                    command = stream.read_command()
                except EndOfStreamError:
                    if served:
                        logger.debug("%s closed after %d command(s)", peer, served)
                    else:
                        logger.info("%s closed before sending a command", peer)
                    break
                except (StreamIOError, FramingError) as e:
                    logger.warning("error reading command from %s: %s", peer, e)
                    break

                state = ConnectionState.DISPATCHED
                try:
                    handler = self.registry.lookup(command)
                except NotFoundError:
                    logger.warning("%s sent unknown command %r, closing without reply", peer, command)
                    break

                logger.info("dispatching %s from %s", command, peer)
                try:
                    handler(stream)
                except DispatchError as e:
                    logger.warning("%s from %s failed, closing: %s", command, peer, e)
                    break
                except Exception:
                    logger.exception("handler for %s from %s failed", command, peer)
                    break
                served += 1

                if not self.config.multi_command:
                    break
        except OSError as e:
            logger.warning("connection from %s failed: %s", peer, e)
        finally:
            if stream is not None:
                stream.close()
            else:
                conn.close()
            logger.debug("closed %s in state %s", peer, state.value)
        return state

    def active_connections(self) -> int:
        """Number of connection threads still running"""
        with self._threads_lock:
            return len(self._threads)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for running connection threads

        Returns:
            True if all of them finished within the timeout
        """
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
        return all(not t.is_alive() for t in threads)

    def close(self) -> None:
        """Stop accepting; serve_forever() returns within POLL_INTERVAL"""
        self._closing.set()
        if self._listener is not None:
            try:
                self._listener.close()
            except OSError as e:
                logger.debug("closing listener: %s", e)

    def __enter__(self) -> "Endpoint":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
