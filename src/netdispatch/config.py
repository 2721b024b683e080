"""Endpoint configuration and protocol limits

Configuration is resolved in this order:
1. Builder methods / constructor arguments (highest priority)
2. Environment variables (NETDISPATCH_HOST, NETDISPATCH_PORT, NETDISPATCH_TIMEOUT)
3. Default values (0.0.0.0:61000, no timeout)
"""

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 61000

# Longest command name or text line accepted before the delimiter (64 KB)
DEFAULT_MAX_LINE = 65_536

# Deepest record nesting the codec will encode or decode
DEFAULT_MAX_DEPTH = 64

# Pending connections queued by the kernel
DEFAULT_BACKLOG = 128


@dataclass
class Limits:
    """Framing and codec limits"""
    max_line: int  # Maximum line length in bytes, delimiter included
    max_depth: int  # Maximum record nesting depth

    @classmethod
    def default(cls) -> "Limits":
        """Create default limits"""
        return cls(
            max_line=DEFAULT_MAX_LINE,
            max_depth=DEFAULT_MAX_DEPTH,
        )


def _env_port() -> int:
    raw = os.getenv("NETDISPATCH_PORT")
    if raw is None:
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"NETDISPATCH_PORT must be an integer, got {raw!r}")


def _env_timeout() -> Optional[float]:
    raw = os.getenv("NETDISPATCH_TIMEOUT")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"NETDISPATCH_TIMEOUT must be a number, got {raw!r}")


class EndpointConfig:
    """Configuration for an Endpoint

    The timeout, when set, is applied to every accepted connection as a
    socket timeout, so it restarts with each blocking read or write.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        timeout: Optional[float] = None,
        limits: Optional[Limits] = None,
        multi_command: bool = False,
        backlog: int = DEFAULT_BACKLOG,
    ):
        """Create endpoint configuration

        Args:
            host: Interface to bind (default: all interfaces)
            port: TCP port to listen on, 0 for any free port
            timeout: Per-operation connection timeout in seconds
            limits: Framing and codec limits
            multi_command: Keep reading commands after a handler returns
            backlog: Listen backlog
        """
        if host is None:
            host = os.getenv("NETDISPATCH_HOST", DEFAULT_HOST)

        if port is None:
            port = _env_port()

        if timeout is None:
            timeout = _env_timeout()

        if port < 0 or port > 65535:
            raise ValueError(f"port out of range: {port}")

        self.host = host
        self.port = port
        self.timeout = timeout
        self.limits = limits if limits is not None else Limits.default()
        self.multi_command = multi_command
        self.backlog = backlog

    def with_host(self, host: str) -> "EndpointConfig":
        """Set the interface to bind"""
        self.host = host
        return self

    def with_port(self, port: int) -> "EndpointConfig":
        """Set the listening port"""
        if port < 0 or port > 65535:
            raise ValueError(f"port out of range: {port}")
        self.port = port
        return self

    def with_timeout(self, timeout: Optional[float]) -> "EndpointConfig":
        """Set the per-operation connection timeout (None disables it)"""
        self.timeout = timeout
        return self

    def with_limits(self, limits: Limits) -> "EndpointConfig":
        """Set framing and codec limits"""
        self.limits = limits
        return self

    def with_multi_command(self, enabled: bool = True) -> "EndpointConfig":
        """Allow several commands per connection"""
        self.multi_command = enabled
        return self

    @property
    def address(self):
        """The (host, port) pair to bind"""
        return (self.host, self.port)
