"""Command registry mapping command names to handlers

The registry is filled before the endpoint starts accepting and frozen
when it does. Duplicate names are rejected rather than replaced.
"""

import threading
from typing import Callable, Dict, List

from netdispatch.framing import DispatchError, FramedStream, FramingError, validate_command_name


HandlerFn = Callable[[FramedStream], None]


class RegistryError(DispatchError):
    """Base exception for registry errors"""
    pass


class NotFoundError(RegistryError):
    """No handler registered for the command name"""
    def __init__(self, name: str):
        super().__init__(f"no handler for command {name!r}")
        self.name = name


class DuplicateCommandError(RegistryError):
    """A handler is already registered for the command name"""
    def __init__(self, name: str):
        super().__init__(f"command {name!r} is already registered")
        self.name = name


class InvalidCommandNameError(RegistryError):
    """Command name cannot be framed on the wire"""
    pass


class RegistryFrozenError(RegistryError):
    """Registration attempted after the endpoint started accepting"""
    pass


class CommandRegistry:
    """Mapping from command name to handler

    Handlers receive the connection's FramedStream and own it until they
    return. They must read exactly their payload and flush any reply.
    """

    def __init__(self):
        self._handlers: Dict[str, HandlerFn] = {}
        self._frozen = False
        self._lock = threading.Lock()

    def register(self, name: str, handler: HandlerFn) -> None:
        """Register a handler for a command name

        Raises:
            InvalidCommandNameError: If name is empty, non-ASCII or has whitespace
            DuplicateCommandError: If name is already registered
            RegistryFrozenError: If the registry has been frozen
        """
        try:
            validate_command_name(name)
        except FramingError as e:
            raise InvalidCommandNameError(str(e)) from e
        if not callable(handler):
            raise TypeError(f"handler for {name!r} is not callable")

        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"cannot register {name!r}: registry is frozen")
            if name in self._handlers:
                raise DuplicateCommandError(name)
            self._handlers[name] = handler

    def command(self, name: str):
        """Decorator form of register()"""
        def decorator(fn: HandlerFn) -> HandlerFn:
            self.register(name, fn)
            return fn
        return decorator

    def lookup(self, name: str) -> HandlerFn:
        """Find the handler for a command name

        Raises:
            NotFoundError: If nothing is registered under name
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise NotFoundError(name)
        return handler

    def freeze(self) -> None:
        """Make the registry read-only"""
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def names(self) -> List[str]:
        """Registered command names, sorted"""
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
