from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, List, Mapping, Optional
import logging
logger = logging.getLogger(__name__)

from glove_errors import AlreadyConnected, AlreadyConnecting, InvalidTransition, NotConnected

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"

SERIAL = "serial"
RADIO = "radio"
KINDS = (SERIAL, RADIO)

_EMPTY = MappingProxyType({})


@dataclass(frozen=True)
class ConnectionState:
    """
    Immutable snapshot of the connection. Every transition builds a new
    instance; nothing is ever patched in place.
    """
    status: str = DISCONNECTED
    kind: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)

    @classmethod
    def disconnected(cls):
        return cls()

    @classmethod
    def connecting(cls, kind):
        return cls(CONNECTING, kind)

    @classmethod
    def connected(cls, kind, metadata=None):
        return cls(CONNECTED, kind, MappingProxyType(dict(metadata or {})))

    @property
    def is_disconnected(self):
        return self.status == DISCONNECTED

    @property
    def is_connecting(self):
        return self.status == CONNECTING

    @property
    def is_connected(self):
        return self.status == CONNECTED

    def describe(self):
        if self.is_connected:
            extra = ", ".join(f"{k}={v}" for k, v in self.metadata.items() if v is not None)
            label = f"connected ({self.kind})"
            return f"{label} {extra}" if extra else label
        if self.is_connecting:
            return f"connecting ({self.kind}) ..."
        return "disconnected"


Listener = Callable[[ConnectionState, bool], None]


class ConnectionStateMachine:
    """
    Disconnected -> Connecting -> Connected -> Disconnected, with
    Connecting -> Disconnected on a failed open. Listeners are called with
    (new_state, metadata_only) after every change.
    """

    def __init__(self):
        self._state = ConnectionState.disconnected()
        self._listeners: List[Listener] = []

    @property
    def state(self):
        return self._state

    def add_listener(self, listener):
        self._listeners.append(listener)

    def remove_listener(self, listener):
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def begin(self, kind):
        if self._state.is_connecting:
            raise AlreadyConnecting(f"already connecting ({self._state.kind})")
        if self._state.is_connected:
            raise AlreadyConnected(f"already connected ({self._state.kind})")
        self._set(ConnectionState.connecting(kind))

    def opened(self, metadata=None):
        if not self._state.is_connecting:
            raise InvalidTransition(f"cannot complete a connection from {self._state.status}")
        self._set(ConnectionState.connected(self._state.kind, metadata))

    def failed(self):
        if not self._state.is_connecting:
            raise InvalidTransition(f"cannot fail a connection from {self._state.status}")
        self._set(ConnectionState.disconnected())

    def closed(self):
        """Returns False when already disconnected (no transition, no event)."""
        if self._state.is_disconnected:
            return False
        self._set(ConnectionState.disconnected())
        return True

    def update_metadata(self, **changes):
        current = self._state
        if not current.is_connected:
            raise NotConnected("metadata can only be refreshed while connected")
        merged = dict(current.metadata)
        merged.update(changes)
        self._set(ConnectionState.connected(current.kind, merged), metadata_only=True)

    def _set(self, new_state, metadata_only=False):
        old = self._state
        self._state = new_state
        if not metadata_only:
            logger.debug("connection state: %s -> %s", old.status, new_state.status)
        for listener in list(self._listeners):
            try:
                listener(new_state, metadata_only)
            except Exception:
                logger.exception("connection state listener failed")
