"""Connection and link states with explicit, table-checked transitions."""

import enum
from typing import Dict, FrozenSet, Generic, TypeVar

from serialbridge.errors import InvalidTransition

S = TypeVar("S", bound=enum.Enum)


class ConnectionState(enum.Enum):
    CLOSED = 0
    CONNECTING = 1
    CONNECTED = 2


class LinkState(enum.Enum):
    CLOSED = 0
    OPENING = 1
    DRAINING = 2
    OPEN = 3
    ERROR = 4


CONNECTION_TRANSITIONS = {
    ConnectionState.CLOSED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.CLOSED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.CLOSED}),
}

LINK_TRANSITIONS = {
    LinkState.CLOSED: frozenset({LinkState.OPENING}),
    LinkState.OPENING: frozenset(
        {LinkState.DRAINING, LinkState.ERROR, LinkState.CLOSED}
    ),
    LinkState.DRAINING: frozenset(
        {LinkState.OPEN, LinkState.ERROR, LinkState.CLOSED}
    ),
    LinkState.OPEN: frozenset({LinkState.ERROR, LinkState.CLOSED}),
    LinkState.ERROR: frozenset({LinkState.CLOSED, LinkState.OPENING}),
}


class StateMachine(Generic[S]):
    """Holds the current state and only moves along the given table."""

    def __init__(self, name: str, initial: S, transitions: Dict[S, FrozenSet[S]]):
        self.name = name
        self._current = initial
        self._transitions = transitions

    @property
    def current(self) -> S:
        return self._current

    def can(self, new: S) -> bool:
        return new in self._transitions.get(self._current, frozenset())

    def transition(self, new: S) -> S:
        """Move to `new` and return the previous state; raise InvalidTransition otherwise."""
        if not self.can(new):
            raise InvalidTransition(
                f"{self.name}: illegal transition {self._current.name} -> {new.name}"
            )
        previous, self._current = self._current, new
        return previous

    def __repr__(self):
        return f"<StateMachine {self.name} {self._current.name}>"


def connection_state_machine(name: str = "socket") -> StateMachine[ConnectionState]:
    return StateMachine(name, ConnectionState.CLOSED, CONNECTION_TRANSITIONS)


def link_state_machine(name: str = "serial") -> StateMachine[LinkState]:
    return StateMachine(name, LinkState.CLOSED, LINK_TRANSITIONS)
