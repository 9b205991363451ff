"""Lifecycle state machines for connections and sessions.

Fail-loud policy:
- Illegal transitions raise immediately.
- Re-entering the current state is a no-op.
"""

from __future__ import annotations

from enum import StrEnum


class ConnectionState(StrEnum):
    ACCEPTED = "accepted"
    HANDSHAKING = "handshaking"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    CLOSED = "closed"


class SessionState(StrEnum):
    OPENED = "opened"
    RESOLVING = "resolving"
    STARTING_SHELL = "starting_shell"
    BRIDGING = "bridging"
    CLOSED = "closed"


_CONNECTION_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.ACCEPTED: {ConnectionState.HANDSHAKING, ConnectionState.CLOSED},
    ConnectionState.HANDSHAKING: {ConnectionState.AUTHENTICATED, ConnectionState.FAILED, ConnectionState.CLOSED},
    ConnectionState.AUTHENTICATED: {ConnectionState.CLOSED},
    ConnectionState.FAILED: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}

_SESSION_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.OPENED: {SessionState.RESOLVING, SessionState.CLOSED},
    SessionState.RESOLVING: {SessionState.STARTING_SHELL, SessionState.CLOSED},
    SessionState.STARTING_SHELL: {SessionState.BRIDGING, SessionState.CLOSED},
    SessionState.BRIDGING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


def assert_connection_transition(
    current: ConnectionState,
    target: ConnectionState,
    *,
    reason: str,
) -> None:
    if current == target:
        return
    if target not in _CONNECTION_TRANSITIONS[current]:
        raise RuntimeError(f"Illegal connection transition: {current} -> {target} ({reason})")


def assert_session_transition(
    current: SessionState,
    target: SessionState,
    *,
    reason: str,
) -> None:
    if current == target:
        return
    if target not in _SESSION_TRANSITIONS[current]:
        raise RuntimeError(f"Illegal session transition: {current} -> {target} ({reason})")
