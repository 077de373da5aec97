from __future__ import annotations

from enum import StrEnum


class SessionState(StrEnum):
    ANONYMOUS = "ANONYMOUS"
    AUTHENTICATED = "AUTHENTICATED"


# Logging in again replaces the current session. Logging out while anonymous is a no-op.
SESSION_ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.ANONYMOUS: {SessionState.AUTHENTICATED},
    SessionState.AUTHENTICATED: {SessionState.ANONYMOUS, SessionState.AUTHENTICATED},
}


def can_transition(source: SessionState, target: SessionState) -> bool:
    return target in SESSION_ALLOWED_TRANSITIONS.get(source, set())
