"""
client/session_state.py: In-memory session state owned by SessionClient.

Nothing outside SessionClient mutates a SessionState; other components read
the current credentials through SessionClient's accessors.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class SessionPhase(str, enum.Enum):
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    UNAUTHENTICATED = "unauthenticated"


@dataclass(frozen=True)
class TokenPair:
    # repr=False keeps raw tokens out of logs and tracebacks.
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)


@dataclass
class SessionState:
    tokens: TokenPair | None = None
    subject: dict | None = None
    phase: SessionPhase = SessionPhase.UNAUTHENTICATED

    def install(self, tokens: TokenPair, subject: dict | None = None) -> None:
        """Replaces the pair in one assignment and marks the session authenticated."""
        self.tokens = tokens
        if subject is not None:
            self.subject = subject
        self.phase = SessionPhase.AUTHENTICATED

    def clear(self) -> None:
        self.tokens = None
        self.subject = None
        self.phase = SessionPhase.UNAUTHENTICATED
