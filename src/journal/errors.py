"""
Domain errors raised by the session core and the streaming pipeline.

Each error carries a stable `code` for API clients and a short user-facing
message. The HTTP layer maps codes to status codes; nothing here knows about HTTP.
"""

from __future__ import annotations

from typing import Optional


class JournalError(Exception):
    """Base class for all user-visible journal errors."""

    code = "journal.error"
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None, *, session_id: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.session_id = session_id

    @property
    def user_message(self) -> str:
        return str(self)


class SessionNotFound(JournalError):
    code = "session.not_found"
    default_message = "Session not found."


class InvalidTransition(JournalError):
    """The session is not in a state that allows the requested operation."""

    code = "session.invalid_transition"
    default_message = "This session cannot do that right now."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
        current: Optional[str] = None,
        allowed: tuple[str, ...] = (),
    ):
        if message is None and current is not None:
            expected = " or ".join(allowed) if allowed else "another state"
            message = f"Session is {current}; expected {expected}."
        super().__init__(message, session_id=session_id)
        self.current = current
        self.allowed = allowed


class AttemptExhausted(JournalError):
    """The daily attempt for this kind of session has been used."""

    code = "session.attempt_exhausted"
    default_message = "You have already used your session for today. Come back tomorrow!"


class ReconnectionTimeout(JournalError):
    """The session stayed paused too long and has been locked."""

    code = "session.reconnection_timeout"
    default_message = "Session timeout exceeded. Session has been locked."


class EntitlementDenied(JournalError):
    code = "session.entitlement_denied"
    default_message = "Subscription required to create sessions."

    def __init__(self, message: Optional[str] = None, *, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class CompletionStreamError(JournalError):
    """The completion provider failed mid-stream. The session stays active."""

    code = "pipeline.completion_failed"
    default_message = "I'm sorry, I'm having trouble right now. Could you please repeat that?"


class SynthesisFailure(JournalError):
    """Every sentence of a response failed to synthesize."""

    code = "pipeline.synthesis_failed"
    default_message = "Audio could not be generated for this response."
