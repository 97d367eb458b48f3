"""
Domain records for journal sessions.

Plain dataclasses; persistence lives behind `SessionRepository`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    PROCESSING = "processing"
    COMPLETED = "completed"


class SessionKind(str, Enum):
    """
    `reflection` sessions are limited to one attempt per user per day.
    `voice` check-ins can be started any number of times.
    """

    REFLECTION = "reflection"
    VOICE = "voice"


class Speaker(str, Enum):
    USER = "user"
    AI = "ai"


OPEN_STATUSES = (SessionStatus.ACTIVE, SessionStatus.PAUSED)
TURN_WRITABLE_STATUSES = (SessionStatus.ACTIVE, SessionStatus.PROCESSING)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def start_of_day(moment: Optional[datetime] = None) -> date:
    """Normalize a timestamp to its calendar day."""
    return (moment or utcnow()).date()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Session:
    user_id: str
    date: date
    max_duration_seconds: int
    kind: SessionKind = SessionKind.REFLECTION
    status: SessionStatus = SessionStatus.ACTIVE
    total_user_speaking_time: float = 0.0
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    recording_attempt: int = 1
    summary: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def remaining_seconds(self) -> float:
        return max(0.0, self.max_duration_seconds - self.total_user_speaking_time)

    def copy(self, **changes: Any) -> "Session":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "kind": self.kind.value,
            "status": self.status.value,
            "max_duration_seconds": self.max_duration_seconds,
            "total_user_speaking_time": self.total_user_speaking_time,
            "remaining_seconds": self.remaining_seconds,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "recording_attempt": self.recording_attempt,
            "summary": self.summary,
        }


@dataclass
class Turn:
    session_id: str
    speaker: Speaker
    text: str
    start_time: float
    duration: float
    order: int
    audio_url: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "speaker": self.speaker.value,
            "text": self.text,
            "audio_url": self.audio_url,
            "start_time": self.start_time,
            "duration": self.duration,
            "order": self.order,
        }


@dataclass(frozen=True)
class DeletedAttempt:
    """
    Marks a (user, day, kind) slot as consumed by a deleted session.

    `completed` is True when the deleted session had already finished; those
    deletions keep the day consumed without counting as an abandoned attempt.
    """

    user_id: str
    date: date
    kind: SessionKind = SessionKind.REFLECTION
    completed: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Entitlement:
    """Result of an entitlement check."""

    allowed: bool
    max_duration_seconds: int
    reason: Optional[str] = None
    tier: Optional[str] = None
