"""
Session persistence.

`SessionRepository` is the contract the core needs from storage: CRUD for
sessions and turns, the deleted-attempt markers, and per-row mutual exclusion so
"read status, write status" happens atomically per session.

`InMemorySessionRepository` implements it for development and tests. Records are
copied on the way in and out so callers can never mutate stored state directly.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import date
from typing import AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol, Tuple

import structlog

from src.journal.models import DeletedAttempt, Session, SessionKind, Turn

logger = structlog.get_logger(__name__)

DayKey = Tuple[str, date, SessionKind]


class SessionRepository(Protocol):
    def lock(self, key: str) -> AsyncContextManager[None]:
        ...

    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    async def find_sessions_for_day(self, user_id: str, day: date, kind: SessionKind) -> List[Session]:
        ...

    async def create_session(self, session: Session) -> Session:
        ...

    async def save_session(self, session: Session) -> Session:
        ...

    async def delete_session(self, session_id: str) -> None:
        ...

    async def get_deleted_attempt(self, user_id: str, day: date, kind: SessionKind) -> Optional[DeletedAttempt]:
        ...

    async def upsert_deleted_attempt(self, marker: DeletedAttempt) -> DeletedAttempt:
        ...

    async def list_turns(self, session_id: str) -> List[Turn]:
        ...

    async def add_turn(self, turn: Turn) -> Turn:
        ...

    async def set_turn_audio(self, turn_id: str, audio_url: str) -> Optional[Turn]:
        ...


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class InMemorySessionRepository:
    """
    Dict-backed repository with one asyncio.Lock per lock key.

    A key's lock exists only while someone holds or waits for it, so keys for
    finished sessions and past days do not accumulate.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._turns: Dict[str, List[Turn]] = defaultdict(list)
        self._deleted_attempts: Dict[DayKey, DeletedAttempt] = {}
        self._locks: Dict[str, _KeyLock] = {}

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def get_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.copy() if session else None

    async def find_sessions_for_day(self, user_id: str, day: date, kind: SessionKind) -> List[Session]:
        matches = [
            s for s in self._sessions.values()
            if s.user_id == user_id and s.date == day and s.kind == kind
        ]
        return [s.copy() for s in sorted(matches, key=lambda s: s.created_at)]

    async def create_session(self, session: Session) -> Session:
        if session.id in self._sessions:
            raise ValueError(f"Session {session.id} already exists")
        self._sessions[session.id] = session.copy()
        return session.copy()

    async def save_session(self, session: Session) -> Session:
        if session.id not in self._sessions:
            raise KeyError(session.id)
        self._sessions[session.id] = session.copy()
        return session.copy()

    async def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        removed = self._turns.pop(session_id, None) or []
        logger.debug("Session removed", session_id=session_id, turns_removed=len(removed))

    async def get_deleted_attempt(self, user_id: str, day: date, kind: SessionKind) -> Optional[DeletedAttempt]:
        return self._deleted_attempts.get((user_id, day, kind))

    async def upsert_deleted_attempt(self, marker: DeletedAttempt) -> DeletedAttempt:
        key = (marker.user_id, marker.date, marker.kind)
        # Created once, never updated.
        return self._deleted_attempts.setdefault(key, marker)

    async def list_turns(self, session_id: str) -> List[Turn]:
        return [replace(t) for t in sorted(self._turns.get(session_id, []), key=lambda t: t.order)]

    async def add_turn(self, turn: Turn) -> Turn:
        existing = self._turns[turn.session_id]
        if any(t.order == turn.order for t in existing):
            raise ValueError(f"Turn order {turn.order} already used in session {turn.session_id}")
        existing.append(replace(turn))
        return replace(turn)

    async def set_turn_audio(self, turn_id: str, audio_url: str) -> Optional[Turn]:
        for turns in self._turns.values():
            for i, turn in enumerate(turns):
                if turn.id == turn_id:
                    turns[i] = replace(turn, audio_url=audio_url)
                    return replace(turns[i])
        return None
