"""
Session lifecycle.

    active -> paused -> active        (disconnect / reconnect)
    active -> processing -> completed (end, or speaking-time cap reached)
    paused -> processing              (reconnection timeout expired on resume)
    any    -> removed                 (delete / short-session cancel)

Every transition takes the session's lock, re-reads the stored row and checks
the current status before writing. A mismatch raises InvalidTransition and
writes nothing. The clock is injected so timeouts are testable without sleeping.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Iterable, List, Optional

import structlog

from src.journal.config import get_config
from src.journal.entitlement import EntitlementService
from src.journal.errors import (
    AttemptExhausted,
    EntitlementDenied,
    InvalidTransition,
    ReconnectionTimeout,
    SessionNotFound,
)
from src.journal.models import (
    OPEN_STATUSES,
    TURN_WRITABLE_STATUSES,
    DeletedAttempt,
    Session,
    SessionKind,
    SessionStatus,
    Speaker,
    Turn,
    start_of_day,
    utcnow,
)
from src.journal.repository import SessionRepository

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

_ENTITLEMENT_MESSAGES = {
    "subscription_canceled": "Your subscription has been canceled. Please resubscribe to continue.",
    "past_due": "Your payment is past due. Please update your billing details to continue.",
}


@dataclass(frozen=True)
class SpeakingTimeUpdate:
    session: Session
    time_limit_reached: bool


@dataclass(frozen=True)
class DeleteResult:
    session: Session
    marker_created: bool


@dataclass(frozen=True)
class Availability:
    can_start: bool
    has_existing_session: bool
    existing_status: Optional[SessionStatus]
    has_used_attempt: bool


class SessionStateMachine:
    def __init__(
        self,
        repository: SessionRepository,
        entitlements: EntitlementService,
        *,
        clock: Clock = utcnow,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self._repo = repository
        self._entitlements = entitlements
        self._clock = clock

    @property
    def reconnection_timeout_seconds(self) -> int:
        return self.config.reconnection_timeout_seconds

    def is_exempt(self, role: Optional[str]) -> bool:
        return bool(role) and role.lower() in self.config.exempt_roles

    @staticmethod
    def _day_key(user_id: str, day: date, kind: SessionKind) -> str:
        return f"day:{user_id}:{day.isoformat()}:{kind.value}"

    async def _load(self, session_id: str, user_id: Optional[str]) -> Session:
        session = await self._repo.get_session(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFound(session_id=session_id)
        return session

    @staticmethod
    def _require(session: Session, allowed: Iterable[SessionStatus]) -> None:
        allowed = tuple(allowed)
        if session.status not in allowed:
            raise InvalidTransition(
                session_id=session.id,
                current=session.status.value,
                allowed=tuple(s.value for s in allowed),
            )

    async def get(self, session_id: str, user_id: Optional[str] = None) -> Session:
        return await self._load(session_id, user_id)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        *,
        kind: SessionKind = SessionKind.REFLECTION,
        role: Optional[str] = None,
    ) -> Session:
        """
        Start today's session, or return the open one (reflection kind).

        Raises:
            EntitlementDenied: no capacity for this user
            AttemptExhausted: today's reflection was already used
        """
        entitlement = await self._entitlements.check(user_id)
        if not entitlement.allowed:
            raise EntitlementDenied(_ENTITLEMENT_MESSAGES.get(entitlement.reason or ""), reason=entitlement.reason)

        today = start_of_day(self._clock())

        async with self._repo.lock(self._day_key(user_id, today, kind)):
            existing = await self._repo.find_sessions_for_day(user_id, today, kind)
            recording_attempt = 1

            if kind == SessionKind.REFLECTION:
                for session in existing:
                    if session.is_open:
                        logger.info("Returning open session", session_id=session.id, status=session.status.value)
                        return session
                if existing:
                    raise AttemptExhausted("You already have a completed session today.")

                marker = await self._repo.get_deleted_attempt(user_id, today, kind)
                if marker is not None:
                    if not self.is_exempt(role):
                        raise AttemptExhausted()
                    recording_attempt = 2
            else:
                recording_attempt = len(existing) + 1

            session = await self._repo.create_session(
                Session(
                    user_id=user_id,
                    date=today,
                    kind=kind,
                    status=SessionStatus.ACTIVE,
                    max_duration_seconds=entitlement.max_duration_seconds,
                    recording_attempt=recording_attempt,
                    created_at=self._clock(),
                )
            )

        logger.info(
            "Session created",
            session_id=session.id,
            kind=kind.value,
            max_duration_seconds=session.max_duration_seconds,
            recording_attempt=recording_attempt,
        )
        return session

    async def check_availability(
        self,
        user_id: str,
        *,
        kind: SessionKind = SessionKind.REFLECTION,
        role: Optional[str] = None,
    ) -> Availability:
        today = start_of_day(self._clock())
        existing = await self._repo.find_sessions_for_day(user_id, today, kind)
        marker = await self._repo.get_deleted_attempt(user_id, today, kind)
        latest = existing[-1] if existing else None

        if kind == SessionKind.VOICE:
            can_start = True
        else:
            can_start = not existing and (marker is None or self.is_exempt(role))

        return Availability(
            can_start=can_start,
            has_existing_session=latest is not None,
            existing_status=latest.status if latest else None,
            has_used_attempt=marker is not None,
        )

    # ------------------------------------------------------------------
    # Active-session transitions
    # ------------------------------------------------------------------

    async def update_speaking_time(
        self,
        session_id: str,
        seconds: float,
        *,
        user_id: Optional[str] = None,
    ) -> SpeakingTimeUpdate:
        """
        Record cumulative user speaking time.

        Reaching the cap clamps the stored value to exactly the cap and moves the
        session to processing; further updates through here are rejected.
        """
        async with self._repo.lock(session_id):
            session = await self._load(session_id, user_id)
            self._require(session, (SessionStatus.ACTIVE,))

            cap = session.max_duration_seconds
            if seconds >= cap:
                updated = await self._repo.save_session(
                    session.copy(
                        status=SessionStatus.PROCESSING,
                        total_user_speaking_time=float(cap),
                        completed_at=self._clock(),
                    )
                )
                logger.info("Speaking time limit reached", session_id=session_id, max_duration_seconds=cap)
                return SpeakingTimeUpdate(session=updated, time_limit_reached=True)

            total = max(session.total_user_speaking_time, float(seconds))
            updated = await self._repo.save_session(session.copy(total_user_speaking_time=total))
            return SpeakingTimeUpdate(session=updated, time_limit_reached=False)

    async def pause(self, session_id: str, *, user_id: Optional[str] = None) -> Session:
        async with self._repo.lock(session_id):
            session = await self._load(session_id, user_id)
            self._require(session, (SessionStatus.ACTIVE,))
            updated = await self._repo.save_session(
                session.copy(status=SessionStatus.PAUSED, paused_at=self._clock())
            )
        logger.info("Session paused", session_id=session_id)
        return updated

    async def resume(self, session_id: str, *, user_id: Optional[str] = None) -> Session:
        """
        Raises:
            ReconnectionTimeout: paused for the full timeout or longer; the
                session is locked (processing) before this is raised
        """
        async with self._repo.lock(session_id):
            session = await self._load(session_id, user_id)
            self._require(session, (SessionStatus.PAUSED,))

            now = self._clock()
            if session.paused_at is not None:
                elapsed = (now - session.paused_at).total_seconds()
                if elapsed >= self.reconnection_timeout_seconds:
                    await self._repo.save_session(
                        session.copy(status=SessionStatus.PROCESSING, completed_at=now)
                    )
                    logger.warning(
                        "Reconnection timeout, session locked",
                        session_id=session_id,
                        paused_seconds=round(elapsed, 2),
                        timeout_seconds=self.reconnection_timeout_seconds,
                    )
                    raise ReconnectionTimeout(session_id=session_id)

            updated = await self._repo.save_session(
                session.copy(status=SessionStatus.ACTIVE, paused_at=None)
            )
        logger.info("Session resumed", session_id=session_id)
        return updated

    async def end(
        self,
        session_id: str,
        *,
        total_user_speaking_time: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> Session:
        """Move to processing. A supplied speaking time replaces the stored one."""
        async with self._repo.lock(session_id):
            session = await self._load(session_id, user_id)
            self._require(session, OPEN_STATUSES)

            changes: dict = {"status": SessionStatus.PROCESSING, "completed_at": self._clock()}
            if total_user_speaking_time is not None:
                changes["total_user_speaking_time"] = float(
                    min(max(total_user_speaking_time, 0.0), session.max_duration_seconds)
                )
            updated = await self._repo.save_session(session.copy(**changes))

        logger.info(
            "Session ended",
            session_id=session_id,
            total_user_speaking_time=updated.total_user_speaking_time,
        )
        return updated

    async def complete(
        self,
        session_id: str,
        *,
        summary: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Session:
        async with self._repo.lock(session_id):
            session = await self._load(session_id, user_id)
            self._require(session, (SessionStatus.PROCESSING,))
            changes: dict = {"status": SessionStatus.COMPLETED}
            if summary is not None:
                changes["summary"] = summary
            if session.completed_at is None:
                changes["completed_at"] = self._clock()
            updated = await self._repo.save_session(session.copy(**changes))
        logger.info("Session completed", session_id=session_id)
        return updated

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def delete(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
    ) -> DeleteResult:
        """
        Remove a session and its turns.

        Attempt-limited sessions leave a DeletedAttempt marker for their day so
        the attempt cannot be reclaimed by deleting and starting over. The day
        lock is held as well so a concurrent create cannot hand back the
        session being removed.
        """
        owner = await self._load(session_id, user_id)
        async with self._repo.lock(self._day_key(owner.user_id, owner.date, owner.kind)), \
                self._repo.lock(session_id):
            session = await self._load(session_id, user_id)
            marker_created = False

            if session.kind == SessionKind.REFLECTION:
                completed = session.status == SessionStatus.COMPLETED
                existing = await self._repo.get_deleted_attempt(session.user_id, session.date, session.kind)
                if completed and existing is not None:
                    raise InvalidTransition(
                        "This session cannot be deleted. Today's attempt has already been used.",
                        session_id=session_id,
                        current=session.status.value,
                    )
                if existing is None:
                    await self._repo.upsert_deleted_attempt(
                        DeletedAttempt(
                            user_id=session.user_id,
                            date=session.date,
                            kind=session.kind,
                            completed=completed,
                            created_at=self._clock(),
                        )
                    )
                    marker_created = True

            await self._repo.delete_session(session_id)

        logger.info(
            "Session deleted",
            session_id=session_id,
            status=session.status.value,
            marker_created=marker_created,
        )
        return DeleteResult(session=session, marker_created=marker_created)

    async def cancel_short(self, session_id: str, *, user_id: Optional[str] = None) -> Session:
        """Remove a too-short active session without consuming the day's attempt."""
        owner = await self._load(session_id, user_id)
        async with self._repo.lock(self._day_key(owner.user_id, owner.date, owner.kind)), \
                self._repo.lock(session_id):
            session = await self._load(session_id, user_id)
            self._require(session, (SessionStatus.ACTIVE,))
            await self._repo.delete_session(session_id)
        logger.info("Short session cancelled", session_id=session_id)
        return session

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def list_turns(self, session_id: str, *, user_id: Optional[str] = None) -> List[Turn]:
        await self._load(session_id, user_id)
        return await self._repo.list_turns(session_id)

    async def add_turns(
        self,
        session_id: str,
        entries: Iterable[tuple[Speaker, str, float]],
        *,
        audio_urls: Optional[Iterable[Optional[str]]] = None,
        user_id: Optional[str] = None,
        first_order: Optional[int] = None,
    ) -> List[Turn]:
        """
        Append turns in one locked step.

        Each entry is (speaker, text, duration). Orders continue from the current
        maximum; start times chain off the previous turn's end plus the
        inter-turn gap. Allowed while active or processing, never once completed.
        With `first_order`, the append only happens if the first new turn would
        get exactly that order; otherwise InvalidTransition is raised.
        """
        entries = list(entries)
        urls = list(audio_urls) if audio_urls is not None else [None] * len(entries)
        gap = self.config.inter_turn_gap_seconds

        async with self._repo.lock(session_id):
            session = await self._load(session_id, user_id)
            self._require(session, TURN_WRITABLE_STATUSES)

            existing = await self._repo.list_turns(session_id)
            last = existing[-1] if existing else None
            order = last.order + 1 if last else 0
            start = last.end_time + gap if last else 0.0
            if first_order is not None and order != first_order:
                raise InvalidTransition(
                    "The conversation has already started.",
                    session_id=session_id,
                    current=session.status.value,
                )

            created: List[Turn] = []
            for (speaker, text, duration), url in zip(entries, urls):
                turn = await self._repo.add_turn(
                    Turn(
                        session_id=session_id,
                        speaker=speaker,
                        text=text,
                        start_time=start,
                        duration=float(duration),
                        order=order,
                        audio_url=url,
                    )
                )
                created.append(turn)
                order += 1
                start = turn.end_time + gap

        return created

    async def add_turn(
        self,
        session_id: str,
        speaker: Speaker,
        text: str,
        duration: float,
        *,
        audio_url: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Turn:
        turns = await self.add_turns(
            session_id,
            [(speaker, text, duration)],
            audio_urls=[audio_url],
            user_id=user_id,
        )
        return turns[0]

    async def backfill_turn_audio(
        self,
        session_id: str,
        turn_id: str,
        audio_url: str,
        *,
        replaces: Optional[str] = None,
    ) -> Optional[Turn]:
        """
        Set a turn's permanent audio URL once. Returns None if already set or gone.

        `replaces` names a temporary reference (e.g. the synthesized audio saved
        with an AI turn) that may be swapped for the archived URL.
        """
        async with self._repo.lock(session_id):
            turns = await self._repo.list_turns(session_id)
            turn = next((t for t in turns if t.id == turn_id), None)
            if turn is None or (turn.audio_url and turn.audio_url != replaces):
                return None
            return await self._repo.set_turn_audio(turn_id, audio_url)
