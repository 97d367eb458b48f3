"""
Session gateway.

The one entry point callers (HTTP routes, tests) use. It validates session
state through the state machine, runs the streaming pipeline for each user
message, persists the resulting turns and hands archival work to the
background runner.

send_message flow:
    1. session must be active
    2. history + new message -> completion stream -> StreamingRun
    3. optional on_first_audio callback as soon as sentence 0 is ready
    4. wait for all chunks (ordered)
    5. session must still be active, otherwise everything is discarded
    6. user turn + AI turn (carrying the first audio ref) appended in one locked step
    7. user audio (if any) uploaded in the background, then backfilled

complete_session writes a journal summary through the completion client when
the caller gives none, then archives the AI audio of every turn in the
background.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from src.journal.archival import ArchivalStore, BackgroundRunner, NullArchivalStore, create_archival_store
from src.journal.config import get_config
from src.journal.entitlement import EntitlementService, TierEntitlementService
from src.journal.errors import CompletionStreamError, InvalidTransition
from src.journal.llm import CompletionClient, OpenAICompatibleLLM
from src.journal.models import Session, SessionKind, SessionStatus, Speaker, Turn, utcnow
from src.journal.prompts import build_messages, get_greeting
from src.journal.repository import InMemorySessionRepository, SessionRepository
from src.journal.session import (
    Availability,
    Clock,
    DeleteResult,
    SessionStateMachine,
    SpeakingTimeUpdate,
)
from src.journal.streaming import StreamingOrchestrator, TurnMetrics
from src.journal.summary import build_summary_messages, has_meaningful_input
from src.journal.tts import TurnAudioSynthesizer, estimate_duration
from src.journal.tts_types import AudioChunk

logger = structlog.get_logger(__name__)

FirstAudioCallback = Callable[[AudioChunk], Awaitable[None]]


@dataclass
class SendMessageResult:
    session_id: str
    user_turn: Turn
    ai_turn: Turn
    ai_text: str
    first_audio: Optional[AudioChunk]
    chunks: List[AudioChunk]
    metrics: TurnMetrics

    @property
    def first_audio_ref(self) -> Optional[str]:
        return self.first_audio.audio_ref if self.first_audio else None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "ai_text": self.ai_text,
            "first_audio": self.first_audio.to_dict() if self.first_audio else None,
            "chunks": [c.to_dict() for c in self.chunks],
            "user_turn": self.user_turn.to_dict(),
            "ai_turn": self.ai_turn.to_dict(),
            "metrics": self.metrics.to_dict(),
        }


@dataclass
class GreetingResult:
    turn: Turn
    audio: Optional[AudioChunk]

    def to_dict(self) -> dict:
        return {
            "text": self.turn.text,
            "audio": self.audio.to_dict() if self.audio else None,
            "turn": self.turn.to_dict(),
        }


class SessionGateway:
    def __init__(
        self,
        state_machine: SessionStateMachine,
        completion: CompletionClient,
        orchestrator: StreamingOrchestrator,
        *,
        archival: Optional[ArchivalStore] = None,
        background: Optional[BackgroundRunner] = None,
        config: Optional[Any] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or get_config()
        self.sessions = state_machine
        self._completion = completion
        self._orchestrator = orchestrator
        self._synthesizer = orchestrator.synthesizer
        self._archival = archival or NullArchivalStore()
        self._background = background or BackgroundRunner()
        self._rng = rng

    @property
    def background(self) -> BackgroundRunner:
        return self._background

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_session(
        self,
        user_id: str,
        *,
        kind: SessionKind = SessionKind.REFLECTION,
        role: Optional[str] = None,
    ) -> Session:
        return await self.sessions.create(user_id, kind=kind, role=role)

    async def check_availability(
        self,
        user_id: str,
        *,
        kind: SessionKind = SessionKind.REFLECTION,
        role: Optional[str] = None,
    ) -> Availability:
        return await self.sessions.check_availability(user_id, kind=kind, role=role)

    async def get_session(self, session_id: str, *, user_id: Optional[str] = None) -> tuple[Session, List[Turn]]:
        session = await self.sessions.get(session_id, user_id)
        turns = await self.sessions.list_turns(session_id, user_id=user_id)
        return session, turns

    async def pause_session(self, session_id: str, *, user_id: Optional[str] = None) -> Session:
        return await self.sessions.pause(session_id, user_id=user_id)

    async def resume_session(self, session_id: str, *, user_id: Optional[str] = None) -> Session:
        return await self.sessions.resume(session_id, user_id=user_id)

    async def update_speaking_time(
        self,
        session_id: str,
        seconds: float,
        *,
        user_id: Optional[str] = None,
    ) -> SpeakingTimeUpdate:
        return await self.sessions.update_speaking_time(session_id, seconds, user_id=user_id)

    async def end_session(
        self,
        session_id: str,
        *,
        total_user_speaking_time: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> Session:
        return await self.sessions.end(
            session_id,
            total_user_speaking_time=total_user_speaking_time,
            user_id=user_id,
        )

    async def complete_session(
        self,
        session_id: str,
        *,
        summary: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Session:
        """
        Finish a processing session.

        Without an explicit summary one is written from the transcript, unless
        the user said nothing or spoke for less than the configured minimum.
        """
        if summary is None:
            session = await self.sessions.get(session_id, user_id)
            self._require(session, SessionStatus.PROCESSING)
            summary = await self._write_summary(session)

        completed = await self.sessions.complete(session_id, summary=summary, user_id=user_id)

        if self._archival.enabled:
            self._background.submit(
                self.archive_session(session_id),
                name="archival.session",
                session_id=session_id,
            )
        return completed

    async def _write_summary(self, session: Session) -> Optional[str]:
        turns = await self.sessions.list_turns(session.id)
        if not has_meaningful_input(turns, session.total_user_speaking_time, self.config.summary_min_speaking_seconds):
            logger.info(
                "Skipping summary, no meaningful user input",
                session_id=session.id,
                total_user_speaking_time=session.total_user_speaking_time,
            )
            return None

        started = time.time()
        parts: List[str] = []
        try:
            async for token in self._completion.stream(build_summary_messages(turns)):
                parts.append(token)
        except CompletionStreamError as e:
            logger.error("Summary generation failed", session_id=session.id, error=str(e))
            return None

        summary = "".join(parts).strip()
        logger.info(
            "Summary generated",
            session_id=session.id,
            chars=len(summary),
            latency_ms=round((time.time() - started) * 1000, 2),
        )
        return summary or None

    async def delete_session(self, session_id: str, *, user_id: Optional[str] = None) -> DeleteResult:
        result = await self.sessions.delete(session_id, user_id=user_id)
        self._forget_audio(result.session)
        return result

    async def cancel_short_session(self, session_id: str, *, user_id: Optional[str] = None) -> Session:
        session = await self.sessions.cancel_short(session_id, user_id=user_id)
        self._forget_audio(session)
        return session

    def _forget_audio(self, session: Session) -> None:
        self._background.submit(
            self._archival.delete_all(user_id=session.user_id, session_id=session.id),
            name="archival.delete_all",
            session_id=session.id,
        )

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    async def add_turn(
        self,
        session_id: str,
        speaker: Speaker,
        text: str,
        *,
        duration: Optional[float] = None,
        audio_url: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Turn:
        if duration is None:
            duration = estimate_duration(text, self.config.speaking_rate_wpm)
        return await self.sessions.add_turn(
            session_id,
            speaker,
            text,
            duration,
            audio_url=audio_url,
            user_id=user_id,
        )

    async def generate_greeting(self, session_id: str, *, user_id: Optional[str] = None) -> GreetingResult:
        """
        Open the conversation with a spoken AI greeting saved as turn 0.

        A failed synthesis still saves the greeting, without audio.
        """
        session = await self.sessions.get(session_id, user_id)
        self._require(session, SessionStatus.ACTIVE)

        text = get_greeting(session.kind, self._rng)
        chunk = await self._synthesizer.synthesize(text)
        duration = chunk.duration_seconds if chunk else estimate_duration(text, self.config.speaking_rate_wpm)

        turn, = await self.sessions.add_turns(
            session_id,
            [(Speaker.AI, text, duration)],
            audio_urls=[chunk.audio_ref if chunk else None],
            user_id=user_id,
            first_order=0,
        )
        logger.info("Greeting saved", session_id=session_id, has_audio=chunk is not None)
        return GreetingResult(turn=turn, audio=chunk)

    async def send_message(
        self,
        session_id: str,
        text: str,
        *,
        user_id: Optional[str] = None,
        audio: Optional[bytes] = None,
        audio_content_type: str = "audio/webm",
        user_name: Optional[str] = None,
        on_first_audio: Optional[FirstAudioCallback] = None,
    ) -> SendMessageResult:
        """
        Run one conversational turn.

        Raises:
            InvalidTransition: the session is not active, before or after the run
            CompletionStreamError: the completion stream failed; nothing persisted
            SynthesisFailure: no sentence could be synthesized; nothing persisted
        """
        session = await self.sessions.get(session_id, user_id)
        self._require(session, SessionStatus.ACTIVE)

        history = await self.sessions.list_turns(session_id)
        messages = build_messages(
            history,
            text,
            personality=self.config.ai_personality,
            user_name=user_name,
            kind=session.kind,
        )

        run = self._orchestrator.start(self._completion.stream(messages))

        if on_first_audio is not None:
            first = await run.first_audio()
            if first is not None:
                try:
                    await on_first_audio(first)
                except Exception as e:
                    logger.error("First audio callback failed", session_id=session_id, error=str(e))

        result = await run.result()

        # The session may have been paused, ended or capped while we streamed.
        current = await self.sessions.get(session_id, user_id)
        if current.status != SessionStatus.ACTIVE:
            logger.info(
                "Discarding response for session that left active",
                session_id=session_id,
                status=current.status.value,
                chunks=len(result.chunks),
            )
            self._require(current, SessionStatus.ACTIVE)

        wpm = self.config.speaking_rate_wpm
        ai_duration = sum(c.duration_seconds for c in result.chunks) or estimate_duration(result.full_text, wpm)
        first_audio_ref = result.first_audio.audio_ref if result.first_audio else None
        user_turn, ai_turn = await self.sessions.add_turns(
            session_id,
            [
                (Speaker.USER, text, estimate_duration(text, wpm)),
                (Speaker.AI, result.full_text, ai_duration),
            ],
            audio_urls=[None, first_audio_ref],
            user_id=user_id,
        )

        if audio and self._archival.enabled:
            self._background.submit(
                self._archive_audio(current, user_turn, audio, audio_content_type),
                name="archival.upload",
                session_id=session_id,
                turn_id=user_turn.id,
            )

        logger.info(
            "Turn persisted",
            session_id=session_id,
            user_order=user_turn.order,
            ai_order=ai_turn.order,
            chunks=len(result.chunks),
            **result.metrics.to_dict(),
        )

        return SendMessageResult(
            session_id=session_id,
            user_turn=user_turn,
            ai_turn=ai_turn,
            ai_text=result.full_text,
            first_audio=result.first_audio,
            chunks=result.chunks,
            metrics=result.metrics,
        )

    async def _archive_audio(self, session: Session, turn: Turn, audio: bytes, content_type: str) -> None:
        url = await self._archival.upload(
            user_id=session.user_id,
            session_id=session.id,
            order=turn.order,
            speaker=turn.speaker.value,
            data=audio,
            content_type=content_type,
        )
        await self.sessions.backfill_turn_audio(session.id, turn.id, url)

    async def archive_session(self, session_id: str) -> int:
        """
        Move AI turn audio into archival storage and point the turns at it.

        The pipeline only keeps temporary references to AI audio, so each AI
        turn is re-synthesized from its text and uploaded. User audio is
        archived as each message arrives and is left alone here. A turn that
        fails is logged and skipped. Returns the number of turns archived.
        """
        session = await self.sessions.get(session_id)
        turns = await self.sessions.list_turns(session_id)
        archived = 0

        for turn in turns:
            if turn.speaker != Speaker.AI or self._archival.is_archived(turn.audio_url):
                continue
            chunk = await self._synthesizer.synthesize(turn.text, sentence_index=turn.order)
            if chunk is None or not chunk.audio_bytes:
                logger.warning("No audio to archive for turn", session_id=session_id, order=turn.order)
                continue
            try:
                url = await self._archival.upload(
                    user_id=session.user_id,
                    session_id=session_id,
                    order=turn.order,
                    speaker=turn.speaker.value,
                    data=chunk.audio_bytes,
                    content_type=chunk.content_type,
                )
            except Exception as e:
                logger.error("Turn archival failed", session_id=session_id, order=turn.order, error=str(e))
                continue
            if await self.sessions.backfill_turn_audio(session_id, turn.id, url, replaces=turn.audio_url):
                archived += 1

        logger.info("Session archived", session_id=session_id, turns=len(turns), turns_archived=archived)
        return archived

    @staticmethod
    def _require(session: Session, *allowed: SessionStatus) -> None:
        if session.status not in allowed:
            raise InvalidTransition(
                session_id=session.id,
                current=session.status.value,
                allowed=tuple(s.value for s in allowed),
            )

    async def close(self) -> None:
        await self._background.drain()
        await self._archival.close()
        await self._orchestrator.close()
        await self._completion.close()


def build_gateway(
    config: Optional[Any] = None,
    *,
    repository: Optional[SessionRepository] = None,
    entitlements: Optional[EntitlementService] = None,
    completion: Optional[CompletionClient] = None,
    synthesizer: Optional[TurnAudioSynthesizer] = None,
    archival: Optional[ArchivalStore] = None,
    clock: Clock = utcnow,
    rng: Optional[random.Random] = None,
) -> SessionGateway:
    """Wire a gateway from config; any collaborator can be passed in instead."""
    config = config or get_config()
    state_machine = SessionStateMachine(
        repository or InMemorySessionRepository(),
        entitlements or TierEntitlementService(config=config),
        clock=clock,
        config=config,
    )
    return SessionGateway(
        state_machine,
        completion or OpenAICompatibleLLM(config),
        StreamingOrchestrator(synthesizer or TurnAudioSynthesizer(config=config)),
        archival=archival or create_archival_store(config),
        config=config,
        rng=rng,
    )
