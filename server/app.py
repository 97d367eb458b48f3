"""
FastAPI server for the voice journal.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET /sessions/availability: Can the caller start a session today
- POST /sessions: Start (or return today's open) session
- GET /sessions/{id}: Session with its turns
- POST /sessions/{id}/greeting: Spoken opening line saved as turn 0
- POST /sessions/{id}/messages: One conversational turn, full result
- POST /sessions/{id}/messages/stream: Same turn as NDJSON, first audio first
- POST /sessions/{id}/turns, /speaking-time, /pause, /resume, /end, /complete, /cancel
- DELETE /sessions/{id}

Authentication happens upstream; the caller's identity arrives in the
X-User-Id header and their role in X-User-Role.
"""

import asyncio
import base64
import binascii
import json
import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Set

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from src.journal.config import ConfigError, get_config, init_config
from src.journal.errors import (
    AttemptExhausted,
    CompletionStreamError,
    EntitlementDenied,
    InvalidTransition,
    JournalError,
    ReconnectionTimeout,
    SessionNotFound,
    SynthesisFailure,
)
from src.journal.gateway import SendMessageResult, SessionGateway, build_gateway
from src.journal.llm import OpenAICompatibleLLM
from src.journal.models import Session, SessionKind, Speaker
from src.journal.tts_types import AudioChunk


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    sessions_started: int = 0
    messages: int = 0
    active_streams: int = 0
    errors: int = 0
    first_audio_ms_total: float = 0.0
    first_audio_count: int = 0

    def record_turn(self, result: SendMessageResult) -> None:
        self.messages += 1
        if result.first_audio is not None:
            self.first_audio_ms_total += result.metrics.first_audio_ms
            self.first_audio_count += 1

    def to_dict(self) -> Dict[str, Any]:
        avg_first_audio = (
            self.first_audio_ms_total / self.first_audio_count if self.first_audio_count else 0.0
        )
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "sessions_started": self.sessions_started,
            "messages": self.messages,
            "active_streams": self.active_streams,
            "errors": self.errors,
            "avg_first_audio_ms": round(avg_first_audio, 2),
        }


# Global metrics
metrics = ServerMetrics()

ERROR_STATUS = {
    SessionNotFound: 404,
    InvalidTransition: 409,
    AttemptExhausted: 409,
    EntitlementDenied: 403,
    ReconnectionTimeout: 410,
    CompletionStreamError: 502,
    SynthesisFailure: 502,
}


def status_for(error: JournalError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


def error_body(error: JournalError) -> Dict[str, Any]:
    return {"error": type(error).__name__, "code": error.code, "message": error.user_message}


# Turns whose client disconnected mid-stream; they still finish and persist.
_detached_streams: Set[asyncio.Task] = set()


def watch_detached_stream(task: asyncio.Task, session_id: str) -> None:
    """Keep a turn running after its client left and log how it ended."""
    _detached_streams.add(task)
    logger.info("Client disconnected, turn continues", session_id=session_id)

    def _done(t: asyncio.Task) -> None:
        _detached_streams.discard(t)
        if t.cancelled():
            logger.info("Detached turn cancelled", session_id=session_id)
            return
        error = t.exception()
        if error is not None:
            logger.error("Detached turn failed", session_id=session_id, error=str(error))
        else:
            logger.info("Detached turn finished", session_id=session_id, outcome=t.result())

    task.add_done_callback(_done)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice journal server...")

    gateway: Optional[SessionGateway] = None
    try:
        config = init_config()
        configure_logging(config.log_level)

        # Fail fast on a misconfigured model
        completion = OpenAICompatibleLLM(config)
        await completion.validate_model()

        gateway = build_gateway(config, completion=completion)
        app.state.gateway = gateway

        logger.info(
            "Server ready",
            port=config.port,
            tts_provider=config.tts_provider,
            archival_enabled=config.archival_enabled,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    if gateway is not None:
        await gateway.close()


app = FastAPI(
    title="Voice Journal",
    description="Daily voice journaling sessions with a streaming AI companion",
    version="1.0.0",
    lifespan=lifespan,
)


def get_gateway(request: Request) -> SessionGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return gateway


class CreateSessionRequest(BaseModel):
    kind: SessionKind = SessionKind.REFLECTION


class SpeakingTimeRequest(BaseModel):
    seconds: float = Field(ge=0)


class EndSessionRequest(BaseModel):
    total_user_speaking_time: Optional[float] = Field(default=None, ge=0)


class CompleteSessionRequest(BaseModel):
    summary: Optional[str] = None


class MessageRequest(BaseModel):
    text: str = Field(min_length=1)
    audio_base64: Optional[str] = Field(
        default=None,
        description="The user's recorded audio for this message, archived in the background",
    )
    audio_content_type: str = "audio/webm"
    user_name: Optional[str] = None


class TurnRequest(BaseModel):
    speaker: Speaker
    text: str = Field(min_length=1)
    duration: Optional[float] = Field(default=None, gt=0)
    audio_url: Optional[str] = None


def _decode_audio(body: MessageRequest) -> Optional[bytes]:
    if not body.audio_base64:
        return None
    try:
        return base64.b64decode(body.audio_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=422, detail="audio_base64 is not valid base64")


def _session_payload(session: Session) -> Dict[str, Any]:
    return {"session": session.to_dict()}


@app.exception_handler(JournalError)
async def journal_error_handler(request: Request, exc: JournalError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        metrics.errors += 1
    logger.info(
        "Request rejected",
        path=request.url.path,
        code=exc.code,
        status_code=status_code,
        session_id=exc.session_id,
    )
    return JSONResponse(status_code=status_code, content=error_body(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_streams": metrics.active_streams,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.get("/sessions/availability")
async def check_availability(
    kind: SessionKind = SessionKind.REFLECTION,
    x_user_id: str = Header(...),
    x_user_role: Optional[str] = Header(default=None),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    availability = await gateway.check_availability(x_user_id, kind=kind, role=x_user_role)
    return {
        "can_start": availability.can_start,
        "has_existing_session": availability.has_existing_session,
        "existing_status": availability.existing_status.value if availability.existing_status else None,
        "has_used_attempt": availability.has_used_attempt,
    }


@app.post("/sessions", status_code=201)
async def start_session(
    body: CreateSessionRequest,
    x_user_id: str = Header(...),
    x_user_role: Optional[str] = Header(default=None),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    session = await gateway.start_session(x_user_id, kind=body.kind, role=x_user_role)
    metrics.sessions_started += 1
    return _session_payload(session)


@app.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    session, turns = await gateway.get_session(session_id, user_id=x_user_id)
    return {"session": session.to_dict(), "turns": [t.to_dict() for t in turns]}


@app.post("/sessions/{session_id}/greeting", status_code=201)
async def generate_greeting(
    session_id: str,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    result = await gateway.generate_greeting(session_id, user_id=x_user_id)
    return result.to_dict()


@app.post("/sessions/{session_id}/messages")
async def send_message(
    session_id: str,
    body: MessageRequest,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    result = await gateway.send_message(
        session_id,
        body.text,
        user_id=x_user_id,
        audio=_decode_audio(body),
        audio_content_type=body.audio_content_type,
        user_name=body.user_name,
    )
    metrics.record_turn(result)
    return result.to_dict()


@app.post("/sessions/{session_id}/messages/stream")
async def stream_message(
    session_id: str,
    body: MessageRequest,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> StreamingResponse:
    """
    NDJSON events: `first_audio` as soon as sentence 0 is ready, then one
    `chunk` per remaining sentence in order, then `done` with the persisted
    turns. A failure ends the stream with an `error` event.
    """
    audio = _decode_audio(body)
    queue: asyncio.Queue = asyncio.Queue()

    async def on_first_audio(chunk: AudioChunk) -> None:
        await queue.put({"type": "first_audio", "chunk": chunk.to_dict()})

    async def run() -> str:
        outcome = "done"
        try:
            result = await gateway.send_message(
                session_id,
                body.text,
                user_id=x_user_id,
                audio=audio,
                audio_content_type=body.audio_content_type,
                user_name=body.user_name,
                on_first_audio=on_first_audio,
            )
            metrics.record_turn(result)
            for chunk in result.chunks:
                if result.first_audio is not None and chunk.sentence_index == result.first_audio.sentence_index:
                    continue
                await queue.put({"type": "chunk", "chunk": chunk.to_dict()})
            await queue.put({
                "type": "done",
                "ai_text": result.ai_text,
                "user_turn": result.user_turn.to_dict(),
                "ai_turn": result.ai_turn.to_dict(),
                "metrics": result.metrics.to_dict(),
            })
        except JournalError as e:
            if status_for(e) >= 500:
                metrics.errors += 1
            outcome = e.code
            await queue.put({"type": "error", **error_body(e)})
        except Exception as e:
            logger.error("Message stream failed", session_id=session_id, error=str(e))
            metrics.errors += 1
            await queue.put({"type": "error", "error": "Internal server error"})
            outcome = "internal_error"
        finally:
            await queue.put(None)
        return outcome

    async def events() -> AsyncIterator[str]:
        metrics.active_streams += 1
        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield json.dumps(event) + "\n"
            await task
        finally:
            metrics.active_streams -= 1
            if task.done():
                await task
            else:
                watch_detached_stream(task, session_id)

    return StreamingResponse(events(), media_type="application/x-ndjson")


@app.post("/sessions/{session_id}/turns", status_code=201)
async def add_turn(
    session_id: str,
    body: TurnRequest,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    turn = await gateway.add_turn(
        session_id,
        body.speaker,
        body.text,
        duration=body.duration,
        audio_url=body.audio_url,
        user_id=x_user_id,
    )
    return {"turn": turn.to_dict()}


@app.post("/sessions/{session_id}/speaking-time")
async def update_speaking_time(
    session_id: str,
    body: SpeakingTimeRequest,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    update = await gateway.update_speaking_time(session_id, body.seconds, user_id=x_user_id)
    return {"session": update.session.to_dict(), "time_limit_reached": update.time_limit_reached}


@app.post("/sessions/{session_id}/pause")
async def pause_session(
    session_id: str,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    return _session_payload(await gateway.pause_session(session_id, user_id=x_user_id))


@app.post("/sessions/{session_id}/resume")
async def resume_session(
    session_id: str,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    return _session_payload(await gateway.resume_session(session_id, user_id=x_user_id))


@app.post("/sessions/{session_id}/end")
async def end_session(
    session_id: str,
    body: Optional[EndSessionRequest] = None,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    session = await gateway.end_session(
        session_id,
        total_user_speaking_time=body.total_user_speaking_time if body else None,
        user_id=x_user_id,
    )
    return _session_payload(session)


@app.post("/sessions/{session_id}/complete")
async def complete_session(
    session_id: str,
    body: Optional[CompleteSessionRequest] = None,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    session = await gateway.complete_session(
        session_id,
        summary=body.summary if body else None,
        user_id=x_user_id,
    )
    return _session_payload(session)


@app.post("/sessions/{session_id}/cancel")
async def cancel_short_session(
    session_id: str,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    session = await gateway.cancel_short_session(session_id, user_id=x_user_id)
    return {"cancelled": True, "session_id": session.id}


@app.delete("/sessions/{session_id}")
async def delete_session(
    session_id: str,
    x_user_id: str = Header(...),
    gateway: SessionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    result = await gateway.delete_session(session_id, user_id=x_user_id)
    return {"deleted": True, "session_id": result.session.id, "marker_created": result.marker_created}


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
