from __future__ import annotations

import base64
import time
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from src.journal.config import get_config
from src.journal.tts_providers.base import TTSProvider
from src.journal.tts_types import SpeechResult

logger = structlog.get_logger(__name__)

_CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "opus": "audio/ogg",
    "aac": "audio/aac",
    "flac": "audio/flac",
}


def to_data_uri(audio: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(audio).decode('ascii')}"


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Synthesizes one sentence per request and returns it inline as a data URI, so
    the client can start playback without a storage round trip. Archival uploads
    happen later and backfill permanent URLs.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)
        self._owns_client = client is None

    async def synthesize(self, text: str) -> SpeechResult:
        fmt = (self.config.openai_tts_format or "mp3").lower()
        content_type = _CONTENT_TYPES.get(fmt, "audio/mpeg")

        started = time.time()
        resp = await self._client.audio.speech.create(
            model=self.config.openai_tts_model,
            voice=self.config.openai_tts_voice,
            input=text,
            response_format=fmt,
        )

        # SDKs have varied over time; handle several shapes.
        data = getattr(resp, "content", None)
        if isinstance(data, (bytes, bytearray)):
            audio = bytes(data)
        else:
            audio = await resp.aread() if hasattr(resp, "aread") else bytes(resp)

        if not audio:
            raise ValueError("OpenAI TTS returned empty audio")

        elapsed_ms = (time.time() - started) * 1000
        logger.debug("OpenAI TTS synthesized", chars=len(text), bytes=len(audio), latency_ms=round(elapsed_ms, 2))

        return SpeechResult(
            audio_ref=to_data_uri(audio, content_type),
            content_type=content_type,
            audio_bytes=audio,
            meta={"elapsed_ms": round(elapsed_ms, 2)},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.close()
