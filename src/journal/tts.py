from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from src.journal.config import get_config
from src.journal.tts_providers.base import TTSProvider
from src.journal.tts_providers.mock import MockTTS
from src.journal.tts_providers.openai_tts import OpenAITTS
from src.journal.tts_types import AudioChunk

logger = structlog.get_logger(__name__)

DEFAULT_WORDS_PER_MINUTE = 150


def estimate_duration(text: str, words_per_minute: int = DEFAULT_WORDS_PER_MINUTE) -> int:
    """
    Estimate spoken duration in whole seconds from word count.

    Deterministic: the same text always yields the same value, minimum 1 second.
    """
    words = len((text or "").split())
    words_per_second = words_per_minute / 60
    return max(1, math.ceil(words / words_per_second))


def create_provider(config: Any) -> TTSProvider:
    tts = (config.tts_provider or "openai").strip().lower()
    if tts == "openai":
        return OpenAITTS(config)
    if tts == "mock":
        return MockTTS(config)
    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


@dataclass
class SynthesisMetrics:
    """Running totals for sentence synthesis."""

    total_requests: int = 0
    total_failures: int = 0
    total_characters: int = 0
    avg_latency_ms: float = 0.0

    def record(self, *, characters: int, latency_ms: float, failed: bool) -> None:
        self.total_requests += 1
        if failed:
            self.total_failures += 1
            return
        self.total_characters += characters
        n = self.total_requests - self.total_failures
        self.avg_latency_ms = (self.avg_latency_ms * (n - 1) + latency_ms) / n


class TurnAudioSynthesizer:
    """
    Turns one sentence into one `AudioChunk`.

    Provider errors never escape: a failed sentence yields `None` so the pipeline
    can skip it and keep going.
    """

    def __init__(self, provider: Optional[TTSProvider] = None, config: Optional[Any] = None):
        self.config = config or get_config()
        self._provider = provider or create_provider(self.config)
        self._metrics = SynthesisMetrics()

    @property
    def metrics(self) -> SynthesisMetrics:
        return self._metrics

    async def synthesize(self, text: str, sentence_index: int = 0) -> Optional[AudioChunk]:
        if not text or not text.strip():
            return None

        started = time.time()
        try:
            result = await self._provider.synthesize(text)
        except Exception as e:
            latency_ms = (time.time() - started) * 1000
            self._metrics.record(characters=len(text), latency_ms=latency_ms, failed=True)
            logger.warning(
                "Sentence synthesis failed",
                sentence_index=sentence_index,
                error=str(e),
                latency_ms=round(latency_ms, 2),
            )
            return None

        latency_ms = (time.time() - started) * 1000
        if not result or not result.audio_ref:
            self._metrics.record(characters=len(text), latency_ms=latency_ms, failed=True)
            logger.warning("Sentence synthesis returned no audio", sentence_index=sentence_index)
            return None

        self._metrics.record(characters=len(text), latency_ms=latency_ms, failed=False)

        duration = result.duration_seconds
        if duration is None:
            duration = estimate_duration(text, self.config.speaking_rate_wpm)

        return AudioChunk(
            sentence_index=sentence_index,
            text=text,
            audio_ref=result.audio_ref,
            duration_seconds=float(duration),
            content_type=result.content_type,
            latency_ms=latency_ms,
            audio_bytes=result.audio_bytes,
        )

    async def close(self) -> None:
        await self._provider.close()
