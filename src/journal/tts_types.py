from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class SpeechResult:
    """
    Raw result from a TTS provider.

    `audio_ref` is whatever the client can play: a hosted URL or a data URI.
    `duration_seconds` is set only when the provider reports exact timing.
    """

    audio_ref: str
    content_type: str = "audio/mpeg"
    duration_seconds: Optional[float] = None
    audio_bytes: Optional[bytes] = None
    meta: Optional[dict[str, Any]] = None


@dataclass
class AudioChunk:
    """One synthesized sentence of an AI response."""

    sentence_index: int
    text: str
    audio_ref: str
    duration_seconds: float
    content_type: str = "audio/mpeg"
    latency_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)
    audio_bytes: Optional[bytes] = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sentence_index": self.sentence_index,
            "text": self.text,
            "audio_ref": self.audio_ref,
            "duration_seconds": self.duration_seconds,
            "content_type": self.content_type,
        }
