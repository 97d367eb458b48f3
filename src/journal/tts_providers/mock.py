from __future__ import annotations

import asyncio
import io
import wave
from typing import Any, Optional

from src.journal.config import get_config
from src.journal.tts_providers.base import TTSProvider
from src.journal.tts_providers.openai_tts import to_data_uri
from src.journal.tts_types import SpeechResult

_SAMPLE_RATE = 8000


def _silent_wav(seconds: float) -> bytes:
    frames = int(_SAMPLE_RATE * max(0.0, seconds))
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(_SAMPLE_RATE)
        wav.writeframes(b"\x00\x00" * frames)
    return buf.getvalue()


class MockTTS(TTSProvider):
    """Development provider: short silent WAV after a fixed delay."""

    def __init__(self, config: Optional[Any] = None, delay_s: float = 0.3):
        self.config = config or get_config()
        self.delay_s = delay_s

    async def synthesize(self, text: str) -> SpeechResult:
        await asyncio.sleep(self.delay_s)
        audio = _silent_wav(0.25)
        return SpeechResult(
            audio_ref=to_data_uri(audio, "audio/wav"),
            content_type="audio/wav",
            audio_bytes=audio,
            meta={"mock": True},
        )
