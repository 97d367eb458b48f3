from __future__ import annotations

from abc import ABC, abstractmethod

from src.journal.tts_types import SpeechResult


class TTSProvider(ABC):
    @abstractmethod
    async def synthesize(self, text: str) -> SpeechResult:
        """Synthesize one sentence. Raises on provider failure."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
