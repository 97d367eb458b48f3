"""Streaming orchestration: LLM tokens -> sentences -> concurrent TTS -> ordered audio.

Pipeline for one AI response:
    token stream -> accumulation buffer -> extract_sentences ->
    (per sentence, launched immediately) TurnAudioSynthesizer ->
    first-audio signal (sentence 0) + ordered chunk list (all sentences)

Sentences are synthesized concurrently, so provider calls can finish in any
order. The first-audio signal only ever concerns sentence 0; the final chunk list
is always re-sorted by sentence index before it leaves this module.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import AsyncIterable, List, Optional

import structlog

from src.journal.errors import CompletionStreamError, SynthesisFailure
from src.journal.segmenter import extract_sentences
from src.journal.tts import TurnAudioSynthesizer
from src.journal.tts_types import AudioChunk

logger = structlog.get_logger(__name__)


@dataclass
class TurnMetrics:
    """Timing for a single AI response."""
    start_time: float = field(default_factory=time.time)
    llm_first_token_ms: float = 0.0
    llm_total_ms: float = 0.0
    first_audio_ms: float = 0.0
    total_ms: float = 0.0

    def finalize(self) -> None:
        self.total_ms = (time.time() - self.start_time) * 1000

    def to_dict(self) -> dict:
        return {
            "llm_first_token_ms": round(self.llm_first_token_ms, 2),
            "llm_total_ms": round(self.llm_total_ms, 2),
            "first_audio_ms": round(self.first_audio_ms, 2),
            "total_ms": round(self.total_ms, 2),
        }


@dataclass
class StreamingResult:
    full_text: str
    chunks: List[AudioChunk]
    first_audio: Optional[AudioChunk]
    total_sentences: int
    metrics: TurnMetrics

    @property
    def failed_sentences(self) -> int:
        return self.total_sentences - len(self.chunks)


class StreamingRun:
    """
    One in-flight response.

    `first_audio()` resolves as soon as sentence 0 is synthesized (or failed),
    independent of the rest. `result()` waits for everything.
    """

    def __init__(self, synthesizer: TurnAudioSynthesizer, tokens: AsyncIterable[str]):
        self._synthesizer = synthesizer
        self._tokens = tokens
        self._metrics = TurnMetrics()
        self._first_audio: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending: List[asyncio.Task] = []
        self._next_index = 0
        self._task = asyncio.create_task(self._run())

    @property
    def metrics(self) -> TurnMetrics:
        return self._metrics

    @property
    def sentences_launched(self) -> int:
        return self._next_index

    def done(self) -> bool:
        return self._task.done()

    async def first_audio(self) -> Optional[AudioChunk]:
        return await asyncio.shield(self._first_audio)

    async def result(self) -> StreamingResult:
        return await asyncio.shield(self._task)

    def _resolve_first_audio(self, chunk: Optional[AudioChunk]) -> None:
        if self._first_audio.done():
            return
        if chunk is not None:
            self._metrics.first_audio_ms = (time.time() - self._metrics.start_time) * 1000
            logger.info(
                "First audio ready",
                latency_ms=round(self._metrics.first_audio_ms, 2),
            )
        self._first_audio.set_result(chunk)

    def _launch(self, sentence: str) -> None:
        index = self._next_index
        self._next_index += 1
        logger.debug("Launching sentence", sentence_index=index, preview=sentence[:50])
        self._pending.append(asyncio.create_task(self._synthesize(sentence, index)))

    async def _synthesize(self, sentence: str, index: int) -> Optional[AudioChunk]:
        chunk = await self._synthesizer.synthesize(sentence, sentence_index=index)
        if index == 0:
            self._resolve_first_audio(chunk)
        return chunk

    async def _drain(self) -> List[Optional[AudioChunk]]:
        if not self._pending:
            return []
        return list(await asyncio.gather(*self._pending))

    async def _run(self) -> StreamingResult:
        metrics = self._metrics
        parts: List[str] = []
        buffer = ""

        try:
            async for token in self._tokens:
                if not token:
                    continue
                if not parts:
                    metrics.llm_first_token_ms = (time.time() - metrics.start_time) * 1000
                parts.append(token)

                sentences, buffer = extract_sentences(buffer + token)
                for sentence in sentences:
                    self._launch(sentence)

            tail = buffer.strip()
            if tail:
                self._launch(tail)
        except CompletionStreamError:
            # Launched synthesis is allowed to finish; its results are discarded.
            await self._drain()
            self._resolve_first_audio(None)
            raise
        except Exception as e:
            await self._drain()
            self._resolve_first_audio(None)
            raise CompletionStreamError() from e

        metrics.llm_total_ms = (time.time() - metrics.start_time) * 1000
        if self._next_index == 0:
            self._resolve_first_audio(None)

        results = await self._drain()
        chunks = sorted((c for c in results if c is not None), key=lambda c: c.sentence_index)
        metrics.finalize()

        result = StreamingResult(
            full_text="".join(parts).strip(),
            chunks=chunks,
            first_audio=chunks[0] if chunks and chunks[0].sentence_index == 0 else None,
            total_sentences=self._next_index,
            metrics=metrics,
        )

        logger.info(
            "Response synthesized",
            sentences=result.total_sentences,
            failed_sentences=result.failed_sentences,
            **metrics.to_dict(),
        )

        if result.total_sentences and not chunks:
            raise SynthesisFailure()

        return result


class StreamingOrchestrator:
    """Runs token streams through the synthesizer; one `StreamingRun` per response."""

    def __init__(self, synthesizer: TurnAudioSynthesizer):
        self._synthesizer = synthesizer

    @property
    def synthesizer(self) -> TurnAudioSynthesizer:
        return self._synthesizer

    def start(self, tokens: AsyncIterable[str]) -> StreamingRun:
        return StreamingRun(self._synthesizer, tokens)

    async def run(self, tokens: AsyncIterable[str]) -> StreamingResult:
        return await self.start(tokens).result()

    async def close(self) -> None:
        await self._synthesizer.close()
