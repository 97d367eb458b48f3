"""
Tests for the streaming orchestrator: ordering, first audio, failure handling.
"""

import asyncio
import random

import pytest

from conftest import ScriptedCompletion, ScriptedProvider
from src.journal.errors import CompletionStreamError, SynthesisFailure
from src.journal.streaming import StreamingOrchestrator
from src.journal.tts import TurnAudioSynthesizer


def make_orchestrator(config, provider):
    return StreamingOrchestrator(TurnAudioSynthesizer(provider=provider, config=config))


async def tokens_of(*parts, delay=0.0):
    for part in parts:
        await asyncio.sleep(delay)
        yield part


@pytest.mark.asyncio
async def test_chunks_are_ordered_even_when_synthesis_finishes_out_of_order(config):
    # Later sentences finish first.
    provider = ScriptedProvider(delays={"One.": 0.06, "Two.": 0.03, "Three.": 0.0})
    orchestrator = make_orchestrator(config, provider)

    result = await orchestrator.run(tokens_of("One. ", "Two. ", "Three."))

    assert [c.sentence_index for c in result.chunks] == [0, 1, 2]
    assert [c.text for c in result.chunks] == ["One.", "Two.", "Three."]
    assert result.full_text == "One. Two. Three."
    assert result.total_sentences == 3


@pytest.mark.asyncio
async def test_sentences_launch_before_stream_finishes(config):
    provider = ScriptedProvider()
    orchestrator = make_orchestrator(config, provider)
    gate = asyncio.Event()

    async def tokens():
        yield "First sentence. "
        await gate.wait()
        yield "Second."

    run = orchestrator.start(tokens())
    first = await asyncio.wait_for(run.first_audio(), timeout=1.0)

    assert first is not None
    assert first.text == "First sentence."
    assert provider.calls == ["First sentence."]
    assert not run.done()

    gate.set()
    result = await run.result()
    assert [c.text for c in result.chunks] == ["First sentence.", "Second."]


@pytest.mark.asyncio
async def test_first_audio_is_sentence_zero_even_if_later_ones_finish_first(config):
    provider = ScriptedProvider(delays={"Slow first.": 0.05})
    orchestrator = make_orchestrator(config, provider)

    run = orchestrator.start(tokens_of("Slow first. ", "Fast second. ", "Fast third."))
    first = await run.first_audio()

    assert first.sentence_index == 0
    assert first.text == "Slow first."
    result = await run.result()
    assert result.first_audio.sentence_index == 0


@pytest.mark.asyncio
async def test_failed_sentence_is_skipped(config):
    provider = ScriptedProvider(failures=["Two."])
    orchestrator = make_orchestrator(config, provider)

    result = await orchestrator.run(tokens_of("One. ", "Two. ", "Three."))

    assert [c.sentence_index for c in result.chunks] == [0, 2]
    assert result.failed_sentences == 1


@pytest.mark.asyncio
async def test_first_sentence_failure_resolves_first_audio_with_none(config):
    provider = ScriptedProvider(failures=["One."])
    orchestrator = make_orchestrator(config, provider)

    run = orchestrator.start(tokens_of("One. ", "Two."))
    first = await asyncio.wait_for(run.first_audio(), timeout=1.0)
    result = await run.result()

    assert first is None
    assert result.first_audio is None
    assert [c.text for c in result.chunks] == ["Two."]


@pytest.mark.asyncio
async def test_all_sentences_failing_raises(config):
    provider = ScriptedProvider(failures=["One.", "Two."])
    orchestrator = make_orchestrator(config, provider)

    with pytest.raises(SynthesisFailure):
        await orchestrator.run(tokens_of("One. ", "Two."))


@pytest.mark.asyncio
async def test_tail_without_terminal_mark_is_synthesized(config):
    provider = ScriptedProvider()
    orchestrator = make_orchestrator(config, provider)

    result = await orchestrator.run(tokens_of("Tell me ", "more about that"))

    assert [c.text for c in result.chunks] == ["Tell me more about that"]


@pytest.mark.asyncio
async def test_empty_response_resolves_first_audio(config):
    orchestrator = make_orchestrator(config, ScriptedProvider())

    run = orchestrator.start(tokens_of())
    assert await asyncio.wait_for(run.first_audio(), timeout=1.0) is None
    result = await run.result()
    assert result.chunks == []
    assert result.total_sentences == 0


@pytest.mark.asyncio
async def test_stream_failure_raises_after_draining_synthesis(config):
    provider = ScriptedProvider(delays={"Started.": 0.02})
    orchestrator = make_orchestrator(config, provider)
    completion = ScriptedCompletion(["Started. ", "and then"], fail_at=2)

    run = orchestrator.start(completion.stream([]))

    with pytest.raises(CompletionStreamError):
        await run.result()
    # In-flight synthesis was drained before the error surfaced.
    assert provider.calls == ["Started."]
    assert run.done()


@pytest.mark.asyncio
async def test_stream_failure_before_any_sentence_resolves_first_audio_with_none(config):
    orchestrator = make_orchestrator(config, ScriptedProvider())
    completion = ScriptedCompletion(["Half a thou"], fail_at=1)

    run = orchestrator.start(completion.stream([]))

    assert await asyncio.wait_for(run.first_audio(), timeout=1.0) is None
    with pytest.raises(CompletionStreamError):
        await run.result()


@pytest.mark.asyncio
async def test_unexpected_stream_error_is_wrapped(config):
    orchestrator = make_orchestrator(config, ScriptedProvider())

    async def broken():
        yield "Hello. "
        raise ConnectionResetError("socket closed")

    with pytest.raises(CompletionStreamError) as exc_info:
        await orchestrator.run(broken())
    assert isinstance(exc_info.value.__cause__, ConnectionResetError)


@pytest.mark.asyncio
async def test_metrics_are_recorded(config):
    orchestrator = make_orchestrator(config, ScriptedProvider())

    result = await orchestrator.run(tokens_of("Hi. ", "Bye."))

    data = result.metrics.to_dict()
    assert set(data) == {"llm_first_token_ms", "llm_total_ms", "first_audio_ms", "total_ms"}
    assert result.metrics.total_ms >= result.metrics.llm_first_token_ms


def sentences_of(n):
    return [f"Sentence number {i}." for i in range(n)]


@pytest.mark.asyncio
@pytest.mark.parametrize("n", [1, 2, 3, 4, 5, 6])
@pytest.mark.parametrize("seed", [0, 1, 2])
async def test_ordering_holds_under_shuffled_latencies(config, n, seed):
    sentences = sentences_of(n)
    latencies = [0.004 * i for i in range(n)]
    random.Random(seed).shuffle(latencies)
    provider = ScriptedProvider(delays=dict(zip(sentences, latencies)))
    orchestrator = make_orchestrator(config, provider)

    result = await orchestrator.run(tokens_of(*(s + " " for s in sentences)))

    assert [c.sentence_index for c in result.chunks] == list(range(n))
    assert [c.text for c in result.chunks] == sentences


@pytest.mark.asyncio
@pytest.mark.parametrize("n", [1, 2, 3, 4, 5, 6])
async def test_ordering_holds_under_reversed_latencies(config, n):
    sentences = sentences_of(n)
    provider = ScriptedProvider(delays={s: 0.005 * (n - i) for i, s in enumerate(sentences)})
    orchestrator = make_orchestrator(config, provider)

    result = await orchestrator.run(tokens_of(*(s + " " for s in sentences)))

    assert [c.sentence_index for c in result.chunks] == list(range(n))


@pytest.mark.asyncio
@pytest.mark.parametrize("n", [3, 4, 5, 6])
async def test_failed_middle_sentence_with_reversed_latencies(config, n):
    sentences = sentences_of(n)
    middle = n // 2
    provider = ScriptedProvider(
        delays={s: 0.005 * (n - i) for i, s in enumerate(sentences)},
        failures=[sentences[middle]],
    )
    orchestrator = make_orchestrator(config, provider)

    run = orchestrator.start(tokens_of(*(s + " " for s in sentences)))
    first = await run.first_audio()
    result = await run.result()

    expected = [i for i in range(n) if i != middle]
    assert [c.sentence_index for c in result.chunks] == expected
    assert result.failed_sentences == 1
    assert first.sentence_index == 0
