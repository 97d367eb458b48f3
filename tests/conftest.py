"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from src.journal.errors import CompletionStreamError
from src.journal.tts_providers.base import TTSProvider
from src.journal.tts_types import SpeechResult


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "LLM_API_KEY": "test_llm_key",
        "LLM_MODEL": "test/model",
        "OPENAI_API_KEY": "test_openai_key",
        "TTS_PROVIDER": "mock",
        "MOCK_PAYMENTS": "true",
        "ARCHIVAL_ENABLED": "false",
        "RECONNECTION_TIMEOUT_SECONDS": "300",
        "INTER_TURN_GAP_SECONDS": "0.5",
        "EXEMPT_ROLES": "admin",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.journal.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeClock:
    """Manually advanced clock for timeout tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class ScriptedProvider(TTSProvider):
    """TTS provider with per-sentence delays and failures."""

    def __init__(self, delays=None, failures=(), duration_seconds=None):
        self.delays = delays or {}
        self.failures = set(failures)
        self.duration_seconds = duration_seconds
        self.calls = []

    async def synthesize(self, text):
        self.calls.append(text)
        await asyncio.sleep(self.delays.get(text, 0))
        if text in self.failures:
            raise RuntimeError("provider unavailable")
        return SpeechResult(
            audio_ref=f"audio://{text}",
            content_type="audio/mpeg",
            duration_seconds=self.duration_seconds,
            audio_bytes=text.encode(),
        )


class ScriptedCompletion:
    """Completion client that yields a fixed token list."""

    def __init__(self, tokens=(), fail_at=None, token_delay=0.0):
        self.tokens = list(tokens)
        self.fail_at = fail_at
        self.token_delay = token_delay
        self.requests = []

    async def stream(self, messages):
        self.requests.append(messages)
        for i, token in enumerate(self.tokens):
            if self.fail_at is not None and i == self.fail_at:
                raise CompletionStreamError()
            await asyncio.sleep(self.token_delay)
            yield token
        if self.fail_at is not None and self.fail_at >= len(self.tokens):
            raise CompletionStreamError()

    async def close(self):
        return None


class RecordingArchival:
    """Archival store that remembers uploads and deletions."""

    enabled = True

    def __init__(self, fail_uploads=False):
        self.fail_uploads = fail_uploads
        self.uploads = []
        self.deleted = []

    def is_archived(self, url):
        return bool(url) and url.startswith("https://cdn.test/")

    async def upload(self, *, user_id, session_id, order, speaker, data, content_type):
        if self.fail_uploads:
            raise RuntimeError("storage unavailable")
        self.uploads.append((user_id, session_id, order, speaker, data, content_type))
        return f"https://cdn.test/{user_id}/{session_id}/{order}-{speaker}.webm"

    async def delete_all(self, *, user_id, session_id):
        self.deleted.append((user_id, session_id))

    async def close(self):
        return None


@pytest.fixture
def config():
    from src.journal.config import get_config
    return get_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    from src.journal.repository import InMemorySessionRepository
    return InMemorySessionRepository()


@pytest.fixture
def entitlements(config):
    from src.journal.entitlement import TierEntitlementService
    return TierEntitlementService(config=config)


@pytest.fixture
def state_machine(repository, entitlements, clock, config):
    from src.journal.session import SessionStateMachine
    return SessionStateMachine(repository, entitlements, clock=clock, config=config)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def completion():
    return ScriptedCompletion(["Hello there. ", "How was ", "your day?"])


@pytest.fixture
def archival():
    return RecordingArchival()


@pytest.fixture
def gateway(config, repository, entitlements, completion, provider, archival, clock):
    from src.journal.gateway import build_gateway
    from src.journal.tts import TurnAudioSynthesizer

    return build_gateway(
        config,
        repository=repository,
        entitlements=entitlements,
        completion=completion,
        synthesizer=TurnAudioSynthesizer(provider=provider, config=config),
        archival=archival,
        clock=clock,
    )
