"""
Completion client over an OpenAI-compatible API (OpenRouter by default).

Provides:
- Startup model validation
- Token streaming as an async iterator
- Upstream failures wrapped as CompletionStreamError
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
import structlog
from openai import AsyncOpenAI

from src.journal.config import get_config
from src.journal.errors import CompletionStreamError

logger = structlog.get_logger(__name__)


class CompletionClient(Protocol):
    def stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        ...

    async def close(self) -> None:
        ...


@dataclass
class LLMResponse:
    """Response from LLM."""
    text: str
    first_token_ms: float = 0.0
    total_ms: float = 0.0
    tokens_generated: int = 0


async def validate_model(api_key: str, base_url: str, model_name: str) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models and fails fast if the model is not listed.

    Raises:
        SystemExit: If the model doesn't exist or the API is unreachable
    """
    logger.info("Validating LLM model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url.rstrip('/')}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(
                f"Failed to connect to LLM API: {e}\n"
                "Check your network connection and LLM_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate LLM model. API returned status {response.status_code}. "
            "Check your LLM_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(i for i in model_ids if i)[:10])
        logger.error("LLM model not found", requested_model=model_name, available_models=available)
        raise SystemExit(
            f"LLM_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update LLM_MODEL in your .env file."
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True


class OpenAICompatibleLLM:
    """
    Streaming chat completions. One subscription per call, no retries.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self.model = self.config.llm_model
        self._client = client or AsyncOpenAI(
            api_key=self.config.llm_api_key,
            base_url=self.config.llm_base_url,
        )
        self._owns_client = client is None

    async def validate_model(self) -> bool:
        return await validate_model(self.config.llm_api_key, self.config.llm_base_url, self.model)

    async def stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        """
        Yield text tokens as they are generated.

        Raises:
            CompletionStreamError: on any upstream failure, before or mid-stream
        """
        started = time.time()
        chars = 0
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    text = chunk.choices[0].delta.content
                    chars += len(text)
                    yield text
        except Exception as e:
            logger.error(
                "LLM stream failed",
                model=self.model,
                error=str(e),
                latency_ms=round((time.time() - started) * 1000, 2),
            )
            raise CompletionStreamError() from e

        logger.debug(
            "LLM stream complete",
            model=self.model,
            chars=chars,
            latency_ms=round((time.time() - started) * 1000, 2),
        )

    async def generate(self, messages: List[Dict[str, str]]) -> LLMResponse:
        """Collect a complete response (non-streaming callers)."""
        start_time = time.time()
        first_token_time = None
        parts: List[str] = []

        async for token in self.stream(messages):
            if first_token_time is None:
                first_token_time = time.time()
            parts.append(token)

        end_time = time.time()
        return LLMResponse(
            text="".join(parts),
            first_token_ms=(first_token_time - start_time) * 1000 if first_token_time else 0,
            total_ms=(end_time - start_time) * 1000,
            tokens_generated=len(parts),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.close()
