"""
Configuration management for the voice journal backend.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 7860
    log_level: str = "INFO"

    # LLM (any OpenAI-compatible endpoint; OpenRouter by default)
    llm_api_key: str = ""
    llm_base_url: str = OPENROUTER_BASE_URL
    llm_model: str = "google/gemini-2.0-flash-001"
    llm_max_tokens: int = 500
    llm_temperature: float = 0.7
    ai_personality: str = "empathetic"  # "empathetic" | "curious"

    # TTS
    # - `openai`: OpenAI Audio Speech API, returned as a data URI
    # - `mock`: silent placeholder audio for local development
    tts_provider: str = "openai"
    openai_api_key: str = ""
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"
    openai_tts_format: str = "mp3"
    speaking_rate_wpm: int = 150

    # Session policy
    reconnection_timeout_seconds: int = 300
    inter_turn_gap_seconds: float = 0.5
    exempt_roles: tuple[str, ...] = ("admin",)
    summary_min_speaking_seconds: float = 10.0

    # Entitlements
    mock_payments: bool = False

    # Archival (Bunny.net storage)
    archival_enabled: bool = False
    bunny_storage_zone: str = ""
    bunny_api_key: str = ""
    bunny_storage_host: str = "storage.bunnycdn.com"
    bunny_cdn_url: str = ""
    archival_timeout_seconds: float = 30.0

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.llm_api_key:
            missing.append("LLM_API_KEY")
        if not self.llm_model:
            missing.append("LLM_MODEL")

        provider = (self.tts_provider or "openai").strip().lower()
        if provider not in ("openai", "mock"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'openai' or 'mock'."
            )
        if provider == "openai" and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if self.archival_enabled:
            if not self.bunny_storage_zone:
                missing.append("BUNNY_STORAGE_ZONE")
            if not self.bunny_api_key:
                missing.append("BUNNY_API_KEY")
            if not self.bunny_cdn_url:
                missing.append("BUNNY_CDN_URL")

        if self.speaking_rate_wpm <= 0:
            raise ConfigError("SPEAKING_RATE_WPM must be positive.")
        if self.reconnection_timeout_seconds <= 0:
            raise ConfigError("RECONNECTION_TIMEOUT_SECONDS must be positive.")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            llm_base_url=self.llm_base_url,
            llm_model=self.llm_model,
            ai_personality=self.ai_personality,
            tts_provider=self.tts_provider,
            openai_tts_model=self.openai_tts_model,
            speaking_rate_wpm=self.speaking_rate_wpm,
            reconnection_timeout_seconds=self.reconnection_timeout_seconds,
            inter_turn_gap_seconds=self.inter_turn_gap_seconds,
            exempt_roles=list(self.exempt_roles),
            mock_payments=self.mock_payments,
            archival_enabled=self.archival_enabled,
            bunny_storage_zone=self.bunny_storage_zone or "NOT SET",
            llm_key_set=bool(self.llm_api_key),
            openai_key_set=bool(self.openai_api_key),
            bunny_key_set=bool(self.bunny_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(key)
    if raw is None:
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    personality = os.getenv("AI_PERSONALITY", "empathetic").strip().lower()
    if personality not in ("empathetic", "curious"):
        personality = "empathetic"

    return Config(
        # Server
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # LLM
        llm_api_key=os.getenv("LLM_API_KEY", os.getenv("OPENROUTER_API_KEY", "")),
        llm_base_url=os.getenv("LLM_BASE_URL", OPENROUTER_BASE_URL),
        llm_model=os.getenv("LLM_MODEL", "google/gemini-2.0-flash-001"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 500),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        ai_personality=personality,

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),
        openai_tts_format=os.getenv("OPENAI_TTS_FORMAT", "mp3"),
        speaking_rate_wpm=_get_int("SPEAKING_RATE_WPM", 150),

        # Session policy
        reconnection_timeout_seconds=_get_int("RECONNECTION_TIMEOUT_SECONDS", 300),
        inter_turn_gap_seconds=_get_float("INTER_TURN_GAP_SECONDS", 0.5),
        exempt_roles=_get_list("EXEMPT_ROLES", ("admin",)),
        summary_min_speaking_seconds=_get_float("SUMMARY_MIN_SPEAKING_SECONDS", 10.0),

        # Entitlements
        mock_payments=_get_bool("MOCK_PAYMENTS", False),

        # Archival
        archival_enabled=_get_bool("ARCHIVAL_ENABLED", False),
        bunny_storage_zone=os.getenv("BUNNY_STORAGE_ZONE", ""),
        bunny_api_key=os.getenv("BUNNY_API_KEY", ""),
        bunny_storage_host=os.getenv("BUNNY_STORAGE_HOST", "storage.bunnycdn.com"),
        bunny_cdn_url=os.getenv("BUNNY_CDN_URL", ""),
        archival_timeout_seconds=_get_float("ARCHIVAL_TIMEOUT_SECONDS", 30.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
