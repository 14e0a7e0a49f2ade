"""
Configuration management for the voice relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys per pipeline mode at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

PIPELINE_MODES = ("cascaded", "realtime_relay")
LLM_PROVIDERS = ("groq", "openai")
TTS_PROVIDERS = ("openai", "cartesia")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Session
    pipeline_mode: str = "cascaded"  # "cascaded" | "realtime_relay"
    system_prompt: str = ""
    greeting: str = "Hello! How can I help you today?"
    outbound_greeting_delay_ms: int = 500
    max_consecutive_failures: int = 3
    adapter_idle_timeout_seconds: float = 5.0
    synthesis_timeout_seconds: float = 10.0
    outbound_pacing: bool = True
    pace_ahead_ms: int = 200
    max_buffered_frames: int = 500

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_url: str = "wss://api.deepgram.com/v1/listen"
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"
    deepgram_endpointing_ms: int = 300

    # LLM provider (Groq/OpenAI, both via the OpenAI-compatible API)
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.5
    llm_max_tokens: int = 256
    validate_llm_model: bool = True

    # TTS provider
    tts_provider: str = "openai"  # "openai" | "cartesia"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model_id: str = "sonic-english"
    tts_sample_rate: int = 24000

    # OpenAI Realtime
    openai_realtime_model: str = "gpt-4o-realtime-preview"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_voice: str = "alloy"
    openai_realtime_instructions: str = ""
    openai_realtime_transcription_model: str = "whisper-1"
    openai_realtime_vad_threshold: float = 0.5
    openai_realtime_prefix_padding_ms: int = 300
    openai_realtime_silence_ms: int = 200

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def missing_for_mode(self, mode: str) -> List[str]:
        """Return the environment variables a session in `mode` still needs."""
        missing = []

        if mode == "realtime_relay":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_realtime_model:
                missing.append("OPENAI_REALTIME_MODEL")
            return missing

        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        if self.llm_provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")
        elif self.llm_provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if self.tts_provider == "openai" and not self.openai_api_key:
            if "OPENAI_API_KEY" not in missing:
                missing.append("OPENAI_API_KEY")
        if self.tts_provider == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")

        return missing

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        if self.pipeline_mode not in PIPELINE_MODES:
            raise ConfigError(
                f"Invalid PIPELINE_MODE '{self.pipeline_mode}'. Expected 'cascaded' or 'realtime_relay'."
            )
        if self.llm_provider not in LLM_PROVIDERS:
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )
        if self.tts_provider not in TTS_PROVIDERS:
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'openai' or 'cartesia'."
            )
        if self.max_consecutive_failures < 1:
            raise ConfigError("MAX_CONSECUTIVE_FAILURES must be at least 1.")

        missing = []
        if not self.public_host:
            missing.append("PUBLIC_HOST")
        missing.extend(self.missing_for_mode(self.pipeline_mode))

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            pipeline_mode=self.pipeline_mode,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            tts_provider=self.tts_provider,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            realtime_model=self.openai_realtime_model,
            max_consecutive_failures=self.max_consecutive_failures,
            outbound_pacing=self.outbound_pacing,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
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


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Session
        pipeline_mode=os.getenv("PIPELINE_MODE", "cascaded").strip().lower(),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        greeting=os.getenv("OUTBOUND_GREETING", "Hello! How can I help you today?"),
        outbound_greeting_delay_ms=_get_int("OUTBOUND_GREETING_DELAY_MS", 500),
        max_consecutive_failures=_get_int("MAX_CONSECUTIVE_FAILURES", 3),
        adapter_idle_timeout_seconds=_get_float("ADAPTER_IDLE_TIMEOUT_SECONDS", 5.0),
        synthesis_timeout_seconds=_get_float("SYNTHESIS_TIMEOUT_SECONDS", 10.0),
        outbound_pacing=_get_bool("OUTBOUND_PACING", True),
        pace_ahead_ms=_get_int("PACE_AHEAD_MS", 200),
        max_buffered_frames=_get_int("MAX_BUFFERED_FRAMES", 500),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_url=os.getenv("DEEPGRAM_URL", "wss://api.deepgram.com/v1/listen"),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.5),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 256),
        validate_llm_model=_get_bool("VALIDATE_LLM_MODEL", True),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "openai").strip().lower(),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model_id=os.getenv("CARTESIA_MODEL_ID", "sonic-english"),
        tts_sample_rate=_get_int("TTS_SAMPLE_RATE", 24000),

        # OpenAI Realtime
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview"),
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_instructions=os.getenv("OPENAI_REALTIME_INSTRUCTIONS", ""),
        openai_realtime_transcription_model=os.getenv("OPENAI_REALTIME_TRANSCRIPTION_MODEL", "whisper-1"),
        openai_realtime_vad_threshold=_get_float("OPENAI_REALTIME_VAD_THRESHOLD", 0.5),
        openai_realtime_prefix_padding_ms=_get_int("OPENAI_REALTIME_PREFIX_PADDING_MS", 300),
        openai_realtime_silence_ms=_get_int("OPENAI_REALTIME_SILENCE_MS", 200),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
