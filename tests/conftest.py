"""
Pytest configuration and fixtures.
"""

import dataclasses
import os
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "PIPELINE_MODE": "cascaded",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_FROM_NUMBER": "+15550001111",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "OPENAI_API_KEY": "test_openai_key",
        "VALIDATE_LLM_MODEL": "false",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def relay_config():
    """Config tuned for fast, deterministic pipeline tests."""
    from src.relay.config import get_config
    return dataclasses.replace(
        get_config(),
        outbound_pacing=False,
        outbound_greeting_delay_ms=0,
        adapter_idle_timeout_seconds=1.0,
        synthesis_timeout_seconds=1.0,
    )


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def sample_pcm_audio():
    """Generate sample PCM audio (silence)."""
    return b"\x00\x00" * 160  # 20ms of silence at 8kHz
