"""
Tests for configuration loading and validation.
"""

import dataclasses
import os
from unittest.mock import patch

import pytest

from src.relay.config import ConfigError, get_config, init_config


class TestConfigLoading:
    """Environment parsing."""

    def test_defaults(self):
        config = get_config()

        assert config.pipeline_mode == "cascaded"
        assert config.max_consecutive_failures == 3
        assert config.deepgram_endpointing_ms == 300
        assert config.openai_realtime_silence_ms == 200
        assert config.ws_url == "wss://test.ngrok.io/ws"
        assert config.llm_model == "llama-3.3-70b-versatile"

    def test_environment_overrides(self):
        overrides = {
            "PIPELINE_MODE": " Realtime_Relay ",
            "MAX_CONSECUTIVE_FAILURES": "5",
            "OUTBOUND_PACING": "no",
            "LLM_PROVIDER": "openai",
            "OUTBOUND_GREETING": "Hi, it's Acme.",
        }
        with patch.dict(os.environ, overrides):
            get_config.cache_clear()
            config = get_config()

        assert config.pipeline_mode == "realtime_relay"
        assert config.max_consecutive_failures == 5
        assert config.outbound_pacing is False
        assert config.llm_model == "gpt-4o-mini"
        assert config.greeting == "Hi, it's Acme."

    def test_unparseable_numbers_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"PORT": "eighty", "SYNTHESIS_TIMEOUT_SECONDS": "soon"}):
            get_config.cache_clear()
            config = get_config()

        assert config.port == 7860
        assert config.synthesis_timeout_seconds == 10.0


class TestConfigValidation:
    """Startup validation."""

    def test_valid_configuration_passes(self):
        assert init_config().public_host == "test.ngrok.io"

    def test_unknown_pipeline_mode(self):
        config = dataclasses.replace(get_config(), pipeline_mode="sidecar")

        with pytest.raises(ConfigError, match="PIPELINE_MODE"):
            config.validate()

    def test_failure_budget_must_be_positive(self):
        config = dataclasses.replace(get_config(), max_consecutive_failures=0)

        with pytest.raises(ConfigError):
            config.validate()

    def test_missing_keys_are_listed(self):
        config = dataclasses.replace(get_config(), public_host="", deepgram_api_key="")

        with pytest.raises(ConfigError) as exc_info:
            config.validate()

        assert "PUBLIC_HOST" in str(exc_info.value)
        assert "DEEPGRAM_API_KEY" in str(exc_info.value)

    def test_missing_for_realtime_mode_only_needs_openai(self):
        config = dataclasses.replace(get_config(), deepgram_api_key="", groq_api_key="", openai_api_key="")

        assert config.missing_for_mode("realtime_relay") == ["OPENAI_API_KEY"]

    def test_missing_for_cascaded_mode_follows_providers(self):
        config = dataclasses.replace(
            get_config(), tts_provider="cartesia", cartesia_api_key="", llm_provider="openai", openai_api_key=""
        )

        assert config.missing_for_mode("cascaded") == ["OPENAI_API_KEY", "CARTESIA_API_KEY"]
