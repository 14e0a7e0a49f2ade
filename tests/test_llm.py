"""
Tests for the language model adapter.
"""

import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from src.relay.errors import LanguageModelError
from src.relay.llm import (
    DEFAULT_SYSTEM_PROMPT,
    ChatCompletionLLM,
    build_messages,
    get_system_prompt,
    validate_llm_model,
)
from src.relay.models import ConversationHistory


def completion_chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


def streaming_client(*contents):
    async def stream():
        for content in contents:
            yield completion_chunk(content)

    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=stream())
    client.close = AsyncMock()
    return client


def history_with(*turns):
    history = ConversationHistory()
    for role, text in turns:
        history.append(role, text)
    return history


class TestPrompt:
    def test_default_prompt(self, relay_config):
        assert get_system_prompt(relay_config) == DEFAULT_SYSTEM_PROMPT

    def test_configured_prompt_wins(self, relay_config):
        config = dataclasses.replace(relay_config, system_prompt="  You book dentist appointments.  ")

        assert get_system_prompt(config) == "You book dentist appointments."

    def test_messages_start_with_system_prompt(self):
        history = history_with(("user", "Hi"), ("assistant", "Hello!"), ("user", "Are you open?"))

        messages = build_messages("Be brief.", history)

        assert messages[0] == {"role": "system", "content": "Be brief."}
        assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "Are you open?"


class TestChatCompletionLLM:
    @pytest.mark.asyncio
    async def test_streams_non_empty_tokens(self, relay_config):
        client = streaming_client("Sure", None, ", ", "", "tomorrow.")
        llm = ChatCompletionLLM(relay_config, client=client)

        tokens = [t async for t in llm.stream_reply("Be brief.", history_with(("user", "Can I book?")))]

        assert tokens == ["Sure", ", ", "tomorrow."]
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["model"] == "llama-3.3-70b-versatile"
        assert kwargs["max_tokens"] == relay_config.llm_max_tokens

    @pytest.mark.asyncio
    async def test_provider_error_becomes_adapter_error(self, relay_config):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=openai.OpenAIError("rate limited"))
        llm = ChatCompletionLLM(relay_config, client=client)

        with pytest.raises(LanguageModelError) as exc_info:
            async for _ in llm.stream_reply("Be brief.", history_with(("user", "Hi"))):
                pass

        assert exc_info.value.adapter == "llm"
        assert isinstance(exc_info.value.cause, openai.OpenAIError)

    @pytest.mark.asyncio
    async def test_close_closes_client(self, relay_config):
        client = streaming_client()
        llm = ChatCompletionLLM(relay_config, client=client)

        await llm.close()

        client.close.assert_awaited_once()

    def test_openai_provider_uses_openai_model(self, relay_config):
        config = dataclasses.replace(relay_config, llm_provider="openai")

        llm = ChatCompletionLLM(config)

        assert llm.provider == "openai"
        assert llm.model == "gpt-4o-mini"


class TestModelValidation:
    @staticmethod
    def mock_models_api(status_code=200, model_ids=()):
        real_client = httpx.AsyncClient

        def handler(request):
            assert request.url.path.endswith("/models")
            return httpx.Response(status_code, json={"data": [{"id": m} for m in model_ids]})

        return patch(
            "src.relay.llm.httpx.AsyncClient",
            side_effect=lambda: real_client(transport=httpx.MockTransport(handler)),
        )

    @pytest.mark.asyncio
    async def test_known_model_passes(self, relay_config):
        with self.mock_models_api(model_ids=["llama-3.3-70b-versatile", "mixtral"]):
            assert await validate_llm_model(relay_config) is True

    @pytest.mark.asyncio
    async def test_unknown_model_exits(self, relay_config):
        with self.mock_models_api(model_ids=["mixtral"]):
            with pytest.raises(SystemExit):
                await validate_llm_model(relay_config)

    @pytest.mark.asyncio
    async def test_rejected_key_exits(self, relay_config):
        with self.mock_models_api(status_code=401):
            with pytest.raises(SystemExit):
                await validate_llm_model(relay_config)
