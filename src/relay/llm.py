"""
Language Model Adapter.

Streams assistant text from an OpenAI-compatible chat completions API. Groq and
OpenAI are both served by `AsyncOpenAI`; only the base URL, key and model differ.

Provides:
- Startup model validation
- Streaming response support
- System prompt configuration
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from src.relay.config import Config, get_config
from src.relay.errors import LanguageModelError
from src.relay.models import ConversationHistory

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

DEFAULT_SYSTEM_PROMPT = """You are a friendly and helpful AI phone assistant.

PHONE CALL GUIDELINES:
- Be conversational and natural - you're on a phone call
- Keep responses concise (1-3 sentences typically) - this is spoken audio
- Avoid long lists, bullet points, markdown or complex information
- Use contractions (I'm, you're, we'll) for natural speech
- If you don't understand something, ask for clarification
- Be patient with interruptions - they're normal in phone calls"""


def get_system_prompt(config: Optional[Config] = None) -> str:
    """Get the system prompt for the assistant."""
    if config is None:
        config = get_config()
    return (config.system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT


def build_messages(system_prompt: str, history: ConversationHistory) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(history.to_messages())
    return messages


class LanguageModel(ABC):
    """Adapter boundary for streaming chat completion."""

    @abstractmethod
    def stream_reply(self, system_prompt: str, history: ConversationHistory) -> AsyncIterator[str]:
        """
        Yield assistant text tokens for the conversation so far.

        Raises:
            LanguageModelError: If the request fails before or during streaming
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ChatCompletionLLM(LanguageModel):
    """
    Streaming chat completion client for OpenAI-compatible providers.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self.provider = self.config.llm_provider
        self.model = self.config.llm_model

        if client is not None:
            self._client = client
        elif self.provider == "openai":
            self._client = AsyncOpenAI(api_key=self.config.openai_api_key)
        else:
            self._client = AsyncOpenAI(api_key=self.config.groq_api_key, base_url=GROQ_BASE_URL)

    async def stream_reply(self, system_prompt: str, history: ConversationHistory) -> AsyncIterator[str]:
        messages = build_messages(system_prompt, history)

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
                    yield chunk.choices[0].delta.content

        except openai.OpenAIError as e:
            logger.error("LLM generation failed", provider=self.provider, error_type=type(e).__name__, error=str(e))
            raise LanguageModelError(f"{self.provider} completion failed", cause=e) from e

    async def close(self) -> None:
        await self._client.close()


def create_llm(config: Optional[Config] = None) -> LanguageModel:
    return ChatCompletionLLM(config or get_config())


async def validate_llm_model(config: Optional[Config] = None) -> bool:
    """
    Validate that the configured model exists for the configured provider.

    Calls GET {base_url}/models to check.

    Raises:
        SystemExit: If the model doesn't exist or the API is unreachable (fail fast)
    """
    config = config or get_config()
    provider = config.llm_provider
    base_url = OPENAI_BASE_URL if provider == "openai" else GROQ_BASE_URL
    api_key = config.openai_api_key if provider == "openai" else config.groq_api_key
    model_name = config.llm_model

    logger.info("Validating LLM model", provider=provider, model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", provider=provider, error=str(e))
            raise SystemExit(
                f"Failed to connect to {provider} API: {e}\n"
                "Check your network connection and API key."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch models",
            provider=provider,
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate {provider} model. API returned status {response.status_code}. "
            "Check your API key."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error("LLM model not found", requested_model=model_name, available_models=available)
        raise SystemExit(
            f"Model '{model_name}' not found for provider {provider}.\n"
            f"Available models include: {available}"
        )

    logger.info("LLM model validated successfully", provider=provider, model=model_name)
    return True
