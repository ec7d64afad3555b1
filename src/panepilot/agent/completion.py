"""Completion service backed by a pydantic-ai agent.

The caller supplies the full ordered context on every call; nothing is kept
between calls. Credentials come from config or the provider's usual env var
(loaded from `.env` via python-dotenv).
"""

from __future__ import annotations

import logging
import os
from typing import Any, Sequence

from dotenv import load_dotenv
from pydantic_ai import Agent as PydanticAgent  # type: ignore
from pydantic_ai.messages import (  # type: ignore
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models.anthropic import AnthropicModel  # type: ignore
from pydantic_ai.models.google import GoogleModel  # type: ignore
from pydantic_ai.models.openai import OpenAIChatModel  # type: ignore
from pydantic_ai.models.openrouter import OpenRouterModel  # type: ignore
from pydantic_ai.models.test import TestModel  # type: ignore
from pydantic_ai.providers.anthropic import AnthropicProvider  # type: ignore
from pydantic_ai.providers.google import GoogleProvider  # type: ignore
from pydantic_ai.providers.ollama import OllamaProvider  # type: ignore
from pydantic_ai.providers.openai import OpenAIProvider  # type: ignore
from pydantic_ai.providers.openrouter import OpenRouterProvider  # type: ignore

from panepilot.agent.history_types import ChatMessage
from panepilot.config import LLMSettings
from panepilot.errors import CompletionServiceError, ConfigInvalid

logger = logging.getLogger(__name__)
llm_logger = logging.getLogger("panepilot.llm")

OLLAMA_BASE_URL = "http://localhost:11434/v1"
LOG_PREVIEW_MAX = 8000
SYNTHETIC_SOURCES = {"summary", "tool"}

_API_KEY_ENV = {
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}


def _resolve_api_key(settings: LLMSettings) -> str:
    provider = settings.provider.lower()
    env_name = _API_KEY_ENV.get(provider)
    key = settings.api_key or (os.getenv(env_name) if env_name else "")
    if env_name and not key:
        raise ConfigInvalid(
            f"{provider} API key is required. Set llm.api_key in the config file "
            f"or one of PANEPILOT_LLM_API_KEY / {env_name}"
        )
    return key or ""


def build_model(settings: LLMSettings, model_name: str | None = None) -> Any:
    """Build a pydantic-ai model for the configured provider.

    Raises ConfigInvalid when the provider is unknown or its key is missing.
    """

    provider = settings.provider.lower()
    name = model_name or settings.model
    base_url = settings.base_url or None

    if provider == "test":
        return TestModel(call_tools=[])
    if provider == "ollama":
        return OpenAIChatModel(name, provider=OllamaProvider(base_url=base_url or OLLAMA_BASE_URL))

    key = _resolve_api_key(settings)
    if provider == "openrouter":
        return OpenRouterModel(name, provider=OpenRouterProvider(api_key=key))
    if provider == "openai":
        return OpenAIChatModel(name, provider=OpenAIProvider(api_key=key, base_url=base_url))
    if provider == "anthropic":
        return AnthropicModel(name, provider=AnthropicProvider(api_key=key))
    if provider == "google":
        return GoogleModel(name, provider=GoogleProvider(api_key=key))
    raise ConfigInvalid(f"unknown llm provider: {settings.provider}")


def to_model_messages(messages: Sequence[ChatMessage]) -> list[ModelMessage]:
    """Map chat history onto pydantic-ai request/response messages.

    A leading non-user message is the system instruction. Synthetic summary and
    tool-result entries are sent as system parts so they never read as model
    speech.
    """

    converted: list[ModelMessage] = []
    for idx, msg in enumerate(messages):
        if not msg.content.strip():
            continue
        if idx == 0 and not msg.from_user:
            converted.append(ModelRequest(parts=[SystemPromptPart(content=msg.content)]))
        elif msg.from_user:
            converted.append(ModelRequest(parts=[UserPromptPart(content=msg.content)]))
        elif msg.source in SYNTHETIC_SOURCES:
            converted.append(ModelRequest(parts=[SystemPromptPart(content=msg.content)]))
        else:
            converted.append(ModelResponse(parts=[TextPart(content=msg.content)]))
    return converted


class CompletionService:
    def __init__(self, settings: LLMSettings, *, model: Any | None = None) -> None:
        load_dotenv()
        self.settings = settings
        self._model = model if model is not None else build_model(settings)
        self._agent = PydanticAgent(self._model)
        self._override_models: dict[str, Any] = {}

    @property
    def model_name(self) -> str:
        return str(getattr(self._model, "model_name", self.settings.model))

    def _model_for(self, override: str | None) -> Any | None:
        if not override or override == self.settings.model:
            return None
        if override not in self._override_models:
            self._override_models[override] = build_model(self.settings, override)
        return self._override_models[override]

    async def generate(self, messages: Sequence[ChatMessage], model_override: str | None = None) -> str:
        """Send the ordered messages and return the reply text."""

        history = to_model_messages(messages)
        if not history:
            raise CompletionServiceError("no messages to send")
        prompt: str | None = None
        last = history[-1]
        if isinstance(last, ModelRequest) and len(last.parts) == 1 and isinstance(last.parts[0], UserPromptPart):
            prompt = str(last.parts[0].content)
            history = history[:-1]

        llm_logger.info("SEND %d messages", len(messages))
        for idx, msg in enumerate(messages):
            role = "user" if msg.from_user else ("system" if idx == 0 else msg.source)
            llm_logger.debug("SEND[%d] role=%s\n%s", idx, role, msg.content[:LOG_PREVIEW_MAX])
        try:
            model = self._model_for(model_override)
            result = await self._agent.run(prompt, message_history=history or None, model=model)
        except ConfigInvalid:
            raise
        except Exception as exc:  # noqa: BLE001 - any provider failure aborts the cycle
            llm_logger.warning("LLM error: %s", exc)
            raise CompletionServiceError(f"failed to generate response: {exc}") from exc

        output = str(result.output or "")
        llm_logger.info("RECV %d characters", len(output))
        llm_logger.debug("RECV\n%s", output[:LOG_PREVIEW_MAX])
        return output
