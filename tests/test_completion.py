from __future__ import annotations

import pytest
from pydantic_ai.messages import ModelMessage, ModelRequest, ModelResponse, SystemPromptPart, TextPart, UserPromptPart
from pydantic_ai.models.function import AgentInfo, FunctionModel
from pydantic_ai.models import test as offline_models

from panepilot.agent.completion import CompletionService, build_model, to_model_messages
from panepilot.agent.history_types import ChatMessage
from panepilot.config import LLMSettings
from panepilot.errors import CompletionServiceError, ConfigInvalid


def _parts(messages: list[ModelMessage]) -> list[tuple[str, str]]:
    flat: list[tuple[str, str]] = []
    for message in messages:
        for part in message.parts:
            if isinstance(part, (SystemPromptPart, UserPromptPart, TextPart)):
                flat.append((type(part).__name__, str(part.content)))
    return flat


def test_history_maps_onto_request_and_response_parts() -> None:
    messages = [
        ChatMessage.system_note("You drive a tmux pane.", source="system"),
        ChatMessage.system_note("Summary of the conversation so far:\nbuilt it", source="summary"),
        ChatMessage.user("run tests"),
        ChatMessage.assistant("Running."),
        ChatMessage.system_note("Tool call docs.search returned:\nok", source="tool"),
        ChatMessage.assistant("   "),
        ChatMessage.user("status?", source="watch"),
    ]

    converted = to_model_messages(messages)

    assert [type(m) for m in converted] == [
        ModelRequest,
        ModelRequest,
        ModelRequest,
        ModelResponse,
        ModelRequest,
        ModelRequest,
    ]
    assert isinstance(converted[0].parts[0], SystemPromptPart)
    assert isinstance(converted[1].parts[0], SystemPromptPart)
    assert isinstance(converted[4].parts[0], SystemPromptPart)
    assert isinstance(converted[5].parts[0], UserPromptPart)


def test_test_provider_builds_offline_model() -> None:
    assert isinstance(build_model(LLMSettings(provider="test")), offline_models.TestModel)


def test_missing_api_key_is_config_error(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ConfigInvalid, match="OPENAI_API_KEY"):
        build_model(LLMSettings(provider="openai", model="gpt-4o"))


def test_unknown_provider_is_config_error() -> None:
    with pytest.raises(ConfigInvalid, match="unknown llm provider"):
        build_model(LLMSettings(provider="carrier-pigeon", api_key="x"))


@pytest.mark.asyncio
async def test_generate_sends_full_context_and_returns_text() -> None:
    seen: list[list[ModelMessage]] = []

    def _reply(messages: list[ModelMessage], _info: AgentInfo) -> ModelResponse:
        seen.append(list(messages))
        return ModelResponse(parts=[TextPart(content="<ExecCommand>ls</ExecCommand>")])

    service = CompletionService(LLMSettings(provider="test"), model=FunctionModel(_reply))

    reply = await service.generate(
        [
            ChatMessage.system_note("You drive a tmux pane.", source="system"),
            ChatMessage.user("first"),
            ChatMessage.assistant("ok"),
            ChatMessage.user("list files"),
        ]
    )

    assert reply == "<ExecCommand>ls</ExecCommand>"
    parts = _parts(seen[0])
    assert parts[0] == ("SystemPromptPart", "You drive a tmux pane.")
    assert ("TextPart", "ok") in parts
    assert parts[-1] == ("UserPromptPart", "list files")


@pytest.mark.asyncio
async def test_provider_failure_becomes_completion_error() -> None:
    def _boom(_messages: list[ModelMessage], _info: AgentInfo) -> ModelResponse:
        raise RuntimeError("503 upstream")

    service = CompletionService(LLMSettings(provider="test"), model=FunctionModel(_boom))

    with pytest.raises(CompletionServiceError, match="503 upstream"):
        await service.generate([ChatMessage.user("hi")])


@pytest.mark.asyncio
async def test_empty_context_is_rejected() -> None:
    service = CompletionService(LLMSettings(provider="test"))

    with pytest.raises(CompletionServiceError):
        await service.generate([ChatMessage.user("  ")])
