"""Tests for the LLM provider abstraction, run against LangChain's fake chat model."""

from typing import Any, List

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.runnables import RunnableBinding
from pydantic import BaseModel

from seo_pipeline.errors import LLMError, ValidationError
from seo_pipeline.services.llm import LLMProviderFactory, capabilities_for, strip_code_fences
from seo_pipeline.services.llm.anthropic_provider import AnthropicProvider
from seo_pipeline.services.llm.base import JSON_INSTRUCTION
from seo_pipeline.services.llm.openai_provider import OpenAIProvider
from seo_pipeline.services.retry import RetryPolicy

from conftest import SleepRecorder

RAW_JSON = '{"title": "Guide", "tags": ["a", "b"], "count": 3}'
FENCED_JSON = f"```json\n{RAW_JSON}\n```"


class RecordingChatModel(FakeListChatModel):
    """Fake chat model that keeps every prompt it receives."""

    seen: List[List[BaseMessage]] = []

    def _call(self, messages, stop=None, run_manager=None, **kwargs) -> str:
        self.seen.append(list(messages))
        return super()._call(messages, stop=stop, run_manager=run_manager, **kwargs)


class FailingChatModel(FakeListChatModel):
    message: str = "Error code: 429 - rate limit"
    failures: int = 1000
    calls: int = 0

    def _call(self, messages, stop=None, run_manager=None, **kwargs) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(self.message)
        return super()._call(messages, stop=stop, run_manager=run_manager, **kwargs)


class ChatFactory:
    """Returns the same fake model on every call and records constructor kwargs."""

    def __init__(self, model: FakeListChatModel):
        self.model = model
        self.calls: List[dict] = []

    def __call__(self, **kwargs: Any) -> FakeListChatModel:
        self.calls.append(kwargs)
        return self.model


def make_provider(cls, model: FakeListChatModel, default_model: str, max_retries: int = 2):
    factory = ChatFactory(model)
    provider = cls(
        api_key="test-key",
        default_model=default_model,
        retry_policy=RetryPolicy(max_retries=max_retries, initial_delay_ms=1, max_delay_ms=2),
        chat_model_factory=factory,
        sleep=SleepRecorder(),
    )
    return provider, factory


MESSAGES = [SystemMessage(content="You are helpful."), HumanMessage(content="Give me data.")]


class Payload(BaseModel):
    title: str
    tags: List[str]
    count: int


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

@pytest.mark.parametrize(
    "text",
    [RAW_JSON, FENCED_JSON, f"```\n{RAW_JSON}\n```", f"  ```JSON\n{RAW_JSON}```  "],
)
def test_strip_code_fences(text: str) -> None:
    assert strip_code_fences(text) == RAW_JSON


def test_capability_table() -> None:
    assert capabilities_for("gpt-5-mini").supports_temperature is False
    assert capabilities_for("o3-mini").supports_temperature is False
    assert capabilities_for("gpt-4o").supports_temperature is True
    assert capabilities_for("gpt-4o").native_json is True
    assert capabilities_for("claude-3-5-haiku-20241022").native_json is False
    assert capabilities_for("some-new-model").supports_temperature is True


# -----------------------------------------------------------------------------
# complete_with_json
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fenced_and_raw_json_parse_to_the_same_object() -> None:
    provider, _ = make_provider(
        AnthropicProvider, FakeListChatModel(responses=[FENCED_JSON, RAW_JSON]), "claude-3-5-haiku-20241022"
    )

    fenced = await provider.complete_with_json(MESSAGES)
    raw = await provider.complete_with_json(MESSAGES)

    assert fenced == raw == {"title": "Guide", "tags": ["a", "b"], "count": 3}


@pytest.mark.asyncio
async def test_json_instruction_is_appended_without_native_json_mode() -> None:
    model = RecordingChatModel(responses=[RAW_JSON])
    provider, _ = make_provider(AnthropicProvider, model, "claude-3-5-haiku-20241022")

    await provider.complete_with_json(MESSAGES)

    prompt = model.seen[0]
    assert len(prompt) == 2
    assert prompt[-1].content.startswith("Give me data.")
    assert prompt[-1].content.endswith(JSON_INSTRUCTION)
    assert MESSAGES[-1].content == "Give me data."


@pytest.mark.asyncio
async def test_native_json_mode_leaves_the_prompt_alone() -> None:
    model = RecordingChatModel(responses=[FENCED_JSON])
    provider, _ = make_provider(OpenAIProvider, model, "gpt-4o-mini")

    result = await provider.complete_with_json(MESSAGES, schema=Payload)

    assert result == Payload(title="Guide", tags=["a", "b"], count=3)
    assert model.seen[0][-1].content == "Give me data."


def test_openai_json_mode_binds_response_format() -> None:
    provider, _ = make_provider(OpenAIProvider, FakeListChatModel(responses=["{}"]), "gpt-4o-mini")

    chat = provider.build_chat_model("gpt-4o-mini", 100, 0.2, json_mode=True)

    assert isinstance(chat, RunnableBinding)
    assert chat.kwargs == {"response_format": {"type": "json_object"}}


@pytest.mark.asyncio
async def test_unparseable_json_raises_llm_error_with_provider() -> None:
    provider, _ = make_provider(
        AnthropicProvider, FakeListChatModel(responses=["Sure! Here it is: {oops"]), "claude-3-5-haiku-20241022"
    )

    with pytest.raises(LLMError) as exc_info:
        await provider.complete_with_json(MESSAGES)

    assert exc_info.value.provider == "anthropic"
    assert "anthropic" in str(exc_info.value)


@pytest.mark.asyncio
async def test_schema_mismatch_raises_llm_error() -> None:
    provider, _ = make_provider(
        AnthropicProvider, FakeListChatModel(responses=['{"title": "x"}']), "claude-3-5-haiku-20241022"
    )

    with pytest.raises(LLMError, match="Payload"):
        await provider.complete_with_json(MESSAGES, schema=Payload)


# -----------------------------------------------------------------------------
# complete
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_temperature_is_dropped_for_models_that_reject_it() -> None:
    provider, factory = make_provider(OpenAIProvider, FakeListChatModel(responses=["hi", "hi"]), "gpt-5-mini")

    await provider.complete(MESSAGES, temperature=0.3)
    await provider.complete(MESSAGES, model="gpt-4o", temperature=0.3)

    assert "temperature" not in factory.calls[0]
    assert factory.calls[1]["temperature"] == 0.3
    assert factory.calls[0]["max_retries"] == 0
    assert factory.calls[0]["max_tokens"] == 4096


@pytest.mark.asyncio
async def test_complete_returns_content() -> None:
    provider, factory = make_provider(
        AnthropicProvider, FakeListChatModel(responses=["  A section.  "]), "claude-3-5-haiku-20241022"
    )

    response = await provider.complete(MESSAGES, max_tokens=1234)

    assert response.content == "  A section.  "
    assert factory.calls[0]["max_tokens"] == 1234
    assert factory.calls[0]["temperature"] == 0.7


@pytest.mark.asyncio
async def test_transient_backend_errors_are_retried() -> None:
    model = FailingChatModel(responses=["recovered"], failures=2)
    provider, _ = make_provider(OpenAIProvider, model, "gpt-4o", max_retries=2)

    response = await provider.complete(MESSAGES)

    assert response.content == "recovered"
    assert model.calls == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_llm_error() -> None:
    model = FailingChatModel(responses=["never"])
    provider, _ = make_provider(OpenAIProvider, model, "gpt-4o", max_retries=2)

    with pytest.raises(LLMError) as exc_info:
        await provider.complete(MESSAGES)

    assert exc_info.value.provider == "openai"
    assert model.calls == 3


@pytest.mark.asyncio
async def test_permanent_backend_errors_are_not_retried() -> None:
    model = FailingChatModel(responses=["never"], message="Error code: 401 - invalid api key")
    provider, _ = make_provider(OpenAIProvider, model, "gpt-4o", max_retries=3)

    with pytest.raises(LLMError, match="invalid api key"):
        await provider.complete(MESSAGES)

    assert model.calls == 1


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------

def test_factory_returns_one_instance_per_name(settings) -> None:
    factory = LLMProviderFactory(settings, RetryPolicy())

    default = factory.get()

    assert isinstance(default, OpenAIProvider)
    assert factory.get("openai") is default
    assert factory.get("ANTHROPIC") is factory.get("anthropic")
    assert isinstance(factory.get("anthropic"), AnthropicProvider)


def test_factory_rejects_unknown_provider(settings) -> None:
    with pytest.raises(ValidationError, match="Unknown LLM provider"):
        LLMProviderFactory(settings, RetryPolicy()).get("gemini-ultra")


def test_provider_without_key_is_a_validation_error(settings) -> None:
    settings = settings.model_copy(update={"anthropic_api_key": None})

    with pytest.raises(ValidationError, match="ANTHROPIC_API_KEY"):
        LLMProviderFactory(settings, RetryPolicy()).get("anthropic")
