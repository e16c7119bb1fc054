import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type, TypeVar, Union

import pydantic
import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.runnables import Runnable

from ...errors import LLMError, ValidationError
from ...models import LLMResponse, LLMUsage
from ..limiter import ConcurrencyLimiter
from ..retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=pydantic.BaseModel)

ChatModelFactory = Callable[..., BaseChatModel]

JSON_INSTRUCTION = "IMPORTANT: Respond with valid JSON only. No markdown, no code blocks, just raw JSON."

_FENCE_RE = re.compile(r"^```(?:json|JSON)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


@dataclass(frozen=True)
class ModelCapabilities:
    supports_temperature: bool = True
    native_json: bool = False


# Model-name prefix -> capabilities. Longest matching prefix wins.
MODEL_CAPABILITIES: Tuple[Tuple[str, ModelCapabilities], ...] = (
    ("gpt-5", ModelCapabilities(supports_temperature=False, native_json=True)),
    ("o1", ModelCapabilities(supports_temperature=False, native_json=True)),
    ("o3", ModelCapabilities(supports_temperature=False, native_json=True)),
    ("o4", ModelCapabilities(supports_temperature=False, native_json=True)),
    ("gpt-", ModelCapabilities(supports_temperature=True, native_json=True)),
    ("claude", ModelCapabilities(supports_temperature=True, native_json=False)),
)


def capabilities_for(model: str) -> ModelCapabilities:
    name = model.lower()
    matches = [(prefix, caps) for prefix, caps in MODEL_CAPABILITIES if name.startswith(prefix)]
    if not matches:
        return ModelCapabilities()
    return max(matches, key=lambda item: len(item[0]))[1]


def strip_code_fences(text: str) -> str:
    """Removes a surrounding ```json ... ``` (or bare ```) fence, if any."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    return match.group(1).strip() if match else stripped


def with_json_instruction(messages: Sequence[BaseMessage]) -> List[BaseMessage]:
    """Appends the JSON-only instruction to the final user message."""
    result = list(messages)
    if result and isinstance(result[-1], HumanMessage) and isinstance(result[-1].content, str):
        last = result[-1]
        result[-1] = HumanMessage(content=f"{last.content}\n\n{JSON_INSTRUCTION}")
    else:
        result.append(HumanMessage(content=JSON_INSTRUCTION))
    return result


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _usage(message: BaseMessage) -> Optional[LLMUsage]:
    metadata = getattr(message, "usage_metadata", None)
    if not metadata:
        return None
    return LLMUsage(
        prompt_tokens=metadata.get("input_tokens", 0),
        completion_tokens=metadata.get("output_tokens", 0),
        total_tokens=metadata.get("total_tokens", 0),
    )


class LLMProvider(ABC):
    """
    Chat completion against one backend.

    Each call runs under the LLM concurrency limiter and the retry policy.
    Whatever error survives the retries is raised as ``LLMError`` tagged with
    ``provider_name``.
    """

    provider_name: str = ""
    api_key_env: str = ""

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str,
        retry_policy: RetryPolicy,
        limiter: Optional[ConcurrencyLimiter] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        chat_model_factory: Optional[ChatModelFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not api_key:
            raise ValidationError(f"{self.api_key_env} is required for the {self.provider_name} provider")
        self.api_key = api_key
        self.default_model = default_model
        self.retry_policy = retry_policy
        self.limiter = limiter
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._chat_model_factory = chat_model_factory or self.default_chat_model_factory()
        self._sleep = sleep

    @staticmethod
    @abstractmethod
    def default_chat_model_factory() -> ChatModelFactory:
        """The LangChain chat model class used when none is injected."""

    def build_chat_model(
        self, model: str, max_tokens: int, temperature: Optional[float], json_mode: bool
    ) -> Runnable:
        kwargs: Dict[str, Any] = {
            "model": model,
            "api_key": self.api_key,
            "max_tokens": max_tokens,
            "max_retries": 0,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        return self._chat_model_factory(**kwargs)

    async def complete(
        self,
        messages: Sequence[BaseMessage],
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        return await self._complete(messages, model, max_tokens, temperature, json_mode=False)

    async def complete_with_json(
        self,
        messages: Sequence[BaseMessage],
        *,
        schema: Optional[Type[M]] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Union[M, Any]:
        """
        Returns the parsed JSON body, validated against ``schema`` when given.

        Models without native JSON mode get an explicit instruction appended
        to the last message. Code fences are stripped in both cases.
        """
        model = model or self.default_model
        native = capabilities_for(model).native_json
        prompt = list(messages) if native else with_json_instruction(messages)

        response = await self._complete(prompt, model, max_tokens, temperature, json_mode=native)
        body = strip_code_fences(response.content)
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            logger.error("llm.json_parse_failed", provider=self.provider_name, preview=body[:200])
            raise LLMError(self.provider_name, f"Failed to parse JSON response: {e.msg}") from e

        if schema is None:
            return data
        try:
            return schema.model_validate(data)
        except pydantic.ValidationError as e:
            logger.error("llm.json_schema_mismatch", provider=self.provider_name, schema=schema.__name__)
            raise LLMError(self.provider_name, f"JSON response does not match {schema.__name__}") from e

    async def _complete(
        self,
        messages: Sequence[BaseMessage],
        model: Optional[str],
        max_tokens: Optional[int],
        temperature: Optional[float],
        json_mode: bool,
    ) -> LLMResponse:
        model = model or self.default_model
        max_tokens = max_tokens or self.max_tokens
        if temperature is None:
            temperature = self.temperature
        if not capabilities_for(model).supports_temperature:
            logger.debug("llm.temperature_dropped", provider=self.provider_name, model=model)
            temperature = None

        chat = self.build_chat_model(model, max_tokens, temperature, json_mode)
        prompt = list(messages)

        async def attempt() -> AIMessage:
            if self.limiter is None:
                return await chat.ainvoke(prompt)
            return await self.limiter.limit(lambda: chat.ainvoke(prompt))

        logger.debug("llm.request", provider=self.provider_name, model=model, message_count=len(prompt))
        try:
            message = await with_retry(
                attempt,
                f"{self.provider_name} completion",
                self.retry_policy,
                sleep=self._sleep,
            )
        except LLMError:
            raise
        except Exception as e:
            logger.error("llm.request_failed", provider=self.provider_name, model=model, error=str(e))
            raise LLMError(self.provider_name, str(e) or e.__class__.__name__) from e

        response = LLMResponse(content=_message_text(message), usage=_usage(message))
        if response.usage:
            logger.debug(
                "llm.response",
                provider=self.provider_name,
                model=model,
                total_tokens=response.usage.total_tokens,
            )
        return response
