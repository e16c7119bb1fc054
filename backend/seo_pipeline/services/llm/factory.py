import asyncio
from typing import Awaitable, Callable, Dict, Optional, Type

import structlog

from ...config import Settings
from ...errors import ValidationError
from ..limiter import ConcurrencyLimiter
from ..retry import RetryPolicy
from .anthropic_provider import AnthropicProvider
from .base import ChatModelFactory, LLMProvider
from .openai_provider import OpenAIProvider

logger = structlog.get_logger(__name__)

PROVIDERS: Dict[str, Type[LLMProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


class LLMProviderFactory:
    """
    Resolves a provider name to one shared instance.

    Built once at startup and handed to the services that need an LLM.
    """

    def __init__(
        self,
        settings: Settings,
        retry_policy: RetryPolicy,
        limiter: Optional[ConcurrencyLimiter] = None,
        chat_model_factories: Optional[Dict[str, ChatModelFactory]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.retry_policy = retry_policy
        self.limiter = limiter
        self._chat_model_factories = chat_model_factories or {}
        self._sleep = sleep
        self._instances: Dict[str, LLMProvider] = {}

    @property
    def default_name(self) -> str:
        return self.settings.default_llm_provider.lower()

    def get(self, name: Optional[str] = None) -> LLMProvider:
        name = (name or self.default_name).lower()
        provider = self._instances.get(name)
        if provider is None:
            provider = self._build(name)
            self._instances[name] = provider
            logger.info("llm.provider_created", provider=name, model=provider.default_model)
        return provider

    def _build(self, name: str) -> LLMProvider:
        provider_cls = PROVIDERS.get(name)
        if provider_cls is None:
            raise ValidationError(f"Unknown LLM provider: {name}")

        if name == "openai":
            api_key, model = self.settings.openai_api_key, self.settings.openai_model
        else:
            api_key, model = self.settings.anthropic_api_key, self.settings.anthropic_model

        return provider_cls(
            api_key=api_key,
            default_model=model,
            retry_policy=self.retry_policy,
            limiter=self.limiter,
            max_tokens=self.settings.llm_max_tokens,
            temperature=self.settings.llm_temperature,
            chat_model_factory=self._chat_model_factories.get(name),
            sleep=self._sleep,
        )
