from typing import Optional

from langchain_core.runnables import Runnable
from langchain_openai import ChatOpenAI

from .base import ChatModelFactory, LLMProvider


class OpenAIProvider(LLMProvider):
    """OpenAI chat models. JSON requests use the native ``json_object`` response format."""

    provider_name = "openai"
    api_key_env = "OPENAI_API_KEY"

    @staticmethod
    def default_chat_model_factory() -> ChatModelFactory:
        return ChatOpenAI

    def build_chat_model(
        self, model: str, max_tokens: int, temperature: Optional[float], json_mode: bool
    ) -> Runnable:
        chat = super().build_chat_model(model, max_tokens, temperature, json_mode)
        if json_mode:
            return chat.bind(response_format={"type": "json_object"})
        return chat
