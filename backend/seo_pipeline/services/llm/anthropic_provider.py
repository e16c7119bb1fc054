from langchain_anthropic import ChatAnthropic

from .base import ChatModelFactory, LLMProvider


class AnthropicProvider(LLMProvider):
    # No native JSON mode; complete_with_json falls back to instruction + fence stripping.
    provider_name = "anthropic"
    api_key_env = "ANTHROPIC_API_KEY"

    @staticmethod
    def default_chat_model_factory() -> ChatModelFactory:
        return ChatAnthropic
