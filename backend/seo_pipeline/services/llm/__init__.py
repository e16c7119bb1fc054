from .base import LLMProvider, capabilities_for, strip_code_fences
from .factory import LLMProviderFactory

__all__ = ["LLMProvider", "LLMProviderFactory", "capabilities_for", "strip_code_fences"]
