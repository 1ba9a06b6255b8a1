from livenotes.services.llm.base import BaseLLMProvider, LLMProvider, LLMProviderError
from livenotes.services.llm.ollama_provider import OllamaProvider
from livenotes.services.llm.openai_provider import OpenAIProvider

__all__ = [
    "BaseLLMProvider",
    "LLMProvider",
    "LLMProviderError",
    "OllamaProvider",
    "OpenAIProvider",
]
