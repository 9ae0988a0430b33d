"""LLM provider adapters.

Three concrete implementations of ILLMProvider (src/interfaces/llm_provider.py):
    - OpenAILLMProvider    -- gpt-4o-mini by default (also OpenAI-compatible APIs)
    - AnthropicLLMProvider -- Claude via the Messages API
    - OllamaLLMProvider    -- local models via Ollama's OpenAI-compatible endpoint

At startup, main.py registers every configured provider with the LLM router,
which picks one per request and falls back to the default.
"""

from src.providers.llm.anthropic_provider import AnthropicLLMProvider
from src.providers.llm.ollama_provider import OllamaLLMProvider
from src.providers.llm.openai_provider import OpenAILLMProvider

__all__ = ["OpenAILLMProvider", "AnthropicLLMProvider", "OllamaLLMProvider"]
