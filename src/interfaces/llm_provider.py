"""Abstract base class for LLM service providers.

Defines the contract for any chat-completion backend used to generate
answers.  Implementations may wrap the Anthropic API (Claude), OpenAI, or a
local model server speaking the OpenAI wire format (Ollama).  Keeping every
call-site provider-agnostic lets the router fall back between providers
and lets tests inject fakes.
"""

from __future__ import annotations

# abstractmethod marks methods that MUST be overridden by concrete classes;
# instantiating a provider that forgets one raises TypeError at startup.
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from src.models.llm import LLMCompletion, StreamDelta


# Concrete implementations: AnthropicLLMProvider, OpenAILLMProvider, OllamaLLMProvider
# Located in: src/providers/llm/
class ILLMProvider(ABC):
    """Contract for LLM services used by the router and streaming handler.

    Providers must support plain completion; streaming is optional and
    declared via :meth:`supports_streaming`.
    """

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> LLMCompletion:
        """Generate a completion from the model.

        Parameters
        ----------
        system_prompt:
            The system/instruction message that sets the model's behaviour.
        user_prompt:
            The user-facing prompt, including any retrieved context.
        temperature:
            Sampling temperature (0.0 = deterministic, 2.0 = most random).
        max_tokens:
            Upper bound on the number of tokens in the response.
        model:
            Override the provider's default model.

        Returns
        -------
        LLMCompletion
            The text plus token usage as reported by the provider (or
            estimated when it reports none).

        Raises
        ------
        src.utils.errors.LLMError
            If the API call fails.  ``transient`` is set for timeouts,
            5xx responses and rate limits.
        """

    @abstractmethod
    def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        model: str | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a completion as incremental text deltas.

        Implemented as an async generator.  The final item carries the
        provider-reported usage (``text`` empty) when the provider reports
        usage at all.  Closing the iterator early (``aclose()``) must
        release the underlying HTTP stream.

        Raises
        ------
        NotImplementedError
            If the provider cannot stream (check :meth:`supports_streaming`).
        src.utils.errors.LLMError
            If the API call fails.
        """

    @abstractmethod
    def supports_chat(self) -> bool:
        """Return ``True`` if the provider's model accepts chat messages."""

    @abstractmethod
    def supports_streaming(self) -> bool:
        """Return ``True`` if :meth:`stream` is implemented."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier, e.g. ``"openai"`` or ``"anthropic"``."""

    @abstractmethod
    def get_default_model(self) -> str:
        """Return the model used when a call passes ``model=None``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured.

        Implementations should verify that credentials are present without
        making an inference call.
        """

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Perform a lightweight API call to confirm credentials are valid.

        Unlike :meth:`is_available`, this method actively contacts the
        remote service.
        """
