"""Provider selection and RAG prompt assembly for answer generation.

The router holds every registered :class:`ILLMProvider` by name.  A request
may name a provider; if that provider is not registered, not configured,
or cannot chat, the router falls back to the default provider and logs a
warning.  When the fallback changes provider, a requested model override
is dropped because model names are provider-specific.
"""

from __future__ import annotations

import asyncio

import structlog

from src.interfaces.llm_provider import ILLMProvider
from src.models.llm import GenerationOptions, LLMCompletion
from src.models.usage import UsageOperation
from src.services.usage_tracker import UsageTracker
from src.utils.errors import ConfigurationError, LLMError

logger = structlog.get_logger(logger_name=__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions using the "
    "knowledge base provided with each question."
)
NO_CONTEXT = "No relevant context found."


def build_rag_prompt(query: str, context: list[str]) -> str:
    """Return the user prompt wrapping *query* with numbered context blocks."""
    if context:
        blocks = "\n\n".join(f"Context {i}:\n{text}" for i, text in enumerate(context, start=1))
    else:
        blocks = NO_CONTEXT
    return (
        "Use the following pieces of context to answer the question at the end. "
        "If you don't know the answer, just say that you don't know, "
        "don't try to make up an answer.\n\n"
        f"{blocks}\n\n"
        f"Question: {query}\n"
    )


class LLMRouter:
    """Routes completions to a registered provider with default fallback.

    Parameters
    ----------
    providers:
        Registered providers keyed by name.
    default_provider:
        Name of the provider used when a request names none, or names one
        that cannot serve it.
    usage_tracker:
        Receives one ``chat`` usage record per completion.
    """

    def __init__(
        self,
        providers: dict[str, ILLMProvider],
        default_provider: str,
        usage_tracker: UsageTracker | None = None,
    ) -> None:
        if default_provider not in providers:
            raise ConfigurationError(f"Default LLM provider {default_provider!r} is not registered")
        self._providers = dict(providers)
        self._default = default_provider
        self._usage = usage_tracker

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    @property
    def default_provider_name(self) -> str:
        return self._default

    @property
    def usage_tracker(self) -> UsageTracker | None:
        return self._usage

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, requested: str | None = None) -> ILLMProvider:
        """Return the provider that will serve a request for *requested*."""
        if requested and requested != self._default:
            provider = self._providers.get(requested)
            if provider is None:
                reason = "not_registered"
            elif not provider.is_available():
                reason = "not_configured"
            elif not provider.supports_chat():
                reason = "no_chat_support"
            else:
                return provider
            logger.warning(
                "llm_provider_fallback",
                requested=requested,
                fallback=self._default,
                reason=reason,
            )
        return self._providers[self._default]

    async def route(
        self,
        prompt: str,
        context: list[str] | None = None,
        provider: str | None = None,
        options: GenerationOptions | None = None,
    ) -> LLMCompletion:
        """Generate an answer to *prompt* grounded in *context*.

        Raises
        ------
        LLMError
            If the provider fails or exceeds ``options.timeout_seconds``.
        """
        opts = options or GenerationOptions()
        chosen = self.resolve(provider)
        model = self.model_for(chosen, provider, opts)
        user_prompt = build_rag_prompt(prompt, context or [])

        try:
            completion = await asyncio.wait_for(
                chosen.complete(
                    system_prompt=opts.system_prompt or DEFAULT_SYSTEM_PROMPT,
                    user_prompt=user_prompt,
                    temperature=opts.temperature,
                    max_tokens=opts.max_tokens,
                    model=model,
                ),
                timeout=opts.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise LLMError(
                f"Completion timed out after {opts.timeout_seconds}s",
                provider_name=chosen.get_provider_name(),
                transient=True,
            ) from exc

        if self._usage is not None:
            await self._usage.record(
                provider=completion.provider or chosen.get_provider_name(),
                model=completion.model or chosen.get_default_model(),
                operation=UsageOperation.CHAT,
                usage=completion.usage,
                agent_id=opts.agent_id,
            )
        logger.info(
            "llm_routed",
            provider=completion.provider,
            model=completion.model,
            context_blocks=len(context or []),
            tokens=completion.usage.total_tokens,
        )
        return completion

    def model_for(
        self, chosen: ILLMProvider, requested: str | None, options: GenerationOptions
    ) -> str | None:
        """Return the model override to pass to *chosen*, if any."""
        if options.model and (requested is None or self._providers.get(requested) is chosen):
            return options.model
        return None
