"""Incremental answer streaming with cancellation.

:class:`StreamingHandler` turns a provider's :class:`StreamDelta` iterator
into the caller-facing :class:`StreamEvent` sequence::

    delta, delta, ..., [error], complete

Guarantees:

- ``delta`` events carry consecutive ``index`` values from 0.
- The :class:`CancellationToken` is raced against every provider read, so
  a cancel interrupts a read that is still waiting.  Once it is set no
  further ``delta`` is emitted, the in-flight read is cancelled and the
  provider iterator is closed with ``aclose()``, which releases the HTTP
  stream.
- The whole provider call is bounded by ``options.timeout_seconds``; a
  timeout ends the stream with an ``error`` event.
- Exactly one ``complete`` event ends every stream, carrying the usage the
  provider reported or, failing that, an estimate from the prompt and the
  text emitted so far.  That usage is recorded even when the stream was
  cancelled or failed part way.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import structlog

from src.interfaces.llm_provider import ILLMProvider
from src.models.llm import GenerationOptions, StreamDelta, StreamEvent, StreamEventType
from src.models.query import CitedSource
from src.models.usage import TokenUsage, UsageOperation
from src.services.llm.llm_router import DEFAULT_SYSTEM_PROMPT, LLMRouter, build_rag_prompt
from src.utils.errors import UpstreamProviderError
from src.utils.text_normalizer import estimate_tokens

logger = structlog.get_logger(logger_name=__name__)


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class StreamingHandler:
    """Streams answers from the provider chosen by an :class:`LLMRouter`."""

    def __init__(self, router: LLMRouter) -> None:
        self._router = router

    async def stream(
        self,
        prompt: str,
        context: list[str] | None = None,
        provider: str | None = None,
        options: GenerationOptions | None = None,
        token: CancellationToken | None = None,
        sources: list[CitedSource] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield ``delta`` events then exactly one ``complete`` event."""
        opts = options or GenerationOptions()
        cancel = token or CancellationToken()
        chosen = self._router.resolve(provider)
        model = self._router.model_for(chosen, provider, opts)
        model_name = model or chosen.get_default_model()
        provider_name = chosen.get_provider_name()
        system_prompt = opts.system_prompt or DEFAULT_SYSTEM_PROMPT
        user_prompt = build_rag_prompt(prompt, context or [])

        emitted: list[str] = []
        reported: TokenUsage | None = None
        error: str | None = None
        cancelled = False

        if not chosen.supports_streaming():
            deltas = self._single_shot(chosen, system_prompt, user_prompt, opts, model)
        else:
            deltas = chosen.stream(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                temperature=opts.temperature,
                max_tokens=opts.max_tokens,
                model=model,
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + opts.timeout_seconds
        cancel_wait = asyncio.ensure_future(cancel.wait())
        pending: asyncio.Task[StreamDelta | None] | None = None
        try:
            while True:
                if cancel.cancelled:
                    cancelled = True
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                pending = asyncio.ensure_future(_next_delta(deltas))
                done, _ = await asyncio.wait(
                    {pending, cancel_wait}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if pending not in done:
                    await _abandon(pending)
                    pending = None
                    if cancel.cancelled:
                        cancelled = True
                        break
                    raise asyncio.TimeoutError
                delta = pending.result()
                pending = None
                if delta is None:
                    break
                if delta.usage is not None:
                    reported = delta.usage
                if not delta.text:
                    continue
                if cancel.cancelled:
                    cancelled = True
                    break
                yield StreamEvent(
                    type=StreamEventType.DELTA,
                    index=len(emitted),
                    text=delta.text,
                    provider=provider_name,
                    model=model_name,
                )
                emitted.append(delta.text)
        except asyncio.TimeoutError:
            error = f"Stream timed out after {opts.timeout_seconds}s"
            logger.warning("stream_timeout", provider=provider_name, emitted=len(emitted))
        except UpstreamProviderError as exc:
            error = exc.message
            logger.warning("stream_provider_error", provider=provider_name, error=str(exc))
        finally:
            if pending is not None:
                await _abandon(pending)
            cancel_wait.cancel()
            await deltas.aclose()

        if error is not None:
            yield StreamEvent(
                type=StreamEventType.ERROR,
                index=len(emitted),
                error=error,
                provider=provider_name,
                model=model_name,
            )

        usage = reported or TokenUsage(
            input_tokens=estimate_tokens(system_prompt) + estimate_tokens(user_prompt),
            output_tokens=estimate_tokens("".join(emitted)),
            estimated=True,
        )
        usage_tracker = self._router.usage_tracker
        if usage_tracker is not None:
            await usage_tracker.record(
                provider=provider_name,
                model=model_name,
                operation=UsageOperation.CHAT,
                usage=usage,
                agent_id=opts.agent_id,
            )
        logger.info(
            "stream_complete",
            provider=provider_name,
            deltas=len(emitted),
            cancelled=cancelled,
            failed=error is not None,
            tokens=usage.total_tokens,
            estimated=usage.estimated,
        )
        yield StreamEvent(
            type=StreamEventType.COMPLETE,
            index=len(emitted),
            usage=usage,
            cancelled=cancelled,
            provider=provider_name,
            model=model_name,
            error=error,
            sources=list(sources or []),
        )

    @staticmethod
    async def _single_shot(
        provider: ILLMProvider,
        system_prompt: str,
        user_prompt: str,
        options: GenerationOptions,
        model: str | None,
    ) -> AsyncIterator[StreamDelta]:
        """Adapt a non-streaming provider to the delta iterator shape."""
        completion = await provider.complete(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            model=model,
        )
        yield StreamDelta(text=completion.content)
        yield StreamDelta(usage=completion.usage)


async def _next_delta(deltas: AsyncIterator[StreamDelta]) -> StreamDelta | None:
    try:
        return await deltas.__anext__()
    except StopAsyncIteration:
        return None


async def _abandon(task: asyncio.Future) -> None:
    """Cancel an in-flight provider read and wait for it to unwind."""
    task.cancel()
    await asyncio.wait({task})
