"""Translate SDK exceptions into the project's upstream error types.

The ``openai`` and ``anthropic`` SDKs share an exception hierarchy shape
(``APITimeoutError``, ``APIConnectionError``, ``RateLimitError``,
``APIStatusError``).  Timeouts, connection failures, rate limits and 5xx
responses are transient; everything else is terminal.
"""

from __future__ import annotations

import anthropic
import openai

from src.utils.errors import RateLimitError, UpstreamProviderError

_TIMEOUT_ERRORS = (openai.APITimeoutError, anthropic.APITimeoutError)
_CONNECTION_ERRORS = (openai.APIConnectionError, anthropic.APIConnectionError)
_RATE_LIMIT_ERRORS = (openai.RateLimitError, anthropic.RateLimitError)
_STATUS_ERRORS = (openai.APIStatusError, anthropic.APIStatusError)


def _retry_after(exc: Exception) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        return float(headers.get("retry-after", ""))
    except ValueError:
        return None


def map_sdk_error(
    exc: Exception,
    provider_name: str,
    error_cls: type[UpstreamProviderError],
    label: str = "API",
) -> UpstreamProviderError:
    """Return the project exception for an SDK exception.

    Parameters
    ----------
    exc:
        Exception raised by the openai or anthropic client.
    provider_name:
        Provider identifier carried on the returned error.
    error_cls:
        :class:`~src.utils.errors.LLMError` or
        :class:`~src.utils.errors.EmbeddingError`.
    label:
        Prefix for the message, e.g. ``"OpenAI"``.
    """
    if isinstance(exc, _RATE_LIMIT_ERRORS):
        return RateLimitError(
            message=f"{label} rate limit exceeded: {exc}",
            provider_name=provider_name,
            retry_after=_retry_after(exc),
        )
    if isinstance(exc, _TIMEOUT_ERRORS):
        return error_cls(f"{label} request timed out", provider_name=provider_name, transient=True)
    if isinstance(exc, _CONNECTION_ERRORS):
        return error_cls(
            f"{label} connection failed: {exc}", provider_name=provider_name, transient=True
        )
    if isinstance(exc, _STATUS_ERRORS):
        transient = exc.status_code >= 500 or exc.status_code in (408, 409)
        return error_cls(
            f"{label} API error ({exc.status_code}): {exc}",
            provider_name=provider_name,
            transient=transient,
        )
    return error_cls(f"{label} API error: {exc}", provider_name=provider_name)
