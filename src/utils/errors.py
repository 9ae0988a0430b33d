"""Custom exception hierarchy for agent-rag.

All application exceptions inherit from :class:`AgentRAGError`, which
carries an optional ``provider_name`` so error handlers can identify which
external service (e.g. "openai", "anthropic", "sqlite") caused the failure.

The hierarchy follows the content-to-answer pipeline:

    AgentRAGError  (base -- catch-all for any agent-rag error)
    +-- ValidationError          (bad input, rejected before any side effect)
    +-- ConfigurationError       (startup / missing config)
    +-- UpstreamProviderError    (embedding or LLM call failed)
    |   +-- LLMError             (chat completion / streaming failure)
    |   +-- EmbeddingError       (embedding call failure)
    |   +-- RateLimitError       (provider rate-limit exceeded, transient)
    +-- RetrievalDegraded        (query engine failed, answer uses no context)
    +-- CacheUnavailable         (response cache backend failed, non-fatal)
    +-- IngestionPhaseError      (extraction / compression / chunking / dedup)
    +-- StoreError               (knowledge store read/write failure)

Only :class:`ValidationError` is meant to reach the caller of the
orchestrator unchanged.  Upstream errors during generation become a
"please try again" answer; the degraded categories are logged and
absorbed.
"""


class AgentRAGError(Exception):
    """Base exception for all agent-rag errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external service triggered the
    error.  The ``__str__`` method prefixes the provider name in brackets
    for structured log output, e.g. ``[openai] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Input / configuration errors
# ---------------------------------------------------------------------------

class ValidationError(AgentRAGError):
    """Raised when a request or configuration fails validation.

    ``errors`` lists every violated constraint, not just the first one, so
    a settings form can show them all at once.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        errors: list[str] | None = None,
        provider_name: str | None = None,
    ) -> None:
        self._errors = list(errors or [])
        if self._errors and message == "Validation failed":
            message = "Validation failed: " + "; ".join(self._errors)
        super().__init__(message=message, provider_name=provider_name)

    @property
    def errors(self) -> list[str]:
        return list(self._errors)


class ConfigurationError(AgentRAGError):
    """Raised for missing or invalid configuration (API keys, store paths, etc.)."""

    def __init__(
        self,
        message: str = "Configuration error",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class UpstreamProviderError(AgentRAGError):
    """Raised when an embedding or LLM provider call fails.

    ``transient`` is True for failures worth retrying (5xx, timeouts,
    connection resets, rate limits) and False for terminal ones (bad
    request, authentication, unknown model).
    """

    def __init__(
        self,
        message: str = "Upstream provider call failed",
        provider_name: str | None = None,
        transient: bool = False,
    ) -> None:
        self._transient = transient
        super().__init__(message=message, provider_name=provider_name)

    @property
    def transient(self) -> bool:
        return self._transient


class LLMError(UpstreamProviderError):
    """Raised when an LLM API call fails (timeout, bad response, auth failure)."""

    def __init__(
        self,
        message: str = "LLM API call failed",
        provider_name: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, transient=transient)


class EmbeddingError(UpstreamProviderError):
    """Raised when an embedding API call or embedding batch fails."""

    def __init__(
        self,
        message: str = "Embedding call failed",
        provider_name: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, transient=transient)


class RateLimitError(UpstreamProviderError):
    """Raised when an external API rate limit is exceeded.

    Always transient; ``retry_after`` carries the provider's hint in
    seconds when one was sent.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        self._retry_after = retry_after
        super().__init__(message=message, provider_name=provider_name, transient=True)

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


# ---------------------------------------------------------------------------
# Degraded (non-fatal) conditions
# ---------------------------------------------------------------------------

class RetrievalDegraded(AgentRAGError):
    """Query engine failed; the pipeline continues with an empty context."""

    def __init__(
        self,
        message: str = "Retrieval failed, continuing without context",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class CacheUnavailable(AgentRAGError):
    """Response cache backend failed; the pipeline continues uncached."""

    def __init__(
        self,
        message: str = "Response cache unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Ingestion / storage errors
# ---------------------------------------------------------------------------

class IngestionPhaseError(AgentRAGError):
    """Raised when one ingestion phase fails.

    ``phase`` names the failed phase (``extraction``, ``compression``,
    ``chunking``, ``deduplication``, ``embedding``, ``storage``).  Work
    completed by earlier phases is left in place so a retry can resume.
    """

    def __init__(
        self,
        message: str = "Ingestion phase failed",
        phase: str = "unknown",
        job_id: str | None = None,
        provider_name: str | None = None,
    ) -> None:
        self._phase = phase
        self._job_id = job_id
        super().__init__(message=message, provider_name=provider_name)

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def job_id(self) -> str | None:
        return self._job_id


class StoreError(AgentRAGError):
    """Raised when the knowledge store cannot complete a read or write."""

    def __init__(
        self,
        message: str = "Knowledge store operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
