"""agent-rag API layer: routes, schemas, and middleware."""

from src.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from src.api.routes import router
from src.api.schemas import (
    BatchIngestRequest,
    BatchIngestResponse,
    ChatRequest,
    ChatResponse,
    ConfigValidateRequest,
    ConfigValidateResponse,
    ErrorResponse,
    HealthResponse,
    IngestResponse,
    IngestSourceRequest,
    JobStatusResponse,
)

__all__ = [
    "ErrorHandlingMiddleware",
    "RequestLoggingMiddleware",
    "configure_cors",
    "router",
    "BatchIngestRequest",
    "BatchIngestResponse",
    "ChatRequest",
    "ChatResponse",
    "ConfigValidateRequest",
    "ConfigValidateResponse",
    "ErrorResponse",
    "HealthResponse",
    "IngestResponse",
    "IngestSourceRequest",
    "JobStatusResponse",
]
