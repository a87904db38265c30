"""Error envelope shared by the global handler and the admin routes."""

from typing import Any

from pydantic import BaseModel

from market_data.services.errors import PipelineError, ProviderError, RateLimited


class ErrorDetail(BaseModel):
    """One error: stable code, message, retry hint and optional context."""

    code: str
    message: str
    retryable: bool = False
    detail: dict[str, Any] | None = None

    @classmethod
    def from_pipeline_error(cls, error: PipelineError) -> "ErrorDetail":
        context: dict[str, Any] = {}
        if isinstance(error, ProviderError) and error.status is not None:
            context["status"] = error.status
        if isinstance(error, RateLimited) and error.retry_after is not None:
            context["retryAfter"] = error.retry_after
        return cls(
            code=error.code,
            message=str(error),
            retryable=error.retryable,
            detail=context or None,
        )


class ErrorResponse(BaseModel):
    """{ "error": { "code", "message", "retryable", "detail" } }"""

    error: ErrorDetail
