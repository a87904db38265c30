"""Error taxonomy for the market data pipeline.

Every error carries a `retryable` flag consumed by the provider retry loop and
by the job worker:

- ProviderUnavailable (5xx, network error, timeout): retry with backoff
- RateLimited (429): retry, honoring the provider's retry-after hint
- NotFound (404 on a product/variant): never retried; the mapping becomes invalid
- ValidationError (payload shape): offending record dropped, batch continues
- ConflictError (duplicate canonical key inside one batch): mapper defect, fail loudly
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for market data pipeline failures."""

    retryable = False
    code = "PIPELINE_ERROR"


class ProviderError(PipelineError):
    """Non-retryable provider response (unexpected 4xx)."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class ProviderUnavailable(ProviderError):
    retryable = True
    code = "PROVIDER_UNAVAILABLE"


class RateLimited(ProviderError):
    retryable = True
    code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after: float | None = None, status: int | None = 429):
        super().__init__(message, status=status)
        self.retry_after = retry_after


class NotFound(ProviderError):
    code = "NOT_FOUND"


class ValidationError(PipelineError):
    """Raw payload does not match the expected provider contract."""

    code = "VALIDATION_ERROR"


class ConflictError(PipelineError):
    """Two canonical records in one batch share a uniqueness key."""

    code = "CONFLICT"


class MappingUnresolved(PipelineError):
    """No committed provider mapping exists for an item."""

    code = "MAPPING_UNRESOLVED"


class SizeMatchError(PipelineError):
    """Size conversion or variant resolution failed.

    Codes:
        NO_SIZE_MATCH: the table or variant list has no entry for the size
        UNSUPPORTED_SIZE_SYSTEM: no table for the brand/gender/size system
        AMBIGUOUS_SIZE: one UK size maps to several target sizes
    """

    NO_SIZE_MATCH = "NO_SIZE_MATCH"
    UNSUPPORTED_SIZE_SYSTEM = "UNSUPPORTED_SIZE_SYSTEM"
    AMBIGUOUS_SIZE = "AMBIGUOUS_SIZE"

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
