"""Domain error kinds mapped to HTTP responses by the app exception handler."""
from __future__ import annotations


class AppError(Exception):
    code = "error"
    status_code = 500
    public_message = "Request failed"

    def __init__(self, detail: str | None = None, *, code: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail
        if code:
            self.code = code


class ValidationError(AppError):
    code = "validation_error"
    status_code = 400
    public_message = "Invalid request"


class AuthorizationError(AppError):
    code = "unauthorized"
    status_code = 401
    public_message = "Not authorized"


class NotFoundError(AppError):
    code = "not_found"
    status_code = 404
    public_message = "Not found"


class UpstreamError(AppError):
    code = "upstream_error"
    status_code = 502
    public_message = "Upstream service failed"


class EngineFault(AppError):
    """Malformed flow graph or runaway walk; callers fall back, never crash the session."""

    code = "engine_fault"
    status_code = 500
    public_message = "Flow execution failed"


class RateLimitedError(AppError):
    code = "rate_limited"
    status_code = 429
    public_message = "Rate limit exceeded"

    def __init__(self, retry_after: int, detail: str | None = None):
        super().__init__(detail)
        self.retry_after = retry_after


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403
    public_message = "Monthly message limit exceeded"
