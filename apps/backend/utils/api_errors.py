"""Unified API error envelope (compatible with legacy clients)."""
from __future__ import annotations

from fastapi.responses import JSONResponse

from apps.backend.utils.errors import AppError, RateLimitedError


def error_envelope(
    *,
    code: str,
    message: str,
    trace_id: str,
    legacy_error: bool = True,
) -> dict:
    out = {
        "code": code,
        "message": message,
        "trace_id": trace_id,
    }
    # Backward compatibility: existing clients read `error`.
    if legacy_error:
        out["error"] = code
    return out


def app_error_response(exc: AppError, trace_id: str) -> JSONResponse:
    """Public message only; ``exc.detail`` stays in the logs."""
    resp = JSONResponse(
        content=error_envelope(code=exc.code, message=exc.public_message, trace_id=trace_id),
        status_code=exc.status_code,
    )
    resp.headers["X-Trace-Id"] = trace_id
    if isinstance(exc, RateLimitedError):
        resp.headers["Retry-After"] = str(exc.retry_after)
    return resp
