"""FastAPI entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.backend.middleware.trace_id import HEADER, TraceIdMiddleware, ensure_trace_id
from apps.backend.routers import billing_webhooks, chatbot_webhooks, conversations, health, subscription
from apps.backend.utils.api_errors import app_error_response, error_envelope
from apps.backend.utils.errors import AppError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield


app = FastAPI(
    title="ChatBot Builder",
    description="Chatbot flows, conversations and subscription billing",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(TraceIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["System"])
app.include_router(conversations.router, prefix="/v1/conversations", tags=["Conversations"])
app.include_router(chatbot_webhooks.router, prefix="/v1/chatbots", tags=["Chatbot Webhooks"])
app.include_router(subscription.router, prefix="/v1/subscription", tags=["Subscription"])
app.include_router(billing_webhooks.router, prefix="/v1/webhooks", tags=["Billing Webhooks"])


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or ensure_trace_id(request.scope)


def _envelope(request: Request, code: str, message: str, status_code: int) -> JSONResponse:
    trace_id = _trace_id(request)
    resp = JSONResponse(
        content=error_envelope(code=code, message=message, trace_id=trace_id),
        status_code=status_code,
    )
    resp.headers[HEADER] = trace_id
    return resp


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    trace_id = _trace_id(request)
    if exc.status_code >= 500:
        logger.error("app_error trace_id=%s code=%s detail=%s", trace_id, exc.code, exc.detail)
    else:
        logger.info("app_error trace_id=%s code=%s detail=%s", trace_id, exc.code, exc.detail)
    return app_error_response(exc, trace_id)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.info("request_invalid trace_id=%s errors=%s", _trace_id(request), len(exc.errors()))
    return _envelope(request, "validation_error", "Invalid request", 400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _envelope(request, "http_error", message, exc.status_code)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Never leak internals: the traceback goes to the log, the client gets the trace_id."""
    trace_id = _trace_id(request)
    logger.exception("Unhandled exception trace_id=%s path=%s", trace_id, request.url.path)
    return _envelope(request, "internal_error", "Internal server error", 500)
