import os
import time

from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import load_env_file
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.middleware import TraceIDMiddleware
from .core.metrics import record_http_request
from .core.tracing import (
    configure_tracing,
    instrument_fastapi,
    shutdown_tracing,
    get_trace_id_from_context,
    record_exception,
    set_span_status,
    StatusCode,
)
from .routes import chat, health, metrics
from .services.ai.orchestration import close_resilient_ai_service, get_resilient_ai_service

load_env_file()

# Configure structured logging
# Use JSON output in production (containerized), console output in development
log_level = os.getenv("LOG_LEVEL", "INFO")
json_output = os.getenv("LOG_JSON", "true").lower() == "true"
configure_logging(log_level=log_level, json_output=json_output)

logger = get_logger(__name__)

# Configure distributed tracing; OTLP export only when an endpoint is set
enable_otlp = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "").lower() != ""
configure_tracing(enable_otlp=enable_otlp)

app = FastAPI(
    title="Resilient AI Service",
    description="Resilience layer in front of generative AI providers",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

# Instrument FastAPI with OpenTelemetry (creates automatic spans for HTTP requests)
instrument_fastapi(app)


@app.on_event("startup")
async def startup_event():
    """Start the AI service background timers."""
    logger.info("app_startup_started")
    service = get_resilient_ai_service()
    service.start()
    logger.info(
        "app_startup_completed",
        service_state=service.state.value,
        circuit_state=service.circuit_breaker.state.value,
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown."""
    logger.info("app_shutdown_started")
    close_resilient_ai_service()
    shutdown_tracing()
    logger.info("app_shutdown_completed")


def _error_response(request: Request, status_code: int, detail) -> JSONResponse:
    """JSON error body carrying the trace id, mirrored in the X-Trace-ID header."""
    trace_id = get_trace_id() or get_trace_id_from_context()
    response = JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "status_code": status_code,
            "trace_id": trace_id,
        }
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


def _record_handled_error(request: Request, status_code: int) -> None:
    # Middleware start time is missing when the error happened before dispatch
    start_time = getattr(request.state, "start_time", time.time())
    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=status_code,
        duration_seconds=time.time() - start_time,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    set_span_status(StatusCode.ERROR if exc.status_code >= 500 else StatusCode.OK, exc.detail)
    _record_handled_error(request, exc.status_code)
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed chat requests are rejected before reaching the AI service."""
    logger.info(
        "request_validation_failed",
        path=request.url.path,
        method=request.method,
        error_count=len(exc.errors()),
    )
    return _error_response(request, 422, jsonable_encoder(exc.errors()))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Last line of defence for route errors outside the AI service."""
    record_exception(exc)
    set_span_status(StatusCode.ERROR, str(exc))
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return _error_response(request, 500, "Internal server error")


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(chat.router, prefix="/chat", tags=["Chat"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
