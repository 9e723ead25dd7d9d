"""
Middleware for trace ID propagation and request context management.

This middleware:
- Extracts trace ID from HTTP headers (X-Trace-ID or X-Request-ID)
- Generates new trace ID if not present
- Binds the chat session (X-Session-ID) to the logging context
- Records RED metrics for every request
- Includes trace and request IDs in HTTP response headers
"""
import time
from typing import Callable

from fastapi import Request, Response, HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import (
    set_trace_id,
    set_request_id,
    set_session_id,
    generate_trace_id,
    generate_request_id,
    get_logger,
)
from .metrics import record_http_request
from .tracing import (
    StatusCode,
    extract_trace_context,
    get_trace_id_from_context,
    get_tracer,
    record_exception,
    set_span_attribute,
    set_span_status,
)

logger = get_logger(__name__)


def _hex_to_uuid(trace_id: str) -> str:
    """Format a 32-char OpenTelemetry trace id the way generated ids look."""
    if len(trace_id) != 32:
        return trace_id
    return f"{trace_id[0:8]}-{trace_id[8:12]}-{trace_id[12:16]}-{trace_id[16:20]}-{trace_id[20:32]}"


class TraceIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to handle trace ID propagation and request context.

    Priority for the trace id: X-Trace-ID > X-Request-ID > OpenTelemetry
    context > newly generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        extract_trace_context(dict(request.headers))

        trace_id = (
            request.headers.get("X-Trace-ID") or
            request.headers.get("X-Request-ID")
        )
        if not trace_id:
            otel_trace_id = get_trace_id_from_context()
            trace_id = _hex_to_uuid(otel_trace_id) if otel_trace_id else generate_trace_id()

        request_id = generate_request_id()
        session_id = request.headers.get("X-Session-ID")

        set_trace_id(trace_id)
        set_request_id(request_id)
        if session_id:
            set_session_id(session_id)

        tracer = get_tracer()
        with tracer.start_as_current_span("http.request"):
            set_span_attribute("http.method", request.method)
            set_span_attribute("http.route", request.url.path)
            if session_id:
                set_span_attribute("session.id", session_id)

            start_time = time.time()
            # Exception handlers read this to compute latency
            request.state.start_time = start_time
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                client_host=request.client.host if request.client else None,
            )

            try:
                response = await call_next(request)

                process_time = time.time() - start_time
                latency_ms = int(process_time * 1000)

                set_span_attribute("http.status_code", response.status_code)
                set_span_attribute("http.response.latency_ms", latency_ms)

                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=response.status_code,
                    duration_seconds=process_time,
                )

                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    latency_ms=latency_ms,
                )

                response.headers["X-Trace-ID"] = trace_id
                response.headers["X-Request-ID"] = request_id
                return response

            except HTTPException as exc:
                # Metrics for HTTPException are recorded by the exception handler
                set_span_attribute("http.status_code", exc.status_code)
                set_span_attribute("error", True)
                raise
            except Exception as e:
                process_time = time.time() - start_time

                record_exception(e)
                set_span_status(StatusCode.ERROR, str(e))
                set_span_attribute("http.status_code", 500)

                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=500,
                    duration_seconds=process_time,
                )

                logger.error(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    error_type=type(e).__name__,
                    latency_ms=int(process_time * 1000),
                    exc_info=True,
                )
                raise
            finally:
                set_trace_id(None)
                set_request_id(None)
                set_session_id(None)
