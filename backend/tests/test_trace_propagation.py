"""
Integration tests for trace ID propagation.

Tests verify:
- Trace ID is generated for requests without X-Trace-ID header
- Trace ID is extracted from X-Trace-ID / X-Request-ID headers when present
- Trace ID is included in response headers, including error responses
- Request ID is generated for each request
- Request context is cleared after the request
"""
import uuid

import pytest
from fastapi.testclient import TestClient

from resilient_ai.core.logging import get_request_id, get_session_id, get_trace_id
from resilient_ai.main import app


client = TestClient(app)


class TestTraceIDPropagation:
    """Test trace ID propagation through HTTP requests."""

    def test_trace_id_generated_when_missing(self):
        response = client.get("/health/")

        assert response.status_code == 200
        trace_id = response.headers["X-Trace-ID"]
        assert len(trace_id) == 36
        assert trace_id.count("-") == 4
        uuid.UUID(trace_id)

    def test_trace_id_extracted_from_header(self):
        custom_trace_id = str(uuid.uuid4())

        response = client.get("/health/", headers={"X-Trace-ID": custom_trace_id})

        assert response.status_code == 200
        assert response.headers["X-Trace-ID"] == custom_trace_id

    def test_trace_id_extracted_from_request_id_header(self):
        custom_request_id = str(uuid.uuid4())

        response = client.get("/health/", headers={"X-Request-ID": custom_request_id})

        assert response.headers["X-Trace-ID"] == custom_request_id

    def test_request_id_generated(self):
        response = client.get("/health/")

        request_id = response.headers["X-Request-ID"]
        assert len(request_id) == 36
        uuid.UUID(request_id)

    def test_trace_id_in_validation_error_responses(self):
        custom_trace_id = str(uuid.uuid4())

        response = client.post(
            "/chat",
            json={"message": ""},
            headers={"X-Trace-ID": custom_trace_id},
        )

        assert response.status_code == 422
        assert response.headers.get("X-Trace-ID") == custom_trace_id

    def test_trace_id_in_not_found_responses(self):
        custom_trace_id = str(uuid.uuid4())

        response = client.get("/does-not-exist", headers={"X-Trace-ID": custom_trace_id})

        assert response.status_code == 404
        assert response.headers.get("X-Trace-ID") == custom_trace_id


class TestRequestContext:
    def test_context_cleared_after_request(self):
        client.get(
            "/health/",
            headers={"X-Trace-ID": "trace-1", "X-Session-ID": "session-1"},
        )

        assert get_trace_id() is None
        assert get_request_id() is None
        assert get_session_id() is None

    def test_session_header_accepted(self):
        response = client.get("/health/", headers={"X-Session-ID": "chat-42"})

        assert response.status_code == 200


class TestTraceIDUniqueness:
    """Test that trace IDs are unique per request."""

    def test_sequential_requests_have_different_ids(self):
        responses = [client.get("/health/") for _ in range(5)]

        trace_ids = [r.headers["X-Trace-ID"] for r in responses]
        request_ids = [r.headers["X-Request-ID"] for r in responses]

        assert len(set(trace_ids)) == len(trace_ids)
        assert len(set(request_ids)) == len(request_ids)
