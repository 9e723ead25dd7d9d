"""
Unit tests for Prometheus metrics collection.

Tests verify:
- RED metrics (Rate, Errors, Duration) are recorded correctly
- Resilience metrics (provider outcomes, cache, circuit and service state,
  response path, normalization) are recorded correctly
- Resource metrics (CPU, memory) are updated correctly
- Metrics output is valid Prometheus format
"""
from unittest.mock import MagicMock, patch

from prometheus_client import REGISTRY

from resilient_ai.core.metrics import (
    CIRCUIT_STATE_VALUES,
    SERVICE_STATE_VALUES,
    get_metrics,
    get_metrics_content_type,
    normalize_endpoint,
    record_cache_eviction,
    record_cache_hit,
    record_cache_miss,
    record_circuit_transition,
    record_health_check,
    record_http_request,
    record_normalization,
    record_provider_request,
    record_response_path,
    set_cache_entries,
    set_circuit_state,
    set_service_state,
    system_cpu_usage_percent,
    system_memory_usage_bytes,
    update_resource_metrics,
)


def sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestEndpointNormalization:
    def test_strips_query_string(self):
        assert normalize_endpoint("/chat?debug=1") == "/chat"

    def test_strips_trailing_slash(self):
        assert normalize_endpoint("/health/ai/") == "/health/ai"

    def test_keeps_root(self):
        assert normalize_endpoint("/") == "/"


class TestREDMetrics:
    """Test RED metrics (Rate, Errors, Duration)."""

    def test_record_http_request_success(self):
        labels = {"method": "POST", "endpoint": "/chat", "status": "200"}
        before = sample("http_requests_total", labels)

        record_http_request(method="POST", endpoint="/chat", status_code=200, duration_seconds=0.1)

        assert sample("http_requests_total", labels) == before + 1
        assert sample(
            "http_request_duration_seconds_count",
            {"method": "POST", "endpoint": "/chat"},
        ) >= 1

    def test_record_http_request_error(self):
        labels = {"method": "POST", "endpoint": "/chat", "status_code": "500"}
        before = sample("http_errors_total", labels)

        record_http_request(method="POST", endpoint="/chat/", status_code=500, duration_seconds=0.2)

        assert sample("http_errors_total", labels) == before + 1

    def test_success_is_not_an_error(self):
        labels = {"method": "GET", "endpoint": "/health", "status_code": "200"}

        record_http_request(method="GET", endpoint="/health/", status_code=200, duration_seconds=0.01)

        assert sample("http_errors_total", labels) == 0.0


class TestResilienceMetrics:
    def test_record_provider_request(self):
        labels = {"provider": "primary", "outcome": "timeout"}
        before = sample("ai_provider_requests_total", labels)

        record_provider_request("primary", "timeout", 30.0)

        assert sample("ai_provider_requests_total", labels) == before + 1
        assert sample("ai_provider_latency_seconds_count", {"provider": "primary"}) >= 1

    def test_record_cache_hit_and_miss(self):
        hit_before = sample("cache_hits_total", {"cache_type": "similar"})
        miss_before = sample("cache_misses_total", {"cache_type": "exact"})

        record_cache_hit("similar")
        record_cache_miss("exact")

        assert sample("cache_hits_total", {"cache_type": "similar"}) == hit_before + 1
        assert sample("cache_misses_total", {"cache_type": "exact"}) == miss_before + 1

    def test_record_cache_eviction(self):
        before = sample("cache_evictions_total", {"reason": "capacity"})

        record_cache_eviction("capacity")

        assert sample("cache_evictions_total", {"reason": "capacity"}) == before + 1

    def test_set_cache_entries(self):
        set_cache_entries(7)

        assert sample("cache_entries") == 7

    def test_record_circuit_transition_updates_gauge(self):
        labels = {"breaker": "metrics_test", "from_state": "closed", "to_state": "open"}

        record_circuit_transition("metrics_test", "closed", "open")

        assert sample("circuit_breaker_transitions_total", labels) == 1
        assert sample("circuit_breaker_state", {"breaker": "metrics_test"}) == CIRCUIT_STATE_VALUES["open"]

    def test_set_circuit_state(self):
        set_circuit_state("metrics_gauge", "half_open")

        assert sample("circuit_breaker_state", {"breaker": "metrics_gauge"}) == CIRCUIT_STATE_VALUES["half_open"]

    def test_set_service_state(self):
        set_service_state("LIMITED")

        assert sample("ai_service_state") == SERVICE_STATE_VALUES["LIMITED"]

    def test_record_response_path(self):
        before = sample("ai_response_path_total", {"path": "emergency"})

        record_response_path("emergency")

        assert sample("ai_response_path_total", {"path": "emergency"}) == before + 1

    def test_record_normalization(self):
        before = sample("ai_normalization_total", {"strategy": "alternate_key"})

        record_normalization("alternate_key")

        assert sample("ai_normalization_total", {"strategy": "alternate_key"}) == before + 1

    def test_record_health_check(self):
        healthy_before = sample("ai_health_checks_total", {"result": "healthy"})
        unhealthy_before = sample("ai_health_checks_total", {"result": "unhealthy"})

        record_health_check(True)
        record_health_check(False)

        assert sample("ai_health_checks_total", {"result": "healthy"}) == healthy_before + 1
        assert sample("ai_health_checks_total", {"result": "unhealthy"}) == unhealthy_before + 1


class TestResourceMetrics:
    """Test resource metrics."""

    @patch("resilient_ai.core.metrics.psutil.cpu_percent")
    @patch("resilient_ai.core.metrics.psutil.virtual_memory")
    def test_update_resource_metrics(self, mock_memory, mock_cpu):
        mock_cpu.return_value = 45.5
        mock_memory_obj = MagicMock()
        mock_memory_obj.used = 1024 * 1024 * 512
        mock_memory.return_value = mock_memory_obj

        update_resource_metrics()

        assert system_cpu_usage_percent._value.get() == 45.5
        assert system_memory_usage_bytes._value.get() == 1024 * 1024 * 512

    @patch("resilient_ai.core.metrics.psutil.cpu_percent")
    def test_update_resource_metrics_handles_errors(self, mock_cpu):
        mock_cpu.side_effect = Exception("CPU error")

        # Should not raise an exception
        update_resource_metrics()


class TestMetricsOutput:
    def test_get_metrics_returns_prometheus_text(self):
        record_response_path("primary")

        metrics_data = get_metrics()

        assert isinstance(metrics_data, bytes)
        text = metrics_data.decode("utf-8")
        assert "# HELP ai_response_path_total" in text
        assert "# TYPE circuit_breaker_state gauge" in text

    def test_get_metrics_content_type(self):
        assert get_metrics_content_type().startswith("text/plain")
