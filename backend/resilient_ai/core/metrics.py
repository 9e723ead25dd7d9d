"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: Rate, Errors, Duration of the HTTP surface
- Provider Metrics: per-provider request outcomes and latency
- Resilience Metrics: circuit state, service state, response path taken,
  normalization strategy, response cache hits/misses/evictions
- Resource Metrics: CPU and memory of the process host

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
import psutil
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)

from resilient_ai.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# Numeric encodings for state gauges
CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}
SERVICE_STATE_VALUES = {"HEALTHY": 0, "DEGRADED": 1, "LIMITED": 2, "UNAVAILABLE": 3}

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=registry,
)

# ============================================================================
# PROVIDER METRICS
# ============================================================================

ai_provider_requests_total = Counter(
    "ai_provider_requests_total",
    "Total number of calls made to AI providers",
    ["provider", "outcome"],  # outcome: success, error, timeout
    registry=registry,
)

ai_provider_latency_seconds = Histogram(
    "ai_provider_latency_seconds",
    "AI provider call latency in seconds",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0],
    registry=registry,
)

# ============================================================================
# RESILIENCE METRICS
# ============================================================================

cache_hits_total = Counter(
    "cache_hits_total",
    "Total number of cache hits",
    ["cache_type"],  # "exact" or "similar"
    registry=registry,
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total number of cache misses",
    ["cache_type"],
    registry=registry,
)

cache_evictions_total = Counter(
    "cache_evictions_total",
    "Total number of cache entries removed before being read",
    ["reason"],  # "capacity" or "expired"
    registry=registry,
)

cache_entries = Gauge(
    "cache_entries",
    "Number of responses currently held in the response cache",
    registry=registry,
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0 = closed, 1 = half_open, 2 = open)",
    ["breaker"],
    registry=registry,
)

circuit_breaker_transitions_total = Counter(
    "circuit_breaker_transitions_total",
    "Total number of circuit breaker state transitions",
    ["breaker", "from_state", "to_state"],
    registry=registry,
)

ai_service_state = Gauge(
    "ai_service_state",
    "Resilient AI service state (0 = healthy, 1 = degraded, 2 = limited, 3 = unavailable)",
    registry=registry,
)

ai_response_path_total = Counter(
    "ai_response_path_total",
    "Total number of responses served, by the path that produced them",
    ["path"],  # cache, primary, fallback, similar_cache, emergency
    registry=registry,
)

ai_normalization_total = Counter(
    "ai_normalization_total",
    "Total number of provider payloads normalized, by winning strategy",
    ["strategy"],
    registry=registry,
)

ai_health_checks_total = Counter(
    "ai_health_checks_total",
    "Total number of primary provider health checks",
    ["result"],  # "healthy" or "unhealthy"
    registry=registry,
)

# ============================================================================
# RESOURCE METRICS
# ============================================================================

system_cpu_usage_percent = Gauge(
    "system_cpu_usage_percent",
    "System CPU usage percentage",
    registry=registry,
)

system_memory_usage_bytes = Gauge(
    "system_memory_usage_bytes",
    "System memory usage in bytes",
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Examples:
        /chat?debug=1 -> /chat
        /health/ai/ -> /health/ai
        / -> /
    """
    if "?" in path:
        path = path.split("?")[0]
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Record HTTP request metrics (RED metrics).

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Request path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_provider_request(provider: str, outcome: str, duration_seconds: float) -> None:
    """Record one AI provider call and its latency."""
    ai_provider_requests_total.labels(provider=provider, outcome=outcome).inc()
    ai_provider_latency_seconds.labels(provider=provider).observe(duration_seconds)


def record_cache_hit(cache_type: str) -> None:
    """Record a cache hit ("exact" or "similar")."""
    cache_hits_total.labels(cache_type=cache_type).inc()


def record_cache_miss(cache_type: str) -> None:
    """Record a cache miss ("exact" or "similar")."""
    cache_misses_total.labels(cache_type=cache_type).inc()


def record_cache_eviction(reason: str) -> None:
    """Record a cache entry removed by capacity or expiry."""
    cache_evictions_total.labels(reason=reason).inc()


def set_cache_entries(count: int) -> None:
    """Set the response cache size gauge."""
    cache_entries.set(count)


def record_circuit_transition(breaker: str, from_state: str, to_state: str) -> None:
    """
    Record a circuit breaker transition and update the state gauge.

    Args:
        breaker: Breaker name
        from_state: Previous CircuitState value
        to_state: New CircuitState value
    """
    circuit_breaker_transitions_total.labels(
        breaker=breaker,
        from_state=from_state,
        to_state=to_state,
    ).inc()
    circuit_breaker_state.labels(breaker=breaker).set(CIRCUIT_STATE_VALUES.get(to_state, 0))


def set_circuit_state(breaker: str, state: str) -> None:
    """Set the circuit state gauge without counting a transition."""
    circuit_breaker_state.labels(breaker=breaker).set(CIRCUIT_STATE_VALUES.get(state, 0))


def set_service_state(state: str) -> None:
    """Set the service state gauge from a ServiceState value."""
    ai_service_state.set(SERVICE_STATE_VALUES.get(state, 0))


def record_response_path(path: str) -> None:
    """Record which path produced a response returned to the caller."""
    ai_response_path_total.labels(path=path).inc()


def record_normalization(strategy: str) -> None:
    """Record the strategy that produced a normalized response."""
    ai_normalization_total.labels(strategy=strategy).inc()


def record_health_check(healthy: bool) -> None:
    """Record the outcome of a primary provider health check."""
    ai_health_checks_total.labels(result="healthy" if healthy else "unhealthy").inc()


def update_resource_metrics() -> None:
    """
    Update system resource metrics (CPU, memory).

    Called on every scrape of the metrics endpoint.
    """
    try:
        cpu_percent = psutil.cpu_percent(interval=None)
        system_cpu_usage_percent.set(cpu_percent)

        memory = psutil.virtual_memory()
        system_memory_usage_bytes.set(memory.used)
    except Exception as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    """Get Prometheus metrics in text format."""
    update_resource_metrics()
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    """Get content type for the metrics endpoint."""
    return CONTENT_TYPE_LATEST
