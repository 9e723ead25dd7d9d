"""
Metrics endpoints.

GET /metrics
Returns Prometheus-formatted metrics for scraping.

GET /metrics/ai
Returns a JSON snapshot of the circuit breaker and response cache.
"""
from fastapi import APIRouter, Depends, Response
from fastapi.responses import PlainTextResponse

from resilient_ai.core.logging import get_logger
from resilient_ai.core.metrics import (
    get_metrics,
    get_metrics_content_type,
    set_cache_entries,
)
from resilient_ai.services.ai.orchestration import (
    ResilientAIService,
    get_resilient_ai_service,
)

logger = get_logger(__name__)
router = APIRouter()


@router.get("", response_class=PlainTextResponse)
async def metrics(service: ResilientAIService = Depends(get_resilient_ai_service)):
    """
    Prometheus metrics endpoint.

    No authentication required (standard Prometheus practice).
    """
    try:
        set_cache_entries(len(service.cache))
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type(),
        )
    except Exception as e:
        logger.error(
            "metrics_endpoint_error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return Response(
            content=b"# Error collecting metrics\n",
            media_type=get_metrics_content_type(),
        )


@router.get("/ai")
async def ai_metrics(service: ResilientAIService = Depends(get_resilient_ai_service)):
    """Circuit breaker and response cache statistics."""
    return {
        "service_state": service.state.value,
        "circuit_breaker": service.circuit_breaker.get_metrics(),
        "cache": service.cache.get_stats(),
    }
