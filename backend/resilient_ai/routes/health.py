"""
Health check endpoints.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from resilient_ai.core.logging import get_logger
from resilient_ai.models.responses import (
    FallbackModeRequest,
    HealthCheckResponse,
    HealthResponse,
)
from resilient_ai.services.ai.orchestration import (
    ResilientAIService,
    get_resilient_ai_service,
)
from resilient_ai.services.ai.schema import ServiceStatus

logger = get_logger(__name__)
router = APIRouter()


@router.get("/", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running"
    }


@router.get("/ai", response_model=ServiceStatus)
async def ai_health(service: ResilientAIService = Depends(get_resilient_ai_service)):
    """
    Status of the resilient AI service.

    Returns:
        - state: HEALTHY, DEGRADED, LIMITED or UNAVAILABLE
        - circuit_state: state of the primary provider's circuit breaker
        - health_percentage: recent primary success rate
        - last_error: last error that forced an emergency response
        - primary_available / fallback_available / cache_available
        - cache_entries: number of cached responses
    """
    return service.get_status()


@router.post("/ai/reset", response_model=ServiceStatus)
async def reset_ai_service(service: ResilientAIService = Depends(get_resilient_ai_service)):
    """
    Manually reset the AI service to its breaker-derived state.

    Closes the circuit breaker and clears the last recorded error.
    """
    logger.info("ai_service_manual_reset_requested")
    service.reset()
    return service.get_status()


@router.post("/ai/fallback", response_model=ServiceStatus)
async def set_fallback_mode(
    request: Optional[FallbackModeRequest] = None,
    service: ResilientAIService = Depends(get_resilient_ai_service),
):
    """
    Force requests to the fallback provider, or hand them back to the primary.

    Body: {"use_fallback": true | false}. An empty body toggles the current mode.
    """
    use_fallback = request.use_fallback if request is not None else None
    enabled = service.set_force_fallback(use_fallback)
    logger.info("ai_fallback_mode_requested", use_fallback=use_fallback, force_fallback=enabled)
    return service.get_status()


@router.post("/ai/check", response_model=HealthCheckResponse)
async def run_ai_health_check(service: ResilientAIService = Depends(get_resilient_ai_service)):
    """
    Probe the primary provider now instead of waiting for the periodic check.

    A failed check is reported but never trips the circuit breaker.
    """
    healthy = await service.check_health()
    return HealthCheckResponse(healthy=healthy, status=service.get_status())
