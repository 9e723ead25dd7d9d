"""Pydantic models for API requests and responses."""

from .responses import ChatRequest, FallbackModeRequest, HealthCheckResponse, HealthResponse

__all__ = ["ChatRequest", "FallbackModeRequest", "HealthCheckResponse", "HealthResponse"]
