"""
Request and response models for API endpoints.

These models define the structure of the HTTP contract; the AI payload
itself is services.ai.schema.AIResponse.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from resilient_ai.services.ai.schema import Message, ServiceStatus


class ChatRequest(BaseModel):
    """Chat request model."""
    message: str = Field(..., min_length=1, description="Current user message")
    system_prompt: str = Field(
        "You are a helpful assistant.",
        description="System prompt forwarded to the providers",
    )
    history: List[Message] = Field(default_factory=list, description="Previous conversation turns")


class HealthResponse(BaseModel):
    """Basic liveness response."""
    status: str
    message: str


class FallbackModeRequest(BaseModel):
    """Forced fallback toggle; omit use_fallback to flip the current setting."""
    use_fallback: Optional[bool] = None


class HealthCheckResponse(BaseModel):
    """Result of an on-demand provider health check."""
    healthy: bool
    status: ServiceStatus
