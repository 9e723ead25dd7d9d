"""
Pydantic models for the resilience layer's public contract.

AIResponse is the canonical output: every value handed back to a caller
satisfies it, and ``response`` is always a plain, non-blank string.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator

from resilient_ai.core.circuit_breaker import CircuitState


class MessageRole(str, Enum):
    """Author of a conversation message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """One entry of the conversation history passed by the caller."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str


class Suggestion(BaseModel):
    """A suggested next action, usually navigation to a section of the app."""

    model_config = ConfigDict(frozen=True)

    text: StrictStr
    path: Optional[StrictStr] = None
    description: Optional[StrictStr] = None


class AIResponse(BaseModel):
    """
    Canonical AI response.

    Schema:
    {
      "response": "non-empty text",
      "sentiment": "neutral | apologetic | helpful | ...",
      "suggestions": [{"text": "...", "path": "/finance", "description": "..."}],
      "followUpQuestions": ["..."],
      "personality": "..."
    }
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    response: StrictStr = Field(..., description="Answer text shown to the user")
    sentiment: Optional[StrictStr] = None
    suggestions: Optional[List[Suggestion]] = None
    follow_up_questions: Optional[List[StrictStr]] = Field(
        default=None,
        alias="followUpQuestions",
    )
    personality: Optional[StrictStr] = None

    @field_validator("response")
    @classmethod
    def validate_response(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("response must not be blank")
        return value


class ServiceState(str, Enum):
    """Which path the service is currently able to answer from."""
    HEALTHY = "HEALTHY"  # Primary provider answering
    DEGRADED = "DEGRADED"  # Fallback provider answering
    LIMITED = "LIMITED"  # Cached answers only
    UNAVAILABLE = "UNAVAILABLE"  # Emergency responses only


class ServiceStatus(BaseModel):
    """Snapshot of the service, derived from the breaker and cache on demand."""

    state: ServiceState
    circuit_state: CircuitState
    health_percentage: float
    last_error: Optional[str] = None
    primary_available: bool
    fallback_available: bool
    cache_available: bool = True
    cache_entries: int = 0
    force_fallback: bool = False


class ServiceEvent(str, Enum):
    """Event kinds a subscriber can listen for."""
    CIRCUIT_STATE_CHANGED = "circuitStateChanged"
    STATE_CHANGED = "stateChanged"


class StateChange(BaseModel):
    """Payload delivered to event subscribers."""

    event: ServiceEvent
    previous: str
    current: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
