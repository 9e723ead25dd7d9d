"""
Chat endpoint.

POST /chat
"""
from fastapi import APIRouter, Depends

from resilient_ai.core.logging import get_logger
from resilient_ai.models.responses import ChatRequest
from resilient_ai.services.ai.orchestration import (
    ResilientAIService,
    get_resilient_ai_service,
)
from resilient_ai.services.ai.schema import AIResponse

logger = get_logger(__name__)

router = APIRouter()


@router.post("", response_model=AIResponse, response_model_by_alias=True, response_model_exclude_none=True)
async def chat(
    request: ChatRequest,
    service: ResilientAIService = Depends(get_resilient_ai_service),
):
    """
    Answer a chat message.

    Always returns a valid AIResponse: when the providers are unavailable the
    answer comes from the cache or the emergency set.
    """
    logger.info(
        "chat_request_received",
        message_length=len(request.message),
        history_length=len(request.history),
    )
    response = await service.generate_response(
        request.message,
        request.system_prompt,
        request.history,
    )
    logger.info("chat_request_completed", service_state=service.state.value)
    return response
