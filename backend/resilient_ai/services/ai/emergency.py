"""
Emergency responses: the terminal safety net.

A fixed pool of hand-written, already-validated responses used only when the
primary provider, the fallback provider and the cache have all failed. This
module must not do I/O or parsing; selecting a response cannot fail.
"""
import random
from typing import Optional, Tuple

from resilient_ai.services.ai.schema import AIResponse, Suggestion

EMERGENCY_RESPONSES: Tuple[AIResponse, ...] = (
    AIResponse(
        response=(
            "I'm sorry, I'm having trouble connecting to my knowledge services "
            "right now. Please try again in a few moments."
        ),
        sentiment="apologetic",
        suggestions=[
            Suggestion(text="Would you like to explore our main features instead?", path="/"),
        ],
        follow_up_questions=[
            "Is there something specific you'd like me to help you with when I'm back online?",
            "Would you like to try a different question?",
        ],
    ),
    AIResponse(
        response=(
            "I'm experiencing a temporary issue connecting to my knowledge services. "
            "I can still guide you to different sections of the app."
        ),
        sentiment="apologetic",
        suggestions=[
            Suggestion(text="Explore fitness features", path="/fitness"),
            Suggestion(text="Check out financial tools", path="/finance"),
            Suggestion(text="View wellness resources", path="/wellness"),
        ],
        follow_up_questions=[
            "Would you like to try asking a different question?",
            "Is there a specific feature of the app you'd like to explore?",
        ],
    ),
    AIResponse(
        response=(
            "I'm having trouble reaching my advanced reasoning capabilities at the "
            "moment. Let me point you to some useful resources instead."
        ),
        sentiment="helpful",
        suggestions=[
            Suggestion(text="View learning resources", path="/learning"),
            Suggestion(text="Check progress on your goals", path="/dashboard"),
        ],
        follow_up_questions=[
            "What topic are you most interested in exploring today?",
            "Would you like me to show you some of our popular tools?",
        ],
    ),
)


def get_emergency_response(rng: Optional[random.Random] = None) -> AIResponse:
    """Pick one emergency response uniformly at random."""
    return (rng or random).choice(EMERGENCY_RESPONSES)
