"""
Provider payload normalization.

normalize() turns whatever a provider returned into a valid AIResponse and
never raises. It tries an ordered list of repair strategies, each a pure
function returning an AIResponse or None, and takes the first hit:

1. plain_string     - the payload is a non-blank string
2. nested_response  - ``response`` is an object; flatten its text/content/message
3. strict           - the payload already matches the schema
4. response_text    - ``response`` is text but some optional field is malformed
5. alternate_key    - a top-level text/message/content/answer/output string
6. canned apology   - nothing usable was found

Structural repairs (1-2) run before the generic key scan (5) because they
keep more of what the provider meant to say.
"""
import json
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import StrictStr, TypeAdapter, ValidationError

from resilient_ai.core.logging import get_logger
from resilient_ai.core.metrics import record_normalization
from resilient_ai.services.ai.schema import AIResponse, Suggestion

logger = get_logger(__name__)

NESTED_TEXT_KEYS = ("text", "content", "message")
ALTERNATE_TEXT_KEYS = ("text", "message", "content", "answer", "output")

UNPARSEABLE_RESPONSE = AIResponse(
    response=(
        "I'm sorry, I couldn't understand that response. "
        "Could you try asking in a different way?"
    ),
    sentiment="apologetic",
)

_OPTIONAL_FIELD_ADAPTERS: Dict[str, Tuple[str, TypeAdapter]] = {
    # payload key -> (model field, validator)
    "sentiment": ("sentiment", TypeAdapter(Optional[StrictStr])),
    "suggestions": ("suggestions", TypeAdapter(Optional[List[Suggestion]])),
    "followUpQuestions": ("follow_up_questions", TypeAdapter(Optional[List[StrictStr]])),
    "follow_up_questions": ("follow_up_questions", TypeAdapter(Optional[List[StrictStr]])),
    "personality": ("personality", TypeAdapter(Optional[StrictStr])),
}

Repair = Callable[[Any], Optional[AIResponse]]


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _salvage_optional_fields(payload: Mapping) -> Dict[str, Any]:
    """Keep each optional field of payload that validates on its own."""
    fields: Dict[str, Any] = {}
    for key, (field_name, adapter) in _OPTIONAL_FIELD_ADAPTERS.items():
        if key not in payload or field_name in fields:
            continue
        try:
            fields[field_name] = adapter.validate_python(payload[key])
        except ValidationError:
            logger.debug("normalizer_optional_field_dropped", field=key)
    return fields


def _serialize(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def repair_plain_string(payload: Any) -> Optional[AIResponse]:
    """A bare string becomes the response text."""
    if not _is_text(payload):
        return None
    return AIResponse(response=payload, sentiment="neutral")


def repair_nested_response(payload: Any) -> Optional[AIResponse]:
    """Flatten ``{"response": {...}}`` into a string response."""
    if not isinstance(payload, Mapping):
        return None
    nested = payload.get("response")
    if not isinstance(nested, Mapping):
        return None

    text = next(
        (nested[key] for key in NESTED_TEXT_KEYS if _is_text(nested.get(key))),
        None,
    )
    if text is None:
        text = _serialize(dict(nested))
        if not text.strip():
            return None

    return AIResponse(response=text, **_salvage_optional_fields(payload))


def repair_strict(payload: Any) -> Optional[AIResponse]:
    """Accept the payload when it already satisfies the schema."""
    if isinstance(payload, AIResponse):
        return payload
    if not isinstance(payload, Mapping):
        return None
    try:
        return AIResponse.model_validate(dict(payload))
    except ValidationError:
        return None


def repair_response_text(payload: Any) -> Optional[AIResponse]:
    """Keep a usable ``response`` string and drop optional fields that fail validation."""
    if not isinstance(payload, Mapping) or not _is_text(payload.get("response")):
        return None
    return AIResponse(response=payload["response"], **_salvage_optional_fields(payload))


def repair_alternate_key(payload: Any) -> Optional[AIResponse]:
    """Use the first string found under a common alternative key."""
    if not isinstance(payload, Mapping):
        return None
    for key in ALTERNATE_TEXT_KEYS:
        value = payload.get(key)
        if _is_text(value):
            return AIResponse(response=value, **_salvage_optional_fields(payload))
    return None


REPAIRS: Tuple[Tuple[str, Repair], ...] = (
    ("plain_string", repair_plain_string),
    ("nested_response", repair_nested_response),
    ("strict", repair_strict),
    ("response_text", repair_response_text),
    ("alternate_key", repair_alternate_key),
)


def normalize(payload: Any) -> AIResponse:
    """
    Convert any provider payload into a valid AIResponse.

    Total: never raises, always returns a schema-valid response.
    """
    try:
        for strategy, repair in REPAIRS:
            result = repair(payload)
            if result is not None:
                record_normalization(strategy)
                if strategy != "strict":
                    logger.info("normalizer_payload_repaired", strategy=strategy)
                return result
    except Exception as e:
        logger.error(
            "normalizer_unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )

    record_normalization("unparseable")
    logger.warning(
        "normalizer_payload_unusable",
        payload_type=type(payload).__name__,
    )
    return UNPARSEABLE_RESPONSE
