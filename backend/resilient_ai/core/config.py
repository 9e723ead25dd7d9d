"""
Environment configuration for the resilience layer.

Variables are read from the process environment, optionally seeded from a
.env file at the repository root.

Providers:
- LLM_PRIMARY_API_BASE / LLM_PRIMARY_API_KEY / LLM_PRIMARY_MODEL
- LLM_FALLBACK_API_BASE / LLM_FALLBACK_API_KEY / LLM_FALLBACK_MODEL
- LLM_TIMEOUT_SECONDS

Resilience:
- AI_CACHE_SIZE, AI_CACHE_TTL_SECONDS, AI_FALLBACK_CACHE_TTL_SECONDS
- AI_FAILURE_THRESHOLD, AI_RESET_TIMEOUT_SECONDS
- AI_HEALTH_CHECK_INTERVAL_SECONDS, AI_SIMILARITY_THRESHOLD
- AI_CACHE_KEY_INCLUDE_ASSISTANT
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from resilient_ai.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://api.openai.com/v1"


def load_env_file(env_path: Optional[Path] = None) -> bool:
    """Load variables from .env without overriding ones already set."""
    if env_path is None:
        env_path = Path(__file__).parent.parent.parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("env_loaded", env_path=str(env_path))
        return True
    logger.debug("env_file_not_found", expected_path=str(env_path))
    return False


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ProviderSettings:
    api_base: str
    api_key: Optional[str]
    model: str


@dataclass(frozen=True)
class AISettings:
    """Resolved configuration for the resilient AI service."""
    primary: ProviderSettings
    fallback: ProviderSettings
    provider_timeout_seconds: float = 30.0
    cache_size: int = 100
    cache_ttl_seconds: float = 3600.0
    fallback_cache_ttl_seconds: float = 1800.0
    failure_threshold: int = 3
    reset_timeout_seconds: float = 60.0
    health_check_interval_seconds: float = 60.0
    similarity_threshold: float = 0.5
    cache_key_include_assistant: bool = False


def get_ai_settings() -> AISettings:
    """Read AISettings from the environment. Malformed numbers raise ValueError."""
    return AISettings(
        primary=ProviderSettings(
            api_base=os.getenv("LLM_PRIMARY_API_BASE", DEFAULT_API_BASE),
            api_key=os.getenv("LLM_PRIMARY_API_KEY") or None,
            model=os.getenv("LLM_PRIMARY_MODEL", "gpt-4o"),
        ),
        fallback=ProviderSettings(
            api_base=os.getenv("LLM_FALLBACK_API_BASE", DEFAULT_API_BASE),
            api_key=os.getenv("LLM_FALLBACK_API_KEY") or None,
            model=os.getenv("LLM_FALLBACK_MODEL", "gpt-4o-mini"),
        ),
        provider_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "30.0") or "30.0"),
        cache_size=int(os.getenv("AI_CACHE_SIZE", "100")),
        cache_ttl_seconds=float(os.getenv("AI_CACHE_TTL_SECONDS", "3600")),
        fallback_cache_ttl_seconds=float(os.getenv("AI_FALLBACK_CACHE_TTL_SECONDS", "1800")),
        failure_threshold=int(os.getenv("AI_FAILURE_THRESHOLD", "3")),
        reset_timeout_seconds=float(os.getenv("AI_RESET_TIMEOUT_SECONDS", "60")),
        health_check_interval_seconds=float(os.getenv("AI_HEALTH_CHECK_INTERVAL_SECONDS", "60")),
        similarity_threshold=float(os.getenv("AI_SIMILARITY_THRESHOLD", "0.5")),
        cache_key_include_assistant=_get_bool("AI_CACHE_KEY_INCLUDE_ASSISTANT", False),
    )
