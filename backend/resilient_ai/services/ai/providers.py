"""
AI provider adapters.

Design constraints:
- Do NOT use cloud-specific SDKs
- Use HTTP client (httpx) against an OpenAI-compatible API
- Providers raise on failure; interpreting failures is the circuit
  breaker's job, never the provider's

ProtectedProvider wraps any provider by composition: it bounds the call,
normalizes the payload into an AIResponse and records metrics, logs and a
tracing span for every attempt.
"""
import asyncio
import json
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from resilient_ai.core.logging import get_logger
from resilient_ai.core.metrics import record_provider_request
from resilient_ai.core.tracing import (
    StatusCode,
    get_tracer,
    record_exception,
    set_span_attribute,
    set_span_status,
)
from resilient_ai.services.ai.normalizer import normalize
from resilient_ai.services.ai.schema import AIResponse, Message

logger = get_logger(__name__)


class ProviderError(Exception):
    """Base error for provider adapters."""


class ProviderNotConfiguredError(ProviderError):
    """Raised when a provider is called without the credentials it needs."""


class ProviderResponseError(ProviderError):
    """Raised when a provider answers with an empty or unreadable body."""


class AIProvider(Protocol):
    """Anything that can answer a chat message, possibly with a messy payload."""

    async def generate_response(
        self,
        message: str,
        system_prompt: str,
        history: Sequence[Message],
    ) -> Any:
        ...


class ProtectedProvider:
    """
    Wrap a provider so every call yields a normalized AIResponse or raises.

    Args:
        provider: The wrapped provider
        name: Label used in logs, metrics and spans ("primary", "fallback")
        timeout_seconds: Optional bound on each call; a timeout raises
            asyncio.TimeoutError and therefore counts as a failure
    """

    def __init__(
        self,
        provider: AIProvider,
        name: str,
        timeout_seconds: Optional[float] = None,
    ):
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.provider = provider
        self.name = name
        self.timeout_seconds = timeout_seconds

    async def generate_response(
        self,
        message: str,
        system_prompt: str,
        history: Sequence[Message],
    ) -> AIResponse:
        tracer = get_tracer()
        with tracer.start_as_current_span(f"ai.provider.{self.name}"):
            set_span_attribute("ai.provider", self.name)
            start = time.time()
            try:
                call = self.provider.generate_response(message, system_prompt, history)
                if self.timeout_seconds is not None:
                    payload = await asyncio.wait_for(call, timeout=self.timeout_seconds)
                else:
                    payload = await call
            except asyncio.TimeoutError as exc:
                duration = time.time() - start
                record_provider_request(self.name, "timeout", duration)
                record_exception(exc)
                set_span_status(StatusCode.ERROR, "timeout")
                logger.warning(
                    "ai_provider_timeout",
                    provider=self.name,
                    timeout_seconds=self.timeout_seconds,
                )
                raise
            except Exception as exc:
                duration = time.time() - start
                record_provider_request(self.name, "error", duration)
                record_exception(exc)
                set_span_status(StatusCode.ERROR, str(exc))
                logger.warning(
                    "ai_provider_failed",
                    provider=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    latency_ms=int(duration * 1000),
                )
                raise

            duration = time.time() - start
            record_provider_request(self.name, "success", duration)
            set_span_attribute("ai.provider.latency_ms", int(duration * 1000))
            logger.debug(
                "ai_provider_succeeded",
                provider=self.name,
                latency_ms=int(duration * 1000),
            )
            return normalize(payload)


class OpenAICompatibleProvider:
    """Async HTTP provider for an OpenAI-compatible /chat/completions API."""

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        model: str,
        timeout_seconds: float = 30.0,
        temperature: float = 0.7,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _post(self, path: str, json_payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        url = f"{self.api_base}{path}"
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, headers=headers, json=json_payload)

    def build_messages(
        self,
        message: str,
        system_prompt: str,
        history: Sequence[Message],
    ) -> List[Dict[str, str]]:
        """OpenAI-style messages: system prompt, then history, then the user turn."""
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m.role.value, "content": m.content} for m in history)
        messages.append({"role": "user", "content": message})
        return messages

    async def generate_response(
        self,
        message: str,
        system_prompt: str,
        history: Sequence[Message],
    ) -> Any:
        """
        Call the chat completion endpoint in JSON mode.

        Returns:
            The decoded JSON payload from choices[0].message.content, which may
            or may not match the AIResponse schema.

        Raises:
            ProviderNotConfiguredError: no API key is configured
            ProviderResponseError: the completion is empty or not JSON
            httpx.HTTPError: transport errors and non-2xx statuses
        """
        if not self.configured:
            raise ProviderNotConfiguredError(f"API key not configured for model {self.model}")

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(message, system_prompt, history),
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }

        response = await self._post("/chat/completions", json_payload=payload)
        response.raise_for_status()
        data = response.json()

        # OpenAI-compatible shape: choices[0].message.content is a JSON string.
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderResponseError(f"Malformed completion from {self.model}") from exc
        if not content:
            raise ProviderResponseError(f"Empty completion from {self.model}")

        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise ProviderResponseError(f"Completion from {self.model} is not JSON") from exc
