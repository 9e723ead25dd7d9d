"""
Resilient AI orchestration.

Every call to generate_response() returns a schema-valid AIResponse, walking
the degradation chain until something answers:

1. Exact cache hit                  -> cached response (state unchanged)
2. Primary provider via the breaker -> cached with the default TTL
3. Fallback provider                -> cached with a shorter TTL, DEGRADED
4. Similar cached response          -> LIMITED
5. Emergency response               -> UNAVAILABLE

While fallback mode is forced, step 2 is skipped and the breaker is left alone.
The unparseable-payload apology is returned but never cached.

The breaker, cache and providers are injected at construction and owned by
the service. Nothing here raises to the caller.
"""
import asyncio
import random
import time
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from resilient_ai.core.circuit_breaker import CircuitBreaker, CircuitState
from resilient_ai.core.config import AISettings, get_ai_settings
from resilient_ai.core.logging import get_logger
from resilient_ai.core.metrics import (
    record_health_check,
    record_response_path,
    set_service_state,
)
from resilient_ai.core.tracing import (
    StatusCode,
    get_tracer,
    record_exception,
    set_span_attribute,
    set_span_status,
)
from resilient_ai.services.ai.cache import ResponseCache, build_cache_key
from resilient_ai.services.ai.emergency import get_emergency_response
from resilient_ai.services.ai.normalizer import UNPARSEABLE_RESPONSE
from resilient_ai.services.ai.providers import (
    AIProvider,
    OpenAICompatibleProvider,
    ProtectedProvider,
)
from resilient_ai.services.ai.schema import (
    AIResponse,
    Message,
    MessageRole,
    ServiceEvent,
    ServiceState,
    ServiceStatus,
    StateChange,
)

logger = get_logger(__name__)

HEALTH_CHECK_MESSAGE = "Are you working properly?"
HEALTH_CHECK_SYSTEM_PROMPT = (
    "You are a helpful assistant. Keep your response very short and simple."
)

Listener = Callable[[StateChange], None]


class ResilientAIService:
    """
    Degradation chain around a primary and a fallback AI provider.

    Service state is driven by two sources: the breaker (CLOSED -> HEALTHY
    unless fallback mode is forced, otherwise DEGRADED) and annotations forced
    by the fallback path (DEGRADED, LIMITED, UNAVAILABLE).
    """

    def __init__(
        self,
        primary: AIProvider,
        fallback: AIProvider,
        cache_size: int = 100,
        cache_ttl_seconds: float = 3600.0,
        fallback_cache_ttl_seconds: float = 1800.0,
        failure_threshold: int = 3,
        reset_timeout_seconds: float = 60.0,
        health_check_interval_seconds: float = 60.0,
        similarity_threshold: float = 0.5,
        provider_timeout_seconds: Optional[float] = None,
        cache_key_roles: Iterable[MessageRole] = (MessageRole.USER,),
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        if fallback_cache_ttl_seconds <= 0:
            raise ValueError("fallback_cache_ttl_seconds must be positive")
        if health_check_interval_seconds <= 0:
            raise ValueError("health_check_interval_seconds must be positive")

        self.primary = ProtectedProvider(primary, "primary", provider_timeout_seconds)
        self.fallback = ProtectedProvider(fallback, "fallback", provider_timeout_seconds)
        self.cache = ResponseCache(
            max_size=cache_size,
            default_ttl_seconds=cache_ttl_seconds,
            similarity_threshold=similarity_threshold,
            clock=clock,
        )
        self.circuit_breaker = CircuitBreaker(
            name="ai_primary",
            failure_threshold=failure_threshold,
            reset_timeout_seconds=reset_timeout_seconds,
            on_state_change=self._on_circuit_state_change,
            clock=clock,
        )
        self.fallback_cache_ttl_seconds = fallback_cache_ttl_seconds
        self.health_check_interval_seconds = health_check_interval_seconds
        self.cache_key_roles = tuple(cache_key_roles)
        self._rng = rng

        self._state = ServiceState.HEALTHY
        self._last_error: Optional[str] = None
        self._force_fallback = False
        self._state_lock = Lock()
        self._listeners: Dict[ServiceEvent, List[Listener]] = {event: [] for event in ServiceEvent}
        self._health_task: Optional[asyncio.Task] = None

        set_service_state(self._state.value)

    @property
    def state(self) -> ServiceState:
        with self._state_lock:
            return self._state

    @property
    def force_fallback(self) -> bool:
        with self._state_lock:
            return self._force_fallback

    @property
    def last_error(self) -> Optional[str]:
        with self._state_lock:
            return self._last_error

    async def generate_response(
        self,
        message: str,
        system_prompt: str,
        history: Sequence[Message] = (),
    ) -> AIResponse:
        """
        Answer message, degrading through fallback, cache and emergency paths.

        Never raises; the result always satisfies the AIResponse schema.
        """
        tracer = get_tracer()
        with tracer.start_as_current_span("ai.generate_response"):
            try:
                cache_key = build_cache_key(message, history, self.cache_key_roles)

                cached = self.cache.get(cache_key)
                if cached is not None:
                    logger.info("ai_response_from_cache", path="cache")
                    return self._respond(cached, "cache")

                if self.force_fallback:
                    logger.info("ai_primary_bypassed", reason="forced_fallback")
                    return await self._fallback_chain(cache_key, message, system_prompt, history)

                async def primary_attempt() -> AIResponse:
                    response = await self.primary.generate_response(message, system_prompt, history)
                    if response is not UNPARSEABLE_RESPONSE:
                        self.cache.set(cache_key, response)
                    self._update_service_state()
                    return self._respond(response, "primary")

                async def fallback_attempt() -> AIResponse:
                    return await self._fallback_chain(cache_key, message, system_prompt, history)

                return await self.circuit_breaker.execute(primary_attempt, fallback_attempt)

            except Exception as e:
                record_exception(e)
                set_span_status(StatusCode.ERROR, str(e))
                logger.error(
                    "ai_generate_response_unexpected_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                self._set_last_error(str(e) or type(e).__name__)
                self._update_service_state(ServiceState.UNAVAILABLE)
                return self._respond(get_emergency_response(self._rng), "emergency")

    async def _fallback_chain(
        self,
        cache_key: str,
        message: str,
        system_prompt: str,
        history: Sequence[Message],
    ) -> AIResponse:
        """Fallback provider, then a similar cached answer, then an emergency response."""
        try:
            response = await self.fallback.generate_response(message, system_prompt, history)
        except Exception as fallback_error:
            logger.warning(
                "ai_fallback_failed",
                error=str(fallback_error),
                error_type=type(fallback_error).__name__,
            )

            similar = self.cache.find_similar(message)
            if similar is not None:
                self._update_service_state(ServiceState.LIMITED)
                return self._respond(similar, "similar_cache")

            self._set_last_error(str(fallback_error) or type(fallback_error).__name__)
            self._update_service_state(ServiceState.UNAVAILABLE)
            logger.error("ai_all_paths_failed", error=self.last_error)
            return self._respond(get_emergency_response(self._rng), "emergency")

        if response is not UNPARSEABLE_RESPONSE:
            self.cache.set(cache_key, response, ttl_seconds=self.fallback_cache_ttl_seconds)
        self._update_service_state(ServiceState.DEGRADED)
        return self._respond(response, "fallback")

    def _respond(self, response: AIResponse, path: str) -> AIResponse:
        record_response_path(path)
        set_span_attribute("ai.response_path", path)
        return response

    async def check_health(self) -> bool:
        """
        Probe the primary provider directly, bypassing the breaker.

        Success while not HEALTHY resets the breaker and restores HEALTHY.
        Failure is logged only; it never counts toward the breaker.
        """
        try:
            await self.primary.generate_response(
                HEALTH_CHECK_MESSAGE,
                HEALTH_CHECK_SYSTEM_PROMPT,
                [],
            )
        except Exception as e:
            record_health_check(False)
            logger.warning(
                "ai_health_check_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        record_health_check(True)
        if self.state != ServiceState.HEALTHY:
            logger.info("ai_health_check_recovered", previous_state=self.state.value)
            self.circuit_breaker.reset()
            # Forced fallback mode keeps the service DEGRADED
            self._update_service_state()
        return True

    def start(self) -> None:
        """
        Start the periodic health check and the breaker's idle timer.

        Must be called from a running event loop; repeated calls are no-ops.
        """
        self.circuit_breaker.start()
        if self._health_task is None or self._health_task.done():
            loop = asyncio.get_running_loop()
            self._health_task = loop.create_task(self._run_health_checks())
            logger.info(
                "ai_service_started",
                health_check_interval_seconds=self.health_check_interval_seconds,
            )

    def dispose(self) -> None:
        """Cancel background timers. Safe to call multiple times."""
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None
            logger.info("ai_service_disposed")
        self.circuit_breaker.dispose()

    def get_status(self) -> ServiceStatus:
        with self._state_lock:
            state = self._state
            last_error = self._last_error
        return ServiceStatus(
            state=state,
            circuit_state=self.circuit_breaker.state,
            health_percentage=self.circuit_breaker.health_percentage,
            last_error=last_error,
            primary_available=state == ServiceState.HEALTHY,
            fallback_available=state != ServiceState.UNAVAILABLE,
            cache_available=True,
            cache_entries=len(self.cache),
            force_fallback=self.force_fallback,
        )

    def set_force_fallback(self, enabled: Optional[bool] = None) -> bool:
        """
        Force every request past the primary provider, or stop forcing it.

        With enabled=None the current setting is toggled. Returns the new setting.
        """
        with self._state_lock:
            if enabled is None:
                enabled = not self._force_fallback
            self._force_fallback = enabled

        logger.info("ai_force_fallback_changed", force_fallback=enabled)
        self._update_service_state()
        return enabled

    def reset(self) -> None:
        """Manual override: close the breaker, recompute state, clear last error."""
        self.circuit_breaker.reset()
        self._update_service_state()
        self._set_last_error(None)
        logger.info("ai_service_reset")

    def subscribe(self, event: ServiceEvent, listener: Listener) -> Callable[[], None]:
        """
        Register listener for event.

        Returns a function that removes the listener again.
        """
        event = ServiceEvent(event)
        with self._state_lock:
            self._listeners[event].append(listener)

        def unsubscribe() -> None:
            with self._state_lock:
                if listener in self._listeners[event]:
                    self._listeners[event].remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def _set_last_error(self, error: Optional[str]) -> None:
        with self._state_lock:
            self._last_error = error

    def _update_service_state(self, forced: Optional[ServiceState] = None) -> None:
        if forced is not None:
            new_state = forced
        elif self.circuit_breaker.state == CircuitState.CLOSED and not self.force_fallback:
            new_state = ServiceState.HEALTHY
        else:
            new_state = ServiceState.DEGRADED

        with self._state_lock:
            previous = self._state
            if previous == new_state:
                return
            self._state = new_state

        set_service_state(new_state.value)
        logger.info(
            "ai_service_state_changed",
            from_state=previous.value,
            to_state=new_state.value,
        )
        self._emit(StateChange(
            event=ServiceEvent.STATE_CHANGED,
            previous=previous.value,
            current=new_state.value,
        ))

    def _on_circuit_state_change(self, previous: CircuitState, current: CircuitState) -> None:
        self._update_service_state()
        self._emit(StateChange(
            event=ServiceEvent.CIRCUIT_STATE_CHANGED,
            previous=previous.value,
            current=current.value,
        ))

    def _emit(self, change: StateChange) -> None:
        with self._state_lock:
            listeners = list(self._listeners[change.event])
        for listener in listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error(
                    "ai_service_listener_failed",
                    service_event=change.event.value,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    async def _run_health_checks(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval_seconds)
            await self.check_health()


def create_resilient_ai_service(settings: Optional[AISettings] = None) -> ResilientAIService:
    """Build a service wired to the OpenAI-compatible providers in settings."""
    if settings is None:
        settings = get_ai_settings()

    roles = [MessageRole.USER]
    if settings.cache_key_include_assistant:
        roles.append(MessageRole.ASSISTANT)

    primary = OpenAICompatibleProvider(
        api_base=settings.primary.api_base,
        api_key=settings.primary.api_key,
        model=settings.primary.model,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    fallback = OpenAICompatibleProvider(
        api_base=settings.fallback.api_base,
        api_key=settings.fallback.api_key,
        model=settings.fallback.model,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    if not primary.configured:
        logger.warning("ai_primary_provider_not_configured", model=primary.model)
    if not fallback.configured:
        logger.warning("ai_fallback_provider_not_configured", model=fallback.model)

    return ResilientAIService(
        primary=primary,
        fallback=fallback,
        cache_size=settings.cache_size,
        cache_ttl_seconds=settings.cache_ttl_seconds,
        fallback_cache_ttl_seconds=settings.fallback_cache_ttl_seconds,
        failure_threshold=settings.failure_threshold,
        reset_timeout_seconds=settings.reset_timeout_seconds,
        health_check_interval_seconds=settings.health_check_interval_seconds,
        similarity_threshold=settings.similarity_threshold,
        provider_timeout_seconds=settings.provider_timeout_seconds,
        cache_key_roles=roles,
    )


_resilient_ai_service: Optional[ResilientAIService] = None


def get_resilient_ai_service() -> ResilientAIService:
    """Global singleton accessor (the only process-wide instance)."""
    global _resilient_ai_service
    if _resilient_ai_service is None:
        _resilient_ai_service = create_resilient_ai_service()
    return _resilient_ai_service


def close_resilient_ai_service() -> None:
    """Dispose and drop the global instance."""
    global _resilient_ai_service
    if _resilient_ai_service is not None:
        _resilient_ai_service.dispose()
        _resilient_ai_service = None
