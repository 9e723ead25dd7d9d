"""
Unit tests for ResilientAIService.

Covers the degradation chain end to end:
- primary answers (HEALTHY)
- fallback answers (DEGRADED)
- a similar cached answer is served (LIMITED)
- an emergency response is served (UNAVAILABLE)

These tests use in-memory stub providers only and do NOT perform real HTTP calls.
"""
import asyncio
import random

import pytest

from resilient_ai.core.circuit_breaker import CircuitState
from resilient_ai.services.ai.emergency import EMERGENCY_RESPONSES
from resilient_ai.services.ai.normalizer import UNPARSEABLE_RESPONSE
from resilient_ai.services.ai.orchestration import (
    HEALTH_CHECK_MESSAGE,
    ResilientAIService,
)
from resilient_ai.services.ai.schema import (
    AIResponse,
    Message,
    MessageRole,
    ServiceEvent,
    ServiceState,
)


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubProvider:
    """Provider that answers with a fixed payload or raises."""

    def __init__(self, payload=None, error: Exception = None):
        self.payload = payload
        self.error = error
        self.calls = []

    async def generate_response(self, message, system_prompt, history):
        self.calls.append(message)
        if self.error is not None:
            raise self.error
        return self.payload


def make_service(primary=None, fallback=None, clock=None, **kwargs):
    return ResilientAIService(
        primary=primary or StubProvider({"response": "primary answer"}),
        fallback=fallback or StubProvider({"response": "fallback answer"}),
        clock=clock or FakeClock(),
        rng=random.Random(1),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_primary_success_is_returned_and_cached():
    primary = StubProvider({"response": "primary answer", "sentiment": "helpful"})
    service = make_service(primary=primary)

    first = await service.generate_response("hello", "system", [])
    second = await service.generate_response("hello", "system", [])

    assert first.response == "primary answer"
    assert second == first
    assert primary.calls == ["hello"]
    assert service.state == ServiceState.HEALTHY


@pytest.mark.asyncio
async def test_primary_payload_is_normalized():
    service = make_service(primary=StubProvider("just text"))

    result = await service.generate_response("hello", "system", [])

    assert result == AIResponse(response="just text", sentiment="neutral")


@pytest.mark.asyncio
async def test_fallback_used_when_primary_fails():
    clock = FakeClock()
    fallback = StubProvider({"response": "fallback answer"})
    service = make_service(
        primary=StubProvider(error=RuntimeError("primary down")),
        fallback=fallback,
        clock=clock,
    )

    result = await service.generate_response("hello", "system", [])

    assert result.response == "fallback answer"
    assert service.state == ServiceState.DEGRADED
    assert service.circuit_breaker.state == CircuitState.CLOSED
    assert service.circuit_breaker.failure_count == 1

    # Cached with the shorter fallback TTL
    assert service.cache.get("hello") == result
    clock.advance(1800)
    assert service.cache.get("hello") is None


@pytest.mark.asyncio
async def test_similar_cached_response_when_both_providers_fail():
    primary = StubProvider({"response": "how to save money"})
    fallback = StubProvider(error=RuntimeError("fallback down"))
    service = make_service(primary=primary, fallback=fallback)

    cached = await service.generate_response("how can I save money", "system", [])

    primary.error = RuntimeError("primary down")
    result = await service.generate_response("how can I save more money", "system", [])

    assert result == cached
    assert service.state == ServiceState.LIMITED


@pytest.mark.asyncio
async def test_emergency_response_when_everything_fails():
    service = make_service(
        primary=StubProvider(error=RuntimeError("primary down")),
        fallback=StubProvider(error=RuntimeError("fallback down")),
    )

    result = await service.generate_response("hello", "system", [])

    assert result in EMERGENCY_RESPONSES
    assert service.state == ServiceState.UNAVAILABLE
    assert service.last_error == "fallback down"
    assert service.get_status().last_error == "fallback down"


@pytest.mark.asyncio
async def test_breaker_opens_and_skips_primary():
    primary = StubProvider(error=RuntimeError("primary down"))
    service = make_service(primary=primary, failure_threshold=3)

    for i in range(4):
        await service.generate_response(f"question {i}", "system", [])

    assert len(primary.calls) == 3
    assert service.circuit_breaker.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_recovery_after_reset_timeout():
    clock = FakeClock()
    primary = StubProvider(error=RuntimeError("primary down"))
    service = make_service(primary=primary, clock=clock, failure_threshold=1)

    await service.generate_response("first", "system", [])
    assert service.circuit_breaker.state == CircuitState.OPEN

    primary.error = None
    clock.advance(60)
    result = await service.generate_response("second", "system", [])

    assert result.response == "primary answer"
    assert service.circuit_breaker.state == CircuitState.CLOSED
    assert service.state == ServiceState.HEALTHY


@pytest.mark.asyncio
async def test_unexpected_error_yields_emergency_response(monkeypatch):
    service = make_service()

    def broken_get(key):
        raise RuntimeError("cache exploded")

    monkeypatch.setattr(service.cache, "get", broken_get)

    result = await service.generate_response("hello", "system", [])

    assert result in EMERGENCY_RESPONSES
    assert service.state == ServiceState.UNAVAILABLE
    assert service.last_error == "cache exploded"


@pytest.mark.asyncio
async def test_cache_key_uses_recent_user_history():
    primary = StubProvider({"response": "answer"})
    service = make_service(primary=primary)
    history = [
        Message(role=MessageRole.USER, content="one"),
        Message(role=MessageRole.ASSISTANT, content="reply"),
        Message(role=MessageRole.USER, content="two"),
    ]

    await service.generate_response("three", "system", history)

    assert service.cache.get("one | two | three") is not None


@pytest.mark.asyncio
async def test_health_check_failure_does_not_trip_breaker():
    service = make_service(
        primary=StubProvider(error=RuntimeError("primary down")),
        failure_threshold=1,
    )

    assert await service.check_health() is False
    assert service.circuit_breaker.state == CircuitState.CLOSED
    assert service.circuit_breaker.failure_count == 0
    assert service.state == ServiceState.HEALTHY


@pytest.mark.asyncio
async def test_health_check_success_restores_healthy():
    primary = StubProvider(error=RuntimeError("primary down"))
    service = make_service(
        primary=primary,
        fallback=StubProvider(error=RuntimeError("fallback down")),
        failure_threshold=1,
    )
    await service.generate_response("hello", "system", [])
    assert service.state == ServiceState.UNAVAILABLE
    assert service.circuit_breaker.state == CircuitState.OPEN

    primary.error = None
    assert await service.check_health() is True

    assert primary.calls[-1] == HEALTH_CHECK_MESSAGE
    assert service.circuit_breaker.state == CircuitState.CLOSED
    assert service.state == ServiceState.HEALTHY


@pytest.mark.asyncio
async def test_subscribers_receive_events():
    service = make_service(
        primary=StubProvider(error=RuntimeError("primary down")),
        failure_threshold=1,
    )
    circuit_events = []
    state_events = []
    service.subscribe(ServiceEvent.CIRCUIT_STATE_CHANGED, circuit_events.append)
    unsubscribe = service.subscribe(ServiceEvent.STATE_CHANGED, state_events.append)

    await service.generate_response("hello", "system", [])

    assert [(e.previous, e.current) for e in circuit_events] == [("closed", "open")]
    assert [(e.previous, e.current) for e in state_events] == [("HEALTHY", "DEGRADED")]

    unsubscribe()
    service.reset()

    assert len(state_events) == 1
    assert circuit_events[-1].current == "closed"


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_requests():
    service = make_service(
        primary=StubProvider(error=RuntimeError("primary down")),
        failure_threshold=1,
    )

    def broken_listener(change):
        raise RuntimeError("listener broke")

    service.subscribe(ServiceEvent.STATE_CHANGED, broken_listener)

    result = await service.generate_response("hello", "system", [])

    assert result.response == "fallback answer"


@pytest.mark.asyncio
async def test_reset_clears_error_and_closes_breaker():
    service = make_service(
        primary=StubProvider(error=RuntimeError("primary down")),
        fallback=StubProvider(error=RuntimeError("fallback down")),
        failure_threshold=1,
    )
    await service.generate_response("hello", "system", [])

    service.reset()

    status = service.get_status()
    assert status.state == ServiceState.HEALTHY
    assert status.circuit_state == CircuitState.CLOSED
    assert status.last_error is None


@pytest.mark.asyncio
async def test_get_status_reports_availability():
    service = make_service()
    await service.generate_response("hello", "system", [])

    status = service.get_status()

    assert status.state == ServiceState.HEALTHY
    assert status.primary_available is True
    assert status.fallback_available is True
    assert status.cache_available is True
    assert status.cache_entries == 1
    assert status.health_percentage == 100.0


@pytest.mark.asyncio
async def test_start_and_dispose_are_idempotent():
    service = make_service(health_check_interval_seconds=0.01)

    service.start()
    service.start()
    await asyncio.sleep(0.03)
    service.dispose()
    service.dispose()

    assert service._health_task is None
    assert service.circuit_breaker._timer_task is None


@pytest.mark.asyncio
async def test_concurrent_requests_all_return_valid_responses():
    service = make_service(
        primary=StubProvider(error=RuntimeError("primary down")),
        failure_threshold=2,
    )

    results = await asyncio.gather(
        *(service.generate_response(f"q{i}", "system", []) for i in range(20))
    )

    assert all(isinstance(r, AIResponse) for r in results)
    assert all(r.response == "fallback answer" for r in results)
    assert service.circuit_breaker.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_unparseable_primary_payload_is_not_cached():
    primary = StubProvider({"unrelated": 1})
    service = make_service(primary=primary)

    first = await service.generate_response("hello", "system", [])
    primary.payload = {"response": "real answer"}
    second = await service.generate_response("hello", "system", [])

    assert first == UNPARSEABLE_RESPONSE
    assert second.response == "real answer"
    assert len(primary.calls) == 2


@pytest.mark.asyncio
async def test_unparseable_fallback_payload_is_not_cached():
    service = make_service(
        primary=StubProvider(error=RuntimeError("primary down")),
        fallback=StubProvider(None),
    )

    result = await service.generate_response("hello", "system", [])

    assert result == UNPARSEABLE_RESPONSE
    assert len(service.cache) == 0


@pytest.mark.asyncio
async def test_forced_fallback_skips_primary_and_breaker():
    primary = StubProvider({"response": "primary answer"})
    service = make_service(primary=primary)

    assert service.set_force_fallback(True) is True
    assert service.state == ServiceState.DEGRADED

    result = await service.generate_response("hello", "system", [])

    assert result.response == "fallback answer"
    assert primary.calls == []
    assert service.circuit_breaker.failure_count == 0
    assert service.get_status().force_fallback is True


@pytest.mark.asyncio
async def test_force_fallback_toggles_without_argument():
    primary = StubProvider({"response": "primary answer"})
    service = make_service(primary=primary)

    assert service.set_force_fallback() is True
    assert service.set_force_fallback() is False
    assert service.state == ServiceState.HEALTHY

    result = await service.generate_response("hello", "system", [])

    assert result.response == "primary answer"
    assert service.get_status().force_fallback is False


@pytest.mark.asyncio
async def test_health_check_keeps_forced_fallback_degraded():
    service = make_service()
    service.set_force_fallback(True)

    assert await service.check_health() is True
    assert service.state == ServiceState.DEGRADED
    assert service.circuit_breaker.state == CircuitState.CLOSED
