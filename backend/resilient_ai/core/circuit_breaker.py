"""
Circuit breaker for AI provider calls.

Three-state failure isolation around a (primary, fallback) pair:
- CLOSED: calls go to primary; consecutive failures are counted
- OPEN: calls go straight to fallback until reset_timeout_seconds has passed
  since the last failure
- HALF_OPEN: exactly one primary probe is admitted; success closes the
  circuit, failure re-opens it

Only an exception raised by primary counts as a failure. The breaker never
looks at response content.
"""
import asyncio
import time
from collections import deque
from enum import Enum
from threading import Lock
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from resilient_ai.core.logging import get_logger
from resilient_ai.core.metrics import record_circuit_transition, set_circuit_state

logger = get_logger(__name__)

T = TypeVar("T")

Transition = Tuple["CircuitState", "CircuitState"]


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, route to fallback
    HALF_OPEN = "half_open"  # Probing recovery


class CircuitBreaker:
    """
    Count-based circuit breaker wrapping an async primary/fallback pair.

    All state mutation happens under a single lock that is never held across
    an await, so concurrent callers cannot under- or over-count failures.

    Configuration:
    - failure_threshold: consecutive primary failures that open the circuit
    - reset_timeout_seconds: how long the circuit stays open before probing
    - health_check_interval_seconds: period of the idle-time re-evaluation timer
    - time_window_seconds: window used for health_percentage
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_timeout_seconds: float = 60.0,
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
        health_check_interval_seconds: float = 10.0,
        time_window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if reset_timeout_seconds < 0:
            raise ValueError("reset_timeout_seconds must not be negative")
        if health_check_interval_seconds <= 0:
            raise ValueError("health_check_interval_seconds must be positive")
        if time_window_seconds <= 0:
            raise ValueError("time_window_seconds must be positive")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.health_check_interval_seconds = health_check_interval_seconds
        self.time_window_seconds = time_window_seconds
        self.on_state_change = on_state_change
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._probe_in_flight = False
        self._request_history: deque = deque()  # (timestamp, success: bool)
        self._timer_task: Optional[asyncio.Task] = None

        set_circuit_state(self.name, self._state.value)

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        """Consecutive primary failures counted while CLOSED."""
        with self._lock:
            return self._failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        """Clock reading of the most recent counted failure."""
        with self._lock:
            return self._last_failure_time

    @property
    def health_percentage(self) -> float:
        """Primary success rate over the recent time window, as a percentage."""
        with self._lock:
            return self._health_percentage()

    async def execute(
        self,
        primary: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run primary under circuit protection, or fallback when it is unavailable.

        Returns the primary's result on success and the fallback's result
        otherwise. Exceptions raised by fallback itself propagate unchanged.
        """
        transitions: List[Transition] = []
        is_probe = False

        with self._lock:
            if self._state == CircuitState.OPEN and self._reset_timeout_elapsed():
                transitions.append(self._transition(CircuitState.HALF_OPEN))

            if self._state == CircuitState.CLOSED:
                attempt_primary = True
            elif self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                attempt_primary = True
                is_probe = True
            else:
                attempt_primary = False
            state = self._state

        self._notify(transitions)

        if not attempt_primary:
            logger.debug(
                "circuit_breaker_short_circuited",
                circuit_breaker=self.name,
                state=state.value,
            )
            return await fallback()

        settled = False
        failed = False
        try:
            result = await primary()
            settled = True
        except Exception as exc:
            settled = True
            failed = True
            self._on_failure(is_probe, exc)
        finally:
            # Cancellation or any other BaseException settles nothing
            if is_probe and not settled:
                self._release_probe()

        if failed:
            return await fallback()

        self._on_success(is_probe)
        return result

    def evaluate(self) -> CircuitState:
        """
        Re-check OPEN -> HALF_OPEN eligibility without a call.

        Used by the idle timer so that a breaker with no traffic still becomes
        ready to probe once the reset timeout has elapsed.
        """
        transitions: List[Transition] = []
        with self._lock:
            if self._state == CircuitState.OPEN and self._reset_timeout_elapsed():
                transitions.append(self._transition(CircuitState.HALF_OPEN))
            state = self._state
        self._notify(transitions)
        return state

    def reset(self) -> None:
        """Force the circuit CLOSED with zero failures (manual override)."""
        transitions: List[Transition] = []
        with self._lock:
            self._failure_count = 0
            self._last_failure_time = None
            self._probe_in_flight = False
            if self._state != CircuitState.CLOSED:
                transitions.append(self._transition(CircuitState.CLOSED))
        logger.info("circuit_breaker_reset", circuit_breaker=self.name)
        self._notify(transitions)

    def start(self) -> None:
        """
        Start the idle re-evaluation timer.

        Must be called from a running event loop. Calling it again while the
        timer is alive is a no-op.
        """
        if self._timer_task is None or self._timer_task.done():
            loop = asyncio.get_running_loop()
            self._timer_task = loop.create_task(self._run_timer())

    def dispose(self) -> None:
        """Cancel the idle timer. Safe to call multiple times."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    def get_metrics(self) -> dict:
        """Get circuit breaker metrics for monitoring."""
        with self._lock:
            self._prune_history(self._clock())
            failures = sum(1 for _, success in self._request_history if not success)
            total = len(self._request_history)
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "last_failure_time": self._last_failure_time,
                "recent_requests": total,
                "recent_failures": failures,
                "error_rate": failures / total if total > 0 else 0.0,
                "health_percentage": self._health_percentage(),
            }

    # ------------------------------------------------------------------
    # Internals (callers hold self._lock unless stated otherwise)
    # ------------------------------------------------------------------

    def _on_success(self, is_probe: bool) -> None:
        transitions: List[Transition] = []
        with self._lock:
            self._record_result(True)
            if is_probe:
                self._probe_in_flight = False
                if self._state == CircuitState.HALF_OPEN:
                    self._failure_count = 0
                    transitions.append(self._transition(CircuitState.CLOSED))
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0
        self._notify(transitions)

    def _on_failure(self, is_probe: bool, exc: Exception) -> None:
        transitions: List[Transition] = []
        with self._lock:
            now = self._clock()
            self._record_result(False)
            if is_probe:
                self._probe_in_flight = False
                if self._state == CircuitState.HALF_OPEN:
                    self._last_failure_time = now
                    transitions.append(self._transition(CircuitState.OPEN))
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                self._last_failure_time = now
                if self._failure_count >= self.failure_threshold:
                    transitions.append(self._transition(CircuitState.OPEN))
            failure_count = self._failure_count

        logger.warning(
            "circuit_breaker_primary_failed",
            circuit_breaker=self.name,
            probe=is_probe,
            failure_count=failure_count,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        self._notify(transitions)

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    def _reset_timeout_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.reset_timeout_seconds

    def _transition(self, to_state: CircuitState) -> Transition:
        from_state = self._state
        self._state = to_state
        record_circuit_transition(self.name, from_state.value, to_state.value)

        log = logger.warning if to_state == CircuitState.OPEN else logger.info
        log(
            f"circuit_breaker_{to_state.value}",
            circuit_breaker=self.name,
            from_state=from_state.value,
            to_state=to_state.value,
            failure_count=self._failure_count,
        )
        return from_state, to_state

    def _notify(self, transitions: List[Transition]) -> None:
        """Call the observer for each transition. Never called under the lock."""
        if self.on_state_change is None:
            return
        for from_state, to_state in transitions:
            try:
                self.on_state_change(from_state, to_state)
            except Exception as e:
                logger.error(
                    "circuit_breaker_observer_failed",
                    circuit_breaker=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def _record_result(self, success: bool) -> None:
        now = self._clock()
        self._request_history.append((now, success))
        self._prune_history(now)

    def _prune_history(self, now: float) -> None:
        cutoff_time = now - self.time_window_seconds
        while self._request_history and self._request_history[0][0] < cutoff_time:
            self._request_history.popleft()

    def _health_percentage(self) -> float:
        self._prune_history(self._clock())
        total = len(self._request_history)
        if total == 0:
            return 100.0
        successes = sum(1 for _, success in self._request_history if success)
        return round(100.0 * successes / total, 1)

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval_seconds)
            try:
                self.evaluate()
            except Exception as e:
                logger.error(
                    "circuit_breaker_timer_failed",
                    circuit_breaker=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
