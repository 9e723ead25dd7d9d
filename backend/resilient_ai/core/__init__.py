"""
Core application modules.
Contains logging, metrics, tracing, configuration and the circuit breaker.
"""
from .circuit_breaker import CircuitBreaker, CircuitState

__all__ = ["CircuitBreaker", "CircuitState"]
