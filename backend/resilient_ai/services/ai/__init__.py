"""
Resilient AI services package.

Wraps external generative-AI providers so that callers always receive a
structurally valid AIResponse:

- Providers answer; the circuit breaker decides whether to ask them
- The cache and the emergency set answer when providers cannot

This package must not contain prompt engineering or domain logic.
"""
