"""Resilience primitives for external provider calls."""

from .breaker import BreakerState, CircuitBreaker, CircuitBreakerConfig, create_circuit_breaker

__all__ = ["BreakerState", "CircuitBreaker", "CircuitBreakerConfig", "create_circuit_breaker"]
