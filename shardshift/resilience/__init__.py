"""Resilience patterns for the ShardShift orchestrator."""

from shardshift.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState

__all__ = ['CircuitBreaker', 'CircuitBreakerOpenError', 'CircuitState']
