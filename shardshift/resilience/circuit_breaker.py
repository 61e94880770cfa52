"""
Circuit Breaker for calls to the replication service.
Fails fast while the service is unavailable so a probe storm does not pile up
behind a dead endpoint.
"""
import time
import threading
from enum import Enum
import structlog

from shardshift.exceptions import ShardShiftError

# Configure logger
logger = structlog.get_logger()

class CircuitBreakerOpenError(ShardShiftError):
    """Exception raised when a circuit breaker is open."""
    pass

class CircuitState(Enum):
    CLOSED = 0
    OPEN = 1
    HALF_OPEN = 2

class CircuitBreaker:
    """
    Implements the Circuit Breaker pattern to prevent cascading failures.
    """
    def __init__(self, name, failure_threshold=5, reset_timeout=60, metrics=None, clock=time.monotonic):
        """
        Initialize the circuit breaker.

        Args:
            name: Name of the circuit breaker (for logging and metrics)
            failure_threshold: Number of consecutive failures before opening the circuit
            reset_timeout: Seconds to wait before letting a trial call through
            metrics: Optional Metrics instance to publish the circuit state to
            clock: Time source, replaceable in tests
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.metrics = metrics
        self.clock = clock
        self.failures = 0
        self.last_failure_time = 0.0
        self.state = CircuitState.CLOSED
        self.lock = threading.RLock()

    def _set_state(self, state):
        self.state = state
        if self.metrics:
            self.metrics.circuit_breaker_state.labels(circuit_name=self.name).set(state.value)

    def execute(self, func, *args, **kwargs):
        """
        Execute a function with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
            Exception: Any exception raised by the function
        """
        with self.lock:
            if self.state == CircuitState.OPEN:
                if self.clock() - self.last_failure_time > self.reset_timeout:
                    logger.info("circuit.half_open", circuit=self.name)
                    self._set_state(CircuitState.HALF_OPEN)
                else:
                    raise CircuitBreakerOpenError(f"Circuit {self.name} is OPEN")

        try:
            result = func(*args, **kwargs)
        except Exception:
            with self.lock:
                self.failures += 1
                self.last_failure_time = self.clock()
                if self.metrics:
                    self.metrics.circuit_breaker_failures.labels(circuit_name=self.name).inc()

                if self.state == CircuitState.CLOSED and self.failures >= self.failure_threshold:
                    logger.warning("circuit.opened", circuit=self.name, failures=self.failures)
                    self._set_state(CircuitState.OPEN)
                elif self.state == CircuitState.HALF_OPEN:
                    logger.warning("circuit.reopened", circuit=self.name)
                    self._set_state(CircuitState.OPEN)
            raise

        with self.lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info("circuit.closed", circuit=self.name)
                self._set_state(CircuitState.CLOSED)
            self.failures = 0

        return result
