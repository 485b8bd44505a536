import asyncio
import enum
import time
import structlog
from functools import wraps

logger = structlog.get_logger()


class BreakerState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_TRANSITION_EVENTS = {
    BreakerState.OPEN: "Circuit Breaker OPEN",
    BreakerState.HALF_OPEN: "Circuit Breaker HALF-OPEN",
    BreakerState.CLOSED: "Circuit Breaker CLOSED",
}


class CircuitBreakerOpenException(Exception):
    pass


class CircuitBreaker:
    """Fail fast after ``failure_threshold`` consecutive failures.

    Once ``reset_timeout`` seconds have passed since the circuit opened, a
    single trial call is let through (half-open); its outcome closes or
    re-opens the circuit.
    """

    def __init__(self, failure_threshold=5, reset_timeout=60, service="SMTP", clock=time.monotonic):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.service = service
        self.clock = clock
        self.failures = 0
        self.opened_at = None
        self.state = BreakerState.CLOSED

    def _transition(self, state: BreakerState):
        self.state = state
        if state == BreakerState.OPEN:
            self.opened_at = self.clock()
        elif state == BreakerState.CLOSED:
            self.failures = 0
            self.opened_at = None
        log = logger.warning if state == BreakerState.OPEN else logger.info
        log(_TRANSITION_EVENTS[state], event_name="circuit_breaker_state_change", state=state.value, service=self.service)

    def _before_call(self):
        if self.state != BreakerState.OPEN:
            return
        if self.clock() - self.opened_at >= self.reset_timeout:
            self._transition(BreakerState.HALF_OPEN)
            return
        logger.warning("Circuit Breaker OPEN, blocking call", event_name="circuit_breaker_blocked", service=self.service)
        raise CircuitBreakerOpenException(f"{self.service} circuit breaker is open")

    def _record_failure(self):
        self.failures += 1
        logger.warning("Circuit Breaker failure recorded", event_name="circuit_breaker_failure", failures=self.failures, state=self.state.value, service=self.service)
        if self.state == BreakerState.HALF_OPEN or self.failures >= self.failure_threshold:
            self._transition(BreakerState.OPEN)

    def __call__(self, func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            self._before_call()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                self._record_failure()
                raise
            if self.state == BreakerState.HALF_OPEN:
                self._transition(BreakerState.CLOSED)
            else:
                # only consecutive failures count
                self.failures = 0
            return result
        return wrapper


def async_retry(tries=3, delay=1, backoff=2, exceptions=(Exception,), service="external"):
    """Retry a coroutine function with exponential backoff; the last failure propagates."""
    def deco(func):
        @wraps(func)
        async def f_retry(*args, **kwargs):
            remaining, wait = tries, delay
            while remaining > 1:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    remaining -= 1
                    logger.warning("Retrying after failure", event_name="retry_exception", service=service, error=str(e), error_type=type(e).__name__, delay=wait, remaining=remaining)
                    await asyncio.sleep(wait)
                    wait *= backoff
            return await func(*args, **kwargs)
        return f_retry
    return deco
