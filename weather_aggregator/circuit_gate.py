"""
Circuit breaker for calls to remote dependencies.

A gate is closed while its dependency is healthy, opens when the rolling
failure rate crosses the threshold, rejects calls while open and lets a single
trial call through once the reset timeout has passed.
"""

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from weather_aggregator.config import CircuitBreakerConfig
from weather_aggregator.errors import CircuitOpenError, CircuitTimeoutError

logger = logging.getLogger(__name__)

Action = Callable[..., Awaitable[Any]]
ErrorFilter = Callable[[BaseException], bool]


class GateState(str, Enum):
    """Circuit gate states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def ignore_client_errors(error: BaseException) -> bool:
    """
    Default error filter for HTTP dependencies.

    Client errors (4xx other than 429) mean the dependency answered, so they
    are not counted against the gate. Rejections by another gate are ignored
    as well.
    """
    if isinstance(error, CircuitOpenError):
        return True
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return isinstance(status, int) and 400 <= status < 500 and status != 429


class _Bucket:
    __slots__ = ("start", "successes", "failures", "timeouts", "rejects")

    def __init__(self, start: float):
        self.start = start
        self.successes = 0
        self.failures = 0
        self.timeouts = 0
        self.rejects = 0


class CircuitGate:  # pylint: disable=too-many-instance-attributes
    """
    Circuit breaker bound to a single async action.

    The action can be swapped at any time through the ``action`` attribute;
    the rolling counters and state belong to the gate, not to the action.
    """

    def __init__(  # pylint: disable=too-many-arguments,R0917
        self,
        name: str,
        action: Action,
        timeout: float = CircuitBreakerConfig.TIMEOUT,
        error_threshold_percentage: float = CircuitBreakerConfig.ERROR_THRESHOLD_PERCENTAGE,
        reset_timeout: float = CircuitBreakerConfig.RESET_TIMEOUT,
        rolling_count_timeout: float = CircuitBreakerConfig.ROLLING_COUNT_TIMEOUT,
        rolling_count_buckets: int = CircuitBreakerConfig.ROLLING_COUNT_BUCKETS,
        volume_threshold: int = CircuitBreakerConfig.VOLUME_THRESHOLD,
        error_filter: Optional[ErrorFilter] = ignore_client_errors,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the gate.

        Args:
            name: Service name the gate protects
            action: Coroutine function called by fire()
            timeout: Seconds before a call counts as failed
            error_threshold_percentage: Failure percentage that opens the gate
            reset_timeout: Seconds the gate stays open before a trial call
            rolling_count_timeout: Length of the statistics window in seconds
            rolling_count_buckets: Number of buckets in the window
            volume_threshold: Minimum calls in the window before opening
            error_filter: Returns True for errors that must not be counted
            clock: Monotonic time source
        """
        self.name = name
        self.action = action
        self.timeout = timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.reset_timeout = reset_timeout
        self.rolling_count_timeout = rolling_count_timeout
        self.volume_threshold = volume_threshold
        self.error_filter = error_filter
        self._clock = clock

        self._bucket_duration = rolling_count_timeout / rolling_count_buckets
        self._buckets = deque(maxlen=rolling_count_buckets)
        self._state = GateState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> GateState:
        self._refresh_state()
        return self._state

    @property
    def opened(self) -> bool:
        return self.state == GateState.OPEN

    async def fire(self, *args, **kwargs) -> Any:
        """
        Call the bound action through the gate.

        Raises:
            CircuitOpenError: If the gate is open or a trial call is running
            CircuitTimeoutError: If the action exceeded the timeout
        """
        self._refresh_state()

        if self._state == GateState.OPEN or (
            self._state == GateState.HALF_OPEN and self._trial_in_flight
        ):
            self._current_bucket().rejects += 1
            raise CircuitOpenError(self.name)

        is_trial = self._state == GateState.HALF_OPEN
        if is_trial:
            self._trial_in_flight = True

        try:
            result = await asyncio.wait_for(
                self.action(*args, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            error = CircuitTimeoutError(self.name, self.timeout)
            self._record_failure(error, timed_out=True)
            raise error from None
        except Exception as e:  # pylint: disable=broad-exception-caught
            if self.error_filter is not None and self.error_filter(e):
                self._record_success()
            else:
                self._record_failure(e)
            raise
        else:
            self._record_success()
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    def stats(self) -> Dict[str, Any]:
        """Return the gate state and the counters of the rolling window."""
        self._prune()
        totals = {"successes": 0, "failures": 0, "timeouts": 0, "rejects": 0}
        for bucket in self._buckets:
            totals["successes"] += bucket.successes
            totals["failures"] += bucket.failures
            totals["timeouts"] += bucket.timeouts
            totals["rejects"] += bucket.rejects
        return {
            "name": self.name,
            "state": self.state.value,
            "error_percentage": self._error_percentage(),
            **totals,
        }

    def open(self):
        """Open the gate and start the reset timeout."""
        self._state = GateState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            "%s circuit breaker is open, requests are being blocked", self.name
        )

    def close(self):
        """Close the gate and clear the rolling counters."""
        self._state = GateState.CLOSED
        self._buckets.clear()
        logger.info("%s circuit breaker is closed, requests are allowed", self.name)

    def _refresh_state(self):
        if (
            self._state == GateState.OPEN
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = GateState.HALF_OPEN
            logger.info(
                "%s circuit breaker is half-open, requests are being tested",
                self.name,
            )

    def _record_success(self):
        self._current_bucket().successes += 1
        if self._state == GateState.HALF_OPEN:
            self.close()

    def _record_failure(self, error: BaseException, timed_out: bool = False):
        bucket = self._current_bucket()
        bucket.failures += 1
        if timed_out:
            bucket.timeouts += 1
        logger.warning("%s circuit breaker failure: %s", self.name, error)

        if self._state == GateState.HALF_OPEN:
            self.open()
            return

        if self._state == GateState.CLOSED:
            calls = sum(b.successes + b.failures for b in self._buckets)
            if (
                calls >= self.volume_threshold
                and self._error_percentage() >= self.error_threshold_percentage
            ):
                self.open()

    def _error_percentage(self) -> float:
        successes = sum(b.successes for b in self._buckets)
        failures = sum(b.failures for b in self._buckets)
        calls = successes + failures
        return (failures / calls) * 100 if calls else 0.0

    def _prune(self):
        horizon = self._clock() - self.rolling_count_timeout
        while self._buckets and self._buckets[0].start <= horizon:
            self._buckets.popleft()

    def _current_bucket(self) -> _Bucket:
        now = self._clock()
        self._prune()
        if not self._buckets or now - self._buckets[-1].start >= self._bucket_duration:
            self._buckets.append(_Bucket(now))
        return self._buckets[-1]


class CircuitGateRegistry:
    """
    One circuit gate per service name.

    Only the service names given at construction can be requested; asking for
    any other name is a programming error.
    """

    def __init__(
        self, services: Iterable[str] = CircuitBreakerConfig.SERVICES, **gate_options
    ):
        self.services = frozenset(services)
        self.gate_options = gate_options
        self._gates: Dict[str, CircuitGate] = {}

    def get(self, service: str, action: Optional[Action] = None) -> CircuitGate:
        """
        Return the gate for a service, creating it on first use.

        Args:
            service: Registered service name
            action: Coroutine function to bind; replaces the current one

        Raises:
            ValueError: If the service is unknown or no action was ever bound
        """
        if not service:
            raise ValueError("Service name is required to get a circuit breaker")
        if service not in self.services:
            raise ValueError(f"Unknown circuit breaker service: {service}")

        gate = self._gates.get(service)
        if gate is None:
            if action is None:
                raise ValueError(f"An action is required to create the {service} gate")
            gate = CircuitGate(service, action, **self.gate_options)
            self._gates[service] = gate
        elif action is not None:
            gate.action = action
        return gate

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: gate.stats() for name, gate in self._gates.items()}
