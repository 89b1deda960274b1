"""
Tests for the circuit gate state machine and registry.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from weather_aggregator.circuit_gate import (
    CircuitGate,
    CircuitGateRegistry,
    GateState,
    ignore_client_errors,
)
from weather_aggregator.errors import CircuitOpenError, CircuitTimeoutError
from weather_aggregator.external_api import WeatherAPIError
from weather_aggregator.retry_service import RetryError


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def _gate(action, clock=None, **options) -> CircuitGate:
    return CircuitGate("weather_provider", action, clock=clock or FakeClock(), **options)


def _fire(gate: CircuitGate, *args):
    return asyncio.run(gate.fire(*args))


class TestErrorFilter:
    """Test which errors are ignored by the default filter."""

    def test_client_errors_are_ignored(self):
        """Test 4xx answers do not count against the gate."""
        assert ignore_client_errors(WeatherAPIError("City not found", status_code=404))
        assert ignore_client_errors(WeatherAPIError("Invalid API key", status_code=401))
        assert ignore_client_errors(CircuitOpenError("weather_provider"))

    def test_outages_are_counted(self):
        """Test network errors, 5xx and 429 count as failures."""
        throttled = aiohttp.ClientResponseError(
            request_info=None, history=(), status=429, message="Too Many Requests"
        )
        server_error = aiohttp.ClientResponseError(
            request_info=None, history=(), status=503, message="Service Unavailable"
        )

        assert not ignore_client_errors(throttled)
        assert not ignore_client_errors(server_error)
        assert not ignore_client_errors(aiohttp.ServerTimeoutError())
        assert not ignore_client_errors(RetryError("failed", ConnectionError()))
        assert not ignore_client_errors(WeatherAPIError("No data returned"))


class TestCircuitGateStates:
    """Test transitions between closed, open and half-open."""

    def test_success_passes_through(self):
        """Test a closed gate returns the action result."""
        action = AsyncMock(return_value={"name": "London"})
        gate = _gate(action)

        assert _fire(gate, "London", "GB") == {"name": "London"}
        action.assert_awaited_once_with("London", "GB")
        assert gate.state == GateState.CLOSED

    def test_opens_on_first_failure_with_default_volume(self):
        """Test a single failure opens the gate when volume threshold is 0."""
        action = AsyncMock(side_effect=ConnectionError("refused"))
        gate = _gate(action)

        with pytest.raises(ConnectionError):
            _fire(gate)

        assert gate.opened

    def test_open_gate_rejects_without_calling(self):
        """Test calls are rejected while open."""
        action = AsyncMock(side_effect=ConnectionError("refused"))
        gate = _gate(action)
        with pytest.raises(ConnectionError):
            _fire(gate)

        with pytest.raises(CircuitOpenError, match="weather_provider is open"):
            _fire(gate)

        assert action.await_count == 1
        assert gate.stats()["rejects"] == 1

    def test_threshold_percentage(self):
        """Test the gate stays closed below the failure percentage."""
        action = AsyncMock(return_value="ok")
        gate = _gate(action, volume_threshold=5)
        for _ in range(4):
            _fire(gate)

        action.side_effect = ConnectionError("refused")
        with pytest.raises(ConnectionError):
            _fire(gate)

        # 1 failure out of 5 calls is 20%
        assert gate.state == GateState.CLOSED

    def test_volume_threshold(self):
        """Test the gate needs enough calls before it can open."""
        action = AsyncMock(side_effect=ConnectionError("refused"))
        gate = _gate(action, volume_threshold=3)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                _fire(gate)
        assert gate.state == GateState.CLOSED

        with pytest.raises(ConnectionError):
            _fire(gate)
        assert gate.opened

    def test_filtered_errors_count_as_success(self):
        """Test provider 4xx answers never open the gate."""
        action = AsyncMock(side_effect=WeatherAPIError("City not found", status_code=404))
        gate = _gate(action)

        for _ in range(5):
            with pytest.raises(WeatherAPIError):
                _fire(gate)

        stats = gate.stats()
        assert gate.state == GateState.CLOSED
        assert stats["successes"] == 5
        assert stats["failures"] == 0

    def test_half_open_trial_success_closes(self):
        """Test a successful trial call after the reset timeout closes the gate."""
        clock = FakeClock()
        action = AsyncMock(side_effect=ConnectionError("refused"))
        gate = _gate(action, clock=clock, reset_timeout=10.0)
        with pytest.raises(ConnectionError):
            _fire(gate)

        clock.advance(10.0)
        assert gate.state == GateState.HALF_OPEN

        action.side_effect = None
        action.return_value = "ok"
        assert _fire(gate) == "ok"
        assert gate.state == GateState.CLOSED
        assert gate.stats()["failures"] == 0

    def test_half_open_trial_failure_reopens(self):
        """Test a failed trial call reopens the gate."""
        clock = FakeClock()
        action = AsyncMock(side_effect=ConnectionError("refused"))
        gate = _gate(action, clock=clock, reset_timeout=10.0)
        with pytest.raises(ConnectionError):
            _fire(gate)

        clock.advance(10.0)
        with pytest.raises(ConnectionError):
            _fire(gate)

        assert gate.opened
        clock.advance(5.0)
        assert gate.opened

    def test_single_trial_in_half_open(self):
        """Test concurrent callers are rejected while the trial call runs."""
        clock = FakeClock()

        async def slow_action():
            await asyncio.sleep(0.01)
            return "ok"

        gate = _gate(slow_action, clock=clock, reset_timeout=10.0)
        gate.open()
        clock.advance(10.0)

        async def scenario():
            return await asyncio.gather(gate.fire(), gate.fire(), return_exceptions=True)

        first, second = asyncio.run(scenario())

        assert first == "ok"
        assert isinstance(second, CircuitOpenError)
        assert gate.state == GateState.CLOSED

    def test_timeout_counts_as_failure(self):
        """Test slow calls raise CircuitTimeoutError and open the gate."""

        async def slow_action():
            await asyncio.sleep(1)

        gate = _gate(slow_action, timeout=0.01)

        with pytest.raises(CircuitTimeoutError):
            _fire(gate)

        stats = gate.stats()
        assert stats["timeouts"] == 1
        assert stats["failures"] == 1
        assert gate.opened

    def test_rolling_window_forgets_old_calls(self):
        """Test counts older than the rolling window are dropped."""
        clock = FakeClock()
        action = AsyncMock(return_value="ok")
        gate = _gate(action, clock=clock, volume_threshold=2)
        _fire(gate)

        clock.advance(11.0)
        action.side_effect = ConnectionError("refused")
        with pytest.raises(ConnectionError):
            _fire(gate)

        # The earlier success left the window, so one failing call is below volume
        assert gate.state == GateState.CLOSED
        assert gate.stats()["successes"] == 0

    @patch("weather_aggregator.circuit_gate.logger")
    def test_transitions_are_logged(self, mock_logger):
        """Test open is a warning and half-open/close are info."""
        clock = FakeClock()
        gate = _gate(AsyncMock(return_value="ok"), clock=clock)

        gate.open()
        clock.advance(10.0)
        _fire(gate)

        warnings = [c.args[0] for c in mock_logger.warning.call_args_list]
        infos = [c.args[0] for c in mock_logger.info.call_args_list]
        assert any("is open" in message for message in warnings)
        assert any("half-open" in message for message in infos)
        assert any("is closed" in message for message in infos)


class TestCircuitGateRegistry:
    """Test per-service gate lookup."""

    def test_get_creates_and_reuses_gate(self):
        """Test one gate per service."""
        registry = CircuitGateRegistry(services=["weather_provider"])
        action = AsyncMock()

        gate = registry.get("weather_provider", action)

        assert registry.get("weather_provider") is gate
        assert gate.action is action

    def test_get_swaps_action(self):
        """Test a new action replaces the bound one but keeps the state."""
        registry = CircuitGateRegistry(services=["weather_provider"])
        gate = registry.get("weather_provider", AsyncMock())
        gate.open()
        replacement = AsyncMock()

        assert registry.get("weather_provider", replacement) is gate
        assert gate.action is replacement
        assert gate.opened

    def test_unknown_service(self):
        """Test unregistered names are rejected."""
        registry = CircuitGateRegistry(services=["weather_provider"])

        with pytest.raises(ValueError, match="Unknown circuit breaker service"):
            registry.get("geocoder", AsyncMock())
        with pytest.raises(ValueError):
            registry.get("", AsyncMock())

    def test_first_get_needs_action(self):
        """Test a gate cannot be created without an action."""
        registry = CircuitGateRegistry(services=["weather_provider"])

        with pytest.raises(ValueError):
            registry.get("weather_provider")

    def test_gate_options_are_applied(self):
        """Test registry options reach new gates."""
        registry = CircuitGateRegistry(services=["weather_provider"], timeout=1.5)

        gate = registry.get("weather_provider", AsyncMock())

        assert gate.timeout == 1.5

    def test_stats(self):
        """Test stats are keyed by service name."""
        registry = CircuitGateRegistry(services=["weather_provider"])
        registry.get("weather_provider", AsyncMock())

        stats = registry.stats()

        assert stats["weather_provider"]["state"] == "closed"
        assert stats["weather_provider"]["failures"] == 0
