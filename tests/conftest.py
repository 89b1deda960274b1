"""
Pytest configuration and shared fixtures.
"""

import pytest


def make_openweather_payload(
    name="London", country="GB", temp=15.3, lat=51.5085, lon=-0.1257, dt=1640995200
) -> dict:
    """Build an OpenWeatherMap current weather payload in metric units."""
    payload = {
        "id": 2643743,
        "name": name,
        "main": {"temp": temp, "humidity": 65, "pressure": 1013},
        "weather": [{"main": "Clouds", "description": "broken clouds", "icon": "04d"}],
        "dt": dt,
        "sys": {"country": country} if country else {},
    }
    if lat is not None and lon is not None:
        payload["coord"] = {"lat": lat, "lon": lon}
    return payload


@pytest.fixture
def sample_api_key() -> str:
    """Sample API key for testing."""
    return "test_openweather_api_key_123"


@pytest.fixture
def mock_openweather_response() -> dict:
    """Mock OpenWeatherMap API response for London."""
    return make_openweather_payload()


@pytest.fixture
def payload_factory():
    """Factory for OpenWeatherMap payloads with custom fields."""
    return make_openweather_payload
