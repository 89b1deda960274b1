"""
Tests for the FastAPI application and Lambda handler.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from mangum import Mangum

from weather_aggregator.cache_factory import UnifiedCache
from weather_aggregator.circuit_gate import CircuitGateRegistry
from weather_aggregator.external_api import WeatherAPIError
from weather_aggregator.lambda_function import app, lambda_handler
from weather_aggregator.memory_cache import MemoryCache
from weather_aggregator.weather_service import BulkWeatherResolver


@pytest.fixture
def api_client(payload_factory):
    """Mock weather provider client."""
    weather_client = MagicMock()
    weather_client.get_by_name_and_country = AsyncMock(
        side_effect=lambda city, country: payload_factory(name=city, country=country)
    )
    weather_client.get_by_id = AsyncMock(return_value=payload_factory())
    weather_client.health_check = AsyncMock(return_value=True)
    return weather_client


@pytest.fixture
def resolver(api_client):
    """Resolver wired to the mock client and a memory cache."""
    return BulkWeatherResolver(
        api_client,
        UnifiedCache(MemoryCache()),
        CircuitGateRegistry(services=["weather_provider"]),
    )


@pytest.fixture
def client(resolver):
    """Test client with the resolver patched in."""
    with patch(
        "weather_aggregator.lambda_function.get_resolver",
        AsyncMock(return_value=resolver),
    ):
        yield TestClient(app)


class TestRootAndHealth:
    """Test informational endpoints."""

    def test_root(self, client):
        """Test service information."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "Weather Aggregator"
        assert data["endpoints"]["bulk_weather"] == "/weather/bulk"

    def test_health(self, client):
        """Test health reports provider, cache and circuit state."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["weather_provider"] == "healthy"
        assert data["services"]["cache"]["strategy"] == "memory"
        assert data["services"]["cache"]["size"] == 0
        assert data["services"]["circuit_breakers"]["weather_provider"]["state"] == "closed"

    def test_health_degraded(self, client, api_client):
        """Test an unreachable provider degrades health."""
        api_client.health_check.return_value = False

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["services"]["weather_provider"] == "unhealthy"


class TestBulkWeatherEndpoint:
    """Test POST /weather/bulk."""

    def test_bulk_weather(self, client):
        """Test a mixed batch returns camelCase results."""
        response = client.post(
            "/weather/bulk",
            json={"cities": [{"city": "Paris", "country": "FR"}, {"cityId": "2643743"}]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["summary"] == {"total": 2, "found": 2, "failed": 0, "cached": 0}
        assert isinstance(data["processingTimeMs"], int)

        first, second = data["cities"]
        assert first["searchIndex"] == 0
        assert first["status"] == "found"
        assert first["location"]["name"] == "Paris"
        assert first["location"]["countryCode"] == "FR"
        assert first["weather"]["unit"] == "°C"
        assert first["meta"]["cacheKey"] == "paris-fr"
        assert first["meta"]["source"] == "api"
        assert second["searchIndex"] == 1
        assert data["data"]["2643743"]["cityName"] == "London"

    def test_partial_failure_is_ok(self, client, api_client):
        """Test per-city failures still return 200."""
        api_client.get_by_name_and_country.side_effect = WeatherAPIError(
            "City not found", status_code=404
        )

        response = client.post("/weather/bulk", json={"cities": [{"city": "Atlantis"}]})

        assert response.status_code == 200
        result = response.json()["cities"][0]
        assert result["status"] == "not-found"
        assert result["error"]["code"] == "CITY_NOT_FOUND"
        assert result["location"] is None

    @pytest.mark.parametrize(
        "body",
        [{}, {"cities": "London"}, {"cities": None}, ["London"]],
    )
    def test_missing_cities_array(self, client, body):
        """Test requests without a cities array."""
        response = client.post("/weather/bulk", json=body)

        assert response.status_code == 400
        assert response.json() == {
            "error": "CITIES_ARRAY_NOT_PROVIDED",
            "message": "Cities array is required",
            "status_code": 400,
        }

    def test_invalid_json(self, client):
        """Test a body that is not JSON."""
        response = client.post(
            "/weather/bulk",
            content="not json",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "CITIES_ARRAY_NOT_PROVIDED"

    def test_empty_cities(self, client):
        """Test an empty cities array."""
        response = client.post("/weather/bulk", json={"cities": []})

        assert response.status_code == 400
        assert response.json()["error"] == "NO_CITIES_PROVIDED"

    def test_too_many_cities(self, client, api_client):
        """Test the batch size cap."""
        cities = [{"city": f"City{i}"} for i in range(16)]

        response = client.post("/weather/bulk", json={"cities": cities})

        assert response.status_code == 400
        assert response.json()["error"] == "TOO_MANY_CITIES"
        api_client.get_by_name_and_country.assert_not_called()

    def test_batch_size_limit_is_inclusive(self, client):
        """Test exactly fifteen cities are accepted."""
        cities = [{"city": f"City{i}"} for i in range(15)]

        response = client.post("/weather/bulk", json={"cities": cities})

        assert response.status_code == 200
        assert response.json()["summary"]["total"] == 15


class TestCurrentWeatherEndpoint:
    """Test GET /weather/current/{city_id}."""

    def test_current_weather(self, client, api_client):
        """Test a known city ID."""
        response = client.get("/weather/current/2643743")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["cityName"] == "London"
        assert data["data"]["country"] == "GB"
        assert data["meta"]["cacheKey"] == "cityid_2643743"
        api_client.get_by_id.assert_awaited_once_with("2643743")

    def test_invalid_city_id(self, client):
        """Test a malformed city ID."""
        response = client.get("/weather/current/abc")

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_CITY_NAME"

    def test_unknown_city_id(self, client, api_client):
        """Test a city ID the provider does not know."""
        api_client.get_by_id.side_effect = WeatherAPIError(
            "City 'id 1' not found", status_code=404
        )

        response = client.get("/weather/current/1")

        assert response.status_code == 404
        assert response.json() == {
            "error": "CITY_NOT_FOUND",
            "message": "City 'id 1' not found",
            "status_code": 404,
        }


class TestErrorHandling:
    """Test unhandled errors and the Lambda entry point."""

    def test_unhandled_exception(self, resolver):
        """Test unexpected errors return a generic 500."""
        resolver.execute = AsyncMock(side_effect=RuntimeError("boom"))

        with patch(
            "weather_aggregator.lambda_function.get_resolver",
            AsyncMock(return_value=resolver),
        ):
            client = TestClient(app, raise_server_exceptions=False)
            response = client.post("/weather/bulk", json={"cities": [{"city": "London"}]})

        assert response.status_code == 500
        assert response.json() == {
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An unexpected error occurred",
            "status_code": 500,
        }

    def test_lambda_handler(self):
        """Test the Lambda handler wraps the app."""
        assert isinstance(lambda_handler, Mangum)
