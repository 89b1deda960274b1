"""
External API client for OpenWeatherMap service.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Union

import aiohttp
from pydantic import BaseModel, Field

from weather_aggregator.config import ExternalAPIConfig, RetryConfig
from weather_aggregator.retry_service import (
    RetryConfig as RetryConfigClass,
    RetryError,
    api_retry,
)

logger = logging.getLogger(__name__)


class WeatherAPIError(Exception):
    """Custom exception for weather API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class OpenWeatherMapResponse(BaseModel):
    """Model for OpenWeatherMap current weather payload (metric units)."""

    name: str = Field(..., description="City name")
    main: Dict[str, Any] = Field(..., description="Main weather data")
    weather: List[Dict[str, Any]] = Field(..., description="Weather conditions")
    dt: int = Field(..., description="Data calculation time, unix seconds")
    coord: Optional[Dict[str, Any]] = Field(None, description="Coordinates")
    sys: Optional[Dict[str, Any]] = Field(None, description="Country and sun times")
    id: Optional[int] = Field(None, description="Provider city ID")

    @property
    def temperature(self) -> float:
        """Temperature in Celsius."""
        return float(self.main["temp"])

    @property
    def primary_condition(self) -> Dict[str, Any]:
        return self.weather[0] if self.weather else {}

    @property
    def description(self) -> str:
        return self.primary_condition.get("description", "Unknown")

    @property
    def icon(self) -> str:
        return self.primary_condition.get("icon", "")

    @property
    def country(self) -> Optional[str]:
        return (self.sys or {}).get("country") or None

    @property
    def latitude(self) -> Optional[float]:
        return (self.coord or {}).get("lat")

    @property
    def longitude(self) -> Optional[float]:
        return (self.coord or {}).get("lon")


class OpenWeatherMapClient:
    """
    Asynchronous client for OpenWeatherMap API with retry logic.

    Transport errors and provider errors propagate to the caller unchanged;
    an empty response body is returned as None.
    """

    def __init__(self, api_key: str = None, timeout: int = None):
        """
        Initialize the OpenWeatherMap client.

        Args:
            api_key: OpenWeatherMap API key (defaults to config value)
            timeout: Request timeout in seconds (defaults to config value)
        """
        self.api_key = api_key or ExternalAPIConfig.OPENWEATHER_API_KEY
        self.base_url = ExternalAPIConfig.OPENWEATHER_BASE_URL
        self.timeout = aiohttp.ClientTimeout(
            total=timeout or ExternalAPIConfig.OPENWEATHER_TIMEOUT
        )

        self.retry_config = RetryConfigClass(
            max_attempts=RetryConfig.API_MAX_ATTEMPTS,
            base_delay=RetryConfig.API_BASE_DELAY,
            backoff_multiplier=RetryConfig.API_BACKOFF_MULTIPLIER,
            max_delay=RetryConfig.API_MAX_DELAY,
            jitter=RetryConfig.API_JITTER,
            jitter_range=RetryConfig.API_JITTER_RANGE,
        )

    def _base_params(self) -> Dict[str, str]:
        return {
            "appid": self.api_key,
            "units": ExternalAPIConfig.OPENWEATHER_UNITS,
            "lang": ExternalAPIConfig.OPENWEATHER_LANG,
            "mode": ExternalAPIConfig.OPENWEATHER_RESPONSE_MODE,
        }

    async def get_by_name_and_country(
        self, city_name: str, country_code: str = ""
    ) -> Optional[Dict[str, Any]]:
        """
        Get current weather by city name.

        Args:
            city_name: Name of the city
            country_code: Two-letter country code (optional)

        Returns:
            Raw provider payload, or None if the body was empty

        Raises:
            WeatherAPIError: If the provider rejected the request
            RetryError: If retryable failures persisted
        """
        if not city_name or not city_name.strip():
            raise WeatherAPIError("City name cannot be empty")

        query = city_name.strip()
        if country_code:
            query = f"{query},{country_code}"
        return await self._get({"q": query}, label=query)

    async def get_by_id(self, city_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """
        Get current weather by provider city ID.

        Args:
            city_id: OpenWeatherMap city ID

        Returns:
            Raw provider payload, or None if the body was empty
        """
        return await self._get({"id": str(city_id)}, label=f"id {city_id}")

    @staticmethod
    def _decode_body(body: str, label: str) -> Optional[Dict[str, Any]]:
        """Parse a JSON object body; empty or non-JSON bodies give None."""
        if not body.strip():
            return None
        try:
            data = json.loads(body)
        except ValueError:
            logger.warning("Non-JSON response body for %s", label)
            return None
        return data if isinstance(data, dict) else None

    async def _get(
        self, query: Dict[str, str], label: str
    ) -> Optional[Dict[str, Any]]:
        @api_retry(self.retry_config)
        async def _get_weather_with_retry() -> Optional[Dict[str, Any]]:
            params = {**query, **self._base_params()}
            url = f"{self.base_url}/weather"

            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                logger.debug("Requesting weather data for %s", label)

                async with session.get(url, params=params) as response:
                    body = await response.text()

                    if response.status == 200:
                        logger.debug("Successfully fetched weather for %s", label)
                        return self._decode_body(body, label) or None

                    error_msg = (self._decode_body(body, label) or {}).get(
                        "message", "Unknown API error"
                    )

                    if response.status == 404:
                        raise WeatherAPIError(
                            f"City '{label}' not found", status_code=404
                        )

                    if response.status == 401:
                        logger.error("Invalid API key")
                        raise WeatherAPIError("Invalid API key", status_code=401)

                    logger.error(
                        "API error for %s: %s (status: %d)",
                        label,
                        error_msg,
                        response.status,
                    )
                    # 5xx and 429 are retried, other 4xx are final
                    if response.status >= 500 or response.status == 429:
                        raise aiohttp.ClientResponseError(
                            request_info=response.request_info,
                            history=response.history,
                            status=response.status,
                            message=error_msg,
                        )

                    raise WeatherAPIError(error_msg, status_code=response.status)

        return await _get_weather_with_retry()

    async def health_check(self) -> bool:
        """
        Check if the OpenWeatherMap API is accessible.

        Returns:
            bool: True if API is accessible, False otherwise
        """
        try:
            await self.get_by_name_and_country("London", "GB")
            logger.info("OpenWeatherMap API health check passed")
            return True
        except WeatherAPIError as e:
            logger.warning("OpenWeatherMap API health check failed: %s", str(e))
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError, RetryError) as e:
            logger.error("Network error during health check: %s", str(e))
            return False
