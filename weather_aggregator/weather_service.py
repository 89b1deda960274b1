"""
Bulk weather resolution with caching, name fallbacks and a circuit breaker.
"""

import asyncio
import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError

from weather_aggregator import name_normalizer
from weather_aggregator.cache_factory import UnifiedCache
from weather_aggregator.circuit_gate import CircuitGateRegistry
from weather_aggregator.config import CacheConfig, CircuitBreakerConfig
from weather_aggregator.errors import (
    ErrorCode,
    FallbackExhaustedError,
    InvalidBatchError,
)
from weather_aggregator.external_api import (
    OpenWeatherMapClient,
    OpenWeatherMapResponse,
    WeatherAPIError,
)
from weather_aggregator.models import (
    BatchSummary,
    BatchWeatherResponse,
    CacheEntry,
    CityIdWeather,
    CityRequest,
    CityResult,
    Coordinates,
    ResolvedLocation,
    ResolvedWeather,
    ResultError,
    ResultSource,
    ResultStatus,
)

logger = logging.getLogger(__name__)

_CITY_ID = re.compile(r"^\d+$")


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards positive infinity."""
    whole = math.floor(value)
    # compare the fraction, value + 0.5 can round up in float arithmetic
    return whole + 1 if value - whole >= 0.5 else whole


def unix_to_iso(seconds: int) -> str:
    """Format unix seconds as ISO-8601 UTC with milliseconds, e.g. 2022-01-01T00:00:00.000Z"""
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class BulkWeatherResolver:
    """
    Resolves a batch of city requests to current weather.

    Every city is resolved in its own task. A city that cannot be resolved
    produces a ``not-found`` or ``error`` result without affecting the rest
    of the batch; only an empty or non-list batch raises.

    Example:
        resolver = BulkWeatherResolver(client, cache, gates)
        response = await resolver.execute(
            [{"city": "London", "country": "GB"}, {"cityId": "2643743"}]
        )
    """

    def __init__(
        self,
        api_client: OpenWeatherMapClient,
        cache: UnifiedCache,
        gates: CircuitGateRegistry,
        cache_ttl_ms: int = CacheConfig.DEFAULT_TTL_MS,
        provider_service: str = CircuitBreakerConfig.WEATHER_PROVIDER,
    ):
        """
        Initialize the resolver.

        Args:
            api_client: Weather provider client
            cache: Shared cache
            gates: Circuit gate registry; the provider service must be registered
            cache_ttl_ms: Lifetime of cached results in milliseconds
            provider_service: Gate name protecting the weather provider
        """
        self.api_client = api_client
        self.cache = cache
        self.cache_ttl_ms = cache_ttl_ms
        self.gates = gates
        self.gate = gates.get(provider_service, self._call_provider)

    @staticmethod
    async def _call_provider(fetch, *args) -> Optional[dict]:
        return await fetch(*args)

    async def execute(self, city_requests: List[Any]) -> BatchWeatherResponse:
        """
        Resolve current weather for every city in the batch.

        Args:
            city_requests: City requests, either ``{"city", "country"}`` or
                ``{"cityId"}`` mappings or ``CityRequest`` instances

        Returns:
            BatchWeatherResponse with one result per request in input order

        Raises:
            InvalidBatchError: If the batch is not a non-empty list
        """
        if not isinstance(city_requests, list) or not city_requests:
            raise InvalidBatchError("Cities array is required and must not be empty")

        started = time.perf_counter()
        summary = BatchSummary(total=len(city_requests))

        outcomes = await asyncio.gather(
            *(
                self._process_city_request(request, index, summary)
                for index, request in enumerate(city_requests)
            ),
            return_exceptions=True,
        )

        results = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                logger.error("City request %d failed unexpectedly: %s", index, outcome)
                result = CityResult(search_index=index, input=_echo(city_requests[index]))
                outcome = self._api_error_result(result, outcome, index, summary)
            results.append(outcome)

        results.sort(key=lambda result: result.search_index)
        processing_time_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "Resolved %d cities: %d found, %d failed, %d cached in %d ms",
            summary.total,
            summary.found,
            summary.failed,
            summary.cached,
            processing_time_ms,
        )
        return self._create_response(summary, processing_time_ms, results)

    async def _process_city_request(
        self, raw_request: Any, index: int, summary: BatchSummary
    ) -> CityResult:
        try:
            request = (
                raw_request
                if isinstance(raw_request, CityRequest)
                else CityRequest.model_validate(raw_request)
            )
        except ValidationError:
            result = CityResult(search_index=index, input=_echo(raw_request))
            return self._validation_error_result(result, raw_request, summary)

        result = CityResult(search_index=index, input=request.echo())
        try:
            if request.is_id_request:
                return await self._process_city_id_request(request, result, summary)
            return await self._process_city_name_request(request, result, summary)
        except Exception as e:  # pylint: disable=broad-exception-caught
            return self._api_error_result(
                result, e, request.city or request.city_id, summary
            )

    async def _process_city_id_request(
        self, request: CityRequest, result: CityResult, summary: BatchSummary
    ) -> CityResult:
        city_id = request.city_id

        if not self.is_valid_city_id(city_id):
            logger.warning("Invalid city ID format: %s", city_id)
            return self._validation_error_result(result, city_id, summary)

        cache_key = f"cityid_{city_id}"
        result.meta.cache_key = cache_key

        cached = await self._read_cache(cache_key)
        if cached:
            return self._cached_result(result, cached, summary)

        try:
            payload = await self.gate.fire(self.api_client.get_by_id, str(city_id))
            if not payload:
                raise WeatherAPIError("No data returned from weather service")
            entry = self.transform_weather_data(
                OpenWeatherMapResponse.model_validate(payload)
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            return self._api_error_result(result, e, f"city ID {city_id}", summary)

        await self._write_cache(cache_key, entry)
        return self._api_result(result, entry, summary)

    async def _process_city_name_request(
        self, request: CityRequest, result: CityResult, summary: BatchSummary
    ) -> CityResult:
        normalized = name_normalizer.normalize(request.city)

        if not name_normalizer.is_valid(normalized):
            return self._validation_error_result(result, request.city, summary)

        country = request.country or ""
        cache_key = name_normalizer.cache_key(normalized, country)
        result.meta.cache_key = cache_key

        cached = await self._read_cache(cache_key)
        if cached:
            return self._cached_result(result, cached, summary)

        try:
            entry, attempted, successful = await self.fetch_single_city_weather(
                request.city, country
            )
        except FallbackExhaustedError as e:
            result.meta.attempted_variations = e.attempted_variations
            return self._api_error_result(result, e, request.city, summary)

        await self._write_cache(cache_key, entry)
        result.meta.attempted_variations = attempted
        result.meta.successful_variation = successful
        return self._api_result(result, entry, summary)

    async def fetch_single_city_weather(
        self, city: str, country: str = ""
    ) -> Tuple[CacheEntry, List[str], str]:
        """
        Fetch weather for a city, trying its fallback spellings in order.

        The first variation that returns a payload wins. An empty payload is
        skipped like a failed call.

        Args:
            city: Original city name as requested
            country: Two-letter country code (optional)

        Returns:
            Tuple of (location and weather, variations tried, winning variation)

        Raises:
            FallbackExhaustedError: If no variation produced weather data
        """
        attempted: List[str] = []
        last_error: Optional[Exception] = None

        for variation in name_normalizer.fallback_names(city):
            attempted.append(variation)
            try:
                payload = await self.gate.fire(
                    self.api_client.get_by_name_and_country,
                    name_normalizer.clean_for_api(variation),
                    country,
                )
                if not payload:
                    continue
                entry = self.transform_weather_data(
                    OpenWeatherMapResponse.model_validate(payload)
                )
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.debug("Variation %r of %r failed: %s", variation, city, e)
                last_error = e
                continue
            return entry, attempted, variation

        reason = str(last_error) if last_error else "No valid response"
        raise FallbackExhaustedError(
            f"Failed to fetch weather for {city}: {reason}", attempted
        )

    @staticmethod
    def is_valid_city_id(city_id: Any) -> bool:
        """City IDs are non-empty digit strings or non-negative integers."""
        if city_id is None or isinstance(city_id, bool):
            return False
        return bool(_CITY_ID.match(str(city_id)))

    @staticmethod
    def transform_weather_data(weather: OpenWeatherMapResponse) -> CacheEntry:
        """
        Convert a provider payload to the location and weather we report.

        Missing country and coordinates become "Unknown", "" and None.
        """
        return CacheEntry(
            location=ResolvedLocation(
                name=weather.name,
                country=weather.country or "Unknown",
                country_code=weather.country or "",
                coordinates=Coordinates(lat=weather.latitude, lon=weather.longitude),
            ),
            weather=ResolvedWeather(
                temperature=round_half_up(weather.temperature),
                condition=weather.description,
                icon=weather.icon,
                timestamp=unix_to_iso(weather.dt),
            ),
        )

    async def _read_cache(self, cache_key: str) -> Optional[CacheEntry]:
        try:
            cached = await self.cache.get(cache_key)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Cache read failed for %s: %s", cache_key, e)
            return None

        if not cached:
            logger.debug("Cache miss for %s", cache_key)
            return None

        try:
            entry = CacheEntry.model_validate(cached)
        except ValidationError as e:
            logger.warning("Ignoring malformed cache entry %s: %s", cache_key, e)
            return None
        logger.debug("Cache hit for %s", cache_key)
        return entry

    async def _write_cache(self, cache_key: str, entry: CacheEntry):
        try:
            await self.cache.set(
                cache_key, entry.model_dump(mode="json", by_alias=True), self.cache_ttl_ms
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Cache write failed for %s: %s", cache_key, e)

    @staticmethod
    def _validation_error_result(
        result: CityResult, city_name: Any, summary: BatchSummary
    ) -> CityResult:
        result.status = ResultStatus.ERROR
        result.error = ResultError(
            code=ErrorCode.INVALID_CITY_NAME.value,
            message=f"Invalid city name: {city_name}",
        )
        summary.failed += 1
        return result

    @staticmethod
    def _api_error_result(
        result: CityResult, error: BaseException, city_name: Any, summary: BatchSummary
    ) -> CityResult:
        message = str(error) or f"No weather data found for {city_name}"
        result.status = ResultStatus.NOT_FOUND
        result.error = ResultError(code=ErrorCode.CITY_NOT_FOUND.value, message=message)
        summary.failed += 1
        logger.warning("Failed to fetch weather for %s: %s", city_name, message)
        return result

    @staticmethod
    def _cached_result(
        result: CityResult, entry: CacheEntry, summary: BatchSummary
    ) -> CityResult:
        result.status = ResultStatus.FOUND
        result.location = entry.location
        result.weather = entry.weather
        result.meta.cached = True
        result.meta.source = ResultSource.CACHE
        summary.found += 1
        summary.cached += 1
        return result

    @staticmethod
    def _api_result(
        result: CityResult, entry: CacheEntry, summary: BatchSummary
    ) -> CityResult:
        result.status = ResultStatus.FOUND
        result.location = entry.location
        result.weather = entry.weather
        result.meta.cached = False
        result.meta.source = ResultSource.API
        summary.found += 1
        return result

    @staticmethod
    def _create_response(
        summary: BatchSummary, processing_time_ms: int, results: List[CityResult]
    ) -> BatchWeatherResponse:
        response = BatchWeatherResponse(
            summary=summary, processing_time_ms=processing_time_ms, cities=results
        )

        id_results = [result for result in results if "cityId" in result.input]
        if id_results:
            response.data = {
                str(result.input["cityId"]): CityIdWeather(
                    city_name=result.location.name,
                    country=result.location.country_code,
                    temperature=result.weather.temperature,
                    icon=result.weather.icon,
                    description=result.weather.condition,
                )
                for result in id_results
                if result.status == ResultStatus.FOUND
            }
        return response


def _echo(raw_request: Any) -> dict:
    if isinstance(raw_request, CityRequest):
        return raw_request.echo()
    if isinstance(raw_request, dict):
        return dict(raw_request)
    return {"city": raw_request}
