"""
AWS Lambda handler with FastAPI application for the bulk weather service.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

from weather_aggregator.cache_factory import create_cache
from weather_aggregator.circuit_gate import CircuitGateRegistry
from weather_aggregator.config import ServiceConfig
from weather_aggregator.errors import ErrorCode, InvalidBatchError, WeatherServiceError
from weather_aggregator.external_api import OpenWeatherMapClient
from weather_aggregator.models import (
    BatchWeatherResponse,
    ErrorResponse,
    ResultStatus,
)
from weather_aggregator.weather_service import BulkWeatherResolver

# Configure logging
logging.basicConfig(
    level=ServiceConfig.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_resolver: Optional[BulkWeatherResolver] = None


async def build_resolver() -> BulkWeatherResolver:
    """Wire the cache, circuit gates and provider client into a resolver."""
    cache = await create_cache()
    gates = CircuitGateRegistry()
    resolver = BulkWeatherResolver(OpenWeatherMapClient(), cache, gates)
    logger.info("Bulk weather resolver ready with %s cache", cache.strategy)
    return resolver


async def get_resolver() -> BulkWeatherResolver:
    """Return the process-wide resolver, building it on first use."""
    global _resolver  # pylint: disable=global-statement
    if _resolver is None:
        _resolver = await build_resolver()
    return _resolver


# Initialize FastAPI app
app = FastAPI(
    title="Weather Aggregator",
    description="Bulk current-weather lookup for many cities",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Root endpoint providing API information."""
    return {
        "service": "Weather Aggregator",
        "version": "1.0.0",
        "status": "active",
        "endpoints": {
            "bulk_weather": "/weather/bulk",
            "current_weather": "/weather/current/{city_id}",
            "health_check": "/health",
            "documentation": "/docs",
        },
    }


@app.get("/health")
async def health_check():
    """Health check with provider reachability, circuit state and cache stats."""
    resolver = await get_resolver()
    provider_ok = await resolver.api_client.health_check()
    cache_stats = await resolver.cache.get_stats()

    return {
        "status": "healthy" if provider_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "weather_provider": "healthy" if provider_ok else "unhealthy",
            "cache": {"strategy": resolver.cache.strategy, **cache_stats},
            "circuit_breakers": resolver.gates.stats(),
        },
    }


@app.post("/weather/bulk", response_model=BatchWeatherResponse)
async def get_bulk_weather(request: Request):
    """
    Get current weather for up to MAX_BATCH_CITIES cities.

    The body is ``{"cities": [...]}`` where each item is either
    ``{"city": "London", "country": "GB"}`` or ``{"cityId": "2643743"}``.

    Raises:
        InvalidBatchError: If the cities array is missing, empty or too long
    """
    try:
        body = await request.json()
    except ValueError:
        body = None

    cities = body.get("cities") if isinstance(body, dict) else None

    if not isinstance(cities, list):
        raise InvalidBatchError(
            "Cities array is required", ErrorCode.CITIES_ARRAY_NOT_PROVIDED
        )
    if not cities:
        raise InvalidBatchError(
            "At least one city must be provided", ErrorCode.NO_CITIES_PROVIDED
        )
    if len(cities) > ServiceConfig.MAX_BATCH_CITIES:
        raise InvalidBatchError(
            f"Maximum {ServiceConfig.MAX_BATCH_CITIES} cities allowed per request",
            ErrorCode.TOO_MANY_CITIES,
        )

    resolver = await get_resolver()
    return await resolver.execute(cities)


@app.get("/weather/current/{city_id}")
async def get_current_weather(city_id: str):
    """
    Get current weather for a single provider city ID.

    Raises:
        WeatherServiceError: If the ID is malformed or the city was not found
    """
    resolver = await get_resolver()
    response = await resolver.execute([{"cityId": city_id}])
    result = response.cities[0]

    if result.status != ResultStatus.FOUND:
        raise WeatherServiceError(result.error.message, ErrorCode(result.error.code))

    return {
        "success": True,
        "data": response.data[city_id].model_dump(by_alias=True),
        "meta": result.meta.model_dump(mode="json", by_alias=True),
    }


@app.exception_handler(WeatherServiceError)
async def weather_service_exception_handler(
    request, exc: WeatherServiceError
):  # pylint: disable=unused-argument
    """Map service errors to their HTTP status."""
    logger.warning("Request failed with %s: %s", exc.code.value, exc.message)
    body = ErrorResponse(
        error=exc.code.value, message=exc.message, status_code=exc.status_code
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):  # pylint: disable=unused-argument
    """Global exception handler for unhandled errors."""
    logger.error("Unhandled exception: %s", str(exc))
    body = ErrorResponse(
        error=ErrorCode.INTERNAL_SERVER_ERROR.value,
        message="An unexpected error occurred",
        status_code=500,
    )
    return JSONResponse(status_code=500, content=body.model_dump())


# AWS Lambda handler using Mangum
lambda_handler = Mangum(app, lifespan="off")
