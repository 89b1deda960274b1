"""
Configuration constants for the weather aggregator service.
"""

import os


def _env_list(name: str, default: str) -> tuple:
    return tuple(
        item.strip() for item in os.getenv(name, default).split(",") if item.strip()
    )


class RetryConfig:
    """Retry configuration for resilient operations"""

    # API retry configuration
    API_MAX_ATTEMPTS = 3
    API_BASE_DELAY = 1.0
    API_BACKOFF_MULTIPLIER = 2.0
    API_MAX_DELAY = 30.0
    API_JITTER = True
    API_JITTER_RANGE = 0.1

    # DynamoDB retry configuration
    DYNAMODB_MAX_ATTEMPTS = 3
    DYNAMODB_BASE_DELAY = 0.5
    DYNAMODB_BACKOFF_MULTIPLIER = 2.0
    DYNAMODB_MAX_DELAY = 10.0
    DYNAMODB_JITTER = True
    DYNAMODB_JITTER_RANGE = 0.1


class ExternalAPIConfig:
    """OpenWeatherMap configuration"""

    OPENWEATHER_BASE_URL = os.getenv(
        "OPENWEATHER_BASE_URL", "https://api.openweathermap.org/data/2.5"
    )
    OPENWEATHER_TIMEOUT = int(os.getenv("OPENWEATHER_TIMEOUT", "10"))
    OPENWEATHER_API_KEY = os.getenv("OPENWEATHER_API_KEY", "")
    OPENWEATHER_UNITS = os.getenv("OPENWEATHER_UNITS", "metric")
    OPENWEATHER_LANG = os.getenv("OPENWEATHER_LANG", "en")
    OPENWEATHER_RESPONSE_MODE = os.getenv("OPENWEATHER_RESPONSE_MODE", "json")


class CacheConfig:
    """Cache backend selection and settings"""

    MEMORY = "memory"
    DYNAMODB = "dynamodb"

    STRATEGY = os.getenv("CACHE_STRATEGY", MEMORY)
    DEFAULT_TTL_MS = int(os.getenv("CACHE_DEFAULT_TTL", "300000"))  # 5 minutes

    DYNAMODB_TABLE_NAME = os.getenv("DYNAMODB_TABLE_NAME", "")
    DYNAMODB_REGION = os.getenv("DYNAMODB_REGION", "ap-northeast-2")
    KEY_PREFIX = os.getenv("CACHE_KEY_PREFIX", "WEATHER#")

    # Number of keys listed by get_stats() on the remote store
    STATS_KEY_LIMIT = 10


class CircuitBreakerConfig:
    """Circuit breaker settings shared by every gated dependency"""

    TIMEOUT = float(os.getenv("CIRCUIT_BREAKER_TIMEOUT", "4.0"))
    ERROR_THRESHOLD_PERCENTAGE = float(
        os.getenv("CIRCUIT_BREAKER_ERROR_THRESHOLD", "80")
    )
    RESET_TIMEOUT = float(os.getenv("CIRCUIT_BREAKER_RESET_TIMEOUT", "10.0"))
    ROLLING_COUNT_TIMEOUT = float(os.getenv("CIRCUIT_BREAKER_ROLLING_WINDOW", "10.0"))
    ROLLING_COUNT_BUCKETS = 10
    VOLUME_THRESHOLD = int(os.getenv("CIRCUIT_BREAKER_VOLUME_THRESHOLD", "0"))

    WEATHER_PROVIDER = "weather_provider"
    SERVICES = _env_list("CIRCUIT_BREAKER_SERVICES", WEATHER_PROVIDER)


class ServiceConfig:
    """Service-level configuration"""

    ENV = os.getenv("ENV", "dev")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    MAX_BATCH_CITIES = int(os.getenv("MAX_BATCH_CITIES", "15"))
