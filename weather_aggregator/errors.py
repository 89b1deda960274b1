"""
Error codes and service-level exceptions.

Every error the service reports carries an ``ErrorCode``. The HTTP layer turns
a code into a status with ``http_status_for``; nothing matches on message text.
"""

from enum import Enum
from typing import List, Optional


class ErrorCode(str, Enum):
    """Error codes reported per item or for a whole request."""

    INVALID_CITY_NAME = "INVALID_CITY_NAME"
    CITY_NOT_FOUND = "CITY_NOT_FOUND"
    CITIES_ARRAY_NOT_PROVIDED = "CITIES_ARRAY_NOT_PROVIDED"
    NO_CITIES_PROVIDED = "NO_CITIES_PROVIDED"
    TOO_MANY_CITIES = "TOO_MANY_CITIES"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


_HTTP_STATUS = {
    ErrorCode.INVALID_CITY_NAME: 400,
    ErrorCode.CITY_NOT_FOUND: 404,
    ErrorCode.CITIES_ARRAY_NOT_PROVIDED: 400,
    ErrorCode.NO_CITIES_PROVIDED: 400,
    ErrorCode.TOO_MANY_CITIES: 400,
    ErrorCode.CIRCUIT_OPEN: 503,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_SERVER_ERROR: 500,
}


def http_status_for(code: ErrorCode) -> int:
    """Return the HTTP status code for an error code."""
    return _HTTP_STATUS[ErrorCode(code)]


class WeatherServiceError(Exception):
    """Base exception for errors raised by the weather aggregator."""

    code = ErrorCode.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return http_status_for(self.code)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class InvalidBatchError(WeatherServiceError):
    """Raised when a batch request is missing, malformed or empty."""

    code = ErrorCode.NO_CITIES_PROVIDED


class FallbackExhaustedError(WeatherServiceError):
    """Raised when every fallback spelling of a city name failed."""

    code = ErrorCode.CITY_NOT_FOUND

    def __init__(self, message: str, attempted_variations: List[str]):
        super().__init__(message)
        self.attempted_variations = list(attempted_variations)


class CircuitOpenError(WeatherServiceError):
    """Raised when a call is rejected because its circuit gate is open."""

    code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, service: str):
        super().__init__(f"Circuit breaker for {service} is open")
        self.service = service


class CircuitTimeoutError(WeatherServiceError):
    """Raised when a gated call exceeds the gate's timeout."""

    code = ErrorCode.SERVICE_UNAVAILABLE

    def __init__(self, service: str, timeout: float):
        super().__init__(f"Call to {service} timed out after {timeout:g} seconds")
        self.service = service
        self.timeout = timeout
