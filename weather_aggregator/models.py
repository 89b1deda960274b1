"""
Pydantic models for request/response validation.

Responses are serialized with camelCase aliases (``searchIndex``,
``countryCode``, ``processingTimeMs``); attribute names stay snake_case.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CityRequest(CamelModel):
    """
    One city in a bulk request.

    Either ``city`` (with an optional two-letter ``country``) or ``city_id``
    is given; a present ``cityId`` selects the ID path.
    """

    city: Optional[str] = None
    country: Optional[str] = None
    city_id: Optional[Union[int, str]] = None

    @property
    def is_id_request(self) -> bool:
        return self.city_id is not None

    def echo(self) -> Dict[str, Any]:
        """Input as reported back in the result."""
        if self.is_id_request:
            return {"cityId": self.city_id}
        return {"city": self.city, "country": self.country or ""}


class Coordinates(BaseModel):
    lat: Optional[float] = None
    lon: Optional[float] = None


class ResolvedLocation(CamelModel):
    name: str
    country: str = "Unknown"
    country_code: str = ""
    coordinates: Coordinates = Field(default_factory=Coordinates)


class ResolvedWeather(CamelModel):
    temperature: int
    unit: str = "°C"
    condition: str
    icon: str
    timestamp: str


class CacheEntry(CamelModel):
    """The part of a result that is stored in the cache."""

    location: ResolvedLocation
    weather: ResolvedWeather


class ResultStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not-found"
    ERROR = "error"


class ResultSource(str, Enum):
    API = "api"
    CACHE = "cache"


class ResultError(BaseModel):
    code: str
    message: str


class ResultMeta(CamelModel):
    cached: bool = False
    cache_key: Optional[str] = None
    attempted_variations: Optional[List[str]] = None
    successful_variation: Optional[str] = None
    source: Optional[ResultSource] = None


class CityResult(CamelModel):
    """Outcome for one city of a bulk request."""

    search_index: int
    input: Dict[str, Any]
    status: ResultStatus = ResultStatus.ERROR
    location: Optional[ResolvedLocation] = None
    weather: Optional[ResolvedWeather] = None
    error: Optional[ResultError] = None
    meta: ResultMeta = Field(default_factory=ResultMeta)


class BatchSummary(BaseModel):
    total: int
    found: int = 0
    failed: int = 0
    cached: int = 0


class CityIdWeather(CamelModel):
    city_name: str
    country: str
    temperature: int
    icon: str
    description: str


class BatchWeatherResponse(CamelModel):
    """Response model for bulk weather queries."""

    success: bool = True
    summary: BatchSummary
    processing_time_ms: int
    cities: List[CityResult]
    data: Optional[Dict[str, CityIdWeather]] = None


class ErrorResponse(BaseModel):
    """Response model for error cases."""

    error: str
    message: str
    status_code: int
