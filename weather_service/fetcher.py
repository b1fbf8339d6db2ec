"""
OpenWeather fetcher module for Weather Service.

Handles the two lookups the pipeline needs from OpenWeather:
- Geocoding: city name -> coordinates (used when registering cities)
- Current weather: coordinates -> one WeatherSample (used every tick)

Transient HTTP failures are retried by the session adapter; anything
that still fails surfaces as FetchError to the caller.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import WeatherApiConfig

logger = logging.getLogger(__name__)

# Configuration constants
DEFAULT_TIMEOUT = 15  # seconds
MAX_RETRIES = 3
RETRY_BACKOFF = 0.5
USER_AGENT = "WeatherService/1.0"
LOG_SAMPLE_LENGTH = 200

# OpenWeather endpoints
WEATHER_URL = "https://pro.openweathermap.org/data/2.5/weather"
GEOCODING_URL = "http://api.openweathermap.org/geo/1.0/direct"


@dataclass(frozen=True)
class TrackedEntity:
    """A city whose weather is sampled on every tick."""
    name: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class WeatherSample:
    """One observation for one city, appended to the analytics store."""
    timestamp: datetime
    entity_name: str
    temperature: float
    apparent_temperature: float
    pressure: int
    wind_speed: float
    wind_direction_deg: int

    def as_row(self) -> tuple:
        return (
            self.timestamp,
            self.entity_name,
            self.temperature,
            self.apparent_temperature,
            self.pressure,
            self.wind_speed,
            self.wind_direction_deg,
        )


class FetchError(Exception):
    """Custom exception for weather API errors."""
    pass


class OpenWeatherFetcher:
    """
    Client for the OpenWeather geocoding and current-weather APIs.

    Safe to share between threads: requests.Session is used only for
    independent GET calls.
    """

    def __init__(self, api_key: str, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._api_key = api_key
        self._session = self._create_session()

    @classmethod
    def from_config(cls, config: WeatherApiConfig) -> "OpenWeatherFetcher":
        return cls(api_key=config.api_key, timeout=config.timeout)

    def _create_session(self) -> requests.Session:
        """Create HTTP session with retry strategy for availability."""
        session = requests.Session()

        retry_strategy = Retry(
            total=MAX_RETRIES,
            backoff_factor=RETRY_BACKOFF,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            "User-Agent": USER_AGENT,
            "Accept": "application/json"
        })

        return session

    def _get_json(self, url: str, params: Dict[str, Any], operation: str) -> Any:
        # appid is appended here so it never shows up in the logged params
        logger.debug(f"{operation}: GET {url} params={params}")
        try:
            response = self._session.get(
                url,
                params={**params, "appid": self._api_key},
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.Timeout:
            logger.error(f"{operation}: request timed out after {self.timeout}s")
            raise FetchError(f"{operation}: request timed out after {self.timeout}s")
        except requests.ConnectionError as e:
            logger.error(f"{operation}: connection error: {e}")
            raise FetchError(f"{operation}: connection error - source unavailable")
        except requests.HTTPError as e:
            logger.error(f"{operation}: HTTP error {e.response.status_code}")
            raise FetchError(f"{operation}: HTTP error {e.response.status_code}")
        except requests.RequestException as e:
            logger.error(f"{operation}: request failed: {e}")
            raise FetchError(f"{operation}: request failed: {e}")

        sample = response.text[:LOG_SAMPLE_LENGTH]
        logger.debug(f"{operation}: status={response.status_code} sample={sample}")

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"{operation}: decode error: {e}")
            raise FetchError(f"{operation}: decode error: {e}")

    def get_coordinates(self, city_name: str) -> TrackedEntity:
        """
        Resolve a city name to coordinates via the geocoding API.

        The entity keeps the requested name as its key, so later lookups
        by the same name hit the registry instead of the API.

        Raises:
            FetchError: on transport errors, malformed responses or when
                the city is unknown to the API.
        """
        data = self._get_json(
            GEOCODING_URL,
            {"q": city_name, "limit": 1},
            "get_coordinates"
        )

        if not isinstance(data, list):
            raise FetchError(f"get_coordinates: unexpected response for city {city_name}")
        if not data:
            logger.warning(f"get_coordinates: no results for city {city_name}")
            raise FetchError(f"get_coordinates: no results for city {city_name}")

        try:
            first = data[0]
            return TrackedEntity(
                name=city_name,
                latitude=float(first["lat"]),
                longitude=float(first["lon"])
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"get_coordinates: bad payload for city {city_name}: {e}")
            raise FetchError(f"get_coordinates: bad payload for city {city_name}: {e}")

    def get_weather(self, entity: TrackedEntity) -> WeatherSample:
        """Fetch current weather for one city (metric units)."""
        data = self._get_json(
            WEATHER_URL,
            {"lat": entity.latitude, "lon": entity.longitude, "units": "metric"},
            "get_weather"
        )
        return parse_weather(entity.name, data)

    def close(self) -> None:
        """Close HTTP session."""
        self._session.close()


def parse_weather(entity_name: str, data: Optional[Dict[str, Any]]) -> WeatherSample:
    """Map an OpenWeather current-weather document to a WeatherSample."""
    try:
        main = data["main"]
        wind = data.get("wind", {})
        return WeatherSample(
            timestamp=datetime.fromtimestamp(int(data["dt"]), tz=timezone.utc),
            entity_name=entity_name,
            temperature=float(main["temp"]),
            apparent_temperature=float(main["feels_like"]),
            pressure=int(main["pressure"]),
            wind_speed=float(wind.get("speed", 0.0)),
            wind_direction_deg=int(wind.get("deg", 0))
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.error(f"get_weather: bad payload for city {entity_name}: {e}")
        raise FetchError(f"get_weather: bad payload for city {entity_name}: {e}")
