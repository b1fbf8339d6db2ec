"""
Database module for Weather Service.

Handles ClickHouse persistence with:
- Append-only weather_metrics table, partitioned by month
- cities table holding the tracked set, loaded fully at startup
- Bulk inserts: every write is a single insert block
"""

import logging
import threading
from typing import List, Sequence

import clickhouse_connect

from .config import ClickHouseConfig
from .fetcher import TrackedEntity, WeatherSample

logger = logging.getLogger(__name__)

SCHEMA_QUERIES = [
    """
    CREATE TABLE IF NOT EXISTS weather_metrics (
        timestamp DateTime,
        city String,
        temp Float32,
        app_temp Float32,
        pressure Int16,
        wind_speed Float32,
        wind_deg Int16
    ) ENGINE = MergeTree()
    PARTITION BY toYYYYMM(timestamp)
    ORDER BY timestamp
    """,
    """
    CREATE TABLE IF NOT EXISTS cities (
        city String,
        lat Float32,
        lon Float32
    ) ENGINE = MergeTree()
    ORDER BY (city)
    """,
]

SAMPLE_COLUMNS = ["timestamp", "city", "temp", "app_temp", "pressure", "wind_speed", "wind_deg"]
CITY_COLUMNS = ["city", "lat", "lon"]


class StoreError(Exception):
    """Raised when the analytics store rejects or cannot serve a request."""
    pass


class AnalyticsStore:
    """
    ClickHouse wrapper with thread-safe operations.

    A clickhouse-connect client holds one HTTP session, so calls are
    serialized with a lock; the scheduler thread and API request
    threads share one instance.
    """

    def __init__(self, client) -> None:
        self._client = client
        self._lock = threading.Lock()

    @classmethod
    def connect(cls, config: ClickHouseConfig) -> "AnalyticsStore":
        logger.info(
            f"Connecting to ClickHouse host={config.host} port={config.port} "
            f"user={config.user} db={config.database}"
        )
        try:
            client = clickhouse_connect.get_client(
                host=config.host,
                port=config.port,
                username=config.user,
                password=config.password,
                database=config.database,
            )
        except Exception as e:
            logger.error(f"Failed to connect to ClickHouse: {e}")
            raise StoreError(f"failed to connect to ClickHouse: {e}") from e
        return cls(client)

    def init_schema(self) -> None:
        """Create tables if absent."""
        with self._lock:
            for query in SCHEMA_QUERIES:
                try:
                    self._client.command(query)
                except Exception as e:
                    logger.error(f"Failed to create table: {e}")
                    raise StoreError(f"failed to create table: {e}") from e
        logger.info("ClickHouse schema ready")

    def load_cities(self) -> List[TrackedEntity]:
        """Read the whole tracked set."""
        with self._lock:
            try:
                result = self._client.query("SELECT city, lat, lon FROM cities")
            except Exception as e:
                logger.error(f"Failed to select cities: {e}")
                raise StoreError(f"select cities: {e}") from e

        cities = []
        for row in result.result_rows:
            try:
                city, lat, lon = row
                cities.append(TrackedEntity(name=city, latitude=float(lat), longitude=float(lon)))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable city row {row!r}: {e}")
        logger.info(f"Loaded {len(cities)} cities from DB")
        return cities

    def insert_cities(self, cities: Sequence[TrackedEntity]) -> None:
        """Append cities in one insert block."""
        if not cities:
            return
        rows = [(c.name, c.latitude, c.longitude) for c in cities]
        self._insert("cities", rows, CITY_COLUMNS)

    def insert_samples(self, samples: Sequence[WeatherSample]) -> None:
        """Append weather samples in one insert block."""
        if not samples:
            return
        self._insert("weather_metrics", [s.as_row() for s in samples], SAMPLE_COLUMNS)

    def _insert(self, table: str, rows: list, columns: List[str]) -> None:
        with self._lock:
            try:
                self._client.insert(table, rows, column_names=columns)
            except Exception as e:
                logger.error(f"Failed to insert {len(rows)} rows into {table}: {e}")
                raise StoreError(f"insert into {table}: {e}") from e
        logger.debug(f"Inserted {len(rows)} rows into {table}")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
                logger.info("ClickHouse connection closed")
