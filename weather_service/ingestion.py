"""
Batch ingestion for Weather Service.

One run fetches current weather for every tracked city and writes all
samples in a single insert. A run is all-or-nothing: one failed fetch
abandons the whole batch.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Mapping

from .fetcher import TrackedEntity, WeatherSample

logger = logging.getLogger(__name__)

DEFAULT_FETCH_CONCURRENCY = 8


class IngestionError(Exception):
    """Raised when a batch run fails; no rows were written."""
    pass


class BatchWriter:
    """
    Fetches weather for a set of cities and persists it atomically.

    Args:
        fetcher: needs get_weather(entity) -> WeatherSample.
        store: needs insert_samples(samples).
        max_workers: parallel fetches per run.
    """

    def __init__(self, fetcher, store, max_workers: int = DEFAULT_FETCH_CONCURRENCY):
        self.fetcher = fetcher
        self.store = store
        self.max_workers = max_workers

    def run(self, entities: Mapping[str, TrackedEntity]) -> int:
        """
        Fetch and write one sample per city.

        Returns:
            Number of rows written (always len(entities) on success).

        Raises:
            IngestionError: a fetch or the insert failed.
        """
        if not entities:
            logger.info("Ingestion run: no cities tracked, nothing to write")
            return 0

        samples = self._fetch_all(entities)

        # keep rows in registry order, not completion order
        rows = [samples[name] for name in entities]
        try:
            self.store.insert_samples(rows)
        except Exception as e:
            logger.error(f"Ingestion run: insert {len(rows)} samples failed: {e}")
            raise IngestionError(f"send batch: {e}") from e

        logger.info(f"Ingestion run: wrote {len(rows)} samples")
        return len(rows)

    def _fetch_all(self, entities: Mapping[str, TrackedEntity]) -> Dict[str, WeatherSample]:
        samples: Dict[str, WeatherSample] = {}
        workers = max(1, min(self.max_workers, len(entities)))

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="weather-fetch")
        futures = {
            pool.submit(self.fetcher.get_weather, entity): name
            for name, entity in entities.items()
        }
        try:
            for future in as_completed(futures):
                name = futures[future]
                try:
                    samples[name] = future.result()
                except Exception as e:
                    logger.error(f"Ingestion run: get weather for city {name}: {e}")
                    raise IngestionError(f"get weather for city {name}: {e}") from e
        finally:
            # on failure, queued fetches are dropped and running ones are not awaited
            pool.shutdown(wait=False, cancel_futures=True)

        return samples
