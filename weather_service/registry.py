"""
City registry for Weather Service.

In-memory mapping of tracked city name -> coordinates, mirroring the
cities table. Many request threads read it; only registration writes.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

from .fetcher import FetchError, TrackedEntity

logger = logging.getLogger(__name__)


class RegistrationError(Exception):
    """Raised when a registration call fails; nothing was persisted."""
    pass


class ReadWriteLock:
    """Many concurrent readers or a single writer. Writers are preferred."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class CityRegistry:
    """
    Tracked cities, guarded by a reader/writer lock.

    Args:
        store: persists new cities (needs load_cities() and insert_cities()).
        geocoder: resolves names (needs get_coordinates(name)).
    """

    def __init__(self, store, geocoder):
        self._store = store
        self._geocoder = geocoder
        self._cities: Dict[str, TrackedEntity] = {}
        self._lock = ReadWriteLock()

    def load(self) -> int:
        """Fill the mapping from the store. Called once at startup."""
        cities = self._store.load_cities()
        with self._lock.write():
            for city in cities:
                self._cities[city.name] = city
            count = len(self._cities)
        logger.info(f"Registry loaded with {count} cities")
        return count

    def register(self, names: Iterable[str]) -> List[TrackedEntity]:
        """
        Track every name not tracked yet.

        All-or-nothing: if any lookup or the bulk write fails, no city from
        this call is persisted or becomes visible.

        Returns:
            The entities added by this call.

        Raises:
            RegistrationError: a lookup or the store write failed.
        """
        wanted = []
        with self._lock.read():
            for name in names:
                if name not in self._cities and name not in wanted:
                    wanted.append(name)

        if not wanted:
            return []

        # Geocoding is slow I/O, so it runs without holding the lock
        resolved = []
        for name in wanted:
            try:
                resolved.append(self._geocoder.get_coordinates(name))
            except FetchError as e:
                logger.error(f"register: get coordinates for city {name}: {e}")
                raise RegistrationError(f"get coordinates for city {name}: {e}") from e

        with self._lock.write():
            # a concurrent call may have merged some of these meanwhile
            added = [city for city in resolved if city.name not in self._cities]
            if added:
                try:
                    self._store.insert_cities(added)
                except Exception as e:
                    logger.error(f"register: persist {len(added)} cities: {e}")
                    raise RegistrationError(f"persist cities: {e}") from e
                for city in added:
                    self._cities[city.name] = city

        logger.info(f"register: added {len(added)} cities to DB and registry")
        return added

    def get(self, name: str) -> Optional[TrackedEntity]:
        with self._lock.read():
            return self._cities.get(name)

    def names(self) -> List[str]:
        with self._lock.read():
            return sorted(self._cities)

    def snapshot(self) -> Dict[str, TrackedEntity]:
        """Shallow copy of the mapping for one ingestion run."""
        with self._lock.read():
            return dict(self._cities)

    def __contains__(self, name: str) -> bool:
        with self._lock.read():
            return name in self._cities

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._cities)
