"""Shared fakes for the broker, the analytics store and the weather API."""
import queue
import threading
from datetime import datetime, timezone

import pytest

from weather_service.fetcher import FetchError, TrackedEntity, WeatherSample
from weather_service.worker import Delivery


def make_sample(name, temperature=10.0):
    return WeatherSample(
        timestamp=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        entity_name=name,
        temperature=temperature,
        apparent_temperature=temperature - 2,
        pressure=1013,
        wind_speed=3.5,
        wind_direction_deg=180,
    )


class FakeStore:
    """In-memory stand-in for AnalyticsStore; records each insert call."""

    def __init__(self, cities=None):
        self.cities = list(cities or [])
        self.city_batches = []
        self.sample_batches = []
        self.fail_inserts = False
        self._lock = threading.Lock()

    def load_cities(self):
        return list(self.cities)

    def insert_cities(self, cities):
        if self.fail_inserts:
            raise RuntimeError("store unavailable")
        with self._lock:
            self.city_batches.append(list(cities))
            self.cities.extend(cities)

    def insert_samples(self, samples):
        if self.fail_inserts:
            raise RuntimeError("store unavailable")
        with self._lock:
            self.sample_batches.append(list(samples))

    @property
    def samples(self):
        return [s for batch in self.sample_batches for s in batch]


class FakeGeocoder:
    """Resolves any name except those listed in `unknown`."""

    def __init__(self, unknown=(), delay=None):
        self.unknown = set(unknown)
        self.calls = []
        self.delay = delay

    def get_coordinates(self, name):
        self.calls.append(name)
        if self.delay is not None:
            self.delay.wait(1)
        if name in self.unknown:
            raise FetchError(f"get_coordinates: no results for city {name}")
        return TrackedEntity(name=name, latitude=float(len(name)), longitude=-float(len(name)))


class FakeWeatherFetcher:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []
        self._lock = threading.Lock()

    def get_weather(self, entity):
        with self._lock:
            self.calls.append(entity.name)
        if entity.name in self.failing:
            raise FetchError(f"get_weather: HTTP error 503 for {entity.name}")
        return make_sample(entity.name)


class FakeBroker:
    """
    Minimal durable queue: nack(requeue=True) puts the message back marked
    as redelivered, ack removes it for good.
    """

    def __init__(self):
        self.ready = queue.Queue()
        self.acks = []
        self.nacks = []
        self._next_tag = 1
        self._unacked = {}
        self._lock = threading.Lock()

    def publish(self, body):
        self.ready.put((body, False))

    def get(self, timeout=1.0):
        body, redelivered = self.ready.get(timeout=timeout)
        with self._lock:
            tag = self._next_tag
            self._next_tag += 1
            self._unacked[tag] = body
        return Delivery(body=body, delivery_tag=tag, redelivered=redelivered, settle=self.settle)

    def settle(self, tag, ack, requeue):
        with self._lock:
            body = self._unacked.pop(tag)
            if ack:
                self.acks.append(tag)
            else:
                self.nacks.append((tag, requeue))
        if not ack and requeue:
            self.ready.put((body, True))

    @property
    def pending(self):
        return self.ready.qsize()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def cities():
    return {
        name: TrackedEntity(name=name, latitude=i * 1.5, longitude=i * 2.5)
        for i, name in enumerate(["Moscow", "Berlin", "Paris"])
    }
