"""
Weather Service

Tracked-city weather sampling and e-mail notifications:
- OpenWeather current-weather sampling on a fixed interval
- ClickHouse persistence, one bulk insert per run
- City registry loaded at startup, extended by registration
- RabbitMQ e-mail queue with a retrying consumer pool
"""

from .database import AnalyticsStore, StoreError
from .executor import DeliveryError, DeliveryExecutor, DeliveryTimeout, SmtpMailer
from .fetcher import FetchError, OpenWeatherFetcher, TrackedEntity, WeatherSample
from .ingestion import BatchWriter, IngestionError
from .publisher import PublishError, PublisherNotConnected, TaskPublisher
from .registry import CityRegistry, RegistrationError
from .scheduler import IngestionResult, IngestionScheduler
from .shutdown import ShutdownCoordinator
from .tasks import MalformedTaskError, NotificationTask
from .worker import ConsumerPool, Delivery, Outcome

__version__ = "1.0.0"

__all__ = [
    "AnalyticsStore",
    "StoreError",
    "DeliveryError",
    "DeliveryExecutor",
    "DeliveryTimeout",
    "SmtpMailer",
    "FetchError",
    "OpenWeatherFetcher",
    "TrackedEntity",
    "WeatherSample",
    "BatchWriter",
    "IngestionError",
    "PublishError",
    "PublisherNotConnected",
    "TaskPublisher",
    "CityRegistry",
    "RegistrationError",
    "IngestionResult",
    "IngestionScheduler",
    "ShutdownCoordinator",
    "MalformedTaskError",
    "NotificationTask",
    "ConsumerPool",
    "Delivery",
    "Outcome",
]
