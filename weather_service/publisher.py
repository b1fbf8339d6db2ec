"""
RabbitMQ publisher module for Weather Service.

Declares the e-mail queue topology and publishes NotificationTasks to it.
Messages are persistent and timestamped; publishing never retries, the
caller sees every failure.
"""

import logging
import threading
import time
from typing import Optional

import pika
from pika.exceptions import AMQPError

from .config import RabbitConfig
from .tasks import NotificationTask

logger = logging.getLogger(__name__)

EMAIL_EXCHANGE = "email_exchange"
EMAIL_QUEUE = "email_queue"
ROUTING_KEY = "send_email"


class PublisherNotConnected(Exception):
    """Raised when publishing before connect() or after the channel closed."""
    pass


class PublishError(Exception):
    """Raised when the broker rejects or fails a publish."""
    pass


def declare_queue(channel) -> None:
    """Durable queue only; safe to call from consumers that do not publish."""
    channel.queue_declare(queue=EMAIL_QUEUE, durable=True)


def declare_topology(channel) -> None:
    """Durable direct exchange + durable queue + binding. Idempotent."""
    channel.exchange_declare(exchange=EMAIL_EXCHANGE, exchange_type="direct", durable=True)
    declare_queue(channel)
    channel.queue_bind(queue=EMAIL_QUEUE, exchange=EMAIL_EXCHANGE, routing_key=ROUTING_KEY)


class TaskPublisher:
    """
    Publishes notification tasks over one shared channel.

    pika connections are not thread-safe, so publish() calls from
    concurrent request threads are serialized.
    """

    def __init__(self, url: str, connection_factory=None):
        self._url = url
        self._connection_factory = connection_factory or (
            lambda url: pika.BlockingConnection(pika.URLParameters(url))
        )
        self._connection = None
        self._channel = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RabbitConfig) -> "TaskPublisher":
        return cls(config.url)

    def connect(self) -> None:
        with self._lock:
            try:
                connection = self._connection_factory(self._url)
            except AMQPError as e:
                logger.error(f"InitRabbit: dial: {e}")
                raise PublishError(f"dial: {e}") from e

            try:
                channel = connection.channel()
                declare_topology(channel)
            except AMQPError as e:
                logger.error(f"InitRabbit: topology: {e}")
                self._close_quietly(connection)
                raise PublishError(f"topology: {e}") from e

            self._connection = connection
            self._channel = channel
        logger.info("InitRabbit: connected")

    @property
    def is_connected(self) -> bool:
        channel = self._channel
        return channel is not None and channel.is_open

    def publish(self, task: NotificationTask) -> None:
        """
        Hand a task to the queue.

        Raises:
            PublisherNotConnected: no open channel.
            PublishError: the broker call failed.
        """
        body = task.to_json()
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=pika.DeliveryMode.Persistent,
            timestamp=int(time.time()),
        )

        with self._lock:
            if self._channel is None or not self._channel.is_open:
                logger.error("PublishEmailTask: rabbit channel not initialized")
                raise PublisherNotConnected("rabbit channel not initialized")
            try:
                self._channel.basic_publish(
                    exchange=EMAIL_EXCHANGE,
                    routing_key=ROUTING_KEY,
                    body=body,
                    properties=properties,
                )
            except AMQPError as e:
                logger.error(f"PublishEmailTask: publish to {task.recipient} failed: {e}")
                raise PublishError(f"publish: {e}") from e

        logger.info(f"PublishEmailTask: queued {task.kind or 'email'} for {task.recipient}")

    def close(self) -> None:
        with self._lock:
            channel, self._channel = self._channel, None
            connection, self._connection = self._connection, None
        if channel is not None and channel.is_open:
            self._close_quietly(channel)
        if connection is not None:
            self._close_quietly(connection)
        logger.info("Publisher connection closed")

    @staticmethod
    def _close_quietly(resource: Optional[object]) -> None:
        try:
            resource.close()
        except AMQPError as e:
            logger.warning(f"Error while closing {type(resource).__name__}: {e}")
