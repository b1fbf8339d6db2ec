"""
E-mail consumer pool for Weather Service.

A single consuming channel pulls deliveries from the durable e-mail queue
(bounded by the prefetch limit) and hands them to a fixed number of worker
threads. Each worker:

- acks and discards a payload that does not decode (never retried),
- runs the delivery executor against a deadline,
- acks on success, nacks with requeue on failure or timeout.

Failed tasks are redelivered by the broker immediately and without limit.
pika channels are not thread-safe, so workers never touch the channel:
acks and nacks are scheduled onto the connection thread.
"""

import functools
import logging
import os
import queue
import sys
import threading
from enum import Enum
from typing import Callable, List, Optional

import pika
from pika.exceptions import AMQPError

from .config import ConfigError, RabbitConfig, SmtpConfig, WorkerConfig
from .executor import DeliveryError, DeliveryExecutor, SmtpMailer
from .publisher import EMAIL_QUEUE, declare_queue
from .shutdown import ShutdownCoordinator
from .tasks import MalformedTaskError, NotificationTask

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 10
CONNECT_RETRY_DELAY = 2.0  # seconds

_STOP = object()


class Outcome(Enum):
    """What a worker did with one delivery."""
    ACKED = "acked"
    DISCARDED = "discarded"
    REQUEUED = "requeued"


class Delivery:
    """
    One queued message handed to a worker.

    `settle(delivery_tag, ack, requeue)` forwards the decision to the broker.
    Only the first ack/nack is forwarded.
    """

    def __init__(self, body: bytes, delivery_tag: int, redelivered: bool = False,
                 settle: Optional[Callable[[int, bool, bool], None]] = None):
        self.body = body
        self.delivery_tag = delivery_tag
        self.redelivered = redelivered
        self._settle = settle
        self._settled = False

    def ack(self) -> None:
        self._finish(ack=True, requeue=False)

    def nack(self, requeue: bool = True) -> None:
        self._finish(ack=False, requeue=requeue)

    def _finish(self, ack: bool, requeue: bool) -> None:
        if self._settled:
            logger.warning(f"Delivery {self.delivery_tag} already settled, ignoring")
            return
        self._settled = True
        if self._settle is not None:
            self._settle(self.delivery_tag, ack, requeue)

    @property
    def settled(self) -> bool:
        return self._settled


class ConsumerPool:
    """
    Fixed pool of worker threads fed from one RabbitMQ consumer.

    Args:
        url: AMQP URL of the broker.
        executor: DeliveryExecutor used for every task.
        config: worker count, prefetch limit, delivery deadline.
        connection_factory: builds a pika BlockingConnection from the URL.
    """

    def __init__(self, url: str, executor: DeliveryExecutor, config: Optional[WorkerConfig] = None,
                 connection_factory=None):
        self.url = url
        self.executor = executor
        self.config = config or WorkerConfig()
        self._connection_factory = connection_factory or (
            lambda url: pika.BlockingConnection(pika.URLParameters(url))
        )
        self._connection = None
        self._channel = None
        self._inbox: "queue.Queue" = queue.Queue()
        self._workers: List[threading.Thread] = []
        self._consumer_thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    # =========================================================================
    # Per-delivery protocol
    # =========================================================================

    def process_delivery(self, delivery: Delivery, worker_id: int = 0) -> Outcome:
        try:
            task = NotificationTask.from_json(delivery.body)
        except MalformedTaskError as e:
            logger.error(f"worker {worker_id}: bad message json, discarding: {e}")
            delivery.ack()
            return Outcome.DISCARDED

        try:
            self.executor.deliver(task, timeout=self.config.delivery_timeout)
        except DeliveryError as e:
            logger.error(f"worker {worker_id}: send mail failed for {task.recipient}: {e}")
            delivery.nack(requeue=True)
            return Outcome.REQUEUED

        delivery.ack()
        logger.info(f"worker {worker_id}: email sent to {task.recipient}")
        return Outcome.ACKED

    # =========================================================================
    # Worker threads
    # =========================================================================

    def dispatch(self, delivery: Delivery) -> None:
        """Queue a delivery for the next idle worker."""
        self._inbox.put(delivery)

    def start_workers(self) -> None:
        if self._workers:
            return
        for worker_id in range(self.config.worker_count):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker_id,),
                name=f"email-worker-{worker_id}",
                daemon=True
            )
            thread.start()
            self._workers.append(thread)

    def stop_workers(self, timeout: Optional[float] = None) -> None:
        """Let workers finish their current delivery, then exit."""
        for _ in self._workers:
            self._inbox.put(_STOP)
        for thread in self._workers:
            thread.join(timeout)
        self._workers = []

    def _worker_loop(self, worker_id: int) -> None:
        logger.info(f"worker {worker_id} started")
        while True:
            delivery = self._inbox.get()
            if delivery is _STOP:
                break
            if self._stopping.is_set():
                logger.info(f"worker {worker_id}: stopping, leaving delivery {delivery.delivery_tag} to the broker")
                continue
            try:
                self.process_delivery(delivery, worker_id)
            except Exception:
                logger.exception(f"worker {worker_id}: unexpected error on delivery {delivery.delivery_tag}")
                if not delivery.settled:
                    delivery.nack(requeue=True)
        logger.info(f"worker {worker_id} stopped")

    # =========================================================================
    # Broker side
    # =========================================================================

    def connect(self) -> bool:
        """
        Dial the broker, retrying while it comes up.

        Returns False when stop() was called before a connection was made.
        """
        last_error = None
        for attempt in range(1, CONNECT_ATTEMPTS + 1):
            if self._stopping.is_set():
                break
            try:
                self._connection = self._connection_factory(self.url)
                break
            except AMQPError as e:
                last_error = e
                logger.warning(f"RabbitMQ not ready, retry in {CONNECT_RETRY_DELAY}s... ({attempt}/{CONNECT_ATTEMPTS})")
                self._stopping.wait(CONNECT_RETRY_DELAY)

        if self._connection is None:
            if self._stopping.is_set():
                return False
            raise ConnectionError(f"could not connect to rabbit after retries: {last_error}")

        self._channel = self._connection.channel()
        declare_queue(self._channel)
        self._channel.basic_qos(prefetch_count=self.config.prefetch)
        logger.info(f"Consumer connected: prefetch={self.config.prefetch} workers={self.config.worker_count}")
        return True

    def run(self) -> None:
        """Consume until stop() is called. Blocks the calling thread."""
        if not self.connect():
            return
        self.start_workers()
        try:
            self._channel.basic_consume(
                queue=EMAIL_QUEUE,
                on_message_callback=self._on_message,
                auto_ack=False
            )
            if not self._stopping.is_set():
                self._channel.start_consuming()
        finally:
            self._close_connection()

    def start(self, on_exit: Optional[Callable[[], None]] = None) -> None:
        """Run the consumer on a background thread."""
        def target():
            try:
                self.run()
            except Exception:
                logger.exception("Consumer stopped unexpectedly")
            finally:
                if on_exit is not None:
                    on_exit()

        self._consumer_thread = threading.Thread(target=target, name="amqp-consumer", daemon=True)
        self._consumer_thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop intake: cancel the consumer and close channel and connection.

        Deliveries still being processed are not waited for; the broker
        requeues them once the connection is gone.
        """
        if self._stopping.is_set():
            return
        self._stopping.set()
        logger.info("Stopping consumer")

        connection = self._connection
        if connection is not None:
            try:
                connection.add_callback_threadsafe(self._stop_consuming)
            except AMQPError as e:
                logger.warning(f"Consumer connection already closed: {e}")

        if self._consumer_thread is not None:
            self._consumer_thread.join(timeout)

        # deliveries not yet picked up are left unsettled for the broker to requeue
        dropped = self._drain_inbox()
        if dropped:
            logger.info(f"Returned {dropped} undelivered messages to the broker")

        for _ in self._workers:
            self._inbox.put(_STOP)

    def _drain_inbox(self) -> int:
        dropped = 0
        while True:
            try:
                item = self._inbox.get_nowait()
            except queue.Empty:
                return dropped
            if item is not _STOP:
                dropped += 1

    def _on_message(self, channel, method, properties, body) -> None:
        self.dispatch(Delivery(
            body=body,
            delivery_tag=method.delivery_tag,
            redelivered=method.redelivered,
            settle=self._settle_threadsafe
        ))

    def _settle_threadsafe(self, delivery_tag: int, ack: bool, requeue: bool) -> None:
        connection = self._connection
        callback = functools.partial(self._settle_on_channel, delivery_tag, ack, requeue)
        try:
            connection.add_callback_threadsafe(callback)
        except (AMQPError, AttributeError) as e:
            logger.warning(f"Cannot settle delivery {delivery_tag}, broker will redeliver it: {e}")

    def _settle_on_channel(self, delivery_tag: int, ack: bool, requeue: bool) -> None:
        channel = self._channel
        if channel is None or not channel.is_open:
            logger.warning(f"Channel closed before settling delivery {delivery_tag}")
            return
        if ack:
            channel.basic_ack(delivery_tag=delivery_tag)
        else:
            channel.basic_nack(delivery_tag=delivery_tag, requeue=requeue)

    def _stop_consuming(self) -> None:
        if self._channel is not None and self._channel.is_open:
            self._channel.stop_consuming()

    def _close_connection(self) -> None:
        channel, connection = self._channel, self._connection
        try:
            if channel is not None and channel.is_open:
                channel.close()
            if connection is not None and connection.is_open:
                connection.close()
        except AMQPError as e:
            logger.warning(f"Error while closing consumer connection: {e}")
        logger.info("Consumer connection closed")


def main() -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        rabbit = RabbitConfig.from_env()
        smtp = SmtpConfig.from_env()
        worker_config = WorkerConfig.from_env()
    except ConfigError as e:
        logger.critical(f"Configuration error: {e}")
        return 1

    executor = DeliveryExecutor(SmtpMailer(smtp, timeout=worker_config.delivery_timeout).send)
    pool = ConsumerPool(rabbit.url, executor, worker_config)

    with ShutdownCoordinator(grace_period=worker_config.shutdown_grace) as coordinator:
        coordinator.on_shutdown(pool.stop)
        coordinator.on_shutdown(executor.shutdown)
        pool.start(on_exit=coordinator.request_shutdown)
        coordinator.wait()
        coordinator.shutdown()

    logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
