"""Unit tests for the e-mail consumer pool."""
import queue
import threading
from unittest.mock import MagicMock, Mock

import pytest
from pika.exceptions import AMQPConnectionError, ConnectionWrongStateError

from weather_service.config import WorkerConfig
from weather_service.executor import DeliveryError, DeliveryExecutor, DeliveryTimeout
from weather_service.publisher import EMAIL_QUEUE
from weather_service.tasks import NotificationTask
from weather_service.worker import ConsumerPool, Delivery, Outcome

GOOD = NotificationTask("user@example.com", "Hello", "<b>hi</b>").to_json()


@pytest.fixture
def executor():
    return Mock(spec=DeliveryExecutor)


@pytest.fixture
def pool(executor):
    return ConsumerPool("amqp://localhost", executor, WorkerConfig(delivery_timeout=0.2))


class TestProcessDelivery:
    """Test the per-delivery ack/nack protocol."""

    def test_success_acked_once_never_redelivered(self, pool, broker, executor):
        broker.publish(GOOD)

        outcome = pool.process_delivery(broker.get())

        assert outcome is Outcome.ACKED
        assert len(broker.acks) == 1
        assert broker.nacks == []
        assert broker.pending == 0
        executor.deliver.assert_called_once()
        assert executor.deliver.call_args[1]["timeout"] == 0.2

    def test_malformed_payload_acked_and_discarded(self, pool, broker, executor):
        broker.publish(b"{not json")

        outcome = pool.process_delivery(broker.get())

        assert outcome is Outcome.DISCARDED
        assert len(broker.acks) == 1
        assert broker.pending == 0
        executor.deliver.assert_not_called()

    def test_timeout_nacked_and_redelivered(self, pool, broker, executor):
        executor.deliver.side_effect = DeliveryTimeout("send timeout")
        broker.publish(GOOD)

        outcome = pool.process_delivery(broker.get())

        assert outcome is Outcome.REQUEUED
        assert broker.nacks == [(1, True)]
        assert broker.acks == []
        redelivery = broker.get()
        assert redelivery.redelivered is True
        assert redelivery.body == GOOD

    def test_failure_retried_until_success(self, pool, broker, executor):
        executor.deliver.side_effect = [DeliveryError("421"), DeliveryError("421"), None]
        broker.publish(GOOD)

        outcomes = [pool.process_delivery(broker.get()) for _ in range(3)]

        assert outcomes == [Outcome.REQUEUED, Outcome.REQUEUED, Outcome.ACKED]
        assert len(broker.acks) == 1
        assert broker.pending == 0

    def test_real_executor_deadline(self, broker):
        release = threading.Event()
        executor = DeliveryExecutor(lambda task: release.wait(5))
        pool = ConsumerPool("amqp://localhost", executor, WorkerConfig(delivery_timeout=0.05))
        broker.publish(GOOD)

        try:
            assert pool.process_delivery(broker.get()) is Outcome.REQUEUED
        finally:
            release.set()
            executor.shutdown()

        assert broker.get().redelivered


class TestDelivery:
    def test_settles_once(self):
        settle = Mock()
        delivery = Delivery(b"x", 7, settle=settle)

        delivery.ack()
        delivery.nack()

        settle.assert_called_once_with(7, True, False)
        assert delivery.settled


class TestWorkerThreads:
    """Test the pool with real worker threads."""

    def test_stop_leaves_queued_deliveries_to_the_broker(self, broker, executor):
        """Only the in-flight delivery is sent once intake stops."""
        started = threading.Event()
        release = threading.Event()

        def deliver(task, timeout):
            started.set()
            release.wait(2)

        executor.deliver.side_effect = deliver
        pool = ConsumerPool("amqp://localhost", executor, WorkerConfig(worker_count=1))
        pool.start_workers()

        for i in range(5):
            broker.publish(NotificationTask(f"user{i}@example.com", "s", "b").to_json())
        pool.dispatch(broker.get())
        assert started.wait(2)
        for _ in range(4):
            pool.dispatch(broker.get())

        pool.stop(timeout=1)
        release.set()
        for thread in pool._workers:
            thread.join(2)

        assert executor.deliver.call_count == 1
        assert len(broker.acks) == 1

    def test_workers_drain_queue(self, broker, executor):
        sent = []
        lock = threading.Lock()

        def deliver(task, timeout):
            with lock:
                sent.append(task.recipient)

        executor.deliver.side_effect = deliver
        pool = ConsumerPool("amqp://localhost", executor, WorkerConfig(worker_count=3))
        pool.start_workers()

        for i in range(10):
            broker.publish(NotificationTask(f"user{i}@example.com", "s", "b").to_json())
        for _ in range(10):
            pool.dispatch(broker.get())
        pool.stop_workers(timeout=2)

        assert sorted(sent) == sorted(f"user{i}@example.com" for i in range(10))
        assert len(broker.acks) == 10

    def test_unexpected_error_requeues_and_worker_survives(self, broker, executor):
        executor.deliver.side_effect = [RuntimeError("bug"), None]
        pool = ConsumerPool("amqp://localhost", executor, WorkerConfig(worker_count=1))
        pool.start_workers()

        broker.publish(GOOD)
        pool.dispatch(broker.get())
        pool.dispatch(broker.get(timeout=2))
        pool.stop_workers(timeout=2)

        assert broker.nacks == [(1, True)]
        assert broker.acks == [2]


class TestBrokerSide:
    """Test channel setup and thread-safe settling with a mocked pika connection."""

    @pytest.fixture
    def connection(self):
        connection = MagicMock()
        connection.add_callback_threadsafe.side_effect = lambda callback: callback()
        connection.channel.return_value.is_open = True
        return connection

    def test_connect_sets_prefetch_and_declares_queue(self, executor, connection):
        pool = ConsumerPool("amqp://localhost", executor, WorkerConfig(prefetch=5),
                            connection_factory=lambda url: connection)

        assert pool.connect() is True

        channel = connection.channel.return_value
        channel.queue_declare.assert_called_once_with(queue=EMAIL_QUEUE, durable=True)
        channel.basic_qos.assert_called_once_with(prefetch_count=5)

    def test_connect_retries_until_broker_is_up(self, executor, connection, monkeypatch):
        monkeypatch.setattr("weather_service.worker.CONNECT_RETRY_DELAY", 0.01)
        attempts = []

        def factory(url):
            attempts.append(url)
            if len(attempts) < 3:
                raise AMQPConnectionError("not ready")
            return connection

        pool = ConsumerPool("amqp://localhost", executor, connection_factory=factory)

        assert pool.connect() is True
        assert len(attempts) == 3

    def test_connect_gives_up(self, executor, monkeypatch):
        monkeypatch.setattr("weather_service.worker.CONNECT_RETRY_DELAY", 0)
        monkeypatch.setattr("weather_service.worker.CONNECT_ATTEMPTS", 2)

        def factory(url):
            raise AMQPConnectionError("not ready")

        pool = ConsumerPool("amqp://localhost", executor, connection_factory=factory)

        with pytest.raises(ConnectionError):
            pool.connect()

    def test_message_callback_settles_on_channel(self, executor, connection):
        pool = ConsumerPool("amqp://localhost", executor, connection_factory=lambda url: connection)
        pool.connect()
        channel = connection.channel.return_value

        pool._on_message(channel, Mock(delivery_tag=11, redelivered=False), None, GOOD)
        pool._on_message(channel, Mock(delivery_tag=12, redelivered=True), None, GOOD)
        executor.deliver.side_effect = [None, DeliveryError("down")]
        pool.process_delivery(pool._inbox.get_nowait())
        pool.process_delivery(pool._inbox.get_nowait())

        channel.basic_ack.assert_called_once_with(delivery_tag=11)
        channel.basic_nack.assert_called_once_with(delivery_tag=12, requeue=True)

    def test_settle_after_close_is_dropped(self, executor, connection):
        pool = ConsumerPool("amqp://localhost", executor, connection_factory=lambda url: connection)
        pool.connect()
        connection.add_callback_threadsafe.side_effect = ConnectionWrongStateError("closed")

        pool._settle_threadsafe(3, True, False)

        connection.channel.return_value.basic_ack.assert_not_called()

    def test_run_consumes_and_stop_closes(self, executor, connection):
        channel = connection.channel.return_value
        consuming = threading.Event()
        stopped = threading.Event()
        pending = queue.Queue()
        connection.add_callback_threadsafe.side_effect = pending.put
        connection.is_open = True

        def start_consuming():
            consuming.set()
            while not stopped.is_set():
                try:
                    pending.get(timeout=0.05)()
                except queue.Empty:
                    continue

        channel.start_consuming.side_effect = start_consuming
        channel.stop_consuming.side_effect = stopped.set

        pool = ConsumerPool("amqp://localhost", executor, WorkerConfig(worker_count=2),
                            connection_factory=lambda url: connection)
        exited = threading.Event()
        pool.start(on_exit=exited.set)
        assert consuming.wait(2)

        pool.stop(timeout=2)

        assert exited.wait(2)
        kwargs = channel.basic_consume.call_args[1]
        assert kwargs["queue"] == EMAIL_QUEUE
        assert kwargs["auto_ack"] is False
        channel.close.assert_called_once()
        connection.close.assert_called_once()
