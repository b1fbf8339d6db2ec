"""Unit tests for the shutdown coordinator."""
import os
import signal
import time
from unittest.mock import Mock

from weather_service.shutdown import ShutdownCoordinator


class TestShutdownCoordinator:
    """Test signal handling and callback ordering."""

    def test_sigterm_requests_shutdown(self):
        with ShutdownCoordinator(grace_period=0) as coordinator:
            os.kill(os.getpid(), signal.SIGTERM)
            assert coordinator.wait(timeout=2) is True

    def test_handlers_restored_on_exit(self):
        previous = signal.getsignal(signal.SIGINT)

        with ShutdownCoordinator(grace_period=0):
            assert signal.getsignal(signal.SIGINT) != previous

        assert signal.getsignal(signal.SIGINT) == previous

    def test_wait_times_out_without_signal(self):
        coordinator = ShutdownCoordinator(grace_period=0)

        assert coordinator.wait(timeout=0.01) is False

    def test_callbacks_run_once_in_order_then_grace(self):
        calls = []
        coordinator = ShutdownCoordinator(grace_period=0.2)
        coordinator.on_shutdown(lambda: calls.append("pool"))
        coordinator.on_shutdown(lambda: calls.append("executor"))

        started = time.monotonic()
        coordinator.shutdown()
        coordinator.shutdown()

        assert calls == ["pool", "executor"]
        assert time.monotonic() - started >= 0.2

    def test_failing_callback_does_not_stop_others(self):
        second = Mock()
        coordinator = ShutdownCoordinator(grace_period=0)
        coordinator.on_shutdown(Mock(side_effect=RuntimeError("boom")))
        coordinator.on_shutdown(second)

        coordinator.shutdown()

        second.assert_called_once()
