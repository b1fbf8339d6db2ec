"""
Delivery executor for notification tasks.

Sends one e-mail per task over SMTP. The send runs on a detached thread
and the caller only waits up to a deadline: when the deadline passes the
caller gets DeliveryTimeout, but the send itself is not cancelled and may
still complete later. Its result is then discarded. A send still waiting
for a pool thread when the deadline passes is cancelled and never runs.
"""

import logging
import smtplib
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from email.mime.text import MIMEText

from .config import SmtpConfig
from .tasks import NotificationTask

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE = 15.0  # seconds
MAX_DETACHED_SENDS = 32


class DeliveryError(Exception):
    """The delivery action failed."""
    pass


class DeliveryTimeout(DeliveryError):
    """The deadline elapsed before the delivery action finished."""
    pass


class SmtpMailer:
    """Sends a task as an HTML e-mail."""

    def __init__(self, config: SmtpConfig, timeout: float = DEFAULT_DEADLINE, smtp_factory=smtplib.SMTP):
        self.config = config
        self.timeout = timeout
        self._smtp_factory = smtp_factory

    def build_message(self, task: NotificationTask) -> MIMEText:
        message = MIMEText(task.body, "html", "utf-8")
        message["From"] = self.config.sender
        message["To"] = task.recipient
        message["Subject"] = task.subject
        return message

    def send(self, task: NotificationTask) -> None:
        message = self.build_message(task)
        with self._smtp_factory(self.config.host, self.config.port, timeout=self.timeout) as server:
            # local relays (port 25, MailHog) do not offer TLS
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
            if self.config.user:
                server.login(self.config.user, self.config.password)
            server.send_message(message)


class DeliveryExecutor:
    """
    Runs a delivery action against a deadline.

    Args:
        action: callable taking a NotificationTask; raises on failure.
    """

    def __init__(self, action, max_detached: int = MAX_DETACHED_SENDS):
        self._action = action
        self._pool = ThreadPoolExecutor(max_workers=max_detached, thread_name_prefix="delivery")

    def deliver(self, task: NotificationTask, timeout: float = DEFAULT_DEADLINE) -> None:
        """
        Raises:
            DeliveryTimeout: the action did not finish within `timeout` seconds.
            DeliveryError: the action raised.
        """
        future = self._pool.submit(self._action, task)
        try:
            future.result(timeout=timeout)
        except FutureTimeout:
            # a send still waiting for a pool thread must never start later
            if future.cancel():
                logger.warning(f"Delivery to {task.recipient} never started within {timeout}s, dropped")
            else:
                logger.warning(f"Delivery to {task.recipient} exceeded {timeout}s, result will be discarded")
            raise DeliveryTimeout(f"send timeout after {timeout}s")
        except Exception as e:
            raise DeliveryError(f"send to {task.recipient} failed: {e}") from e

    def shutdown(self) -> None:
        # abandoned sends keep running; only queued ones are dropped
        self._pool.shutdown(wait=False, cancel_futures=True)
