"""
Scheduler module for Weather Service.

Fires a batch ingestion run over all tracked cities on a fixed
wall-clock interval. Runs never overlap: a tick that comes due while
the previous run is still going is skipped.
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .ingestion import BatchWriter, IngestionError
from .registry import CityRegistry

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30
JOB_ID = "ingestion_job"


@dataclass
class IngestionResult:
    """Result of one batch ingestion run."""
    success: bool
    rows_written: int
    cities: int
    error_message: Optional[str]
    run_time: str
    duration_ms: int


class IngestionScheduler:
    """
    Manages periodic weather ingestion.

    Each tick takes a snapshot of the registry, so cities registered
    mid-run are picked up on the next tick.
    """

    def __init__(
        self,
        registry: CityRegistry,
        writer: BatchWriter,
        interval: int = DEFAULT_INTERVAL_SECONDS
    ):
        self.registry = registry
        self.writer = writer
        self.interval = interval
        self.scheduler = BackgroundScheduler()
        self._is_running = False
        self._last_result: Optional[IngestionResult] = None
        self._run_lock = threading.Lock()

    def run_once(self) -> Optional[IngestionResult]:
        """
        Run one batch ingestion. Failures are logged and recorded, never raised.

        Returns None without running when another run is in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Ingestion run skipped: previous run still in progress")
            return None
        try:
            return self._run()
        finally:
            self._run_lock.release()

    def _run(self) -> IngestionResult:
        started = time.monotonic()
        run_time = datetime.now(timezone.utc).isoformat()
        cities = self.registry.snapshot()

        try:
            rows = self.writer.run(cities)
            result = IngestionResult(
                success=True,
                rows_written=rows,
                cities=len(cities),
                error_message=None,
                run_time=run_time,
                duration_ms=int((time.monotonic() - started) * 1000)
            )
            logger.info(f"Periodic task: weather data inserted for {rows} cities")
        except IngestionError as e:
            logger.error(f"Periodic task error: {e}")
            result = IngestionResult(
                success=False,
                rows_written=0,
                cities=len(cities),
                error_message=str(e),
                run_time=run_time,
                duration_ms=int((time.monotonic() - started) * 1000)
            )

        self._last_result = result
        return result

    def start(self, interval: Optional[int] = None) -> None:
        """Start ticking every `interval` seconds."""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        if interval is not None:
            self.interval = interval

        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval),
            id=JOB_ID,
            name="Weather batch ingestion",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True

        logger.info(f"Scheduler started: ingestion every {self.interval}s")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._is_running:
            return
        self.scheduler.shutdown(wait=True)
        self._is_running = False
        logger.info("Scheduler stopped")

    def trigger_immediate_run(self) -> Optional[IngestionResult]:
        """Run ingestion now, outside the schedule."""
        return self.run_once()

    def get_last_result(self) -> Optional[IngestionResult]:
        return self._last_result

    def get_scheduler_status(self) -> dict:
        """Get scheduler status information."""
        job = self.scheduler.get_job(JOB_ID) if self._is_running else None

        return {
            "is_running": self._is_running,
            "interval_seconds": self.interval,
            "tracked_cities": len(self.registry),
            "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
            "last_result": asdict(self._last_result) if self._last_result else None,
        }

    @property
    def is_running(self) -> bool:
        return self._is_running
