from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from market_data import DataSource

from .config import SchedulerSettings, SignalSettings
from .generator import SignalGenerator
from .messages import format_expired, format_outcome, format_recap, format_signal
from .price_tracker import PriceTracker
from .signal_cache import SignalCache
from .telegram_client import Publisher

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR
WEEK = 7 * DAY
# The epoch started on a Thursday; Sunday midnight is three days later.
EPOCH_TO_SUNDAY = 3 * DAY


@dataclass
class IntervalJob:
    """A task that runs on wall-clock boundaries: ``k * interval + offset``."""

    name: str
    interval_seconds: float
    func: Callable[[], None]
    offset_seconds: float = 0.0
    next_run: Optional[float] = None

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if not 0 <= self.offset_seconds < self.interval_seconds:
            raise ValueError("offset_seconds must be within [0, interval_seconds)")

    def next_after(self, now_epoch: float) -> float:
        interval = self.interval_seconds
        base = math.floor((now_epoch - self.offset_seconds) / interval) * interval
        candidate = base + self.offset_seconds
        if candidate <= now_epoch:
            candidate += interval
        return candidate


class SignalScheduler:
    """Single-threaded loop that sequences generation, tracking, review and recaps."""

    def __init__(
        self,
        *,
        generator: SignalGenerator,
        tracker: PriceTracker,
        cache: SignalCache,
        publisher: Publisher,
        signal_settings: SignalSettings,
        settings: SchedulerSettings,
        publish_mock_signals: bool = False,
        time_fn: Callable[[], float] = time.time,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._generator = generator
        self._tracker = tracker
        self._cache = cache
        self._publisher = publisher
        self._signal_settings = signal_settings
        self._settings = settings
        self._publish_mock = publish_mock_signals
        self._time = time_fn
        self._clock = clock
        self._sleep = sleep
        self._log = logger or logging.getLogger(__name__)
        self._jobs: Dict[str, IntervalJob] = {}
        self._register_default_jobs()

    def _register_default_jobs(self) -> None:
        generation = self._settings.generation_interval_minutes * MINUTE
        generation_offset = (self._settings.generation_offset_minutes * MINUTE) % generation
        review_offset = (generation_offset + self._settings.review_offset_minutes * MINUTE) % generation
        recap_offset = self._settings.recap_hour_utc * HOUR
        self.add_job(
            IntervalJob("signals", generation, self.signal_task, offset_seconds=generation_offset)
        )
        self.add_job(
            IntervalJob("tracker", self._settings.tracker_interval_minutes * MINUTE, self.tracker_task)
        )
        self.add_job(
            IntervalJob(
                "review",
                generation,
                self.review_task,
                offset_seconds=review_offset,
            )
        )
        self.add_job(IntervalJob("daily_recap", DAY, self.daily_recap_task, offset_seconds=recap_offset))
        self.add_job(
            IntervalJob(
                "weekly_recap",
                WEEK,
                self.weekly_recap_task,
                offset_seconds=EPOCH_TO_SUNDAY + recap_offset,
            )
        )

    @property
    def jobs(self) -> List[IntervalJob]:
        return list(self._jobs.values())

    def add_job(self, job: IntervalJob) -> None:
        self._jobs[job.name] = job

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #

    def run(self, max_iterations: Optional[int] = None) -> None:
        now = self._time()
        for job in self._jobs.values():
            job.next_run = job.next_after(now)
            self._log.info(
                "Scheduled %s every %.0f min, next at %s",
                job.name,
                job.interval_seconds / MINUTE,
                datetime.fromtimestamp(job.next_run, tz=timezone.utc).isoformat(),
            )

        iterations = 0
        try:
            while max_iterations is None or iterations < max_iterations:
                iterations += 1
                wait = self._seconds_until_next()
                if wait > 0:
                    self._sleep(wait)
                self.run_pending()
        except KeyboardInterrupt:
            self._log.info("Signal scheduler stopped by user.")
        finally:
            self._log.info("Flushing signal cache before exit")
            self.flush()

    def run_pending(self) -> None:
        now = self._time()
        for job in self._jobs.values():
            if job.next_run is None:
                job.next_run = job.next_after(now)
            if job.next_run <= now:
                self._execute(job)
                job.next_run = job.next_after(self._time())
        self._cache.save_if_due()

    def run_job(self, name: str) -> None:
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job: {name}")
        self._execute(job)

    def flush(self) -> None:
        self._cache.flush()

    def _execute(self, job: IntervalJob) -> None:
        self._log.info("Running %s task...", job.name)
        try:
            job.func()
        except Exception:
            self._log.exception("%s task failed", job.name)

    def _seconds_until_next(self) -> float:
        now = self._time()
        waits = [job.next_run - now for job in self._jobs.values() if job.next_run is not None]
        pending_save = self._cache.pending_save_at
        if pending_save is not None:
            waits.append(pending_save - self._clock())
        wait = min(waits, default=self._settings.idle_sleep_seconds)
        return max(0.0, min(wait, self._settings.idle_sleep_seconds))

    # ------------------------------------------------------------------ #
    # Tasks
    # ------------------------------------------------------------------ #

    def signal_task(self) -> None:
        signals = self._generator.generate_all_signals()
        if not signals:
            self._log.info("No signals generated this cycle")
            return
        for signal in signals:
            self._cache.add(signal)
            decimals = self._price_decimals(signal.symbol)
            self._publish(format_signal(signal, decimals), signal.data_source)
            self._log.info("Signal posted: %s %s", signal.symbol, signal.direction.value)

    def tracker_task(self) -> None:
        results = self._tracker.check_all_signals()
        for result in results:
            decimals = self._price_decimals(result.signal.symbol)
            self._publish(format_outcome(result, decimals), result.signal.data_source)
        if not results:
            self._log.info("No signals closed this check")

    def review_task(self) -> None:
        for result in self._tracker.review_expired_signals():
            decimals = self._price_decimals(result.signal.symbol)
            self._publish(format_expired(result, decimals), result.signal.data_source)

    def daily_recap_task(self) -> None:
        self._publish_recap("Daily recap", timedelta(days=1))

    def weekly_recap_task(self) -> None:
        self._publish_recap("Weekly recap", timedelta(days=7))

    def _price_decimals(self, symbol: str) -> int:
        return self._signal_settings.instrument(symbol).price_decimals

    def _publish_recap(self, title: str, window: timedelta) -> None:
        now = datetime.fromtimestamp(self._time(), tz=timezone.utc)
        source = None if self._publish_mock else DataSource.LIVE
        stats = self._cache.get_stats(since=now - window, source=source)
        self._publish(format_recap(title, stats, now), DataSource.LIVE)

    def _publish(self, text: str, source: DataSource) -> None:
        if source is DataSource.MOCK and not self._publish_mock:
            self._log.info("Not publishing message built from mock data:\n%s", text)
            return
        try:
            self._publisher.send_message(text)
        except Exception:
            self._log.exception("Failed to deliver message")
