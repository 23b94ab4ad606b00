"""Timeline generation: drives point streaming, segmentation, refinement and persistence.

A run moves through ACQUIRE_LOCK -> STREAM_AND_SEGMENT -> CLASSIFY_AND_MERGE
-> PERSIST -> RELEASE_LOCK and ends SUCCEEDED or FAILED. Only one run per user
can hold the lock; a second request fails straight away with
GenerationInProgress and no job is created for it.

Full runs rescan everything and replace the stored timeline. Incremental runs
rescan from the start of the latest stored stay (the high-water mark) and
rewrite only the events from there on. Either way the write is a single
transaction, so a failed run leaves the stored timeline untouched.
"""

import concurrent.futures
import datetime
import enum
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from errors import GenerationInProgress
from events import DataGap, TimelineEvent
from gaps import find_data_gaps, ongoing_data_gap
from jobs import JobProgressTracker, utcnow
from locks import UserLockRegistry
from point_source import DEFAULT_CHUNK_SIZE, PointSource
from segmentation import SegmentDetector
from timeline_config import TimelineConfig
from trips import refine_timeline

logger = logging.getLogger(__name__)

EPOCH = datetime.datetime(1970, 1, 1)
PROGRESS_EVERY_POINTS = 10_000
DEFAULT_SCHEDULER_INTERVAL_SECONDS = 120.0


class GenerationMode(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class GenerationState(enum.Enum):
    ACQUIRE_LOCK = "acquire_lock"
    STREAM_AND_SEGMENT = "stream_and_segment"
    CLASSIFY_AND_MERGE = "classify_and_merge"
    PERSIST = "persist"
    RELEASE_LOCK = "release_lock"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationResult:
    job_id: str
    user_id: int
    mode: GenerationMode
    state: GenerationState
    from_ts: datetime.datetime
    points_processed: int
    events_written: int


class TimelineGenerator:
    """Runs timeline generation for one user at a time per user.

    Args:
        storage: a PointStorage (see storage.py).
        config_resolver: user id -> TimelineConfig, called once per run.
        locks: per-user lock registry shared with anything else that generates timelines.
        tracker: where job progress is reported.
    """

    def __init__(
        self,
        storage,
        config_resolver: Callable[[int], TimelineConfig],
        locks: Optional[UserLockRegistry] = None,
        tracker: Optional[JobProgressTracker] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_workers: int = 4,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.storage = storage
        self.config_resolver = config_resolver
        self.locks = locks if locks is not None else UserLockRegistry()
        self.tracker = tracker if tracker is not None else JobProgressTracker()
        self.chunk_size = chunk_size
        self.clock = clock
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="timeline",
        )

    # -- entry points ---------------------------------------------------------

    def regenerate(self, user_id: int, mode: GenerationMode = GenerationMode.FULL) -> GenerationResult:
        """Run generation in the calling thread. Raises whatever made the run fail."""
        if not self.locks.try_acquire(user_id):
            raise GenerationInProgress(user_id)
        try:
            job = self.tracker.create_job(user_id, mode.value)
        except Exception:
            self.locks.release(user_id)
            raise
        return self._run_locked(job.job_id, user_id, mode)

    def submit(self, user_id: int, mode: GenerationMode = GenerationMode.FULL) -> str:
        """Start generation on the worker pool and return the job id to poll.

        The lock is taken here so contention is reported to the caller; the
        worker releases it.
        """
        if not self.locks.try_acquire(user_id):
            raise GenerationInProgress(user_id)
        try:
            job = self.tracker.create_job(user_id, mode.value)
        except Exception:
            self.locks.release(user_id)
            raise
        try:
            self._executor.submit(self._run_in_worker, job.job_id, user_id, mode)
        except Exception as exc:
            self.tracker.fail_job(job.job_id, f"Could not schedule job: {exc}")
            self.locks.release(user_id)
            raise
        return job.job_id

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    def scan_data_gaps(
        self,
        user_id: int,
        start: Optional[datetime.datetime] = None,
        end: Optional[datetime.datetime] = None,
    ) -> list[DataGap]:
        """Data gaps in the raw fixes between *start* and *end*, read straight from storage.

        Takes no lock and writes nothing; the stored timeline is not consulted.
        """
        config = self.config_resolver(user_id)
        source = PointSource(self.storage, user_id, start or EPOCH, self.chunk_size)
        timestamps = (p.timestamp for p in source)
        if end is not None:
            timestamps = itertools.takewhile(lambda ts: ts <= end, timestamps)
        gaps = find_data_gaps(timestamps, config)
        logger.debug("Gap scan for user %s: %d gaps in %d points", user_id, len(gaps), source.points_consumed)
        return gaps

    # -- the run --------------------------------------------------------------

    def _run_in_worker(self, job_id: str, user_id: int, mode: GenerationMode):
        try:
            self._run_locked(job_id, user_id, mode)
        except Exception:
            # Already recorded on the job; nobody is waiting on this thread.
            logger.debug("Background job %s ended with an error", job_id)

    def _run_locked(self, job_id: str, user_id: int, mode: GenerationMode) -> GenerationResult:
        """Body of a run. The caller must already hold the user's lock; it is always released here."""
        state = GenerationState.ACQUIRE_LOCK
        try:
            self.tracker.advance_step(job_id, 1, {"mode": mode.value})
            config = self.config_resolver(user_id)

            state = GenerationState.STREAM_AND_SEGMENT
            from_ts = self._high_water_mark(user_id, mode)
            self.tracker.advance_step(job_id, 2, {"from": from_ts.isoformat()})
            source = PointSource(self.storage, user_id, from_ts, self.chunk_size)
            detector = SegmentDetector(config)
            for point in source:
                detector.feed(point)
                if source.points_consumed % PROGRESS_EVERY_POINTS == 0:
                    self.tracker.update_details(job_id, {"points_processed": source.points_consumed})
            raw = detector.finish()

            state = GenerationState.CLASSIFY_AND_MERGE
            self.tracker.advance_step(
                job_id, 3, {"points_processed": source.points_consumed, "raw_events": len(raw)},
            )
            events = refine_timeline(user_id, raw, config)
            if mode is GenerationMode.INCREMENTAL:
                events = self._with_ongoing_gap(events, config)

            state = GenerationState.PERSIST
            self.tracker.advance_step(job_id, 4, {"events": len(events)})
            if mode is GenerationMode.FULL:
                self.storage.replace_timeline_events(user_id, events)
            else:
                self.storage.append_timeline_events(user_id, events, from_ts)

            self.tracker.complete_job(job_id, {"events": len(events)})
        except Exception as exc:
            logger.exception("Timeline generation for user %s failed during %s", user_id, state.name)
            self.tracker.fail_job(job_id, f"{type(exc).__name__}: {exc}")
            raise
        finally:
            self.locks.release(user_id)

        logger.info(
            "Timeline %s run for user %s: %d points -> %d events",
            mode.value, user_id, source.points_consumed, len(events),
        )
        return GenerationResult(
            job_id=job_id,
            user_id=user_id,
            mode=mode,
            state=GenerationState.SUCCEEDED,
            from_ts=from_ts,
            points_processed=source.points_consumed,
            events_written=len(events),
        )

    def _high_water_mark(self, user_id: int, mode: GenerationMode) -> datetime.datetime:
        if mode is GenerationMode.FULL:
            return EPOCH
        latest = self.storage.latest_stay_start(user_id)
        return latest if latest is not None else EPOCH

    def _with_ongoing_gap(self, events: list[TimelineEvent], config: TimelineConfig) -> list[TimelineEvent]:
        """Append a gap from the last event up to now if the device has gone quiet."""
        if not events:
            return events
        gap = ongoing_data_gap(events[-1].end, self.clock(), config)
        return events + [gap] if gap else events


# ---------------------------------------------------------------------------
# Real-time scheduling
# ---------------------------------------------------------------------------

class RealtimeScheduler:
    """Periodically runs incremental generation for every idle user.

    Users whose lock is held are skipped for this tick. One user's failure is
    logged and does not affect the others.
    """

    def __init__(
        self,
        generator: TimelineGenerator,
        interval_seconds: float = DEFAULT_SCHEDULER_INTERVAL_SECONDS,
        max_workers: int = 2,
    ):
        self.generator = generator
        self.interval_seconds = interval_seconds
        self.max_workers = max_workers
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> dict[int, str]:
        """One scheduling pass. Returns user id -> "ok", "skipped" or "failed"."""
        try:
            user_ids = self.generator.storage.list_user_ids()
        except Exception:
            logger.exception("Could not list users for scheduled timeline update")
            return {}

        outcomes = {}
        idle = []
        for user_id in user_ids:
            if self.generator.locks.is_locked(user_id):
                outcomes[user_id] = "skipped"
            else:
                idle.append(user_id)

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="timeline-rt",
        ) as pool:
            futures = {pool.submit(self._update_user, uid): uid for uid in idle}
            for future in concurrent.futures.as_completed(futures):
                outcomes[futures[future]] = future.result()

        logger.info(
            "Scheduled timeline update: %d ok, %d skipped, %d failed",
            sum(v == "ok" for v in outcomes.values()),
            sum(v == "skipped" for v in outcomes.values()),
            sum(v == "failed" for v in outcomes.values()),
        )
        return outcomes

    def _update_user(self, user_id: int) -> str:
        try:
            self.generator.regenerate(user_id, GenerationMode.INCREMENTAL)
        except GenerationInProgress:
            return "skipped"
        except Exception:
            logger.exception("Scheduled timeline update failed for user %s", user_id)
            return "failed"
        return "ok"

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="timeline-scheduler", daemon=True)
        self._thread.start()
        logger.info("Realtime timeline scheduler started (interval=%ss)", self.interval_seconds)

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=30.0)
            self._thread = None
        logger.info("Realtime timeline scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
