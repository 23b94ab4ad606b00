"""In-memory progress tracking for timeline generation jobs.

A job is created when a run starts and is only ever updated by the thread
driving that run; readers get snapshot copies. The registry lock guards the
job map itself and each job has its own lock, so updates to different jobs
never wait on each other. Finished jobs are kept for ``retention_seconds``
and then dropped by :meth:`JobProgressTracker.sweep`, which
:class:`JobSweeper` calls on a timer.
"""

import dataclasses
import datetime
import enum
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from errors import JobNotFound

logger = logging.getLogger(__name__)

JOB_STEPS = (
    "Resolving configuration",
    "Streaming and segmenting points",
    "Classifying and merging trips",
    "Saving timeline",
)
TOTAL_STEPS = len(JOB_STEPS)
JOB_RETENTION_SECONDS = 3600
MAX_JOBS_IN_MEMORY = 1000


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class JobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class GenerationJob:
    job_id: str
    user_id: int
    mode: str
    status: JobStatus = JobStatus.QUEUED
    step_name: str = ""
    step_index: int = 0
    total_steps: int = TOTAL_STEPS
    percentage: int = 0
    created_at: datetime.datetime = field(default_factory=utcnow)
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None
    error: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

    def snapshot(self) -> "GenerationJob":
        return dataclasses.replace(self, details=dict(self.details))


class _TrackedJob:
    __slots__ = ("job", "lock")

    def __init__(self, job: GenerationJob):
        self.job = job
        self.lock = threading.Lock()


class JobProgressTracker:
    def __init__(
        self,
        retention_seconds: float = JOB_RETENTION_SECONDS,
        max_jobs: int = MAX_JOBS_IN_MEMORY,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.retention_seconds = retention_seconds
        self.max_jobs = max_jobs
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, _TrackedJob] = {}

    # -- lifecycle ------------------------------------------------------------

    def create_job(self, user_id: int, mode: str) -> GenerationJob:
        job = GenerationJob(job_id=uuid.uuid4().hex, user_id=user_id, mode=mode, created_at=self._clock())
        with self._lock:
            self._jobs[job.job_id] = _TrackedJob(job)
            self._enforce_cap()
        logger.info("Created job %s for user %s (%s)", job.job_id, user_id, mode)
        return job.snapshot()

    def advance_step(self, job_id: str, step_index: int, details: Optional[dict] = None):
        """Move the job to step *step_index* (1-based) of JOB_STEPS and merge *details*."""
        if not 1 <= step_index <= TOTAL_STEPS:
            raise ValueError(f"step_index must be within 1..{TOTAL_STEPS}, got {step_index}")
        tracked = self._get(job_id)
        with tracked.lock:
            job = tracked.job
            if job.status is JobStatus.QUEUED:
                job.status = JobStatus.RUNNING
                job.started_at = self._clock()
            job.step_index = step_index
            job.step_name = JOB_STEPS[step_index - 1]
            job.percentage = max(0, min(100, round((step_index - 1) * 100 / TOTAL_STEPS)))
            if details:
                job.details.update(details)
        logger.debug("Job %s step %d/%d: %s", job_id, step_index, TOTAL_STEPS, JOB_STEPS[step_index - 1])

    def update_details(self, job_id: str, details: dict):
        tracked = self._get(job_id)
        with tracked.lock:
            tracked.job.details.update(details)

    def complete_job(self, job_id: str, details: Optional[dict] = None):
        tracked = self._get(job_id)
        with tracked.lock:
            job = tracked.job
            job.status = JobStatus.COMPLETED
            job.percentage = 100
            job.finished_at = self._clock()
            if job.started_at is None:
                job.started_at = job.finished_at
            if details:
                job.details.update(details)
            duration = job.duration_seconds
        logger.info("Job %s completed in %.2fs", job_id, duration)

    def fail_job(self, job_id: str, error: str):
        tracked = self._get(job_id)
        with tracked.lock:
            job = tracked.job
            job.status = JobStatus.FAILED
            job.error = error
            job.finished_at = self._clock()
            if job.started_at is None:
                job.started_at = job.finished_at
        logger.error("Job %s failed: %s", job_id, error)

    # -- queries --------------------------------------------------------------

    def _get(self, job_id: str) -> _TrackedJob:
        with self._lock:
            tracked = self._jobs.get(job_id)
        if tracked is None:
            raise JobNotFound(job_id)
        return tracked

    def get_job(self, job_id: str) -> GenerationJob:
        tracked = self._get(job_id)
        with tracked.lock:
            return tracked.job.snapshot()

    def _all(self) -> list[_TrackedJob]:
        with self._lock:
            return list(self._jobs.values())

    def jobs_for_user(self, user_id: int) -> list[GenerationJob]:
        """The user's jobs, newest first."""
        snapshots = []
        for tracked in self._all():
            with tracked.lock:
                if tracked.job.user_id == user_id:
                    snapshots.append(tracked.job.snapshot())
        return sorted(snapshots, key=lambda j: j.created_at, reverse=True)

    def active_job_for_user(self, user_id: int) -> Optional[GenerationJob]:
        for job in self.jobs_for_user(user_id):
            if not job.status.is_terminal:
                return job
        return None

    def statistics(self) -> dict:
        counts = {status.value: 0 for status in JobStatus}
        for tracked in self._all():
            with tracked.lock:
                counts[tracked.job.status.value] += 1
        return {"total": sum(counts.values()), **counts}

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    # -- retention ------------------------------------------------------------

    def sweep(self, now: Optional[datetime.datetime] = None) -> int:
        """Drop finished jobs older than the retention window. Returns how many were removed."""
        now = now or self._clock()
        cutoff = now - datetime.timedelta(seconds=self.retention_seconds)
        expired = []
        for job_id, tracked in self._snapshot_items():
            with tracked.lock:
                job = tracked.job
                if job.status.is_terminal and job.finished_at is not None and job.finished_at < cutoff:
                    expired.append(job_id)
        with self._lock:
            for job_id in expired:
                self._jobs.pop(job_id, None)
        if expired:
            logger.info("Swept %d finished jobs", len(expired))
        return len(expired)

    def _snapshot_items(self):
        with self._lock:
            return list(self._jobs.items())

    def _enforce_cap(self):
        # caller holds self._lock
        overflow = len(self._jobs) - self.max_jobs
        if overflow <= 0:
            return
        finished = [
            (t.job.finished_at, job_id) for job_id, t in self._jobs.items()
            if t.job.status.is_terminal
        ]
        finished.sort()
        for _, job_id in finished[:overflow]:
            del self._jobs[job_id]
        logger.warning("Job store over capacity, evicted %d finished jobs", min(overflow, len(finished)))


class JobSweeper:
    """Background thread that sweeps expired jobs every *interval_seconds*."""

    def __init__(self, tracker: JobProgressTracker, interval_seconds: float = 300.0):
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="job-sweeper", daemon=True)
        self._thread.start()
        logger.info("Job sweeper started (interval=%ss)", self.interval_seconds)

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("Job sweeper stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop.wait(self.interval_seconds):
            try:
                self.tracker.sweep()
            except Exception:
                logger.exception("Job sweep failed")
