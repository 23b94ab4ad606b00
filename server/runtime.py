"""Process-wide timeline services.

``init_runtime()`` builds the shared lock registry, job tracker, generator,
real-time scheduler and job sweeper, and starts the two timers.
``shutdown_runtime()`` stops the timers and drains the worker pool. The
entry point calls them on server start-up and shutdown.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from database import SessionLocal
from errors import StorageUnavailable
from generation import DEFAULT_SCHEDULER_INTERVAL_SECONDS, RealtimeScheduler, TimelineGenerator
from jobs import JobProgressTracker, JobSweeper
from locks import UserLockRegistry
from point_source import DEFAULT_CHUNK_SIZE
from storage import SqlTimelineStore
from timeline_config import TimelineConfig, resolve_config

logger = logging.getLogger(__name__)

SCHEDULER_INTERVAL_S = float(os.environ.get("TIMELINE_SCHEDULER_INTERVAL_S", DEFAULT_SCHEDULER_INTERVAL_SECONDS))
SCHEDULER_ENABLED = os.environ.get("TIMELINE_SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
WORKERS = int(os.environ.get("TIMELINE_WORKERS", "4"))
CHUNK_SIZE = int(os.environ.get("TIMELINE_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE)))
SWEEP_INTERVAL_S = 300.0


@dataclass
class Runtime:
    store: SqlTimelineStore
    locks: UserLockRegistry
    tracker: JobProgressTracker
    generator: TimelineGenerator
    scheduler: RealtimeScheduler
    sweeper: JobSweeper


_runtime: Optional[Runtime] = None


def build_runtime(session_factory=SessionLocal) -> Runtime:
    """Wire the services together without starting any thread."""

    def config_for(user_id: int) -> TimelineConfig:
        db = session_factory()
        try:
            return resolve_config(db, user_id)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Reading timeline config for user {user_id} failed: {exc}") from exc
        finally:
            db.close()

    store = SqlTimelineStore(session_factory)
    locks = UserLockRegistry()
    tracker = JobProgressTracker()
    generator = TimelineGenerator(
        store, config_for, locks=locks, tracker=tracker, chunk_size=CHUNK_SIZE, max_workers=WORKERS,
    )
    return Runtime(
        store=store,
        locks=locks,
        tracker=tracker,
        generator=generator,
        scheduler=RealtimeScheduler(generator, interval_seconds=SCHEDULER_INTERVAL_S),
        sweeper=JobSweeper(tracker, interval_seconds=SWEEP_INTERVAL_S),
    )


def init_runtime(session_factory=SessionLocal, start_timers: bool = True) -> Runtime:
    global _runtime
    if _runtime is not None:
        return _runtime
    _runtime = build_runtime(session_factory)
    if start_timers:
        _runtime.sweeper.start()
        if SCHEDULER_ENABLED:
            _runtime.scheduler.start()
    logger.info("Timeline runtime started")
    return _runtime


def shutdown_runtime():
    global _runtime
    if _runtime is None:
        return
    _runtime.scheduler.stop()
    _runtime.sweeper.stop()
    _runtime.generator.shutdown(wait=True)
    _runtime = None
    logger.info("Timeline runtime stopped")


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Timeline runtime is not initialised; call init_runtime() first")
    return _runtime
