"""Exceptions raised by the timeline generation pipeline."""


class TimelineError(Exception):
    """Base class for every timeline pipeline failure."""


class StorageUnavailable(TimelineError):
    """Reading points or writing timeline events failed at the storage layer."""


class GenerationInProgress(TimelineError):
    """A regeneration run already holds the lock for this user."""

    def __init__(self, user_id: int):
        super().__init__(f"Timeline generation already running for user {user_id}")
        self.user_id = user_id


class InvalidConfig(TimelineError):
    """One or more timeline thresholds are malformed or out of range."""

    def __init__(self, problems: list[str]):
        super().__init__("Invalid timeline configuration: " + "; ".join(problems))
        self.problems = problems


class SegmentationInvariantViolation(TimelineError):
    """Internal consistency check failed (unordered input, non-contiguous output)."""


class JobNotFound(TimelineError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id
