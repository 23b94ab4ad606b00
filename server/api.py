"""REST API for timeline generation jobs and stored timelines."""

import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from errors import GenerationInProgress, JobNotFound, StorageUnavailable
from events import Stay, Trip
from generation import GenerationMode
from jobs import GenerationJob
from runtime import Runtime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class JobAccepted(BaseModel):
    job_id: str
    user_id: int
    mode: str


class JobResponse(BaseModel):
    job_id: str
    user_id: int
    mode: str
    status: str
    step_name: str
    step_index: int
    total_steps: int
    percentage: int
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    details: dict = {}


class TimelineEventResponse(BaseModel):
    type: str
    start: str
    end: str
    duration_seconds: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    place_id: Optional[int] = None
    location_name: Optional[str] = None
    distance_meters: Optional[float] = None
    travel_type: Optional[str] = None
    avg_speed_kmh: Optional[float] = None
    max_speed_kmh: Optional[float] = None
    path: Optional[list[list[float]]] = None


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _job_response(job: GenerationJob) -> JobResponse:
    return JobResponse(
        job_id=job.job_id,
        user_id=job.user_id,
        mode=job.mode,
        status=job.status.value,
        step_name=job.step_name,
        step_index=job.step_index,
        total_steps=job.total_steps,
        percentage=job.percentage,
        created_at=job.created_at.isoformat(),
        started_at=_iso(job.started_at),
        finished_at=_iso(job.finished_at),
        error=job.error,
        details=job.details,
    )


def _event_response(event) -> TimelineEventResponse:
    base = dict(
        type=event.kind,
        start=event.start.isoformat(),
        end=event.end.isoformat(),
        duration_seconds=int(event.duration_seconds),
    )
    if isinstance(event, Stay):
        return TimelineEventResponse(
            **base,
            latitude=event.latitude,
            longitude=event.longitude,
            place_id=event.place_id,
            location_name=event.location_name,
        )
    if isinstance(event, Trip):
        return TimelineEventResponse(
            **base,
            distance_meters=round(event.distance_meters, 1),
            travel_type=event.travel_type.value,
            avg_speed_kmh=round(event.avg_speed_kmh, 2),
            max_speed_kmh=round(event.max_speed_kmh, 2),
            path=[[p.latitude, p.longitude] for p in event.path],
        )
    return TimelineEventResponse(**base)


# ---------------------------------------------------------------------------
# Generation endpoints
# ---------------------------------------------------------------------------

@router.post("/timeline/{user_id}/regenerate", response_model=JobAccepted, status_code=202)
def regenerate_timeline(
    user_id: int,
    mode: GenerationMode = GenerationMode.FULL,
    runtime: Runtime = Depends(get_runtime),
):
    """Start a generation run in the background; poll the returned job id for progress."""
    try:
        job_id = runtime.generator.submit(user_id, mode)
    except GenerationInProgress:
        logger.info("Rejected %s regeneration for user=%d: already running", mode.value, user_id)
        raise HTTPException(status_code=409, detail="Timeline generation already in progress")
    logger.info("Queued %s regeneration for user=%d job=%s", mode.value, user_id, job_id)
    return JobAccepted(job_id=job_id, user_id=user_id, mode=mode.value)


@router.get("/timeline/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    try:
        job = runtime.tracker.get_job(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.get("/timeline/{user_id}/jobs", response_model=list[JobResponse])
def list_user_jobs(user_id: int, runtime: Runtime = Depends(get_runtime)):
    return [_job_response(j) for j in runtime.tracker.jobs_for_user(user_id)]


@router.get("/timeline/jobs")
def job_statistics(runtime: Runtime = Depends(get_runtime)):
    return runtime.tracker.statistics()


# ---------------------------------------------------------------------------
# Timeline read endpoints
# ---------------------------------------------------------------------------

@router.get("/timeline/{user_id}", response_model=list[TimelineEventResponse])
def get_timeline(
    user_id: int,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    runtime: Runtime = Depends(get_runtime),
):
    try:
        events = runtime.store.load_timeline(user_id, start=start, end=end)
    except StorageUnavailable as exc:
        logger.error("Timeline read failed for user=%d: %s", user_id, exc)
        raise HTTPException(status_code=503, detail="Timeline storage unavailable")
    return [_event_response(e) for e in events]


@router.get("/timeline/{user_id}/gaps", response_model=list[TimelineEventResponse])
def scan_data_gaps(
    user_id: int,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    runtime: Runtime = Depends(get_runtime),
):
    """Data gaps found directly in the raw fixes, independent of the stored timeline."""
    try:
        gaps = runtime.generator.scan_data_gaps(user_id, start=start, end=end)
    except StorageUnavailable as exc:
        logger.error("Gap scan failed for user=%d: %s", user_id, exc)
        raise HTTPException(status_code=503, detail="Point storage unavailable")
    return [_event_response(g) for g in gaps]
