"""Timeline algorithm thresholds.

A TimelineConfig is resolved once at the start of a generation run and passed
by value through the pipeline. Defaults live on the dataclass; the ``config``
table can override any field either system-wide (``user_id`` NULL) or per user.
Values are stored as strings, the same way the rest of the Config table is.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from errors import InvalidConfig

logger = logging.getLogger(__name__)

TRIP_ALGORITHM_NAMES = ("single", "multiple")


@dataclass(frozen=True, slots=True)
class TimelineConfig:
    # Trip strategy, see trips.TRIP_ALGORITHMS
    trip_detection_algorithm: str = "single"

    # Stay detection
    use_velocity_accuracy: bool = True
    staypoint_velocity_threshold: float = 2.0       # km/h
    staypoint_max_accuracy_threshold: float = 60.0  # m
    staypoint_min_accuracy_ratio: float = 0.5
    staypoint_min_accurate_points: int = 3
    staypoint_radius_meters: float = 50.0
    staypoint_min_duration_minutes: float = 7.0
    staypoint_exit_confirm_points: int = 2

    # Trip boundaries and classification
    trip_arrival_min_duration_seconds: float = 90.0
    trip_sustained_stop_min_duration_seconds: float = 60.0
    trip_min_distance_meters: float = 50.0
    trip_min_duration_seconds: float = 60.0
    trip_merge_max_gap_minutes: float = 3.0
    walking_max_avg_speed: float = 6.0
    walking_max_max_speed: float = 8.0
    car_min_avg_speed: float = 10.0
    car_min_max_speed: float = 15.0
    short_distance_km: float = 1.0
    suspicious_speed_kmh: float = 170.0
    moving_average_window: int = 3

    # Stay merging
    is_merge_enabled: bool = True
    merge_max_distance_meters: float = 150.0
    merge_max_time_gap_minutes: float = 10.0

    # Data gaps
    data_gap_threshold_seconds: float = 10800.0
    data_gap_min_duration_seconds: float = 1800.0
    gap_stay_inference_enabled: bool = False
    gap_stay_inference_max_gap_hours: float = 24.0

    # Path simplification
    path_simplification_enabled: bool = True
    path_simplification_tolerance: float = 15.0
    path_max_points: int = 100
    path_adaptive_simplification: bool = True

    @property
    def staypoint_min_duration_seconds(self) -> float:
        return self.staypoint_min_duration_minutes * 60

    @property
    def trip_merge_max_gap_seconds(self) -> float:
        return self.trip_merge_max_gap_minutes * 60

    @property
    def merge_max_time_gap_seconds(self) -> float:
        return self.merge_max_time_gap_minutes * 60

    @property
    def gap_stay_inference_max_gap_seconds(self) -> float:
        return self.gap_stay_inference_max_gap_hours * 3600


FIELD_TYPES = {f.name: f.type for f in dataclasses.fields(TimelineConfig)}


def default_thresholds() -> dict[str, str]:
    """Defaults rendered as Config-table strings, used to seed the database."""
    defaults = TimelineConfig()
    return {name: _render(getattr(defaults, name)) for name in FIELD_TYPES}


def _render(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse(name: str, raw):
    kind = FIELD_TYPES[name]
    if kind is bool:
        if isinstance(raw, bool):
            return raw
        lowered = str(raw).strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if kind is int:
        value = float(raw)
        if not value.is_integer():
            raise ValueError(f"not an integer: {raw!r}")
        return int(value)
    if kind is float:
        return float(raw)
    return str(raw).strip()


def apply_overrides(base: TimelineConfig, overrides: Mapping[str, object]) -> TimelineConfig:
    """Return *base* with every non-null override applied.

    Unknown keys are ignored so the Config table can hold unrelated settings.
    Unparseable values raise InvalidConfig.
    """
    changes = {}
    problems = []
    for key, raw in overrides.items():
        if key not in FIELD_TYPES or raw is None:
            continue
        try:
            changes[key] = _parse(key, raw)
        except ValueError as exc:
            problems.append(f"{key}: {exc}")
    if problems:
        raise InvalidConfig(problems)
    return dataclasses.replace(base, **changes) if changes else base


def validate_config(config: TimelineConfig) -> TimelineConfig:
    """Fail fast on thresholds that would make segmentation meaningless."""
    problems = []

    if config.trip_detection_algorithm not in TRIP_ALGORITHM_NAMES:
        problems.append(
            f"trip_detection_algorithm must be one of {TRIP_ALGORITHM_NAMES}, "
            f"got {config.trip_detection_algorithm!r}"
        )

    positive = (
        "staypoint_radius_meters",
        "staypoint_min_duration_minutes",
        "staypoint_max_accuracy_threshold",
        "staypoint_min_accurate_points",
        "staypoint_exit_confirm_points",
        "data_gap_threshold_seconds",
        "walking_max_avg_speed",
        "walking_max_max_speed",
        "car_min_avg_speed",
        "car_min_max_speed",
        "suspicious_speed_kmh",
        "path_simplification_tolerance",
    )
    for name in positive:
        if getattr(config, name) <= 0:
            problems.append(f"{name} must be > 0")

    non_negative = (
        "staypoint_velocity_threshold",
        "trip_arrival_min_duration_seconds",
        "trip_sustained_stop_min_duration_seconds",
        "trip_min_distance_meters",
        "trip_min_duration_seconds",
        "trip_merge_max_gap_minutes",
        "merge_max_distance_meters",
        "merge_max_time_gap_minutes",
        "data_gap_min_duration_seconds",
        "gap_stay_inference_max_gap_hours",
        "short_distance_km",
        "path_max_points",
    )
    for name in non_negative:
        if getattr(config, name) < 0:
            problems.append(f"{name} must be >= 0")

    if not 0 <= config.staypoint_min_accuracy_ratio <= 1:
        problems.append("staypoint_min_accuracy_ratio must be within [0, 1]")
    if config.walking_max_avg_speed > config.walking_max_max_speed:
        problems.append("walking_max_avg_speed must not exceed walking_max_max_speed")
    if config.car_min_avg_speed < config.walking_max_avg_speed:
        problems.append("car_min_avg_speed must not be below walking_max_avg_speed")
    if config.path_max_points == 1:
        problems.append("path_max_points must be 0 (no limit) or at least 2")

    if problems:
        raise InvalidConfig(problems)
    return config


def resolve_config(db: Session, user_id: Optional[int] = None) -> TimelineConfig:
    """Build the config for a run: defaults, then system rows, then the user's own rows."""
    from models import Config

    rows = (
        db.query(Config)
        .filter(Config.key.in_(FIELD_TYPES.keys()))
        .filter((Config.user_id.is_(None)) | (Config.user_id == user_id))
        .all()
    )
    system = {r.key: r.value for r in rows if r.user_id is None}
    personal = {r.key: r.value for r in rows if r.user_id is not None}

    config = apply_overrides(apply_overrides(TimelineConfig(), system), personal)
    if personal:
        logger.debug("User %s overrides %s", user_id, sorted(personal))
    return validate_config(config)
