"""
WHOOP Sync

Pulls a fixed lookback window of WHOOP data and writes it into the metric store.

Streams, in order:
- recovery, sleep, workout (mandatory)
- body measurement, cycle (optional, behind `whoop.extended_streams`)

Each stream's fetch + save runs in its own savepoint. An optional stream that
fails is logged and reported; a mandatory stream that fails raises SyncError
once every stream has been attempted, carrying the partial report.

Every numeric facet of a provider record becomes its own metric value with an
`external_id` of `<provider id>_<facet>`, so replays overwrite in place.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import IntegrationError, SyncError
from core.feature_flags import WHOOP_EXTENDED_STREAMS, is_feature_enabled
from services import whoop_client
from services.metric_writer import MetricUpsertWriter
from services.whoop_schemas import (
    BodyMeasurement,
    CycleRecord,
    RecoveryRecord,
    SleepRecord,
    WorkoutRecord,
    record_date,
)

logger = logging.getLogger(__name__)

KJ_PER_KCAL = 4.184
MS_PER_HOUR = 3_600_000

MANDATORY_STREAMS = ("recovery", "sleep", "workout")
OPTIONAL_STREAMS = ("body", "cycle")


def kilojoules_to_kcal(kilojoule: float) -> int:
    return int(round(kilojoule / KJ_PER_KCAL))


def _ms_to_hours(value: Optional[int], ndigits: int) -> Optional[float]:
    if value is None:
        return None
    return round(value / MS_PER_HOUR, ndigits)


@dataclass(frozen=True)
class MetricPoint:
    name: str
    category: str
    unit: str
    value: float
    measurement_date: date
    external_id: str
    payload: Optional[Dict[str, Any]] = None


@dataclass
class StreamResult:
    stream: str
    mandatory: bool
    fetched: int = 0
    saved: int = 0
    skipped: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "stream": self.stream,
            "mandatory": self.mandatory,
            "fetched": self.fetched,
            "saved": self.saved,
            "skipped": self.skipped,
        }
        if self.error:
            out["error"] = self.error
            out["errorCode"] = self.error_code
        return out


@dataclass
class SyncReport:
    window_start: datetime
    window_end: datetime
    results: List[StreamResult] = field(default_factory=list)

    @property
    def per_stream_counts(self) -> Dict[str, int]:
        return OrderedDict((r.stream, r.saved) for r in self.results)

    @property
    def total_saved(self) -> int:
        return sum(r.saved for r in self.results)

    @property
    def failed_streams(self) -> List[str]:
        return [r.stream for r in self.results if not r.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "windowStart": self.window_start.isoformat(),
            "windowEnd": self.window_end.isoformat(),
            "perStreamCounts": dict(self.per_stream_counts),
            "totalSaved": self.total_saved,
            "failedStreams": self.failed_streams,
            "streams": [r.to_dict() for r in self.results],
        }


# --- Mapping (pure) ---

def map_recovery(record: RecoveryRecord) -> List[MetricPoint]:
    score = record.score
    if score is None:
        return []
    day = record_date(record.created_at)
    rid = record.cycle_id
    facets = [
        ("Recovery Score", "recovery", "%", score.recovery_score, "recovery"),
        ("HRV RMSSD", "heart", "ms", score.hrv_rmssd_milli, "hrv"),
        ("Resting Heart Rate", "heart", "bpm", score.resting_heart_rate, "rhr"),
        ("SpO2", "vitals", "%", score.spo2_percentage, "spo2"),
        ("Skin Temperature", "vitals", "°C", score.skin_temp_celsius, "skin_temp"),
    ]
    return [
        MetricPoint(name, category, unit, float(value), day, f"{rid}_{suffix}")
        for name, category, unit, value, suffix in facets
        if value is not None
    ]


def map_sleep(record: SleepRecord) -> List[MetricPoint]:
    score = record.score
    if score is None:
        return []
    day = record_date(record.start)
    sid = record.id
    points = []

    for name, category, unit, value, suffix in (
        ("Sleep Performance", "sleep", "%", score.sleep_performance_percentage, "performance"),
        ("Sleep Efficiency", "sleep", "%", score.sleep_efficiency_percentage, "efficiency"),
        ("Sleep Consistency", "sleep", "%", score.sleep_consistency_percentage, "consistency"),
        ("Respiratory Rate", "vitals", "breaths/min", score.respiratory_rate, "respiratory_rate"),
    ):
        if value is not None:
            points.append(MetricPoint(name, category, unit, float(value), day, f"{sid}_{suffix}"))

    stages = score.stage_summary
    if stages is None:
        return points

    deep = _ms_to_hours(stages.total_slow_wave_sleep_time_milli, 2)
    rem = _ms_to_hours(stages.total_rem_sleep_time_milli, 2)
    light = _ms_to_hours(stages.total_light_sleep_time_milli, 2)
    awake = _ms_to_hours(stages.total_awake_time_milli, 2)

    if stages.total_in_bed_time_milli is not None:
        asleep_ms = stages.total_in_bed_time_milli - (stages.total_awake_time_milli or 0)
        breakdown = {"deep": deep, "rem": rem, "light": light, "awake": awake}
        points.append(
            MetricPoint(
                "Sleep Duration", "sleep", "hours", round(asleep_ms / MS_PER_HOUR, 1),
                day, f"{sid}_duration", payload={"stages": breakdown},
            )
        )
        points.append(
            MetricPoint(
                "Time in Bed", "sleep", "hours", _ms_to_hours(stages.total_in_bed_time_milli, 2),
                day, f"{sid}_in_bed",
            )
        )

    for name, value, suffix in (
        ("Deep Sleep Duration", deep, "deep"),
        ("REM Sleep Duration", rem, "rem"),
        ("Light Sleep Duration", light, "light"),
        ("Awake Duration", awake, "awake"),
    ):
        if value is not None:
            points.append(MetricPoint(name, "sleep", "hours", value, day, f"{sid}_{suffix}"))
    return points


def map_workout(record: WorkoutRecord) -> List[MetricPoint]:
    score = record.score
    if score is None:
        return []
    day = record_date(record.start)
    wid = record.id
    points = []

    for name, unit, value, suffix in (
        ("Workout Strain", "strain", score.strain, "strain"),
        ("Workout Average Heart Rate", "bpm", score.average_heart_rate, "avg_hr"),
        ("Workout Max Heart Rate", "bpm", score.max_heart_rate, "max_hr"),
    ):
        if value is not None:
            points.append(MetricPoint(name, "activity", unit, float(value), day, f"{wid}_{suffix}"))

    if score.kilojoule is not None:
        points.append(
            MetricPoint(
                "Workout Calories", "activity", "kcal", kilojoules_to_kcal(score.kilojoule),
                day, f"{wid}_calories", payload={"kilojoule": score.kilojoule},
            )
        )
    if record.end is not None:
        minutes = (record.end - record.start).total_seconds() / 60
        points.append(MetricPoint("Workout Time", "activity", "min", round(minutes), day, f"{wid}_time"))
    if score.distance_meter:
        points.append(
            MetricPoint("Distance", "activity", "km", round(score.distance_meter / 1000, 2), day, f"{wid}_distance")
        )
    return points


def map_workout_counts(records: List[WorkoutRecord]) -> List[MetricPoint]:
    per_day: Dict[date, int] = OrderedDict()
    for r in records:
        if r.score is None:
            continue
        day = record_date(r.start)
        per_day[day] = per_day.get(day, 0) + 1
    return [
        MetricPoint("Workout Count", "activity", "workouts", count, day, f"workout_count_{day.isoformat()}")
        for day, count in per_day.items()
    ]


def map_cycle(record: CycleRecord) -> List[MetricPoint]:
    score = record.score
    if score is None:
        return []
    day = record_date(record.start)
    cid = record.id
    points = []
    for name, unit, value, suffix in (
        ("Day Strain", "strain", score.strain, "strain"),
        ("Average Heart Rate", "bpm", score.average_heart_rate, "avg_hr"),
        ("Max Heart Rate", "bpm", score.max_heart_rate, "max_hr"),
    ):
        if value is not None:
            points.append(MetricPoint(name, "activity", unit, float(value), day, f"{cid}_{suffix}"))
    if score.kilojoule is not None:
        points.append(
            MetricPoint("Active Calories", "activity", "kcal", kilojoules_to_kcal(score.kilojoule), day, f"{cid}_calories")
        )
    return points


def map_body(measurement: BodyMeasurement, day: date) -> List[MetricPoint]:
    prefix = f"body_{day.isoformat()}"
    return [
        MetricPoint(name, "body", unit, float(value), day, f"{prefix}_{suffix}")
        for name, unit, value, suffix in (
            ("Height", "m", measurement.height_meter, "height"),
            ("Weight", "kg", measurement.weight_kilogram, "weight"),
            ("Max Heart Rate (Body)", "bpm", measurement.max_heart_rate, "max_hr"),
        )
        if value is not None
    ]


# --- Orchestration ---

@dataclass
class _Stream:
    name: str
    mandatory: bool
    collect: Callable[[str, datetime, datetime], Tuple[int, int, List[MetricPoint]]]


class SyncOrchestrator:
    def __init__(
        self,
        db: Session,
        client: Any,
        provider: str = "whoop",
        lookback_days: Optional[int] = None,
        extended_streams: Optional[bool] = None,
    ):
        self.db = db
        self.client = client
        self.provider = provider
        self.lookback_days = int(lookback_days or settings.WHOOP_SYNC_LOOKBACK_DAYS)
        self.extended_streams = extended_streams

    def streams(self, user_id: UUID) -> List[_Stream]:
        out = [
            _Stream("recovery", True, self._collect_recovery),
            _Stream("sleep", True, self._collect_sleep),
            _Stream("workout", True, self._collect_workout),
        ]
        extended = self.extended_streams
        if extended is None:
            extended = is_feature_enabled(WHOOP_EXTENDED_STREAMS, str(user_id))
        if extended:
            out.append(_Stream("body", False, self._collect_body))
            out.append(_Stream("cycle", False, self._collect_cycle))
        return out

    def run(self, user_id: UUID, access_token: str) -> SyncReport:
        window_end = datetime.now(timezone.utc)
        window_start = window_end - timedelta(days=self.lookback_days)
        report = SyncReport(window_start=window_start, window_end=window_end)
        first_failure: Optional[Tuple[str, BaseException]] = None

        for stream in self.streams(user_id):
            result = StreamResult(stream=stream.name, mandatory=stream.mandatory)
            try:
                with self.db.begin_nested():
                    fetched, skipped, points = stream.collect(access_token, window_start, window_end)
                    result.fetched = fetched
                    result.skipped = skipped
                    result.saved = self._save(user_id, points)
            except Exception as e:
                result.saved = 0
                result.error = str(e)[:500]
                result.error_code = e.error_code if isinstance(e, IntegrationError) else type(e).__name__
                log = logger.error if stream.mandatory else logger.warning
                log(
                    "WHOOP stream sync failed",
                    extra={"extra_fields": {
                        "user_id": str(user_id),
                        "stream": stream.name,
                        "mandatory": stream.mandatory,
                        "error": result.error,
                    }},
                )
                if stream.mandatory and first_failure is None:
                    first_failure = (stream.name, e)
            else:
                logger.info(
                    "WHOOP stream synced",
                    extra={"extra_fields": {
                        "user_id": str(user_id),
                        "stream": stream.name,
                        "fetched": result.fetched,
                        "saved": result.saved,
                        "skipped": result.skipped,
                    }},
                )
            report.results.append(result)

        if first_failure is not None:
            name, cause = first_failure
            raise SyncError(f"WHOOP {name} sync failed: {cause}", report=report, stream=name) from cause
        return report

    def _save(self, user_id: UUID, points: List[MetricPoint]) -> int:
        writer = MetricUpsertWriter(self.db, source=self.provider)
        for p in points:
            writer.write(user_id, p.name, p.category, p.unit, p.value, p.measurement_date, p.external_id, p.payload)
        return len(points)

    def _validate(self, schema, records: List[Dict[str, Any]], stream: str) -> list:
        try:
            return [schema.model_validate(r) for r in records]
        except ValidationError as e:
            raise SyncError(f"Malformed WHOOP {stream} record: {e.errors()[0].get('msg')}", stream=stream)

    def _collect_recovery(self, token: str, start: datetime, end: datetime):
        raw = self.client.fetch_collection(token, whoop_client.RECOVERY_PATH, start, end)
        records = self._validate(RecoveryRecord, raw, "recovery")
        points = [p for r in records for p in map_recovery(r)]
        return len(raw), sum(1 for r in records if r.score is None), points

    def _collect_sleep(self, token: str, start: datetime, end: datetime):
        raw = self.client.fetch_collection(token, whoop_client.SLEEP_PATH, start, end)
        records = self._validate(SleepRecord, raw, "sleep")
        points = [p for r in records for p in map_sleep(r)]
        return len(raw), sum(1 for r in records if r.score is None), points

    def _collect_workout(self, token: str, start: datetime, end: datetime):
        # Counts are per day, so the first day is fetched whole.
        day_start = datetime.combine(start.date(), time.min, tzinfo=start.tzinfo)
        raw = self.client.fetch_collection(token, whoop_client.WORKOUT_PATH, day_start, end)
        records = self._validate(WorkoutRecord, raw, "workout")
        points = [p for r in records for p in map_workout(r)]
        points.extend(map_workout_counts(records))
        return len(raw), sum(1 for r in records if r.score is None), points

    def _collect_cycle(self, token: str, start: datetime, end: datetime):
        raw = self.client.fetch_collection(token, whoop_client.CYCLE_PATH, start, end)
        records = self._validate(CycleRecord, raw, "cycle")
        points = [p for r in records for p in map_cycle(r)]
        return len(raw), sum(1 for r in records if r.score is None), points

    def _collect_body(self, token: str, start: datetime, end: datetime):
        raw = self.client.fetch_body_measurement(token)
        measurement = self._validate(BodyMeasurement, [raw or {}], "body")[0]
        return 1, 0, map_body(measurement, end.date())
