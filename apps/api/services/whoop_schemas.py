"""
WHOOP v2 record schemas.

Validated at the fetch boundary: unknown fields are ignored so the provider can
add to its payloads, while a missing required field rejects the record.
`score` is optional everywhere because WHOOP returns unscored records
(`score_state` PENDING_SCORE / UNSCORABLE) with no score block.
"""
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict


class WhoopModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RecoveryScore(WhoopModel):
    user_calibrating: Optional[bool] = None
    recovery_score: Optional[float] = None
    resting_heart_rate: Optional[float] = None
    hrv_rmssd_milli: Optional[float] = None
    spo2_percentage: Optional[float] = None
    skin_temp_celsius: Optional[float] = None


class RecoveryRecord(WhoopModel):
    cycle_id: Union[int, str]
    sleep_id: Optional[str] = None
    created_at: datetime
    score_state: Optional[str] = None
    score: Optional[RecoveryScore] = None


class SleepStageSummary(WhoopModel):
    total_in_bed_time_milli: Optional[int] = None
    total_awake_time_milli: Optional[int] = None
    total_no_data_time_milli: Optional[int] = None
    total_light_sleep_time_milli: Optional[int] = None
    total_slow_wave_sleep_time_milli: Optional[int] = None
    total_rem_sleep_time_milli: Optional[int] = None
    sleep_cycle_count: Optional[int] = None
    disturbance_count: Optional[int] = None


class SleepScore(WhoopModel):
    stage_summary: Optional[SleepStageSummary] = None
    respiratory_rate: Optional[float] = None
    sleep_performance_percentage: Optional[float] = None
    sleep_consistency_percentage: Optional[float] = None
    sleep_efficiency_percentage: Optional[float] = None


class SleepRecord(WhoopModel):
    id: Union[str, int]
    start: datetime
    end: Optional[datetime] = None
    nap: Optional[bool] = None
    score_state: Optional[str] = None
    score: Optional[SleepScore] = None


class WorkoutScore(WhoopModel):
    strain: Optional[float] = None
    average_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None
    kilojoule: Optional[float] = None
    distance_meter: Optional[float] = None


class WorkoutRecord(WhoopModel):
    id: Union[str, int]
    start: datetime
    end: Optional[datetime] = None
    sport_name: Optional[str] = None
    score_state: Optional[str] = None
    score: Optional[WorkoutScore] = None


class CycleScore(WhoopModel):
    strain: Optional[float] = None
    kilojoule: Optional[float] = None
    average_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None


class CycleRecord(WhoopModel):
    id: Union[int, str]
    start: datetime
    end: Optional[datetime] = None
    score_state: Optional[str] = None
    score: Optional[CycleScore] = None


class BodyMeasurement(WhoopModel):
    height_meter: Optional[float] = None
    weight_kilogram: Optional[float] = None
    max_heart_rate: Optional[float] = None


def record_date(value: datetime) -> date:
    """Calendar date of a WHOOP timestamp as reported (UTC for WHOOP)."""
    return value.date()
