"""
Tests for the WHOOP sync pipeline.

Covers:
- per-stream record mapping (units, rounding, external ids)
- mandatory vs optional stream failure handling
- replay safety (stable row counts across overlapping syncs)
"""
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from core.exceptions import SyncError
from models import Metric, MetricValue
from services import whoop_client
from services.whoop_schemas import BodyMeasurement, RecoveryRecord, SleepRecord, WorkoutRecord
from services.whoop_sync import (
    SyncOrchestrator,
    kilojoules_to_kcal,
    map_body,
    map_recovery,
    map_sleep,
    map_workout,
    map_workout_counts,
)
from fixtures.whoop_fixtures import make_recovery, make_sleep, make_workout


def _by_name(points):
    return {p.name: p for p in points}


def _value_count(db, user_id):
    return (
        db.query(MetricValue)
        .join(Metric, Metric.id == MetricValue.metric_id)
        .filter(Metric.user_id == user_id)
        .count()
    )


def _value_of(db, user_id, name):
    db.expire_all()
    return (
        db.query(MetricValue)
        .join(Metric, Metric.id == MetricValue.metric_id)
        .filter(Metric.user_id == user_id, Metric.metric_name == name)
        .all()
    )


class TestMapping:
    def test_workout_calories_convert_kilojoules(self):
        points = _by_name(map_workout(WorkoutRecord.model_validate(make_workout(kilojoule=2092))))

        assert points["Workout Calories"].value == 500
        assert points["Workout Calories"].unit == "kcal"
        assert points["Workout Calories"].external_id.endswith("_calories")

    def test_kilojoule_rounding(self):
        assert kilojoules_to_kcal(2092) == 500
        assert kilojoules_to_kcal(1000) == 239

    def test_workout_facets_have_distinct_external_ids(self):
        record = WorkoutRecord.model_validate(make_workout(workout_id="w-1"))
        points = map_workout(record)
        ids = [p.external_id for p in points]

        assert len(ids) == len(set(ids))
        assert {"w-1_strain", "w-1_avg_hr", "w-1_max_hr", "w-1_calories", "w-1_time", "w-1_distance"} == set(ids)
        by_name = _by_name(points)
        assert by_name["Workout Time"].value == 45
        assert by_name["Distance"].value == 8.12
        assert by_name["Workout Strain"].measurement_date == date(2026, 10, 10)

    def test_workout_without_distance_has_no_distance_point(self):
        record = WorkoutRecord.model_validate(make_workout(distance_meter=None))
        assert "Distance" not in _by_name(map_workout(record))

    def test_workout_count_per_day(self):
        records = [
            WorkoutRecord.model_validate(make_workout(workout_id="a", start="2026-10-10T07:00:00.000Z")),
            WorkoutRecord.model_validate(make_workout(workout_id="b", start="2026-10-10T18:00:00.000Z")),
            WorkoutRecord.model_validate(make_workout(workout_id="c", start="2026-10-11T07:00:00.000Z")),
        ]
        counts = {p.external_id: p.value for p in map_workout_counts(records)}

        assert counts == {"workout_count_2026-10-10": 2, "workout_count_2026-10-11": 1}

    def test_sleep_durations(self):
        points = _by_name(map_sleep(SleepRecord.model_validate(make_sleep(sleep_id="s-1"))))

        assert points["Sleep Duration"].value == 7.5
        assert points["Sleep Duration"].payload["stages"] == {"deep": 1.75, "rem": 2.0, "light": 3.75, "awake": 0.5}
        assert points["Time in Bed"].value == 8.0
        assert points["Deep Sleep Duration"].value == 1.75
        assert points["Awake Duration"].value == 0.5
        assert points["Sleep Performance"].external_id == "s-1_performance"
        assert points["Sleep Performance"].measurement_date == date(2026, 10, 9)

    def test_recovery_facets_use_cycle_id(self):
        points = _by_name(map_recovery(RecoveryRecord.model_validate(make_recovery(cycle_id=42))))

        assert points["Recovery Score"].external_id == "42_recovery"
        assert points["HRV RMSSD"].unit == "ms"
        assert points["Skin Temperature"].unit == "°C"
        assert set(points) == {"Recovery Score", "HRV RMSSD", "Resting Heart Rate", "SpO2", "Skin Temperature"}

    def test_unscored_records_map_to_nothing(self):
        raw = make_recovery()
        raw["score_state"] = "PENDING_SCORE"
        raw.pop("score")
        assert map_recovery(RecoveryRecord.model_validate(raw)) == []

    def test_unknown_fields_are_ignored(self):
        raw = make_workout()
        raw["brand_new_field"] = {"nested": True}
        raw["score"]["another_new_metric"] = 1.0
        assert map_workout(WorkoutRecord.model_validate(raw))

    def test_body_measurement_keys_on_date(self):
        points = map_body(BodyMeasurement(height_meter=1.8, weight_kilogram=80.0), date(2026, 10, 19))

        assert {p.external_id for p in points} == {"body_2026-10-19_height", "body_2026-10-19_weight"}


class TestOrchestrator:
    def test_runs_mandatory_streams_with_access_token(self, db_session, test_user, fake_whoop):
        report = SyncOrchestrator(db_session, fake_whoop, extended_streams=False).run(test_user.id, "A1")

        assert fake_whoop.calls == [
            ("fetch", whoop_client.RECOVERY_PATH, "A1"),
            ("fetch", whoop_client.SLEEP_PATH, "A1"),
            ("fetch", whoop_client.WORKOUT_PATH, "A1"),
        ]
        assert report.per_stream_counts == {"recovery": 5, "sleep": 10, "workout": 7}
        assert report.total_saved == 22
        assert report.failed_streams == []
        assert _value_count(db_session, test_user.id) == 22

    def test_window_is_thirty_days(self, db_session, test_user, fake_whoop):
        report = SyncOrchestrator(db_session, fake_whoop, extended_streams=False).run(test_user.id, "A1")
        assert report.window_end - report.window_start == timedelta(days=30)

    def test_workout_fetch_starts_at_midnight_of_first_day(self, db_session, test_user, fake_whoop):
        fake_whoop.fetch_collection = MagicMock(wraps=fake_whoop.fetch_collection)

        report = SyncOrchestrator(db_session, fake_whoop, extended_streams=False).run(test_user.id, "A1")

        starts = {c.args[1]: c.args[2] for c in fake_whoop.fetch_collection.call_args_list}
        assert starts[whoop_client.RECOVERY_PATH] == report.window_start
        workout_start = starts[whoop_client.WORKOUT_PATH]
        assert workout_start.date() == report.window_start.date()
        assert (workout_start.hour, workout_start.minute, workout_start.second, workout_start.microsecond) == (0, 0, 0, 0)
        assert workout_start.tzinfo is not None

    def test_replay_keeps_row_count_stable(self, db_session, test_user, fake_whoop):
        orchestrator = SyncOrchestrator(db_session, fake_whoop, extended_streams=False)
        orchestrator.run(test_user.id, "A1")
        first = _value_count(db_session, test_user.id)
        orchestrator.run(test_user.id, "A1")

        assert _value_count(db_session, test_user.id) == first
        assert db_session.query(Metric).filter(Metric.user_id == test_user.id).count() == 22

    def test_workout_calories_persisted(self, db_session, test_user, fake_whoop):
        SyncOrchestrator(db_session, fake_whoop, extended_streams=False).run(test_user.id, "A1")

        rows = _value_of(db_session, test_user.id, "Workout Calories")
        assert [r.value for r in rows] == [500]

    def test_extended_streams_follow_feature_flag(self, db_session, test_user, fake_whoop, extended_streams_on):
        report = SyncOrchestrator(db_session, fake_whoop).run(test_user.id, "A1")

        assert list(report.per_stream_counts) == ["recovery", "sleep", "workout", "body", "cycle"]
        assert report.per_stream_counts["body"] == 3
        assert report.per_stream_counts["cycle"] == 4
        assert [r.value for r in _value_of(db_session, test_user.id, "Active Calories")] == [2000]

    def test_optional_stream_failure_is_swallowed(self, db_session, test_user, fake_whoop):
        fake_whoop.failing_paths = {whoop_client.CYCLE_PATH}
        report = SyncOrchestrator(db_session, fake_whoop, extended_streams=True).run(test_user.id, "A1")

        assert report.failed_streams == ["cycle"]
        assert report.per_stream_counts["cycle"] == 0
        assert report.total_saved == 25
        assert _value_of(db_session, test_user.id, "Day Strain") == []

    def test_mandatory_stream_failure_raises_after_all_streams(self, db_session, test_user, fake_whoop):
        fake_whoop.failing_paths = {whoop_client.SLEEP_PATH}

        with pytest.raises(SyncError) as exc_info:
            SyncOrchestrator(db_session, fake_whoop, extended_streams=True).run(test_user.id, "A1")

        err = exc_info.value
        assert err.stream == "sleep"
        assert err.report.failed_streams == ["sleep"]
        assert err.report.per_stream_counts == {"recovery": 5, "sleep": 0, "workout": 7, "body": 3, "cycle": 4}
        # Every stream was attempted and healthy streams kept their rows.
        assert len(fake_whoop.calls_of("fetch")) == 5
        assert _value_count(db_session, test_user.id) == 19
        assert err.to_dict()["syncResult"]["failedStreams"] == ["sleep"]

    def test_malformed_record_fails_the_stream(self, db_session, test_user, fake_whoop):
        broken = make_sleep()
        broken.pop("start")
        fake_whoop.collections[whoop_client.SLEEP_PATH] = [make_sleep(sleep_id="ok"), broken]

        with pytest.raises(SyncError) as exc_info:
            SyncOrchestrator(db_session, fake_whoop, extended_streams=False).run(test_user.id, "A1")

        assert exc_info.value.stream == "sleep"
        assert _value_of(db_session, test_user.id, "Sleep Duration") == []

    def test_unscored_records_are_skipped_not_failed(self, db_session, test_user, fake_whoop):
        pending = make_recovery(cycle_id=7)
        pending["score_state"] = "PENDING_SCORE"
        pending.pop("score")
        fake_whoop.collections[whoop_client.RECOVERY_PATH] = [make_recovery(cycle_id=6), pending]

        report = SyncOrchestrator(db_session, fake_whoop, extended_streams=False).run(test_user.id, "A1")
        recovery = report.results[0]

        assert recovery.ok
        assert (recovery.fetched, recovery.skipped, recovery.saved) == (2, 1, 5)
