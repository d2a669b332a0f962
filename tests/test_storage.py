"""
Unit tests for storage layer.

Tests schema creation, seeding, the usage ledger, thresholds, alerts,
the per-user counter and job leases.
"""

import json
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from tts_cost_guard.storage.db import get_connection
from tts_cost_guard.storage.models import AlertLogEntry, AlertRecipient, UsageLogEntry
from tts_cost_guard.storage.repository import (
    DEFAULT_THRESHOLDS,
    GuardRepository,
    get_repository,
    initialize_schema,
    insert_usage_log,
    insert_usage_logs,
)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class StorageTestCase:
    """Fresh database per test."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repo = GuardRepository(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestStorageSchema(StorageTestCase):
    """Test database schema creation and seeding."""

    def test_all_tables_created(self):
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        finally:
            conn.close()
        tables = {row[0] for row in rows}
        assert {
            "system_flags",
            "tts_config",
            "tts_usage_log",
            "tts_alert_thresholds",
            "tts_alerts_log",
            "admin_alert_emails",
            "user_tts_usage",
            "job_leases",
        } <= tables

    def test_default_config_seeded(self):
        entries = self.repo.get_config_entries(["daily_hard_cap_usd", "per_user_limits", "fallback_provider"])
        assert entries["daily_hard_cap_usd"].config_value == {"value": 50, "enabled": True}
        assert entries["per_user_limits"].config_value == {"requests_per_minute": 10, "requests_per_day": 50}
        assert entries["fallback_provider"].config_value == {"provider": "openai", "voice": "shimmer"}

    def test_default_thresholds_seeded(self):
        thresholds = self.repo.get_thresholds()
        assert len(thresholds) == len(DEFAULT_THRESHOLDS)
        by_name = {t.metric_name: t for t in thresholds}
        assert by_name["daily_cost_usd"].alert_severity == "critical"
        assert by_name["cache_hit_rate"].time_window_minutes == 60

    def test_reinitialize_keeps_operator_changes(self):
        self.repo.set_config("daily_hard_cap_usd", {"value": 20, "enabled": True})
        initialize_schema(self.db_path)

        entries = self.repo.get_config_entries(["daily_hard_cap_usd"])
        assert entries["daily_hard_cap_usd"].config_value["value"] == 20
        assert len(self.repo.get_thresholds()) == len(DEFAULT_THRESHOLDS)


class TestFlags(StorageTestCase):
    """Test system flag reads and upserts."""

    def test_upsert_creates_then_overwrites_in_place(self):
        self.repo.upsert_flag("tts_eleven_disabled", {"disabled": True}, "breaker", now=NOW)
        self.repo.upsert_flag("tts_eleven_disabled", {"disabled": False}, now=NOW + timedelta(minutes=1))

        flags = self.repo.get_flags()
        assert len(flags) == 1
        flag = flags["tts_eleven_disabled"]
        assert flag.flag_value == {"disabled": False}
        assert flag.description == "breaker"
        assert flag.updated_at == NOW + timedelta(minutes=1)

    def test_get_flags_by_key(self):
        self.repo.upsert_flag("a", {"x": 1})
        self.repo.upsert_flag("b", {"x": 2})

        assert set(self.repo.get_flags(["a"])) == {"a"}
        assert self.repo.get_flags([]) == {}

    def test_malformed_json_reads_as_none(self):
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO system_flags (flag_key, flag_value, updated_at) VALUES (?, ?, ?)",
                ("broken", "{not json", NOW.isoformat()),
            )
        finally:
            conn.close()

        assert self.repo.get_flags(["broken"])["broken"].flag_value is None

    def test_missing_config_keys_absent(self):
        assert self.repo.get_config_entries(["nope"]) == {}


class TestUsageLedger(StorageTestCase):
    """Test usage log insertion and reads."""

    def _entry(self, minutes_ago, provider="elevenlabs", **kwargs):
        return UsageLogEntry(
            created_at=NOW - timedelta(minutes=minutes_ago),
            provider=provider,
            estimated_cost=kwargs.pop("estimated_cost", 0.1),
            **kwargs,
        )

    def test_insert_and_fetch_oldest_first(self):
        insert_usage_logs([self._entry(5), self._entry(30), self._entry(10)], self.db_path)

        logs = self.repo.fetch_usage_logs(since=NOW - timedelta(hours=1))
        assert [log.created_at for log in logs] == [
            NOW - timedelta(minutes=30),
            NOW - timedelta(minutes=10),
            NOW - timedelta(minutes=5),
        ]

    def test_fetch_respects_since_and_provider(self):
        insert_usage_logs(
            [
                self._entry(5, "openai"),
                self._entry(5, "elevenlabs"),
                self._entry(60 * 25, "openai"),
            ],
            self.db_path,
        )

        assert len(self.repo.fetch_usage_logs(since=NOW - timedelta(hours=24))) == 2
        assert len(self.repo.fetch_usage_logs(since=NOW - timedelta(hours=24), provider="openai")) == 1
        assert self.repo.count_usage(since=NOW - timedelta(days=2), provider="openai") == 2

    def test_fields_roundtrip(self):
        insert_usage_log(
            self._entry(
                1,
                status="error",
                actual_cost=0.2,
                user_id="u1",
                request_id="r1",
                text_length=42,
                voice="shimmer",
                cached=True,
                generation_time_ms=1500,
                error_message="boom",
            ),
            self.db_path,
        )

        log = self.repo.fetch_usage_logs(since=NOW - timedelta(hours=1))[0]
        assert log.status == "error"
        assert log.cost == 0.2
        assert log.cached is True
        assert log.generation_time_ms == 1500
        assert log.error_message == "boom"

    def test_naive_datetimes_are_utc(self):
        insert_usage_log(
            UsageLogEntry(created_at=datetime(2024, 6, 1, 11, 59), provider="openai", estimated_cost=0.1),
            self.db_path,
        )
        assert self.repo.count_usage(since=NOW - timedelta(minutes=2)) == 1

    def test_count_distinct_users_ignores_anonymous(self):
        insert_usage_logs(
            [
                self._entry(1, user_id="a"),
                self._entry(2, user_id="a"),
                self._entry(3, user_id="b"),
                self._entry(4),
            ],
            self.db_path,
        )
        assert self.repo.count_distinct_users(NOW - timedelta(hours=1)) == 2

    def test_batch_insert_is_atomic(self):
        bad = UsageLogEntry(created_at=NOW, provider=None, estimated_cost=0.1)

        with pytest.raises(Exception):
            insert_usage_logs([self._entry(1), bad], self.db_path)

        assert self.repo.count_usage(since=NOW - timedelta(days=1)) == 0


class TestThresholdsAndAlerts(StorageTestCase):
    """Test threshold management and the alert log."""

    def test_set_threshold_updates_existing_metric(self):
        original = {t.metric_name: t.id for t in self.repo.get_thresholds()}
        threshold_id = self.repo.set_threshold("error_rate", 5, alert_severity="warning", time_window_minutes=60)

        assert threshold_id == original["error_rate"]
        updated = {t.metric_name: t for t in self.repo.get_thresholds()}["error_rate"]
        assert updated.threshold_value == 5
        assert updated.alert_severity == "warning"

    def test_disabled_thresholds_filtered(self):
        self.repo.set_threshold("error_rate", 10, enabled=False)

        enabled = {t.metric_name for t in self.repo.get_thresholds()}
        everything = {t.metric_name for t in self.repo.get_thresholds(enabled_only=False)}
        assert "error_rate" not in enabled
        assert "error_rate" in everything

    def test_mark_threshold_triggered(self):
        threshold = self.repo.get_thresholds()[0]
        self.repo.mark_threshold_triggered(threshold.id, NOW)
        self.repo.mark_threshold_triggered(threshold.id, NOW + timedelta(hours=1))

        refreshed = {t.id: t for t in self.repo.get_thresholds()}[threshold.id]
        assert refreshed.trigger_count == 2
        assert refreshed.last_triggered_at == NOW + timedelta(hours=1)

    def test_alert_logs_newest_first(self):
        entries = [
            AlertLogEntry(
                metric_name=name,
                metric_value=1.0,
                threshold_value=0.5,
                alert_severity="warning",
                alert_message=f"{name} breached",
                time_window_start=NOW - timedelta(hours=24),
                time_window_end=NOW,
                notified_channels=("dashboard", "slack"),
                created_at=NOW + timedelta(minutes=i),
            )
            for i, name in enumerate(["first", "second"])
        ]
        self.repo.insert_alert_logs(entries)

        logs = self.repo.fetch_alert_logs()
        assert [log.metric_name for log in logs] == ["second", "first"]
        assert logs[0].notified_channels == ("dashboard", "slack")
        assert logs[0].threshold_id is None
        assert len(self.repo.fetch_alert_logs(limit=1)) == 1

    def test_recipients_filtered_by_subscription(self):
        self.repo.add_alert_recipient(AlertRecipient(email="ops@example.com"))
        self.repo.add_alert_recipient(AlertRecipient(email="off@example.com", enabled=False))
        self.repo.add_alert_recipient(AlertRecipient(email="other@example.com", receives_tts_alerts=False))
        self.repo.add_alert_recipient(AlertRecipient(email="cto@example.com", receives_critical_only=True))

        recipients = self.repo.get_alert_recipients()
        assert [r.email for r in recipients] == ["cto@example.com", "ops@example.com"]
        assert recipients[0].receives_critical_only is True


class TestUserThrottleCounter(StorageTestCase):
    """Test the atomic per-user request counter."""

    def test_first_request(self):
        result = self.repo.check_user_throttle("u1", 10, 50, now=NOW)
        assert result.allowed is True
        assert (result.current_minute, result.current_day) == (1, 1)
        assert result.reason == "First request"

    def test_requests_are_counted(self):
        self.repo.check_user_throttle("u1", 10, 50, now=NOW)
        result = self.repo.check_user_throttle("u1", 10, 50, now=NOW + timedelta(seconds=5))
        assert result.allowed is True
        assert (result.current_minute, result.current_day) == (2, 2)
        assert result.reason == "Request allowed"

    def test_minute_limit_denies_without_counting(self):
        for i in range(3):
            self.repo.check_user_throttle("u1", 3, 50, now=NOW + timedelta(seconds=i))

        denied = self.repo.check_user_throttle("u1", 3, 50, now=NOW + timedelta(seconds=10))
        again = self.repo.check_user_throttle("u1", 3, 50, now=NOW + timedelta(seconds=11))

        assert denied.allowed is False
        assert denied.reason == "Rate limit exceeded: 3 requests in last minute (max 3)"
        assert again.current_minute == 3
        assert again.current_day == 3

    def test_minute_window_resets(self):
        for i in range(3):
            self.repo.check_user_throttle("u1", 3, 50, now=NOW + timedelta(seconds=i))

        at_boundary = self.repo.check_user_throttle("u1", 3, 50, now=NOW + timedelta(minutes=1))
        after = self.repo.check_user_throttle("u1", 3, 50, now=NOW + timedelta(minutes=1, seconds=1))

        assert at_boundary.allowed is False
        assert after.allowed is True
        assert after.current_minute == 1
        assert after.current_day == 4

    def test_day_limit(self):
        for i in range(2):
            self.repo.check_user_throttle("u1", 10, 2, now=NOW + timedelta(minutes=5 * i))

        denied = self.repo.check_user_throttle("u1", 10, 2, now=NOW + timedelta(minutes=20))
        assert denied.allowed is False
        assert denied.reason == "Daily limit exceeded: 2 requests today (max 2)"

        next_day = self.repo.check_user_throttle("u1", 10, 2, now=NOW + timedelta(days=1, minutes=1))
        assert next_day.allowed is True
        assert next_day.current_day == 1

    def test_users_are_independent(self):
        self.repo.check_user_throttle("u1", 1, 50, now=NOW)
        assert self.repo.check_user_throttle("u1", 1, 50, now=NOW).allowed is False
        assert self.repo.check_user_throttle("u2", 1, 50, now=NOW).allowed is True


class TestJobLeases(StorageTestCase):
    """Test named leases used to serialize monitor runs."""

    def test_second_holder_blocked_until_expiry(self):
        assert self.repo.acquire_lease("job", "a", 60, now=NOW) is True
        assert self.repo.acquire_lease("job", "b", 60, now=NOW + timedelta(seconds=30)) is False
        assert self.repo.acquire_lease("job", "b", 60, now=NOW + timedelta(seconds=61)) is True

    def test_release_frees_lease(self):
        self.repo.acquire_lease("job", "a", 60, now=NOW)
        self.repo.release_lease("job", "a")
        assert self.repo.acquire_lease("job", "b", 60, now=NOW) is True

    def test_release_by_other_holder_is_ignored(self):
        self.repo.acquire_lease("job", "a", 60, now=NOW)
        self.repo.release_lease("job", "b")
        assert self.repo.acquire_lease("job", "b", 60, now=NOW) is False


class TestGetRepository:
    """Test the shared repository instance."""

    def test_same_path_same_instance(self):
        assert get_repository("x.db") is get_repository("x.db")

    def test_new_path_new_instance(self):
        first = get_repository("x.db")
        second = get_repository("y.db")
        assert second is not first
        assert second.db_path == "y.db"
