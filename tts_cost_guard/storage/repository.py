"""
Repository pattern for data access.

Handles database operations and data persistence logic for flags, config,
the usage ledger, alert thresholds, alert logs and per-user counters.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AlertLogEntry,
    AlertRecipient,
    AlertThreshold,
    CounterResult,
    SystemFlag,
    TTSConfigEntry,
    UsageLogEntry,
)

logger = logging.getLogger(__name__)

# Seed rows inserted by initialize_schema; existing rows are never overwritten.
DEFAULT_CONFIG = {
    "daily_hard_cap_usd": ({"value": 50, "enabled": True}, "Hard daily cost cap in USD"),
    "per_user_limits": (
        {"requests_per_minute": 10, "requests_per_day": 50},
        "Per-user rate limits",
    ),
    "emergency_bitrate": ({"value": 24}, "Emergency degraded bitrate in kbps"),
    "slack_webhook_url": ({"url": ""}, "Slack webhook URL for alerts"),
    "fallback_provider": (
        {"provider": "openai", "voice": "shimmer"},
        "Fallback TTS provider when ElevenLabs is disabled",
    ),
}

DEFAULT_THRESHOLDS = [
    ("elevenlabs_daily_calls", 1000, 1440, "warning", "ElevenLabs API calls exceed 1000 per day"),
    ("daily_cost_usd", 50, 1440, "critical", "Daily TTS costs exceed $50"),
    ("cache_hit_rate", 30, 60, "warning", "Cache hit rate below 30% in last hour"),
    ("error_rate", 10, 60, "critical", "Error rate above 10% in last hour"),
    ("avg_generation_time_ms", 2000, 60, "warning", "Average generation time exceeds 2 seconds"),
    ("openai_hourly_calls", 500, 60, "warning", "OpenAI API calls exceed 500 per hour"),
]

_USAGE_COLUMNS = """
    created_at, provider, estimated_cost, actual_cost, status, user_id,
    request_id, text_length, voice, cached, generation_time_ms, error_message
"""


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_db_time(value: datetime) -> str:
    """Serialize a datetime so that string order matches time order."""
    return as_utc(value).isoformat(timespec="microseconds")


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _load_json(raw: Optional[str], key: str) -> Any:
    """Decode a JSON column; malformed content decodes to None."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f"Malformed JSON stored for '{key}', ignoring it")
        return None


def _row_to_usage(row) -> UsageLogEntry:
    return UsageLogEntry(
        created_at=_from_db_time(row["created_at"]),
        provider=row["provider"],
        estimated_cost=row["estimated_cost"],
        actual_cost=row["actual_cost"],
        status=row["status"],
        user_id=row["user_id"],
        request_id=row["request_id"],
        text_length=row["text_length"],
        voice=row["voice"],
        cached=bool(row["cached"]),
        generation_time_ms=row["generation_time_ms"],
        error_message=row["error_message"],
    )


def _row_to_threshold(row) -> AlertThreshold:
    return AlertThreshold(
        id=row["id"],
        metric_name=row["metric_name"],
        threshold_value=row["threshold_value"],
        time_window_minutes=row["time_window_minutes"],
        alert_severity=row["alert_severity"],
        enabled=bool(row["enabled"]),
        description=row["description"],
        last_triggered_at=_from_db_time(row["last_triggered_at"]),
        trigger_count=row["trigger_count"],
    )


class GuardRepository:
    """Repository for flags, configuration and TTS usage data.

    Every method opens its own short-lived connection, so one instance can be
    shared by request handlers and the budget monitor alike.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # -- system flags -------------------------------------------------------

    def get_flags(self, keys: Optional[Iterable[str]] = None) -> Dict[str, SystemFlag]:
        """Fetch flags by key (all flags when ``keys`` is None)."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT flag_key, flag_value, description, updated_at FROM system_flags"
            params: List[Any] = []
            if keys is not None:
                keys = list(keys)
                if not keys:
                    return {}
                query += f" WHERE flag_key IN ({', '.join('?' for _ in keys)})"
                params.extend(keys)
            flags = {}
            for row in conn.execute(query, params).fetchall():
                flags[row["flag_key"]] = SystemFlag(
                    flag_key=row["flag_key"],
                    flag_value=_load_json(row["flag_value"], row["flag_key"]),
                    description=row["description"],
                    updated_at=_from_db_time(row["updated_at"]),
                )
            return flags
        finally:
            conn.close()

    def upsert_flag(
        self,
        flag_key: str,
        flag_value: Dict[str, Any],
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Insert or overwrite a flag in place, keyed by ``flag_key``."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO system_flags (flag_key, flag_value, description, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(flag_key) DO UPDATE SET
                    flag_value = excluded.flag_value,
                    description = COALESCE(excluded.description, system_flags.description),
                    updated_at = excluded.updated_at
                """,
                (flag_key, json.dumps(flag_value), description, _to_db_time(now or utc_now())),
            )
        finally:
            conn.close()

    # -- tts config ---------------------------------------------------------

    def get_config_entries(self, keys: Iterable[str]) -> Dict[str, TTSConfigEntry]:
        """Fetch config rows by key; absent keys are simply missing from the result."""
        keys = list(keys)
        if not keys:
            return {}
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"""
                SELECT config_key, config_value, description FROM tts_config
                WHERE config_key IN ({', '.join('?' for _ in keys)})
                """,
                keys,
            )
            return {
                row["config_key"]: TTSConfigEntry(
                    config_key=row["config_key"],
                    config_value=_load_json(row["config_value"], row["config_key"]),
                    description=row["description"],
                )
                for row in cursor.fetchall()
            }
        finally:
            conn.close()

    def set_config(
        self, config_key: str, config_value: Dict[str, Any], description: Optional[str] = None
    ) -> None:
        """Operator write path for a config row."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO tts_config (config_key, config_value, description)
                VALUES (?, ?, ?)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value = excluded.config_value,
                    description = COALESCE(excluded.description, tts_config.description)
                """,
                (config_key, json.dumps(config_value), description),
            )
        finally:
            conn.close()

    # -- usage ledger -------------------------------------------------------

    def fetch_usage_logs(
        self,
        since: datetime,
        until: Optional[datetime] = None,
        provider: Optional[str] = None,
    ) -> List[UsageLogEntry]:
        """Usage rows created at or after ``since``, oldest first."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_USAGE_COLUMNS} FROM tts_usage_log WHERE created_at >= ?"
            params: List[Any] = [_to_db_time(since)]
            if until is not None:
                query += " AND created_at <= ?"
                params.append(_to_db_time(until))
            if provider:
                query += " AND provider = ?"
                params.append(provider)
            query += " ORDER BY created_at ASC"
            return [_row_to_usage(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def count_usage(self, since: datetime, provider: Optional[str] = None) -> int:
        conn = get_connection(self.db_path)
        try:
            query = "SELECT COUNT(*) FROM tts_usage_log WHERE created_at >= ?"
            params: List[Any] = [_to_db_time(since)]
            if provider:
                query += " AND provider = ?"
                params.append(provider)
            return conn.execute(query, params).fetchone()[0]
        finally:
            conn.close()

    def count_distinct_users(self, since: datetime) -> int:
        """Number of distinct signed-in users with usage since ``since``."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT COUNT(DISTINCT user_id) FROM tts_usage_log
                WHERE created_at >= ? AND user_id IS NOT NULL
                """,
                (_to_db_time(since),),
            ).fetchone()
            return row[0]
        finally:
            conn.close()

    # -- alert thresholds ---------------------------------------------------

    def get_thresholds(self, enabled_only: bool = True) -> List[AlertThreshold]:
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM tts_alert_thresholds"
            if enabled_only:
                query += " WHERE enabled = 1"
            query += " ORDER BY metric_name"
            return [_row_to_threshold(row) for row in conn.execute(query).fetchall()]
        finally:
            conn.close()

    def set_threshold(
        self,
        metric_name: str,
        threshold_value: float,
        alert_severity: str = "warning",
        time_window_minutes: int = 1440,
        enabled: bool = True,
        description: Optional[str] = None,
    ) -> str:
        """Create or update the threshold for ``metric_name`` and return its id."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO tts_alert_thresholds
                    (id, metric_name, threshold_value, time_window_minutes,
                     alert_severity, enabled, description)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(metric_name) DO UPDATE SET
                    threshold_value = excluded.threshold_value,
                    time_window_minutes = excluded.time_window_minutes,
                    alert_severity = excluded.alert_severity,
                    enabled = excluded.enabled,
                    description = COALESCE(excluded.description, tts_alert_thresholds.description)
                """,
                (
                    uuid.uuid4().hex,
                    metric_name,
                    threshold_value,
                    time_window_minutes,
                    alert_severity,
                    int(enabled),
                    description,
                ),
            )
            row = conn.execute(
                "SELECT id FROM tts_alert_thresholds WHERE metric_name = ?", (metric_name,)
            ).fetchone()
            return row["id"]
        finally:
            conn.close()

    def mark_threshold_triggered(self, threshold_id: str, at: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                UPDATE tts_alert_thresholds
                SET last_triggered_at = ?, trigger_count = trigger_count + 1
                WHERE id = ?
                """,
                (_to_db_time(at), threshold_id),
            )
        finally:
            conn.close()

    # -- alert log ----------------------------------------------------------

    def insert_alert_logs(self, entries: List[AlertLogEntry]) -> None:
        """Insert alert rows atomically."""
        if not entries:
            return
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN")
            for entry in entries:
                conn.execute(
                    """
                    INSERT INTO tts_alerts_log
                        (threshold_id, metric_name, metric_value, threshold_value,
                         alert_severity, alert_message, time_window_start,
                         time_window_end, affected_users_count, notified_channels,
                         created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.threshold_id,
                        entry.metric_name,
                        entry.metric_value,
                        entry.threshold_value,
                        entry.alert_severity,
                        entry.alert_message,
                        _to_db_time(entry.time_window_start),
                        _to_db_time(entry.time_window_end),
                        entry.affected_users_count,
                        json.dumps(list(entry.notified_channels)),
                        _to_db_time(entry.created_at or utc_now()),
                    ),
                )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def fetch_alert_logs(self, limit: int = 50) -> List[AlertLogEntry]:
        """Most recent alerts first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT * FROM tts_alerts_log ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [
                AlertLogEntry(
                    id=row["id"],
                    threshold_id=row["threshold_id"],
                    metric_name=row["metric_name"],
                    metric_value=row["metric_value"],
                    threshold_value=row["threshold_value"],
                    alert_severity=row["alert_severity"],
                    alert_message=row["alert_message"],
                    time_window_start=_from_db_time(row["time_window_start"]),
                    time_window_end=_from_db_time(row["time_window_end"]),
                    affected_users_count=row["affected_users_count"],
                    notified_channels=tuple(_load_json(row["notified_channels"], "notified_channels") or ()),
                    created_at=_from_db_time(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    # -- alert recipients ---------------------------------------------------

    def add_alert_recipient(self, recipient: AlertRecipient) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO admin_alert_emails
                    (email, name, enabled, receives_tts_alerts, receives_critical_only)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    name = excluded.name,
                    enabled = excluded.enabled,
                    receives_tts_alerts = excluded.receives_tts_alerts,
                    receives_critical_only = excluded.receives_critical_only
                """,
                (
                    recipient.email,
                    recipient.name,
                    int(recipient.enabled),
                    int(recipient.receives_tts_alerts),
                    int(recipient.receives_critical_only),
                ),
            )
        finally:
            conn.close()

    def get_alert_recipients(self) -> List[AlertRecipient]:
        """Enabled administrators subscribed to TTS alerts."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT email, name, enabled, receives_tts_alerts, receives_critical_only
                FROM admin_alert_emails
                WHERE enabled = 1 AND receives_tts_alerts = 1
                ORDER BY email
                """
            )
            return [
                AlertRecipient(
                    email=row["email"],
                    name=row["name"],
                    enabled=bool(row["enabled"]),
                    receives_tts_alerts=bool(row["receives_tts_alerts"]),
                    receives_critical_only=bool(row["receives_critical_only"]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    # -- per-user counter ---------------------------------------------------

    def check_user_throttle(
        self,
        user_id: str,
        max_per_minute: int,
        max_per_day: int,
        now: Optional[datetime] = None,
    ) -> CounterResult:
        """Atomically check and count one request for ``user_id``.

        Windows are fixed: the minute window restarts one minute after it
        opened and the day window one day after. A denied request is not
        counted.
        """
        now = as_utc(now or utc_now())
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM user_tts_usage WHERE user_id = ?", (user_id,)
            ).fetchone()

            if row is None:
                conn.execute(
                    """
                    INSERT INTO user_tts_usage
                        (user_id, requests_last_minute, requests_last_day,
                         minute_window_start, day_window_start, last_request_at)
                    VALUES (?, 1, 1, ?, ?, ?)
                    """,
                    (user_id, _to_db_time(now), _to_db_time(now), _to_db_time(now)),
                )
                conn.execute("COMMIT")
                return CounterResult(True, 1, 1, "First request")

            minute_count = row["requests_last_minute"]
            day_count = row["requests_last_day"]
            minute_start = _from_db_time(row["minute_window_start"])
            day_start = _from_db_time(row["day_window_start"])

            if now > minute_start + timedelta(minutes=1):
                minute_count = 0
                minute_start = now
            if now > day_start + timedelta(days=1):
                day_count = 0
                day_start = now

            if minute_count >= max_per_minute:
                conn.execute("ROLLBACK")
                return CounterResult(
                    False,
                    minute_count,
                    day_count,
                    f"Rate limit exceeded: {minute_count} requests in last minute (max {max_per_minute})",
                )
            if day_count >= max_per_day:
                conn.execute("ROLLBACK")
                return CounterResult(
                    False,
                    minute_count,
                    day_count,
                    f"Daily limit exceeded: {day_count} requests today (max {max_per_day})",
                )

            conn.execute(
                """
                UPDATE user_tts_usage
                SET requests_last_minute = ?, requests_last_day = ?,
                    minute_window_start = ?, day_window_start = ?, last_request_at = ?
                WHERE user_id = ?
                """,
                (
                    minute_count + 1,
                    day_count + 1,
                    _to_db_time(minute_start),
                    _to_db_time(day_start),
                    _to_db_time(now),
                    user_id,
                ),
            )
            conn.execute("COMMIT")
            return CounterResult(True, minute_count + 1, day_count + 1, "Request allowed")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    # -- job leases ---------------------------------------------------------

    def acquire_lease(
        self, name: str, holder: str, ttl_seconds: int, now: Optional[datetime] = None
    ) -> bool:
        """Take the named lease unless another holder owns an unexpired one."""
        now = as_utc(now or utc_now())
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT holder, expires_at FROM job_leases WHERE name = ?", (name,)
            ).fetchone()
            if row is not None and row["holder"] != holder and _from_db_time(row["expires_at"]) > now:
                conn.execute("ROLLBACK")
                return False
            conn.execute(
                """
                INSERT INTO job_leases (name, holder, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    holder = excluded.holder, expires_at = excluded.expires_at
                """,
                (name, holder, _to_db_time(now + timedelta(seconds=ttl_seconds))),
            )
            conn.execute("COMMIT")
            return True
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def release_lease(self, name: str, holder: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM job_leases WHERE name = ? AND holder = ?", (name, holder))
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[GuardRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> GuardRepository:
    """Get a repository instance.

    Returns the process-wide instance, replacing it when a different
    database path is requested.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of GuardRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = GuardRepository(db_path)
    return _default_repository


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist and seed default config rows.

    ``tts_usage_log`` is an append-only ledger: no UPDATE or DELETE is ever
    issued against it. Seeding never overwrites rows an operator changed.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS system_flags (
                flag_key TEXT PRIMARY KEY,
                flag_value TEXT NOT NULL,
                description TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tts_config (
                config_key TEXT PRIMARY KEY,
                config_value TEXT NOT NULL,
                description TEXT
            );

            CREATE TABLE IF NOT EXISTS tts_usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                provider TEXT NOT NULL,
                estimated_cost REAL NOT NULL DEFAULT 0,
                actual_cost REAL,
                status TEXT NOT NULL DEFAULT 'success',
                user_id TEXT,
                request_id TEXT,
                text_length INTEGER NOT NULL DEFAULT 0,
                voice TEXT,
                cached INTEGER NOT NULL DEFAULT 0,
                generation_time_ms INTEGER,
                error_message TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_tts_usage_created_at ON tts_usage_log(created_at);
            CREATE INDEX IF NOT EXISTS idx_tts_usage_provider ON tts_usage_log(provider);

            CREATE TABLE IF NOT EXISTS tts_alert_thresholds (
                id TEXT PRIMARY KEY,
                metric_name TEXT NOT NULL UNIQUE,
                threshold_value REAL NOT NULL,
                time_window_minutes INTEGER NOT NULL DEFAULT 1440,
                alert_severity TEXT NOT NULL DEFAULT 'warning',
                enabled INTEGER NOT NULL DEFAULT 1,
                description TEXT,
                last_triggered_at TEXT,
                trigger_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS tts_alerts_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                threshold_id TEXT REFERENCES tts_alert_thresholds(id) ON DELETE CASCADE,
                metric_name TEXT NOT NULL,
                metric_value REAL NOT NULL,
                threshold_value REAL NOT NULL,
                alert_severity TEXT NOT NULL,
                alert_message TEXT NOT NULL,
                time_window_start TEXT NOT NULL,
                time_window_end TEXT NOT NULL,
                affected_users_count INTEGER NOT NULL DEFAULT 0,
                notified_channels TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS admin_alert_emails (
                email TEXT PRIMARY KEY,
                name TEXT,
                enabled INTEGER NOT NULL DEFAULT 1,
                receives_tts_alerts INTEGER NOT NULL DEFAULT 1,
                receives_critical_only INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS user_tts_usage (
                user_id TEXT PRIMARY KEY,
                requests_last_minute INTEGER NOT NULL DEFAULT 0,
                requests_last_day INTEGER NOT NULL DEFAULT 0,
                minute_window_start TEXT NOT NULL,
                day_window_start TEXT NOT NULL,
                last_request_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS job_leases (
                name TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
        """)

        conn.execute("BEGIN")
        for key, (value, description) in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO tts_config (config_key, config_value, description) VALUES (?, ?, ?)",
                (key, json.dumps(value), description),
            )
        for metric_name, value, window, severity, description in DEFAULT_THRESHOLDS:
            conn.execute(
                """
                INSERT OR IGNORE INTO tts_alert_thresholds
                    (id, metric_name, threshold_value, time_window_minutes, alert_severity, description)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (uuid.uuid4().hex, metric_name, value, window, severity, description),
            )
        conn.execute("COMMIT")
    finally:
        conn.close()


def insert_usage_log(entry: UsageLogEntry, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single usage row to the ledger.

    Args:
        entry: The usage record to write
        db_path: Path to SQLite database file
    """
    insert_usage_logs([entry], db_path)


def insert_usage_logs(entries: List[UsageLogEntry], db_path: str = DEFAULT_DB_PATH) -> None:
    """Append multiple usage rows atomically.

    All rows are inserted in a single transaction to ensure consistency.

    Args:
        entries: List of usage records to write
        db_path: Path to SQLite database file
    """
    if not entries:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN")
        for entry in entries:
            conn.execute(
                f"""
                INSERT INTO tts_usage_log ({_USAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _to_db_time(entry.created_at),
                    entry.provider,
                    entry.estimated_cost,
                    entry.actual_cost,
                    entry.status,
                    entry.user_id,
                    entry.request_id,
                    entry.text_length,
                    entry.voice,
                    int(entry.cached),
                    entry.generation_time_ms,
                    entry.error_message,
                ),
            )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()
