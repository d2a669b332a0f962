"""
Budget monitor for TTS spend.

A periodic job: aggregate the last 24 hours of usage, compare it against
the alert thresholds, trip the hard cap and the ElevenLabs circuit breaker
when needed, then tell operators.

Run Order:
1. Metrics - per-provider calls, total cost, error rate over 24h
2. Thresholds - every enabled threshold through the metric registry
3. Hard cap - total cost >= daily cap disables synthesis entirely
4. Circuit breaker - a critical ElevenLabs call breach moves traffic to the fallback
5. Fan-out - alert log, Slack, e-mail; each channel fails on its own

Runs hold a lease so that two overlapping invocations do not both alert.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import FlagReadError, MonitorError
from .flags import ELEVEN_DISABLED, HARD_CAP_REACHED, FlagStore
from .metrics import ThresholdBreach, UsageWindow, evaluate_thresholds
from .selector import DEFAULT_FALLBACK_PROVIDER, DEFAULT_FALLBACK_VOICE, ELEVENLABS, OPENAI
from tts_cost_guard.notify.email import AlertEmail, EmailSender, LoggingEmailSender
from tts_cost_guard.notify.slack import SlackNotifier, build_slack_message
from tts_cost_guard.storage.models import AlertLogEntry, AlertRecipient
from tts_cost_guard.storage.repository import GuardRepository, as_utc, utc_now

logger = logging.getLogger(__name__)

LEASE_NAME = "budget_monitor"
DEFAULT_DAILY_CAP_USD = 50.0
DEFAULT_DASHBOARD_URL = "https://tardeo.app/admin/tts-monitor"
CRITICAL_SEVERITIES = ("critical", "error")


def _cap_value(value) -> float:
    if value is None:
        return DEFAULT_DAILY_CAP_USD
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid daily cap {value!r} in config, using ${DEFAULT_DAILY_CAP_USD:g}")
        return DEFAULT_DAILY_CAP_USD


@dataclass
class MonitorSummary:
    """What one monitor run found and did."""
    success: bool
    breached_thresholds: int = 0
    metrics: Dict[str, float] = field(default_factory=dict)
    flags_set: bool = False
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if not self.skipped:
            data.pop("skipped")
        return data


class BudgetMonitor:
    """Evaluates recent TTS usage and enforces the spend controls."""

    def __init__(
        self,
        repository: GuardRepository,
        store: FlagStore,
        slack: Optional[SlackNotifier] = None,
        email_sender: Optional[EmailSender] = None,
        dashboard_url: str = DEFAULT_DASHBOARD_URL,
        lease_ttl: int = 300,
    ):
        """
        Args:
            repository: Storage for usage, thresholds, alerts and recipients
            store: Flag store used for config reads and flag writes
            slack: Slack notifier (default: one with a 10s timeout)
            email_sender: Object with ``send(AlertEmail)`` (default: log only)
            dashboard_url: Link included in Slack messages
            lease_ttl: Seconds a run may hold the monitor lease
        """
        self.repository = repository
        self.store = store
        self.slack = slack or SlackNotifier()
        self.email_sender = email_sender or LoggingEmailSender()
        self.dashboard_url = dashboard_url
        self.lease_ttl = lease_ttl

    def run(self, now: Optional[datetime] = None) -> MonitorSummary:
        """Run one budget check.

        Args:
            now: Override the current time (tests)

        Returns:
            MonitorSummary; ``skipped=True`` when another run holds the lease

        Raises:
            MonitorError: If usage or thresholds cannot be read
        """
        now = as_utc(now or utc_now())
        holder = uuid.uuid4().hex

        try:
            acquired = self.repository.acquire_lease(LEASE_NAME, holder, self.lease_ttl, now=now)
        except sqlite3.Error as e:
            raise MonitorError(f"Could not take monitor lease: {e}") from e

        if not acquired:
            logger.warning("Another budget check is running, skipping this one")
            return MonitorSummary(success=False, skipped=True)

        try:
            return self._run(now)
        finally:
            try:
                self.repository.release_lease(LEASE_NAME, holder)
            except sqlite3.Error as e:
                logger.error(f"Could not release monitor lease: {e}")

    def _run(self, now: datetime) -> MonitorSummary:
        logger.info("Starting budget check...")

        config_keys = ["daily_hard_cap_usd", "slack_webhook_url", "fallback_provider"]
        try:
            configs = self.store.get_configs(config_keys)
        except FlagReadError as e:
            logger.error(f"TTS config unreadable, using defaults: {e}")
            configs = {key: {} for key in config_keys}

        try:
            window = UsageWindow.load(self.repository, now)
            thresholds = self.repository.get_thresholds(enabled_only=True)
        except sqlite3.Error as e:
            raise MonitorError(f"Budget check could not load its inputs: {e}") from e

        cap_config = configs["daily_hard_cap_usd"]
        cap_enabled = cap_config.get("enabled")
        cap_enabled = True if cap_enabled is None else bool(cap_enabled)
        daily_cap = _cap_value(cap_config.get("value"))
        webhook_url = configs["slack_webhook_url"].get("url")
        fallback = configs["fallback_provider"]

        logger.info(f"Daily cap: ${daily_cap:g} (enabled: {cap_enabled})")

        total_cost = window.total_cost
        metrics = {
            "elevenlabs_calls": window.calls(ELEVENLABS),
            "openai_calls": window.calls(OPENAI),
            "total_cost": total_cost,
            "error_rate": window.error_rate,
        }
        logger.info(
            f"Metrics: ElevenLabs={metrics['elevenlabs_calls']}, OpenAI={metrics['openai_calls']}, "
            f"Cost=${total_cost:.2f}, ErrorRate={metrics['error_rate']:.2f}%"
        )

        try:
            breaches = evaluate_thresholds(window, thresholds)
        except sqlite3.Error as e:
            raise MonitorError(f"Could not evaluate thresholds: {e}") from e

        if cap_enabled and total_cost >= daily_cap:
            logger.error(f"HARD CAP REACHED: ${total_cost:.2f} >= ${daily_cap:g}")
            self._set_flag(
                HARD_CAP_REACHED,
                {
                    "disabled": True,
                    "reason": f"Daily hard cap of ${daily_cap:g} reached (current: ${total_cost:.2f})",
                    "triggered_at": now.isoformat(),
                    "current_cost": total_cost,
                    "cap_value": daily_cap,
                },
                "TTS service completely disabled due to hard daily cap",
            )
            breaches.append(ThresholdBreach(
                metric_name="hard_cap",
                current_value=total_cost,
                threshold_value=daily_cap,
                threshold_id=None,
                alert_severity="critical",
                description="Hard daily cost cap reached - TTS disabled",
                comparison=">=",
            ))

        eleven_breach = next(
            (b for b in breaches if b.metric_name == "elevenlabs_daily_calls" and b.alert_severity == "critical"),
            None,
        )
        if eleven_breach is not None:
            logger.error("Disabling ElevenLabs due to threshold breach")
            self._set_flag(
                ELEVEN_DISABLED,
                {
                    "disabled": True,
                    "reason": (
                        f"ElevenLabs daily calls exceeded threshold "
                        f"({eleven_breach.current_value:g} > {eleven_breach.threshold_value:g})"
                    ),
                    "triggered_at": now.isoformat(),
                    "current_calls": eleven_breach.current_value,
                    "threshold": eleven_breach.threshold_value,
                    "fallback_provider": fallback.get("provider") or DEFAULT_FALLBACK_PROVIDER,
                    "fallback_voice": fallback.get("voice") or DEFAULT_FALLBACK_VOICE,
                },
                "ElevenLabs TTS disabled due to cost control",
            )

        if breaches:
            logger.info(f"Sending notifications for {len(breaches)} breached thresholds")
            self._notify(breaches, window, webhook_url, total_cost, daily_cap)
        else:
            logger.info("All thresholds OK - no action needed")

        return MonitorSummary(
            success=True,
            breached_thresholds=len(breaches),
            metrics=metrics,
            flags_set=len(breaches) > 0,
        )

    def _set_flag(self, key: str, value: Dict[str, Any], description: str) -> None:
        try:
            self.store.set_flag(key, value, description)
        except sqlite3.Error as e:
            logger.error(f"Failed to set flag '{key}': {e}")

    def _notify(
        self,
        breaches: List[ThresholdBreach],
        window: UsageWindow,
        webhook_url: Optional[str],
        total_cost: float,
        daily_cap: float,
    ) -> None:
        """Fan alerts out to every channel; one failing channel never stops the others."""
        try:
            recipients = self.repository.get_alert_recipients()
        except Exception as e:
            logger.error(f"Failed to load alert recipients: {e}")
            recipients = []

        try:
            affected_users = self.repository.count_distinct_users(window.start)
        except Exception as e:
            logger.error(f"Failed to count affected users: {e}")
            affected_users = 0

        slack_enabled = isinstance(webhook_url, str) and bool(webhook_url.strip())
        channels = ["dashboard"]
        if slack_enabled:
            channels.append("slack")
        if recipients:
            channels.append("email")

        self._log_alerts(breaches, window, affected_users, channels)

        if slack_enabled:
            try:
                self.slack.send(webhook_url, build_slack_message(breaches, self.dashboard_url))
            except Exception as e:
                logger.error(f"Failed to send Slack notification: {e}")

        self._email_admins(recipients, breaches, window, affected_users, total_cost, daily_cap)

    def _log_alerts(
        self,
        breaches: List[ThresholdBreach],
        window: UsageWindow,
        affected_users: int,
        channels: List[str],
    ) -> None:
        entries = [
            AlertLogEntry(
                threshold_id=breach.threshold_id,
                metric_name=breach.metric_name,
                metric_value=breach.current_value,
                threshold_value=breach.threshold_value,
                alert_severity=breach.alert_severity,
                alert_message=breach.message,
                time_window_start=window.start,
                time_window_end=window.now,
                affected_users_count=affected_users,
                notified_channels=tuple(channels),
                created_at=window.now,
            )
            for breach in breaches
        ]
        try:
            self.repository.insert_alert_logs(entries)
            for breach in breaches:
                if breach.threshold_id is not None:
                    self.repository.mark_threshold_triggered(breach.threshold_id, window.now)
        except Exception as e:
            logger.error(f"Failed to record alerts: {e}")

    def _email_admins(
        self,
        recipients: List[AlertRecipient],
        breaches: List[ThresholdBreach],
        window: UsageWindow,
        affected_users: int,
        total_cost: float,
        daily_cap: float,
    ) -> None:
        critical = [b for b in breaches if b.alert_severity in CRITICAL_SEVERITIES]
        for recipient in recipients:
            relevant = critical if recipient.receives_critical_only else breaches
            if not relevant:
                continue
            alert = AlertEmail(
                alert_id="budget_check",
                metric_name="TTS Budget Check",
                metric_value=total_cost,
                threshold_value=daily_cap,
                alert_severity="critical",
                alert_message=f"{len(relevant)} TTS threshold(s) breached",
                time_window_start=window.start,
                time_window_end=window.now,
                affected_users_count=affected_users,
                recipient_email=recipient.email,
            )
            try:
                self.email_sender.send(alert)
            except Exception as e:
                logger.error(f"Failed to send email to {recipient.email}: {e}")
