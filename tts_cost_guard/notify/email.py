"""
Alert e-mails to administrators.

The budget monitor hands one ``AlertEmail`` per recipient to an
``EmailSender``. ``ResendEmailSender`` delivers through the Resend REST API;
``LoggingEmailSender`` only logs, for setups without an API key.
"""

import html
import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Tuple

import requests

from tts_cost_guard.config.loader import NotificationSettings
from tts_cost_guard.core.errors import NotificationError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

SEVERITY_COLORS = {
    "critical": "#DC2626",
    "error": "#EA580C",
    "warning": "#F59E0B",
    "info": "#3B82F6",
}


@dataclass(frozen=True)
class AlertEmail:
    """Everything one alert e-mail says, addressed to one recipient."""
    alert_id: str
    metric_name: str
    metric_value: float
    threshold_value: float
    alert_severity: str
    alert_message: str
    time_window_start: datetime
    time_window_end: datetime
    recipient_email: str
    affected_users_count: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        """Wire form, with the camelCase keys the e-mail function expects."""
        return {
            "alertId": self.alert_id,
            "metricName": self.metric_name,
            "metricValue": self.metric_value,
            "thresholdValue": self.threshold_value,
            "alertSeverity": self.alert_severity,
            "alertMessage": self.alert_message,
            "timeWindowStart": self.time_window_start.isoformat(),
            "timeWindowEnd": self.time_window_end.isoformat(),
            "affectedUsersCount": self.affected_users_count,
            "recipientEmail": self.recipient_email,
        }


def render_alert_email(alert: AlertEmail) -> Tuple[str, str]:
    """Build the subject line and HTML body for ``alert``."""
    color = SEVERITY_COLORS.get(alert.alert_severity, SEVERITY_COLORS["warning"])
    severity = alert.alert_severity.upper()
    subject = f"[{severity}] TTS alert: {alert.metric_name}"

    rows = [
        ("Metric", html.escape(alert.metric_name)),
        ("Current value", f"{alert.metric_value:.2f}"),
        ("Threshold", f"{alert.threshold_value}"),
        ("Window", f"{alert.time_window_start:%Y-%m-%d %H:%M} - {alert.time_window_end:%Y-%m-%d %H:%M} UTC"),
    ]
    if alert.affected_users_count is not None:
        rows.append(("Affected users", str(alert.affected_users_count)))

    table = "".join(
        f'<tr><td style="padding:8px 0;color:#6b7280;font-weight:600;">{label}</td>'
        f'<td style="padding:8px 0;color:#111827;text-align:right;">{value}</td></tr>'
        for label, value in rows
    )
    body = (
        '<!DOCTYPE html><html><body style="font-family:sans-serif;background:#f9fafb;">'
        f'<div style="background:{color};padding:24px;text-align:center;">'
        f'<h1 style="margin:0;color:#ffffff;">TTS alert {severity}</h1></div>'
        f'<div style="padding:32px;background:#ffffff;">'
        f'<h2 style="color:#111827;">{html.escape(alert.alert_message)}</h2>'
        f'<table width="100%">{table}</table></div>'
        "</body></html>"
    )
    return subject, body


class EmailSender(Protocol):
    """Anything that can deliver one alert e-mail."""

    def send(self, alert: AlertEmail) -> None:
        ...


class LoggingEmailSender:
    """Logs alert e-mails instead of delivering them."""

    def send(self, alert: AlertEmail) -> None:
        subject, _ = render_alert_email(alert)
        logger.warning(f"Would send alert e-mail to {alert.recipient_email}: {subject}")


class ResendEmailSender:
    """Delivers alert e-mails through the Resend REST API."""

    def __init__(self, api_key: str, from_address: str, timeout: float = 10.0):
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout

    def send(self, alert: AlertEmail) -> None:
        """Send one e-mail.

        Raises:
            NotificationError: On transport error or non-2xx status
        """
        subject, body = render_alert_email(alert)
        try:
            response = requests.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.from_address,
                    "to": [alert.recipient_email],
                    "subject": subject,
                    "html": body,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise NotificationError(f"Alert e-mail to {alert.recipient_email} failed: {e}") from e
        logger.info(f"Email sent to {alert.recipient_email}")


def build_email_sender(notifications: NotificationSettings) -> EmailSender:
    """Pick the sender for ``NotificationSettings``: Resend when its API key is set."""
    api_key = os.getenv(notifications.resend_api_key_env)
    if not api_key:
        logger.warning(
            f"{notifications.resend_api_key_env} not set, alert e-mails will only be logged"
        )
        return LoggingEmailSender()
    return ResendEmailSender(api_key, notifications.email_from)
