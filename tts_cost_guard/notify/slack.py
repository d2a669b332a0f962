"""
Slack incoming-webhook alerts.
"""

import logging
from typing import Any, Dict, List

import requests

from tts_cost_guard.core.errors import NotificationError
from tts_cost_guard.core.metrics import ThresholdBreach

logger = logging.getLogger(__name__)


def build_slack_message(breaches: List[ThresholdBreach], dashboard_url: str) -> Dict[str, Any]:
    """Block Kit message listing every breach with a link to the monitor dashboard."""
    lines = [
        f"*{b.metric_name}*: {b.current_value:.2f} {b.comparison} {b.threshold_value} ({b.alert_severity})"
        for b in breaches
    ]
    return {
        "text": f"🚨 TTS Budget Alert - {len(breaches)} threshold(s) breached",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "🚨 TTS Budget Alert"},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "\n".join(lines)},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"<{dashboard_url}|View TTS Monitor Dashboard>"},
            },
        ],
    }


class SlackNotifier:
    """Posts alert messages to a Slack-compatible incoming webhook."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def send(self, webhook_url: str, message: Dict[str, Any]) -> None:
        """POST ``message`` as JSON.

        Raises:
            NotificationError: On timeout, transport error or non-2xx status
        """
        try:
            response = requests.post(webhook_url, json=message, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise NotificationError("Slack webhook timed out") from e
        except requests.exceptions.RequestException as e:
            raise NotificationError(f"Slack webhook failed: {e}") from e
        logger.info("Slack notification sent")
