"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class SystemFlag:
    """Named operational switch, upserted in place by ``flag_key``."""
    flag_key: str
    flag_value: Dict[str, Any]
    description: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class TTSConfigEntry:
    """Operator-managed tunable, read-only from the policy engine."""
    config_key: str
    config_value: Dict[str, Any]
    description: Optional[str] = None


@dataclass(frozen=True)
class UsageLogEntry:
    """Immutable record of one synthesis call.

    Append-only events that form the ledger the budget monitor reads.
    Once written, these records must never be modified.
    """
    created_at: datetime
    provider: str
    estimated_cost: float
    status: str = "success"
    actual_cost: Optional[float] = None
    user_id: Optional[str] = None
    request_id: Optional[str] = None
    text_length: int = 0
    voice: Optional[str] = None
    cached: bool = False
    generation_time_ms: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def cost(self) -> float:
        """Billed cost, falling back to the estimate when no actual is known."""
        return self.actual_cost or self.estimated_cost or 0.0


@dataclass(frozen=True)
class AlertThreshold:
    """What counts as a breach for one metric."""
    id: str
    metric_name: str
    threshold_value: float
    time_window_minutes: int = 1440
    alert_severity: str = "warning"
    enabled: bool = True
    description: Optional[str] = None
    last_triggered_at: Optional[datetime] = None
    trigger_count: int = 0


@dataclass(frozen=True)
class AlertLogEntry:
    """One recorded breach, kept for admin review."""
    metric_name: str
    metric_value: float
    threshold_value: float
    alert_severity: str
    alert_message: str
    time_window_start: datetime
    time_window_end: datetime
    threshold_id: Optional[str] = None
    affected_users_count: int = 0
    notified_channels: Tuple[str, ...] = ("dashboard",)
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class AlertRecipient:
    """Administrator subscribed to alert e-mails."""
    email: str
    name: Optional[str] = None
    enabled: bool = True
    receives_tts_alerts: bool = True
    receives_critical_only: bool = False


@dataclass(frozen=True)
class CounterResult:
    """Outcome of the atomic per-user request counter."""
    allowed: bool
    current_minute: int
    current_day: int
    reason: str
