"""
Usage metrics and threshold evaluation.

Each alert metric has its own computation recipe, registered by name.
Metrics are computed over a ``UsageWindow``: the last 24 hours of usage
rows plus the repository for metrics that need a window of their own.

Rules:
- elevenlabs_daily_calls: ElevenLabs calls in the last 24h
- openai_hourly_calls: OpenAI calls in the last hour
- daily_cost_usd: summed cost in the last 24h (actual, else estimated)
- error_rate: percent of failed calls in the last 24h
- cache_hit_rate: percent of cached calls in the threshold's window (breach when BELOW)
- avg_generation_time_ms: mean generation time in the threshold's window
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .selector import ELEVENLABS, OPENAI
from tts_cost_guard.storage.models import AlertThreshold, UsageLogEntry
from tts_cost_guard.storage.repository import GuardRepository, as_utc

logger = logging.getLogger(__name__)

DAY_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class UsageWindow:
    """Snapshot of recent usage the monitor evaluates in one run."""
    now: datetime
    logs: List[UsageLogEntry]
    repository: GuardRepository

    @classmethod
    def load(cls, repository: GuardRepository, now: datetime) -> "UsageWindow":
        now = as_utc(now)
        return cls(now=now, logs=repository.fetch_usage_logs(since=now - DAY_WINDOW), repository=repository)

    @property
    def start(self) -> datetime:
        return self.now - DAY_WINDOW

    def calls(self, provider: str) -> int:
        return sum(1 for log in self.logs if log.provider == provider)

    @property
    def total_cost(self) -> float:
        # Rounded so that a ledger of cents sums exactly at a cap.
        return round(sum(log.cost for log in self.logs), 6)

    @property
    def error_rate(self) -> float:
        if not self.logs:
            return 0.0
        errors = sum(1 for log in self.logs if log.status == "error")
        return errors / len(self.logs) * 100

    def logs_since(self, minutes: int) -> List[UsageLogEntry]:
        """Rows from the last ``minutes``, querying storage past 24 hours."""
        since = self.now - timedelta(minutes=minutes)
        if since >= self.start:
            return [log for log in self.logs if as_utc(log.created_at) >= since]
        return self.repository.fetch_usage_logs(since=since)


@dataclass(frozen=True)
class ThresholdBreach:
    """A threshold whose metric is out of bounds in this run."""
    metric_name: str
    current_value: float
    threshold_value: float
    threshold_id: Optional[str]
    alert_severity: str
    description: str
    comparison: str = ">"

    @property
    def message(self) -> str:
        return f"{self.description}: {self.current_value:.2f} {self.comparison} {self.threshold_value}"


# A recipe returns None when there is nothing to measure yet.
MetricRecipe = Callable[[UsageWindow, AlertThreshold], Optional[float]]


@dataclass(frozen=True)
class RegisteredMetric:
    compute: MetricRecipe
    breach_when_below: bool = False

    def breached(self, current: float, threshold: float) -> bool:
        if self.breach_when_below:
            return current < threshold
        return current > threshold


_REGISTRY: Dict[str, RegisteredMetric] = {}


def register_metric(name: str, compute: MetricRecipe, breach_when_below: bool = False) -> None:
    """Add or replace the recipe for ``name``."""
    _REGISTRY[name] = RegisteredMetric(compute=compute, breach_when_below=breach_when_below)


def get_metric(name: str) -> Optional[RegisteredMetric]:
    return _REGISTRY.get(name)


def _elevenlabs_daily_calls(window: UsageWindow, threshold: AlertThreshold) -> float:
    return window.calls(ELEVENLABS)


def _openai_hourly_calls(window: UsageWindow, threshold: AlertThreshold) -> float:
    return window.repository.count_usage(since=window.now - timedelta(hours=1), provider=OPENAI)


def _daily_cost_usd(window: UsageWindow, threshold: AlertThreshold) -> float:
    return window.total_cost


def _error_rate(window: UsageWindow, threshold: AlertThreshold) -> float:
    return window.error_rate


def _cache_hit_rate(window: UsageWindow, threshold: AlertThreshold) -> Optional[float]:
    logs = window.logs_since(threshold.time_window_minutes)
    if not logs:
        return None
    return sum(1 for log in logs if log.cached) / len(logs) * 100


def _avg_generation_time_ms(window: UsageWindow, threshold: AlertThreshold) -> Optional[float]:
    timings = [
        log.generation_time_ms
        for log in window.logs_since(threshold.time_window_minutes)
        if log.generation_time_ms is not None
    ]
    if not timings:
        return None
    return sum(timings) / len(timings)


register_metric("elevenlabs_daily_calls", _elevenlabs_daily_calls)
register_metric("openai_hourly_calls", _openai_hourly_calls)
register_metric("daily_cost_usd", _daily_cost_usd)
register_metric("error_rate", _error_rate)
register_metric("cache_hit_rate", _cache_hit_rate, breach_when_below=True)
register_metric("avg_generation_time_ms", _avg_generation_time_ms)


def evaluate_thresholds(window: UsageWindow, thresholds: List[AlertThreshold]) -> List[ThresholdBreach]:
    """Compare each enabled threshold against its metric.

    Args:
        window: Usage snapshot for this run
        thresholds: Thresholds to check (disabled ones are skipped)

    Returns:
        Breaches in threshold order (empty if none)
    """
    breaches = []
    for threshold in thresholds:
        if not threshold.enabled:
            continue

        metric = get_metric(threshold.metric_name)
        if metric is None:
            logger.debug(f"No recipe for metric '{threshold.metric_name}', skipping")
            continue

        current = metric.compute(window, threshold)
        if current is None:
            continue

        if metric.breached(current, threshold.threshold_value):
            breaches.append(ThresholdBreach(
                metric_name=threshold.metric_name,
                current_value=current,
                threshold_value=threshold.threshold_value,
                threshold_id=threshold.id,
                alert_severity=threshold.alert_severity,
                description=threshold.description or threshold.metric_name,
                comparison="<" if metric.breach_when_below else ">",
            ))
            logger.warning(f"BREACH: {threshold.metric_name} = {current} vs {threshold.threshold_value}")

    return breaches
