"""
Per-user request throttling for speech synthesis.

Anonymous callers are always allowed here; they are rate limited by IP in
front of this layer. Throttling fails open on any error.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .errors import FlagReadError
from .flags import FlagStore
from tts_cost_guard.storage.repository import GuardRepository

logger = logging.getLogger(__name__)

DEFAULT_REQUESTS_PER_MINUTE = 10
DEFAULT_REQUESTS_PER_DAY = 50


@dataclass(frozen=True)
class ThrottleDecision:
    """Whether one request may proceed, with the counts that decided it."""
    allowed: bool
    reason: Optional[str] = None
    current_minute: Optional[int] = None
    current_day: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return int(value)


def load_user_limits(store: FlagStore) -> Tuple[int, int]:
    """Per-minute and per-day caps from ``per_user_limits``, defaulting each.

    An unreadable config table yields the defaults; the request is still counted.
    """
    try:
        limits = store.get_config("per_user_limits")
    except FlagReadError as e:
        logger.error(f"User limits unreadable, using defaults: {e}")
        limits = {}
    return (
        _positive_int(limits.get("requests_per_minute"), DEFAULT_REQUESTS_PER_MINUTE),
        _positive_int(limits.get("requests_per_day"), DEFAULT_REQUESTS_PER_DAY),
    )


def check_throttle(
    store: FlagStore,
    repository: GuardRepository,
    user_id: Optional[str],
    now: Optional[datetime] = None,
) -> ThrottleDecision:
    """Check, and count, one synthesis request for ``user_id``.

    Args:
        store: Flag store holding ``per_user_limits``
        repository: Storage holding the atomic per-user counter
        user_id: Signed-in user, or None for anonymous callers
        now: Override the current time (tests)

    Returns:
        ThrottleDecision; ``allowed=True`` on any internal error
    """
    if not user_id:
        return ThrottleDecision(allowed=True)

    try:
        max_per_minute, max_per_day = load_user_limits(store)
        result = repository.check_user_throttle(user_id, max_per_minute, max_per_day, now=now)
    except Exception as e:
        logger.error(f"Throttle check failed for user {user_id}, allowing request: {e}")
        return ThrottleDecision(allowed=True)

    if not result.allowed:
        logger.warning(f"User {user_id} throttled: {result.reason}")

    return ThrottleDecision(
        allowed=result.allowed,
        reason=result.reason,
        current_minute=result.current_minute,
        current_day=result.current_day,
    )
