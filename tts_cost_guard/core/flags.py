"""
Flag store: the narrow read/write interface over system flags and TTS config.

Flags are a handful of global switches consulted on every synthesis request,
so reads go through a short-TTL in-process cache. Writes go through
``set_flag`` only, which upserts by key and drops the cache.
"""

import logging
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from .errors import FlagReadError
from tts_cost_guard.storage.models import SystemFlag
from tts_cost_guard.storage.repository import GuardRepository

logger = logging.getLogger(__name__)

ELEVEN_DISABLED = "tts_eleven_disabled"
HARD_CAP_REACHED = "tts_hard_cap_reached"
MANUAL_OVERRIDE = "tts_manual_override"

TTS_FLAG_KEYS = (ELEVEN_DISABLED, HARD_CAP_REACHED, MANUAL_OVERRIDE)


class FlagStore:
    """Cached reader and single writer for ``system_flags`` and ``tts_config``.

    Note: the cache is per process. Another process that upserts a flag is
    seen here after at most ``cache_ttl`` seconds; last write wins.
    """

    def __init__(
        self,
        repository: GuardRepository,
        cache_ttl: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            repository: Storage backend
            cache_ttl: Seconds a read may be reused (0 disables caching)
            clock: Monotonic time source, injectable for tests
        """
        self.repository = repository
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Dict[Tuple[str, Tuple[str, ...]], Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def _cached(self, key: Tuple[str, Tuple[str, ...]], loader: Callable[[], Any]) -> Any:
        if self.cache_ttl > 0:
            with self._lock:
                hit = self._cache.get(key)
                if hit is not None and self._clock() < hit[1]:
                    return hit[0]

        value = loader()

        if self.cache_ttl > 0:
            with self._lock:
                self._cache[key] = (value, self._clock() + self.cache_ttl)
        return value

    def invalidate(self) -> None:
        """Forget every cached read."""
        with self._lock:
            self._cache.clear()

    def get_flags(self, keys: Iterable[str] = TTS_FLAG_KEYS) -> Dict[str, SystemFlag]:
        """Fetch flags by key.

        Raises:
            FlagReadError: If storage cannot be read
        """
        keys = tuple(sorted(keys))

        def load():
            try:
                return self.repository.get_flags(keys)
            except sqlite3.Error as e:
                raise FlagReadError(f"Could not read system flags: {e}") from e

        return self._cached(("flags", keys), load)

    def flag_value(self, flags: Dict[str, SystemFlag], key: str) -> Dict[str, Any]:
        """Value of ``key`` as a mapping; missing or malformed flags read as empty."""
        flag = flags.get(key)
        if flag is None:
            return {}
        if not isinstance(flag.flag_value, dict):
            logger.warning(f"Flag '{key}' does not hold a JSON object, treating it as unset")
            return {}
        return flag.flag_value

    def get_configs(self, keys: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Fetch config values by key.

        Missing rows and rows that do not hold a JSON object come back as
        empty mappings so callers fall through to their hardcoded defaults.

        Raises:
            FlagReadError: If storage cannot be read
        """
        keys = tuple(sorted(keys))

        def load():
            try:
                entries = self.repository.get_config_entries(keys)
            except sqlite3.Error as e:
                raise FlagReadError(f"Could not read TTS config: {e}") from e
            values = {}
            for key in keys:
                entry = entries.get(key)
                if entry is not None and not isinstance(entry.config_value, dict):
                    logger.warning(f"Config '{key}' does not hold a JSON object, using defaults")
                    values[key] = {}
                else:
                    values[key] = entry.config_value if entry else {}
            return values

        return self._cached(("config", keys), load)

    def get_config(self, key: str) -> Dict[str, Any]:
        return self.get_configs([key])[key]

    def set_flag(self, key: str, value: Dict[str, Any], description: Optional[str] = None) -> None:
        """Upsert a flag (keyed by ``flag_key``) and drop cached reads."""
        self.repository.upsert_flag(key, value, description)
        self.invalidate()
        logger.info(f"Flag '{key}' set to {value}")
