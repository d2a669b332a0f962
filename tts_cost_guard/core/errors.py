"""
Exception hierarchy for TTS Cost Guard.
"""


class TTSGuardError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(TTSGuardError, ValueError):
    """Settings cannot be interpreted."""


class FlagReadError(TTSGuardError):
    """Flags or config could not be read from storage."""


class NotificationError(TTSGuardError):
    """An alert could not be delivered on one channel."""


class MonitorError(TTSGuardError):
    """The budget monitor could not complete a run."""


class ThrottledError(TTSGuardError):
    """The user is over their per-minute or per-day request cap.

    Callers serving HTTP map this to a 429 with ``reason`` as the body.
    """
    def __init__(self, reason: str, current_minute=None, current_day=None):
        super().__init__(reason)
        self.reason = reason
        self.current_minute = current_minute
        self.current_day = current_day


class SynthesisDisabledError(TTSGuardError):
    """Speech synthesis is suspended platform-wide."""
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
