"""
SDK for TTS Cost Guard.

Provides guarded speech synthesis for application code.
"""

from .speech_client import GuardedSpeech, SpeechResult

__all__ = ["GuardedSpeech", "SpeechResult"]
