"""
Guarded speech synthesis client.

Runs every request through the throttle and the provider selector, then
records the outcome in the usage ledger the budget monitor reads.
"""

import logging
import os
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import requests
from openai import OpenAI

from ..core.errors import SynthesisDisabledError, ThrottledError
from ..core.flags import FlagStore
from ..core.pricing import estimate_cost
from ..core.selector import ELEVENLABS, OPENAI, ProviderConfig, select_provider
from ..core.throttle import check_throttle
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import UsageLogEntry
from ..storage.repository import GuardRepository, insert_usage_log, utc_now

logger = logging.getLogger(__name__)

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1/text-to-speech"
ELEVENLABS_MODEL_ID = "eleven_multilingual_v2"
OPENAI_TTS_MODEL = "tts-1"

DEFAULT_VOICES = {
    ELEVENLABS: "21m00Tcm4TlvDq8ikWAM",
    OPENAI: "alloy",
}


@dataclass(frozen=True)
class SpeechResult:
    """Audio produced for one request and how it was produced."""
    audio: bytes
    provider: str
    voice: str
    estimated_cost: float
    generation_time_ms: int
    request_id: str
    bitrate: Optional[int] = None
    reason: Optional[str] = None


class GuardedSpeech:
    """Speech client that enforces per-user limits and the spend controls.

    Every synthesis attempt that reaches a provider leaves exactly one row
    in the usage ledger, successful or not.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        store: Optional[FlagStore] = None,
        openai_client: Optional[OpenAI] = None,
        elevenlabs_api_key: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """Initialize guarded speech client.

        Args:
            db_path: Database file path (defaults to ".tts-cost-guard.db").
                Ignored when ``store`` is given; usage rows then go to the
                store's database
            store: Flag store to consult (default: one over ``db_path``)
            openai_client: OpenAI client (default: created on first use)
            elevenlabs_api_key: ElevenLabs key (or ELEVENLABS_API_KEY env var)
            timeout: Seconds to wait for the ElevenLabs API
        """
        if store is not None:
            self.repository = store.repository
            self.db_path = store.repository.db_path
        else:
            self.db_path = db_path or DEFAULT_DB_PATH
            self.repository = GuardRepository(self.db_path)
        self.store = store or FlagStore(self.repository)
        self._openai = openai_client
        self.elevenlabs_api_key = elevenlabs_api_key or os.getenv("ELEVENLABS_API_KEY")
        self.timeout = timeout

    @property
    def openai(self) -> OpenAI:
        if self._openai is None:
            self._openai = OpenAI()
        return self._openai

    def synthesize(
        self,
        text: str,
        user_id: Optional[str] = None,
        preferred: str = ELEVENLABS,
        voice: Optional[str] = None,
    ) -> SpeechResult:
        """Synthesize ``text`` with whichever provider the current policy allows.

        Args:
            text: Text to speak (required)
            user_id: Signed-in user, or None for anonymous callers
            preferred: Provider the caller wants
            voice: Voice for the preferred provider; a fallback or override
                voice takes precedence

        Returns:
            SpeechResult with the audio bytes

        Raises:
            ValueError: If text is empty or preferred is unknown
            ThrottledError: If the user is over their request caps
            SynthesisDisabledError: If synthesis is suspended
            Provider errors: Propagated after the failure is logged
        """
        if not text or not text.strip():
            raise ValueError("text is required and cannot be empty")

        decision = check_throttle(self.store, self.repository, user_id)
        if not decision.allowed:
            raise ThrottledError(decision.reason, decision.current_minute, decision.current_day)

        config = select_provider(self.store, preferred)
        if config.disabled:
            raise SynthesisDisabledError(config.reason or "TTS is disabled")

        chosen_voice = self._voice_for(config, preferred, voice)
        request_id = uuid.uuid4().hex
        started = time.perf_counter()

        try:
            audio = self._generate(config.provider, text, chosen_voice)
        except Exception as e:
            self._record_failure(config.provider, text, chosen_voice, user_id, request_id, started, e)
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        cost = estimate_cost(config.provider, len(text))
        insert_usage_log(
            UsageLogEntry(
                created_at=utc_now(),
                provider=config.provider,
                estimated_cost=cost,
                user_id=user_id,
                request_id=request_id,
                text_length=len(text),
                voice=chosen_voice,
                generation_time_ms=elapsed_ms,
            ),
            self.db_path,
        )

        return SpeechResult(
            audio=audio,
            provider=config.provider,
            voice=chosen_voice,
            estimated_cost=cost,
            generation_time_ms=elapsed_ms,
            request_id=request_id,
            bitrate=config.bitrate,
            reason=config.reason,
        )

    def _voice_for(self, config: ProviderConfig, preferred: str, voice: Optional[str]) -> str:
        if config.voice:
            return config.voice
        # A caller's voice only makes sense for the provider it asked for.
        if voice and config.provider == preferred:
            return voice
        return DEFAULT_VOICES[config.provider]

    def _generate(self, provider: str, text: str, voice: str) -> bytes:
        if provider == OPENAI:
            response = self.openai.audio.speech.create(model=OPENAI_TTS_MODEL, voice=voice, input=text)
            return response.content
        return self._generate_elevenlabs(text, voice)

    def _generate_elevenlabs(self, text: str, voice: str) -> bytes:
        if not self.elevenlabs_api_key:
            raise ValueError(
                "ElevenLabs API key not provided. "
                "Set ELEVENLABS_API_KEY environment variable or pass elevenlabs_api_key."
            )
        response = requests.post(
            f"{ELEVENLABS_API_URL}/{voice}",
            headers={"xi-api-key": self.elevenlabs_api_key, "Accept": "audio/mpeg"},
            json={"text": text, "model_id": ELEVENLABS_MODEL_ID},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.content

    def _record_failure(
        self,
        provider: str,
        text: str,
        voice: str,
        user_id: Optional[str],
        request_id: str,
        started: float,
        error: Exception,
    ) -> None:
        logger.error(f"{provider} synthesis failed for request {request_id}: {error}")
        entry = UsageLogEntry(
            created_at=utc_now(),
            provider=provider,
            estimated_cost=0.0,
            status="error",
            user_id=user_id,
            request_id=request_id,
            text_length=len(text),
            voice=voice,
            generation_time_ms=int((time.perf_counter() - started) * 1000),
            error_message=str(error),
        )
        try:
            insert_usage_log(entry, self.db_path)
        except sqlite3.Error as e:
            logger.error(f"Could not record failed request {request_id}: {e}")
