"""
Unit tests for SDK layer.

Tests the guarded speech client: throttling, provider selection,
provider calls and usage recording.
"""

import os
import shutil
import tempfile
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
import requests

from tts_cost_guard.core.errors import SynthesisDisabledError, ThrottledError
from tts_cost_guard.core.flags import ELEVEN_DISABLED, HARD_CAP_REACHED, MANUAL_OVERRIDE, FlagStore
from tts_cost_guard.sdk import GuardedSpeech, SpeechResult
from tts_cost_guard.sdk.speech_client import ELEVENLABS_API_URL
from tts_cost_guard.storage.repository import GuardRepository, initialize_schema, utc_now


class TestGuardedSpeech:
    """Test GuardedSpeech client wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repo = GuardRepository(self.db_path)
        self.store = FlagStore(self.repo, cache_ttl=0)
        self.openai = Mock()
        self.openai.audio.speech.create.return_value = Mock(content=b"openai-audio")
        self.client = GuardedSpeech(
            db_path=self.db_path,
            store=self.store,
            openai_client=self.openai,
            elevenlabs_api_key="el_key",
        )

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _logs(self):
        return self.repo.fetch_usage_logs(since=utc_now() - timedelta(hours=1))

    def test_init_default_db_path(self):
        client = GuardedSpeech(elevenlabs_api_key="k")
        assert client.db_path == ".tts-cost-guard.db"
        assert client.store.repository is client.repository

    def test_init_reads_elevenlabs_key_from_env(self):
        with patch.dict(os.environ, {"ELEVENLABS_API_KEY": "env_key"}):
            client = GuardedSpeech(db_path=self.db_path)
        assert client.elevenlabs_api_key == "env_key"

    def test_usage_written_to_store_database(self):
        other_path = os.path.join(self.temp_dir, "app.db")
        initialize_schema(other_path)
        other_repo = GuardRepository(other_path)
        client = GuardedSpeech(
            store=FlagStore(other_repo, cache_ttl=0),
            openai_client=self.openai,
            elevenlabs_api_key="k",
        )

        client.synthesize("hello", preferred="openai")

        assert client.db_path == other_path
        assert len(other_repo.fetch_usage_logs(since=utc_now() - timedelta(hours=1))) == 1
        assert self._logs() == []

    @patch('tts_cost_guard.sdk.speech_client.OpenAI')
    def test_openai_client_created_lazily(self, mock_openai_class):
        client = GuardedSpeech(db_path=self.db_path, elevenlabs_api_key="k")
        mock_openai_class.assert_not_called()

        assert client.openai is mock_openai_class.return_value
        assert client.openai is mock_openai_class.return_value
        mock_openai_class.assert_called_once_with()

    def test_empty_text_rejected(self):
        with pytest.raises(ValueError, match="text is required"):
            self.client.synthesize("   ")

    @patch('tts_cost_guard.sdk.speech_client.requests.post')
    def test_elevenlabs_success_records_usage(self, mock_post):
        mock_post.return_value = Mock(content=b"el-audio", raise_for_status=Mock())

        result = self.client.synthesize("Hello there", user_id="u1", voice="voice-123")

        assert isinstance(result, SpeechResult)
        assert result.audio == b"el-audio"
        assert result.provider == "elevenlabs"
        assert result.voice == "voice-123"
        assert result.estimated_cost == 0.00033

        args, kwargs = mock_post.call_args
        assert args[0] == f"{ELEVENLABS_API_URL}/voice-123"
        assert kwargs["headers"]["xi-api-key"] == "el_key"
        assert kwargs["json"]["text"] == "Hello there"

        logs = self._logs()
        assert len(logs) == 1
        log = logs[0]
        assert log.provider == "elevenlabs"
        assert log.status == "success"
        assert log.user_id == "u1"
        assert log.text_length == 11
        assert log.estimated_cost == 0.00033
        assert log.request_id == result.request_id
        assert log.generation_time_ms is not None

    def test_openai_preferred(self):
        result = self.client.synthesize("Hi", preferred="openai")

        self.openai.audio.speech.create.assert_called_once_with(model="tts-1", voice="alloy", input="Hi")
        assert result.audio == b"openai-audio"
        assert self._logs()[0].provider == "openai"

    def test_breaker_routes_to_fallback(self):
        self.repo.upsert_flag(ELEVEN_DISABLED, {"disabled": True, "reason": "too many calls"})

        result = self.client.synthesize("Hello", voice="eleven-voice")

        self.openai.audio.speech.create.assert_called_once_with(model="tts-1", voice="shimmer", input="Hello")
        assert result.provider == "openai"
        assert result.bitrate == 24
        assert result.reason == "too many calls"

    def test_manual_override_voice_wins(self):
        self.repo.upsert_flag(MANUAL_OVERRIDE, {"enabled": True, "provider": "openai", "voice": "nova"})

        result = self.client.synthesize("Hello")

        assert result.voice == "nova"
        assert result.provider == "openai"

    def test_hard_cap_raises_disabled(self):
        self.repo.upsert_flag(HARD_CAP_REACHED, {"disabled": True, "reason": "cap hit"})

        with pytest.raises(SynthesisDisabledError) as exc_info:
            self.client.synthesize("Hello", preferred="openai")

        assert exc_info.value.reason == "cap hit"
        self.openai.audio.speech.create.assert_not_called()
        assert self._logs() == []

    def test_throttled_user_rejected(self):
        self.repo.set_config("per_user_limits", {"requests_per_minute": 1, "requests_per_day": 50})
        self.client.synthesize("one", user_id="u1", preferred="openai")

        with pytest.raises(ThrottledError) as exc_info:
            self.client.synthesize("two", user_id="u1", preferred="openai")

        assert exc_info.value.reason == "Rate limit exceeded: 1 requests in last minute (max 1)"
        assert exc_info.value.current_minute == 1
        assert len(self._logs()) == 1

    def test_anonymous_not_throttled(self):
        self.repo.set_config("per_user_limits", {"requests_per_minute": 1, "requests_per_day": 1})
        for _ in range(3):
            self.client.synthesize("hi", preferred="openai")
        assert len(self._logs()) == 3

    def test_provider_error_logged_then_raised(self):
        self.openai.audio.speech.create.side_effect = RuntimeError("upstream 500")

        with pytest.raises(RuntimeError, match="upstream 500"):
            self.client.synthesize("Hello", user_id="u1", preferred="openai")

        logs = self._logs()
        assert len(logs) == 1
        assert logs[0].status == "error"
        assert logs[0].error_message == "upstream 500"
        assert logs[0].estimated_cost == 0.0

    @patch('tts_cost_guard.sdk.speech_client.requests.post')
    def test_elevenlabs_http_error_logged_then_raised(self, mock_post):
        response = Mock()
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("401 Unauthorized")
        mock_post.return_value = response

        with pytest.raises(requests.exceptions.HTTPError):
            self.client.synthesize("Hello")

        assert self._logs()[0].status == "error"

    def test_missing_elevenlabs_key(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ELEVENLABS_API_KEY", None)
            client = GuardedSpeech(db_path=self.db_path, store=self.store, openai_client=self.openai)

        with pytest.raises(ValueError, match="ElevenLabs API key not provided"):
            client.synthesize("Hello")
        assert self._logs()[0].status == "error"
