"""
Tests for word timestamp alignment.
"""

import asyncio
import json
import os

import httpx
import pytest

from alignment import (
    AlignmentSettings,
    AlignmentSettingsManager,
    align_audio,
    timestamps_from_transcription,
)

AUDIO_URL = "http://audio.test/chapter-1.mp3"

TRANSCRIPTION = {
    "text": "Hello there world",
    "words": [
        {"word": "Hello", "start": 0.0, "end": 0.4},
        {"word": "there", "start": 0.5, "end": 0.8},
        {"word": "world", "start": 0.9, "end": 1.3},
    ],
}


def make_transport(transcription=TRANSCRIPTION, audio_status=200, api_status=200, seen=None):
    """Mock both the audio host and the transcription API."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.method == "GET":
            return httpx.Response(audio_status, content=b"ID3 fake audio")
        if api_status != 200:
            return httpx.Response(api_status, text="upstream failure")
        return httpx.Response(200, json=transcription)

    return httpx.MockTransport(handler)


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    return AlignmentSettings(server_url="http://whisper.test/v1")


class TestTimestampsFromTranscription:
    """Tests for reading the transcription payload."""

    def test_words_are_extracted(self):
        result = timestamps_from_transcription(TRANSCRIPTION)
        assert result[0] == {"word": "Hello", "start": 0.0, "end": 0.4}
        assert len(result) == 3

    def test_missing_words(self):
        assert timestamps_from_transcription({"text": "no words"}) == []


class TestAlignAudio:
    """Tests for the alignment request."""

    def test_successful_alignment(self, settings):
        """Test a full round trip against the mocked services."""
        seen = []
        result = asyncio.run(align_audio(AUDIO_URL, settings, transport=make_transport(seen=seen)))

        assert result["success"] is True
        assert result["count"] == 3
        assert result["audio_timestamps"][2] == {"word": "world", "start": 0.9, "end": 1.3}

        audio_request, api_request = seen
        assert str(audio_request.url) == AUDIO_URL
        assert str(api_request.url) == "http://whisper.test/v1/audio/transcriptions"
        assert api_request.headers["Authorization"] == "Bearer sk-test"

    def test_missing_api_key(self, monkeypatch):
        """Test that nothing is requested without a key."""
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        seen = []
        result = asyncio.run(align_audio(AUDIO_URL, AlignmentSettings(), transport=make_transport(seen=seen)))
        assert result["success"] is False
        assert "OPENAI_API_KEY" in result["error"]
        assert seen == []

    def test_audio_not_found(self, settings):
        result = asyncio.run(align_audio(AUDIO_URL, settings, transport=make_transport(audio_status=404)))
        assert result["success"] is False
        assert "404" in result["error"]

    def test_api_error(self, settings):
        result = asyncio.run(align_audio(AUDIO_URL, settings, transport=make_transport(api_status=500)))
        assert result["success"] is False
        assert "500" in result["error"]

    def test_no_words_returned(self, settings):
        result = asyncio.run(align_audio(AUDIO_URL, settings, transport=make_transport({"text": ""})))
        assert result["success"] is False
        assert "No word timestamps" in result["error"]

    def test_malformed_words_are_rejected(self, settings):
        """Test that a broken timestamp list is not stored."""
        broken = {"words": [{"word": "Hello", "start": 1.0, "end": 0.2}]}
        result = asyncio.run(align_audio(AUDIO_URL, settings, transport=make_transport(broken)))
        assert result["success"] is False

    def test_connection_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = asyncio.run(align_audio(AUDIO_URL, settings, transport=httpx.MockTransport(handler)))
        assert result["success"] is False
        assert "Cannot connect" in result["error"]


class TestAlignmentSettingsManager:
    """Tests for persisted alignment settings."""

    def test_defaults(self, tmp_path):
        manager = AlignmentSettingsManager(str(tmp_path))
        settings = manager.get_settings()
        assert settings.model == "whisper-1"
        assert settings.server_url == "https://api.openai.com/v1"

    def test_update_persists(self, tmp_path):
        """Test that updates are written and reloaded."""
        manager = AlignmentSettingsManager(str(tmp_path))
        manager.update_settings(model="whisper-large", server_url="http://localhost:9000/v1")

        reloaded = AlignmentSettingsManager(str(tmp_path))
        assert reloaded.get_settings().model == "whisper-large"
        assert reloaded.get_settings().server_url == "http://localhost:9000/v1"

    def test_unknown_fields_are_ignored(self, tmp_path):
        manager = AlignmentSettingsManager(str(tmp_path))
        manager.update_settings(voice="tara")
        assert not hasattr(manager.get_settings(), "voice")

    def test_public_dict_hides_key(self, tmp_path, monkeypatch):
        """Test that the key itself never leaves the server."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
        data = AlignmentSettingsManager(str(tmp_path)).to_public_dict()
        assert data["has_api_key"] is True
        assert "sk-secret" not in json.dumps(data)

    def test_corrupt_file_gives_defaults(self, tmp_path):
        with open(os.path.join(str(tmp_path), "alignment_settings.json"), "w") as f:
            f.write("[]")
        manager = AlignmentSettingsManager(str(tmp_path))
        assert manager.get_settings().model == "whisper-1"
