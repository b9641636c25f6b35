"""
Audio alignment for Folio.
Asks a Whisper-compatible transcription API for word level timestamps of a
chapter's narration so the reader can highlight the spoken word.

Requirements:
- An OpenAI-compatible server exposing /audio/transcriptions
- The API key in the environment variable named by the settings (OPENAI_API_KEY by default)
"""

import json
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Dict, Optional, Any

import httpx

from audio_sync import parse_timestamps

DEFAULT_SERVER_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "whisper-1"


@dataclass
class AlignmentSettings:
    """Alignment provider configuration."""
    server_url: str = DEFAULT_SERVER_URL
    model: str = DEFAULT_MODEL
    api_key_env: str = "OPENAI_API_KEY"
    timeout_seconds: float = 300.0
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


class AlignmentSettingsManager:
    """Manages alignment settings."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.settings_file = os.path.join(data_dir, "alignment_settings.json")
        self.settings: AlignmentSettings = AlignmentSettings()
        self.load()

    def _ensure_dir(self):
        """Ensure data directory exists."""
        if not os.path.exists(self.data_dir):
            os.makedirs(self.data_dir)

    def load(self):
        """Load alignment settings from file."""
        if os.path.exists(self.settings_file):
            try:
                with open(self.settings_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                self.settings = AlignmentSettings(**data.get('settings', {}))
            except Exception as e:
                print(f"Error loading alignment settings: {e}")
                self.settings = AlignmentSettings()

    def save(self):
        """Save alignment settings to file."""
        try:
            self._ensure_dir()
            with open(self.settings_file, 'w', encoding='utf-8') as f:
                json.dump({'settings': asdict(self.settings)}, f, indent=2, ensure_ascii=False)
        except Exception as e:
            print(f"Error saving alignment settings: {e}")

    def get_settings(self) -> AlignmentSettings:
        """Get current alignment settings."""
        return self.settings

    def update_settings(self, **kwargs) -> AlignmentSettings:
        """Update alignment settings."""
        for key, value in kwargs.items():
            if hasattr(self.settings, key) and key != 'updated_at':
                setattr(self.settings, key, value)
        self.settings.updated_at = datetime.now().isoformat()
        self.save()
        return self.settings

    def to_public_dict(self) -> Dict[str, Any]:
        """Settings as returned by the API, never including the key itself."""
        data = asdict(self.settings)
        data['has_api_key'] = bool(self.settings.api_key)
        return data


def timestamps_from_transcription(data: Dict[str, Any]) -> List[dict]:
    """Pull {word, start, end} entries out of a verbose_json transcription."""
    words = data.get('words')
    if not words:
        return []
    return [
        {"word": w.get('word', ''), "start": w.get('start'), "end": w.get('end')}
        for w in words
        if isinstance(w, dict)
    ]


async def align_audio(
        audio_url: str,
        settings: AlignmentSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """
    Fetch narration audio and request word timestamps for it.

    Args:
        audio_url: Where the chapter audio lives
        settings: Provider configuration
        transport: Optional httpx transport, used by tests

    Returns:
        dict with 'success', 'audio_timestamps', 'count', 'error'
    """
    api_key = settings.api_key
    if not api_key:
        return {
            "success": False,
            "error": f"No API key found in ${settings.api_key_env}"
        }

    try:
        async with httpx.AsyncClient(timeout=settings.timeout_seconds, transport=transport) as client:
            print(f"Alignment: fetching audio from {audio_url}")
            audio_response = await client.get(audio_url)
            if audio_response.status_code != 200:
                return {
                    "success": False,
                    "error": f"Failed to fetch audio file: {audio_response.status_code}"
                }

            print("Alignment: requesting word timestamps...")
            response = await client.post(
                f"{settings.server_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {api_key}"},
                data={
                    "model": settings.model,
                    "response_format": "verbose_json",
                    "timestamp_granularities[]": "word",
                },
                files={"file": ("audio.mp3", audio_response.content, "audio/mpeg")},
            )
            if response.status_code != 200:
                return {
                    "success": False,
                    "error": f"Transcription API error: {response.status_code} {response.text}"
                }

            raw = timestamps_from_transcription(response.json())

        timestamps = parse_timestamps(raw)
        if not timestamps:
            return {
                "success": False,
                "error": "No word timestamps received from transcription API"
            }

        return {
            "success": True,
            "audio_timestamps": [t.to_dict() for t in timestamps],
            "count": len(timestamps),
        }

    except httpx.ConnectError:
        return {
            "success": False,
            "error": f"Cannot connect to {settings.server_url}"
        }
    except Exception as e:
        return {
            "success": False,
            "error": str(e)
        }
