"""
Reader state persistence for Folio.
Keeps each book's reading position and display preferences in a single JSON
file, one blob per book id, merged on every write.
"""

import json
import os
import time
from dataclasses import dataclass, asdict, fields
from typing import Dict, Optional, Any

from audio_sync import READING_THEMES
from pagination import FONT_SIZE_CONFIG

AMBIENT_SOUNDS = ["fireplace", "rain", "library"]
READER_MODES = ["3d", "traditional"]


@dataclass
class ReadingState:
    """Where the reader is in a book and how it is displayed."""
    current_chapter: int = 0
    current_page: int = 0      # Left page of the spread, 0-indexed
    theme: str = "day"
    font_size: str = "base"
    ambient_sound: Optional[str] = None
    ambient_volume: float = 0.3
    sound_effects_enabled: bool = True
    reader_mode: str = "3d"
    playback_rate: float = 1.0
    updated_at: Optional[int] = None  # Milliseconds since epoch

    @classmethod
    def from_blob(cls, blob: Dict[str, Any]) -> "ReadingState":
        """
        Build a state from a stored blob, ignoring unknown keys and
        falling back to defaults for values that don't make sense.
        """
        state = cls()
        known = {f.name for f in fields(cls)}
        for key, value in blob.items():
            if key in known:
                setattr(state, key, value)

        if not isinstance(state.current_chapter, int) or state.current_chapter < 0:
            state.current_chapter = 0
        if not isinstance(state.current_page, int) or state.current_page < 0:
            state.current_page = 0
        # Spreads always start on an even page
        state.current_page -= state.current_page % 2
        # Stored blobs are client supplied, values may be lists or objects
        if not isinstance(state.theme, str) or state.theme not in READING_THEMES:
            state.theme = "day"
        if not isinstance(state.font_size, str) or state.font_size not in FONT_SIZE_CONFIG:
            state.font_size = "base"
        if not isinstance(state.ambient_sound, str) or state.ambient_sound not in AMBIENT_SOUNDS:
            state.ambient_sound = None
        if not isinstance(state.reader_mode, str) or state.reader_mode not in READER_MODES:
            state.reader_mode = "3d"
        try:
            state.ambient_volume = min(1.0, max(0.0, float(state.ambient_volume)))
        except (TypeError, ValueError):
            state.ambient_volume = 0.3
        try:
            state.playback_rate = float(state.playback_rate)
        except (TypeError, ValueError):
            state.playback_rate = 1.0
        if state.playback_rate <= 0:
            state.playback_rate = 1.0
        state.sound_effects_enabled = bool(state.sound_effects_enabled)
        return state

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReadingStateStore:
    """Manages reading state persistence."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.data_file = os.path.join(data_dir, "reading_state.json")
        self._data: Optional[Dict[str, Dict[str, Any]]] = None

    def _ensure_dir(self):
        """Ensure data directory exists."""
        if not os.path.exists(self.data_dir):
            os.makedirs(self.data_dir, exist_ok=True)

    def load(self) -> Dict[str, Dict[str, Any]]:
        """Load all stored state from disk, once per store."""
        if self._data is not None:
            return self._data

        if not os.path.exists(self.data_file):
            self._data = {}
            return self._data

        try:
            with open(self.data_file, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("reading state file is not a JSON object")
            self._data = {
                book_id: blob for book_id, blob in raw.items()
                if isinstance(blob, dict)
            }
        except Exception as e:
            print(f"Error loading reading state: {e}")
            self._data = {}

        return self._data

    def save(self):
        """Save all state to disk."""
        if self._data is None:
            return

        self._ensure_dir()

        try:
            with open(self.data_file, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2, ensure_ascii=False)
        except Exception as e:
            print(f"Error saving reading state: {e}")

    def get_blob(self, book_id: str) -> Optional[Dict[str, Any]]:
        """The raw stored blob for a book, or None if nothing was saved."""
        return self.load().get(book_id)

    def get_state(self, book_id: str) -> ReadingState:
        """Typed state for a book, defaults when nothing was saved."""
        return ReadingState.from_blob(self.get_blob(book_id) or {})

    def merge_state(self, book_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Merge updates into the book's blob and stamp the write time."""
        data = self.load()
        blob = dict(data.get(book_id, {}))
        blob.update(updates)
        blob["updated_at"] = int(time.time() * 1000)
        data[book_id] = blob
        self.save()
        return blob

    def cleanup_book_data(self, book_id: str):
        """Remove the state of a deleted book."""
        data = self.load()
        if book_id in data:
            del data[book_id]
            self.save()
