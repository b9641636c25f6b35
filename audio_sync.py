"""
Keeps narrated audio and paginated text in step.

Audio timestamps are indexed by spoken word order while pages are indexed by
character offset, so everything here converts between the two: character
offset -> word index, playback time -> word index, and word index -> the
highlight state of every word span on a page.
"""

import math
import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import List, Optional, Union

from pagination import TextChunk

# Rough average word length, trailing space included
AVG_CHARS_PER_WORD = 6
# Used by the auto page turn when no word offsets are known
AUTO_TURN_CHARS_PER_WORD = 7
# Words closer than this to the spoken word get a faint highlight
NEAR_WORD_DISTANCE = 3
# Distance from the viewport edges inside which the active word is left alone
SCROLL_SAFE_MARGIN = 100

WORD_PATTERN = re.compile(r"\S+")
WHITESPACE_SPLIT = re.compile(r"(\s+)")


@dataclass
class AudioTimestamp:
    """One spoken word as reported by the alignment service."""
    word: str
    start: float  # seconds
    end: float    # seconds

    def to_dict(self) -> dict:
        return {"word": self.word, "start": self.start, "end": self.end}


@dataclass(frozen=True)
class ThemeColors:
    name: str
    accent_color: str
    text_color: str
    page_background: str


READING_THEMES = {
    "day": ThemeColors("Day", "#d97706", "#1f2937", "#fffef7"),
    "night": ThemeColors("Night", "#fbbf24", "#e5e5e5", "#0a0a0a"),
    "sepia": ThemeColors("Sepia", "#b45309", "#451a03", "#fef3c7"),
    "focus": ThemeColors("Focus", "#a3a3a3", "#fafafa", "#262626"),
}
DEFAULT_THEME = "day"
DARK_THEMES = ("night", "focus")


def resolve_theme(theme: Optional[str]) -> str:
    if theme in READING_THEMES:
        return theme
    return DEFAULT_THEME


# --- Timestamps ---

def parse_timestamps(raw) -> List[AudioTimestamp]:
    """
    Build AudioTimestamps from stored JSON.
    Anything malformed yields an empty list, which simply disables highlighting.
    """
    if not raw or not isinstance(raw, (list, tuple)):
        return []

    timestamps = []
    for entry in raw:
        if isinstance(entry, AudioTimestamp):
            timestamps.append(entry)
            continue
        if not isinstance(entry, dict):
            return []
        try:
            word = str(entry["word"])
            start = float(entry["start"])
            end = float(entry["end"])
        except (KeyError, TypeError, ValueError):
            return []
        if math.isnan(start) or math.isnan(end) or start > end:
            return []
        timestamps.append(AudioTimestamp(word=word, start=start, end=end))

    return timestamps


def find_active_word_index(timestamps: List[AudioTimestamp], current_time: float) -> int:
    """Index of the first word whose window contains the playback time, else -1."""
    for index, stamp in enumerate(timestamps or []):
        if stamp.start <= current_time <= stamp.end:
            return index
    return -1


def find_word_index_by_time(timestamps: List[AudioTimestamp], time: float) -> int:
    """
    Word being spoken at `time`, or the last word started before it when the
    time falls in a pause. -1 before the first word.
    """
    if not timestamps:
        return -1

    lo, hi = 0, len(timestamps) - 1
    while lo <= hi:
        mid = (lo + hi) // 2
        stamp = timestamps[mid]
        if time < stamp.start:
            hi = mid - 1
        elif time > stamp.end:
            lo = mid + 1
        else:
            return mid

    starts = [t.start for t in timestamps]
    return bisect_right(starts, time) - 1


# --- Word offsets ---

def count_words(text: str) -> int:
    return len(text.split())


def build_word_starts(text: str) -> List[int]:
    """Character offset of every whitespace-delimited word in the text."""
    return [match.start() for match in WORD_PATTERN.finditer(text or "")]


def word_index_at_char_pos(char_pos: int, word_starts: Optional[List[int]] = None) -> int:
    """
    Estimated word index for a character offset.

    With word starts this is the last word starting at or before char_pos.
    Without them it assumes AVG_CHARS_PER_WORD characters per word, which can
    drift by several words over a long chapter.
    """
    if not word_starts:
        return int(math.floor(char_pos / AVG_CHARS_PER_WORD + 0.5))

    index = bisect_right(word_starts, char_pos) - 1
    return max(0, min(index, len(word_starts) - 1))


def page_index_for_char_pos(pages: List[List[TextChunk]], char_pos: int) -> int:
    """Page whose text range contains char_pos, else the last page."""
    for index, chunks in enumerate(pages):
        if not chunks:
            continue
        if chunks[0].start_char_index <= char_pos <= chunks[-1].end_char_index:
            return index
    return max(0, len(pages) - 1)


# --- Highlighting ---

@dataclass
class ChunkWordRange:
    start_offset: int
    end_offset: int  # inclusive, start - 1 for a chunk without words
    word_count: int


@dataclass
class WordSpan:
    """A single word on the page. Rendered as a span whatever its state."""
    text: str
    word_index: int
    state: str = "none"  # current, previous, next, near, none
    background: str = "transparent"
    color: str = "inherit"

    @property
    def is_current(self) -> bool:
        return self.state == "current"


@dataclass
class HighlightedChunk:
    chunk: TextChunk
    word_range: ChunkWordRange
    segments: List[Union[str, WordSpan]] = field(default_factory=list)
    is_active: bool = False
    box_shadow: str = "none"
    background: str = "transparent"

    @property
    def words(self) -> List[WordSpan]:
        return [s for s in self.segments if isinstance(s, WordSpan)]


def page_base_offset(chunks: List[TextChunk], word_starts: Optional[List[int]] = None) -> int:
    if not chunks:
        return 0
    return word_index_at_char_pos(chunks[0].start_char_index, word_starts)


def chunk_word_ranges(chunks: List[TextChunk], base_offset: int) -> List[ChunkWordRange]:
    ranges = []
    local_offset = 0
    for chunk in chunks:
        start = base_offset + local_offset
        words = count_words(chunk.text)
        local_offset += words
        ranges.append(ChunkWordRange(start_offset=start, end_offset=start + words - 1,
                                     word_count=words))
    return ranges


def find_active_chunk(ranges: List[ChunkWordRange], current_word_index: int,
                      is_playing: bool) -> int:
    if not is_playing or current_word_index < 0:
        return -1
    for index, word_range in enumerate(ranges):
        if word_range.start_offset <= current_word_index <= word_range.end_offset:
            return index
    return -1


def style_word(span: WordSpan, current_word_index: int, is_playing: bool, theme: str):
    """Set the span's highlight state from its distance to the spoken word."""
    span.state = "none"
    span.background = "transparent"
    span.color = "inherit"

    if not is_playing or current_word_index < 0:
        return span

    theme = resolve_theme(theme)
    accent = READING_THEMES[theme].accent_color
    distance = abs(span.word_index - current_word_index)

    if distance == 0:
        span.state = "current"
        span.background = accent
        span.color = "#fff" if theme in DARK_THEMES else "#1a1a1a"
    elif span.word_index == current_word_index - 1:
        span.state = "previous"
        span.background = f"{accent}22"
    elif span.word_index == current_word_index + 1:
        span.state = "next"
        span.background = f"{accent}10"
    elif distance <= NEAR_WORD_DISTANCE:
        opacity = max(0, 6 - distance * 2)
        span.state = "near"
        span.background = f"{accent}0{opacity}"

    return span


def highlight_page(chunks: List[TextChunk], current_word_index: int, is_playing: bool,
                   theme: str = DEFAULT_THEME,
                   word_starts: Optional[List[int]] = None) -> List[HighlightedChunk]:
    """
    Split every chunk of a page into whitespace and word spans, styled for the
    current word. The number and order of segments depend only on the text,
    never on playback, so re-rendering only changes styles.
    """
    theme = resolve_theme(theme)
    accent = READING_THEMES[theme].accent_color
    ranges = chunk_word_ranges(chunks, page_base_offset(chunks, word_starts))
    active = find_active_chunk(ranges, current_word_index, is_playing)

    highlighted = []
    for index, (chunk, word_range) in enumerate(zip(chunks, ranges)):
        segments: List[Union[str, WordSpan]] = []
        word_index = word_range.start_offset

        for part in WHITESPACE_SPLIT.split(chunk.text):
            if not part:
                continue
            if not part.strip():
                segments.append(part)
                continue
            span = WordSpan(text=part, word_index=word_index)
            segments.append(style_word(span, current_word_index, is_playing, theme))
            word_index += 1

        is_active = index == active
        highlighted.append(HighlightedChunk(
            chunk=chunk,
            word_range=word_range,
            segments=segments,
            is_active=is_active,
            box_shadow=f"inset 4px 0 0 {accent}60" if is_active else "none",
            background=f"{accent}05" if is_active else "transparent",
        ))

    return highlighted


def should_scroll_into_view(rect_top: float, rect_bottom: float, viewport_height: float,
                            is_playing: bool, current_word_index: int) -> bool:
    """True when the active word has drifted outside the safe band of the viewport."""
    if not is_playing or current_word_index < 0:
        return False
    in_view = (rect_top >= SCROLL_SAFE_MARGIN
               and rect_bottom <= viewport_height - SCROLL_SAFE_MARGIN)
    return not in_view


# --- Auto page turn ---

def should_turn_page(active_word_index: int, spread_chunks: List[TextChunk],
                     has_next_spread: bool, is_playing: bool = True,
                     sync_enabled: bool = True,
                     word_starts: Optional[List[int]] = None) -> bool:
    """
    Whether narration has moved past the visible spread.
    spread_chunks are the left and right page chunks in reading order.
    """
    if not is_playing or not sync_enabled or active_word_index < 0:
        return False
    if not spread_chunks or not has_next_spread:
        return False

    if word_starts and active_word_index < len(word_starts):
        char_pos = word_starts[active_word_index]
    else:
        char_pos = active_word_index * AUTO_TURN_CHARS_PER_WORD

    return char_pos > spread_chunks[-1].end_char_index
