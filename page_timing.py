"""
Page timing for narrated playback and video export.
Works out when each page of a chapter is on screen from the audio timestamps.
"""

import math
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from audio_sync import AudioTimestamp, build_word_starts, word_index_at_char_pos
from pagination import DEFAULT_FONT_SIZE, paginate_content

# Frame generation settings
HIGHLIGHT_FRAME_INTERVAL = 0.5  # One frame every half second while words are highlighted
FLIP_FRAME_COUNT = 15           # Frames per page flip animation
DEFAULT_FLIP_DURATION = 0.6
MIN_PAGE_DURATION = 0.1


@dataclass
class PageTiming:
    page_index: int         # Within the chapter, 0-based
    start_time: float
    end_time: float
    duration: float
    start_word_index: int
    end_word_index: int
    start_char_index: int
    end_char_index: int


@dataclass
class FlipTransition:
    from_page: int
    to_page: int
    start_time: float
    end_time: float
    duration: float


@dataclass
class ChapterTiming:
    chapter_index: int
    chapter_title: str
    total_pages: int
    audio_duration: float
    pages: List[PageTiming] = field(default_factory=list)
    flip_transitions: List[FlipTransition] = field(default_factory=list)


@dataclass
class VideoManifest:
    book_id: str
    book_title: str
    author: str
    total_duration: float
    total_frames: int
    font_size: str
    theme: str
    chapters: List[ChapterTiming] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _word_start_time(timestamps: List[AudioTimestamp], index: int) -> float:
    if 0 <= index < len(timestamps):
        return timestamps[index].start
    return 0.0


def _word_end_time(timestamps: List[AudioTimestamp], index: int) -> float:
    if 0 <= index < len(timestamps):
        return timestamps[index].end
    return timestamps[-1].end if timestamps else 0.0


def normalize_page_timings(pages: List[PageTiming], total_duration: float):
    """Close gaps and overlaps so pages cover 0..total_duration back to back."""
    if not pages:
        return

    pages[0].start_time = 0.0

    for current, following in zip(pages, pages[1:]):
        if current.end_time != following.start_time:
            midpoint = (current.end_time + following.start_time) / 2
            current.end_time = midpoint
            following.start_time = midpoint
        current.duration = current.end_time - current.start_time

    last = pages[-1]
    last.end_time = total_duration
    last.duration = last.end_time - last.start_time


def flip_transitions(pages: List[PageTiming], flip_duration: float) -> List[FlipTransition]:
    """One flip per spread, centred on the moment the spread ends."""
    transitions = []
    for i in range(0, len(pages) - 2, 2):
        spread_end = pages[i + 1].end_time if i + 1 < len(pages) else pages[i].end_time
        transitions.append(FlipTransition(
            from_page=i,
            to_page=i + 2,
            start_time=spread_end - flip_duration / 2,
            end_time=spread_end + flip_duration / 2,
            duration=flip_duration,
        ))
    return transitions


def calculate_chapter_timing(chapter_index: int, chapter_title: str, content: str,
                             timestamps: Optional[List[AudioTimestamp]],
                             audio_duration: float,
                             font_size: str = DEFAULT_FONT_SIZE,
                             flip_duration: float = DEFAULT_FLIP_DURATION) -> ChapterTiming:
    paginated = paginate_content(content, font_size)
    timestamps = timestamps or []
    pages: List[PageTiming] = []

    if not timestamps:
        # No alignment: spread the audio evenly over the pages
        per_page = audio_duration / max(1, paginated.total_pages)
        for index, chunks in enumerate(paginated.pages):
            pages.append(PageTiming(
                page_index=index,
                start_time=index * per_page,
                end_time=(index + 1) * per_page,
                duration=per_page,
                start_word_index=0,
                end_word_index=0,
                start_char_index=chunks[0].start_char_index if chunks else 0,
                end_char_index=chunks[-1].end_char_index if chunks else 0,
            ))
    else:
        word_starts = build_word_starts(content)
        for index, chunks in enumerate(paginated.pages):
            if not chunks:
                continue
            start_char = chunks[0].start_char_index
            end_char = chunks[-1].end_char_index
            start_word = word_index_at_char_pos(start_char, word_starts) if word_starts else 0
            end_word = word_index_at_char_pos(end_char, word_starts) if word_starts else 0
            start_time = _word_start_time(timestamps, start_word)
            end_time = _word_end_time(timestamps, end_word)
            pages.append(PageTiming(
                page_index=index,
                start_time=start_time,
                end_time=end_time,
                duration=max(MIN_PAGE_DURATION, end_time - start_time),
                start_word_index=start_word,
                end_word_index=end_word,
                start_char_index=start_char,
                end_char_index=end_char,
            ))
        normalize_page_timings(pages, audio_duration)

    return ChapterTiming(
        chapter_index=chapter_index,
        chapter_title=chapter_title,
        total_pages=paginated.total_pages,
        audio_duration=audio_duration,
        pages=pages,
        flip_transitions=flip_transitions(pages, flip_duration),
    )


def _static_frame_count(timing: ChapterTiming, has_timestamps: bool) -> int:
    if not has_timestamps:
        return math.ceil(timing.total_pages / 2)

    frames = 0
    pages = timing.pages
    for i in range(0, len(pages), 2):
        if i + 2 < len(pages):
            spread_end = pages[i + 2].start_time
        else:
            spread_end = pages[-1].end_time
        spread_duration = spread_end - pages[i].start_time
        frames += max(1, math.ceil(spread_duration / HIGHLIGHT_FRAME_INTERVAL))
    return frames


def calculate_book_timing(book_id: str, book_title: str, author: str, chapters,
                          font_size: str = DEFAULT_FONT_SIZE, theme: str = "day",
                          flip_duration: float = DEFAULT_FLIP_DURATION) -> VideoManifest:
    """
    Timing for all chapters on one continuous timeline.
    Chapters without audio contribute pages but no playback time.
    """
    manifest = VideoManifest(
        book_id=book_id,
        book_title=book_title,
        author=author,
        total_duration=0.0,
        total_frames=0,
        font_size=font_size,
        theme=theme,
    )

    for index, chapter in enumerate(chapters):
        timestamps = chapter.timestamps()
        timing = calculate_chapter_timing(
            index,
            chapter.title,
            chapter.content,
            timestamps,
            chapter.audio_duration or 0.0,
            font_size,
            flip_duration,
        )

        offset = manifest.total_duration
        for page in timing.pages:
            page.start_time += offset
            page.end_time += offset
        for flip in timing.flip_transitions:
            flip.start_time += offset
            flip.end_time += offset

        manifest.total_duration += timing.audio_duration
        manifest.total_frames += (_static_frame_count(timing, bool(timestamps))
                                  + len(timing.flip_transitions) * FLIP_FRAME_COUNT)
        manifest.chapters.append(timing)

    return manifest
