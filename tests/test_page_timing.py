"""
Tests for narrated page timing.
"""

import pytest

from audio_sync import AudioTimestamp
from folio import Chapter
from page_timing import (
    FLIP_FRAME_COUNT,
    PageTiming,
    calculate_book_timing,
    calculate_chapter_timing,
    normalize_page_timings,
)

CONTENT = "\n\n".join(f"Paragraph number {i} here." for i in range(25))


def word_timestamps(count, step=0.5, length=0.4):
    return [AudioTimestamp(word=f"w{i}", start=i * step, end=i * step + length) for i in range(count)]


class TestChapterTiming:
    """Tests for per-chapter page timing."""

    def test_even_split_without_timestamps(self):
        """Test that pages share the audio equally without alignment."""
        timing = calculate_chapter_timing(0, "One", CONTENT, None, 30.0)
        assert timing.total_pages == 3
        assert [p.start_time for p in timing.pages] == [0.0, 10.0, 20.0]
        assert all(p.duration == 10.0 for p in timing.pages)

    def test_single_page_covers_whole_audio(self):
        timing = calculate_chapter_timing(0, "One", "alpha beta gamma", word_timestamps(3), 5.0)
        assert len(timing.pages) == 1
        assert timing.pages[0].start_time == 0.0
        assert timing.pages[0].end_time == 5.0
        assert timing.flip_transitions == []

    def test_pages_follow_word_timestamps(self):
        """Test that page boundaries sit between the words that end and start them."""
        timing = calculate_chapter_timing(0, "One", CONTENT, word_timestamps(100), 50.0)
        pages = timing.pages

        assert [p.start_word_index for p in pages] == [0, 40, 80]
        assert pages[0].end_word_index == 39
        assert pages[0].end_time == pytest.approx(19.95)
        assert pages[1].start_time == pytest.approx(19.95)

    def test_timeline_is_contiguous(self):
        """Test that pages run back to back from zero to the audio length."""
        pages = calculate_chapter_timing(0, "One", CONTENT, word_timestamps(100), 50.0).pages
        assert pages[0].start_time == 0.0
        assert pages[-1].end_time == 50.0
        for before, after in zip(pages, pages[1:]):
            assert before.end_time == after.start_time
        assert sum(p.duration for p in pages) == pytest.approx(50.0)

    def test_one_flip_per_spread(self):
        """Test flip transitions centred on spread boundaries."""
        timing = calculate_chapter_timing(0, "One", CONTENT, word_timestamps(100), 50.0,
                                          flip_duration=1.0)
        assert len(timing.flip_transitions) == 1
        flip = timing.flip_transitions[0]
        assert (flip.from_page, flip.to_page) == (0, 2)
        boundary = timing.pages[1].end_time
        assert flip.start_time == pytest.approx(boundary - 0.5)
        assert flip.end_time == pytest.approx(boundary + 0.5)

    def test_normalize_closes_overlaps(self):
        pages = [
            PageTiming(0, 0.3, 5.0, 4.7, 0, 9, 0, 50),
            PageTiming(1, 4.0, 9.0, 5.0, 10, 19, 52, 100),
        ]
        normalize_page_timings(pages, 12.0)
        assert pages[0].start_time == 0.0
        assert pages[0].end_time == pages[1].start_time == 4.5
        assert pages[1].end_time == 12.0
        assert pages[1].duration == 7.5


class TestBookTiming:
    """Tests for the whole book manifest."""

    @pytest.fixture
    def chapters(self):
        narrated = Chapter(
            id="c1", number=1, title="Opening", content=CONTENT,
            audio_url="http://audio.test/1.mp3", audio_duration=50.0,
            audio_timestamps=[t.to_dict() for t in word_timestamps(100)],
        )
        silent = Chapter(id="c2", number=2, title="Closing", content="The end.")
        return [narrated, silent]

    def test_chapters_share_one_timeline(self, chapters):
        """Test that later chapters start where earlier ones end."""
        manifest = calculate_book_timing("book_data", "A Book", "An Author", chapters)
        assert manifest.total_duration == 50.0
        assert len(manifest.chapters) == 2
        assert manifest.chapters[1].pages[0].start_time == 50.0

    def test_frame_count_includes_flips(self, chapters):
        manifest = calculate_book_timing("book_data", "A Book", "An Author", chapters)
        assert manifest.total_frames > FLIP_FRAME_COUNT

    def test_manifest_serialises(self, chapters):
        data = calculate_book_timing("book_data", "A Book", "An Author", chapters,
                                     font_size="lg", theme="night").to_dict()
        assert data["font_size"] == "lg"
        assert data["theme"] == "night"
        assert data["chapters"][0]["chapter_title"] == "Opening"
        assert data["chapters"][0]["pages"][0]["start_time"] == 0.0
