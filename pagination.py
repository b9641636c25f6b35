"""
Splits chapter text into fixed-capacity pages for the two-page spread reader.
The same functions back the HTML reader, the JSON API and the page timing
calculator, so their output must stay deterministic.
"""

import hashlib
import math
import re
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Tuple

# --- Configuration ---

FONT_SIZES = ["xs", "sm", "base", "lg", "xl", "xxl"]
DEFAULT_FONT_SIZE = "base"

# Page dimensions of the spread reader, in pixels
PAGE_WIDTH = 440
PAGE_HEIGHT = 580


@dataclass(frozen=True)
class FontMetrics:
    """Estimated glyph metrics for one font size setting."""
    avg_char_width: float
    line_height: int
    class_name: str      # CSS class used by the reader template
    leading: str
    lines_per_page: int  # Display hint only, pagination derives its own


FONT_SIZE_CONFIG: Dict[str, FontMetrics] = {
    "xs": FontMetrics(7, 22, "text-sm", "leading-relaxed", 30),
    "sm": FontMetrics(7.5, 24, "text-base", "leading-relaxed", 28),
    "base": FontMetrics(8.5, 28, "text-lg", "leading-relaxed", 24),
    "lg": FontMetrics(10, 34, "text-xl", "leading-loose", 20),
    "xl": FontMetrics(11.5, 42, "text-2xl", "leading-loose", 16),
    "xxl": FontMetrics(13, 50, "text-3xl", "leading-snug", 13),
}

PARAGRAPH_BREAK = re.compile(r"\n\n+")


# --- Data structures ---

@dataclass
class TextChunk:
    """A run of chapter text placed on a page, with its offsets in the chapter."""
    text: str
    start_char_index: int
    end_char_index: int
    is_paragraph_start: bool = False

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "startCharIndex": self.start_char_index,
            "endCharIndex": self.end_char_index,
            "isParagraphStart": self.is_paragraph_start,
        }


@dataclass
class PaginatedContent:
    """All pages of one chapter at one font size."""
    pages: List[List[TextChunk]] = field(default_factory=lambda: [[]])
    total_pages: int = 1


@dataclass
class BookPagination:
    chapter_pages: List[PaginatedContent] = field(default_factory=list)
    total_book_pages: int = 0
    chapter_start_pages: List[int] = field(default_factory=list)


@dataclass
class Spread:
    """The left and right page of the reader at one position."""
    left_page: List[TextChunk] = field(default_factory=list)
    right_page: List[TextChunk] = field(default_factory=list)
    left_page_number: int = 0   # 1-indexed, 0 when there is no chapter
    right_page_number: int = 0
    total_pages_in_chapter: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["left_page"] = [c.to_dict() for c in self.left_page]
        data["right_page"] = [c.to_dict() for c in self.right_page]
        return data


@dataclass
class _Paragraph:
    text: str
    start: int
    end: int


# --- Utilities ---

def resolve_font_size(font_size: Optional[str]) -> str:
    """Return a known font size key, falling back to the default."""
    if font_size in FONT_SIZE_CONFIG:
        return font_size
    return DEFAULT_FONT_SIZE


def page_capacity(font_size: str, page_height: float = PAGE_HEIGHT,
                  page_width: float = PAGE_WIDTH) -> Tuple[int, int]:
    """Characters per line and lines per page for a font size."""
    metrics = FONT_SIZE_CONFIG[resolve_font_size(font_size)]
    chars_per_line = max(1, math.floor(page_width / metrics.avg_char_width))
    lines_per_page = max(1, math.floor(page_height / metrics.line_height))
    return chars_per_line, lines_per_page


def split_paragraphs(content: str) -> List[_Paragraph]:
    """
    Split text on blank lines and locate every paragraph in the original string.
    Searching forward from the previous paragraph keeps repeated paragraphs
    from resolving to the same offset.
    """
    paragraphs = []
    position = 0

    for raw in PARAGRAPH_BREAK.split(content):
        found = content.find(raw, position)
        start = found if found != -1 else position
        position = start + len(raw)

        text = raw.strip()
        if not text:
            continue

        # Offsets cover the trimmed text
        leading = len(raw) - len(raw.lstrip())
        paragraphs.append(_Paragraph(text=text, start=start + leading,
                                     end=start + leading + len(text)))

    return paragraphs


# --- Pagination ---

def paginate_content(content: str, font_size: str = DEFAULT_FONT_SIZE,
                     page_height: float = PAGE_HEIGHT,
                     page_width: float = PAGE_WIDTH) -> PaginatedContent:
    """
    Split one chapter into pages of TextChunks.

    Line usage is estimated from character counts rather than measured, so
    a page may end up a line or two under or over full.
    """
    chars_per_line, lines_per_page = page_capacity(font_size, page_height, page_width)

    pages: List[List[TextChunk]] = []
    current_page: List[TextChunk] = []
    current_line_count = 0

    for paragraph in split_paragraphs(content or ""):
        # One extra line for paragraph spacing
        estimated_lines = math.ceil(len(paragraph.text) / chars_per_line) + 1

        if current_line_count + estimated_lines > lines_per_page and current_page:
            pages.append(current_page)
            current_page = []
            current_line_count = 0

        if estimated_lines <= lines_per_page:
            current_page.append(TextChunk(
                text=paragraph.text,
                start_char_index=paragraph.start,
                end_char_index=paragraph.end,
                is_paragraph_start=True,
            ))
            current_line_count += estimated_lines
            continue

        # Too long for any page: fill pages word by word
        chunk = ""
        chunk_lines = 0
        chunk_start = paragraph.start

        for word in paragraph.text.split(" "):
            candidate = chunk + (" " if chunk else "") + word
            candidate_lines = math.ceil(len(candidate) / chars_per_line)

            if candidate_lines > lines_per_page - current_line_count:
                if chunk:
                    current_page.append(TextChunk(
                        text=chunk,
                        start_char_index=chunk_start,
                        end_char_index=chunk_start + len(chunk),
                        is_paragraph_start=chunk_start == paragraph.start,
                    ))
                    pages.append(current_page)
                    current_page = []
                    current_line_count = 0
                    # Assumes a single space between chunks
                    chunk_start += len(chunk) + 1
                chunk = word
                chunk_lines = math.ceil(len(word) / chars_per_line)
            else:
                chunk = candidate
                chunk_lines = candidate_lines

        if chunk:
            current_page.append(TextChunk(
                text=chunk,
                start_char_index=chunk_start,
                end_char_index=chunk_start + len(chunk),
                is_paragraph_start=chunk_start == paragraph.start,
            ))
            current_line_count += chunk_lines + 1

    if current_page:
        pages.append(current_page)

    if not pages:
        pages.append([])

    return PaginatedContent(pages=pages, total_pages=len(pages))


def paginate_book(chapters, font_size: str = DEFAULT_FONT_SIZE) -> BookPagination:
    """Paginate every chapter and record where each chapter starts in the book."""
    result = BookPagination()

    for chapter in chapters:
        result.chapter_start_pages.append(result.total_book_pages)
        paginated = paginate_content(chapter.content, font_size)
        result.chapter_pages.append(paginated)
        result.total_book_pages += paginated.total_pages

    return result


def _page_or_empty(chapter: PaginatedContent, index: int) -> List[TextChunk]:
    if 0 <= index < len(chapter.pages):
        return chapter.pages[index]
    return []


def get_spread_pages(chapter_pages: List[PaginatedContent], current_chapter: int,
                     current_page: int) -> Spread:
    """
    Pages shown at a spread position. current_page is the 0-indexed left page.
    Missing pages come back empty, an unknown chapter gives an empty spread.
    """
    if current_chapter < 0 or current_chapter >= len(chapter_pages):
        return Spread()

    chapter = chapter_pages[current_chapter]
    left_index = current_page
    right_index = current_page + 1

    return Spread(
        left_page=_page_or_empty(chapter, left_index),
        right_page=_page_or_empty(chapter, right_index),
        left_page_number=left_index + 1,
        right_page_number=right_index + 1,
        total_pages_in_chapter=chapter.total_pages,
    )


# --- Navigation ---

def last_spread_page(total_pages: int) -> int:
    """Left page index of the final spread of a chapter."""
    if total_pages > 1:
        return (total_pages - 1) - ((total_pages - 1) % 2)
    return 0


def next_spread(chapter_pages: List[PaginatedContent], chapter: int,
                page: int) -> Optional[Tuple[int, int]]:
    """(chapter, left page) after the given spread, or None at the end of the book."""
    if 0 <= chapter < len(chapter_pages):
        if page + 2 < chapter_pages[chapter].total_pages:
            return chapter, page + 2
        if chapter < len(chapter_pages) - 1:
            return chapter + 1, 0
    return None


def previous_spread(chapter_pages: List[PaginatedContent], chapter: int,
                    page: int) -> Optional[Tuple[int, int]]:
    """(chapter, left page) before the given spread, or None at the start of the book."""
    if 0 <= chapter < len(chapter_pages):
        if page - 2 >= 0:
            return chapter, page - 2
        if chapter > 0:
            return chapter - 1, last_spread_page(chapter_pages[chapter - 1].total_pages)
    return None


def absolute_page_number(chapter_start_pages: List[int], chapter: int, page: int) -> int:
    """1-indexed page number within the whole book."""
    before = chapter_start_pages[chapter] if 0 <= chapter < len(chapter_start_pages) else 0
    return before + page + 1


# --- Caching ---

def content_fingerprint(chapters, font_size: str) -> str:
    """SHA-1 over the font size and every chapter's content."""
    digest = hashlib.sha1(resolve_font_size(font_size).encode("utf-8"))
    for chapter in chapters:
        digest.update(b"\x00")
        digest.update((chapter.content or "").encode("utf-8"))
    return digest.hexdigest()


class PaginationCache:
    """
    Memoizes paginate_book per (key, font size).

    An entry is reused only while the fingerprint of the chapter contents
    matches. Callers invalidate explicitly when a book changes or is removed.
    """

    def __init__(self, maxsize: int = 32):
        self.maxsize = maxsize
        self._entries: "OrderedDict[Tuple[str, str], Tuple[str, BookPagination]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, chapters, font_size: str = DEFAULT_FONT_SIZE) -> BookPagination:
        font_size = resolve_font_size(font_size)
        cache_key = (key, font_size)
        fingerprint = content_fingerprint(chapters, font_size)

        entry = self._entries.get(cache_key)
        if entry is not None and entry[0] == fingerprint:
            self._entries.move_to_end(cache_key)
            self.hits += 1
            return entry[1]

        self.misses += 1
        result = paginate_book(chapters, font_size)
        self._entries[cache_key] = (fingerprint, result)
        self._entries.move_to_end(cache_key)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)
        return result

    def invalidate(self, key: Optional[str] = None):
        """Drop cached pagination for one key, or for everything."""
        if key is None:
            self._entries.clear()
            return
        for cache_key in [k for k in self._entries if k[0] == key]:
            del self._entries[cache_key]
