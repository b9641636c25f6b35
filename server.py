import os
import pickle
from functools import lru_cache
from typing import Optional, Tuple

import shutil
import tempfile
from fastapi import FastAPI, Request, HTTPException, UploadFile, File
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from folio import Book, Chapter, process_book, save_to_pickle
from pagination import (
    FONT_SIZE_CONFIG,
    DEFAULT_FONT_SIZE,
    PaginationCache,
    get_spread_pages,
    next_spread,
    previous_spread,
    absolute_page_number,
)
from audio_sync import (
    READING_THEMES,
    DEFAULT_THEME,
    build_word_starts,
    find_active_word_index,
    find_word_index_by_time,
    highlight_page,
    page_index_for_char_pos,
    should_turn_page,
)
from page_timing import calculate_chapter_timing, calculate_book_timing
from reading_state import ReadingStateStore
from alignment import AlignmentSettingsManager, align_audio

app = FastAPI()

base_resource_path = os.path.dirname(os.path.abspath(__file__))
templates_dir = os.path.join(base_resource_path, "templates")
templates = Jinja2Templates(directory=templates_dir)

# Where are the book folders located?
BOOKS_DIR = os.environ.get("FOLIO_BOOKS_DIR", ".")

SUPPORTED_UPLOADS = [".epub", ".txt", ".md", ".markdown"]

state_store = ReadingStateStore(BOOKS_DIR)
alignment_settings = AlignmentSettingsManager(BOOKS_DIR)
pagination_cache = PaginationCache()

print(f"Books directory: {BOOKS_DIR}")
print(f"Templates directory: {templates_dir}")


@lru_cache(maxsize=50)
def load_book_cached(folder_name: str) -> Optional[Book]:
    """
    Loads the book from the pickle file.
    Cached so we don't re-read the disk on every page turn.
    """
    file_path = os.path.join(BOOKS_DIR, folder_name, "book.pkl")
    if not os.path.exists(file_path):
        return None

    try:
        with open(file_path, "rb") as f:
            book = pickle.load(f)
        return book
    except Exception as e:
        print(f"Error loading book {folder_name}: {e}")
        return None


@lru_cache(maxsize=64)
def chapter_word_starts(content: str) -> Tuple[int, ...]:
    return tuple(build_word_starts(content))


def get_all_book_ids():
    """Folders in BOOKS_DIR that hold a processed book."""
    if not os.path.exists(BOOKS_DIR):
        return []
    return sorted(
        item for item in os.listdir(BOOKS_DIR)
        if item.endswith("_data")
        and os.path.isfile(os.path.join(BOOKS_DIR, item, "book.pkl"))
    )


def get_book_or_404(book_id: str) -> Book:
    book = load_book_cached(os.path.basename(book_id))
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


def get_chapter_or_404(book: Book, chapter_index: int) -> Chapter:
    if chapter_index < 0 or chapter_index >= len(book.chapters):
        raise HTTPException(status_code=404, detail="Chapter not found")
    return book.chapters[chapter_index]


def check_font_size(font_size: str) -> str:
    if font_size not in FONT_SIZE_CONFIG:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown font size '{font_size}'. Use one of: {', '.join(FONT_SIZE_CONFIG)}",
        )
    return font_size


def check_theme(theme: str) -> str:
    if theme not in READING_THEMES:
        raise HTTPException(status_code=400, detail=f"Unknown theme '{theme}'")
    return theme


def update_book(book_id: str, book: Book):
    """Persist a modified book and drop everything derived from it."""
    save_to_pickle(book, os.path.join(BOOKS_DIR, book_id))
    load_book_cached.cache_clear()
    pagination_cache.invalidate(book_id)


def find_chapter_by_id(chapter_id: str):
    """Locate a chapter across all books. Returns (book_id, book, chapter) or None."""
    for book_id in get_all_book_ids():
        book = load_book_cached(book_id)
        if not book:
            continue
        chapter = book.find_chapter(chapter_id)
        if chapter:
            return book_id, book, chapter
    return None


async def read_json_object(request: Request) -> dict:
    data = await request.json()
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return data


def render_page_html(highlighted) -> str:
    return templates.get_template("page_text.html").render(chunks=highlighted)


# ============================================================================
# Library
# ============================================================================


@app.get("/", response_class=HTMLResponse)
async def library_view(request: Request):
    """Lists all available processed books."""
    books = []

    for item in get_all_book_ids():
        book = load_book_cached(item)
        if book:
            books.append(
                {
                    "id": item,
                    "title": book.metadata.title,
                    "author": book.metadata.author,
                    "chapters": len(book.chapters),
                    "words": book.word_count,
                }
            )

    return templates.TemplateResponse(request, "library.html", {"books": books})


@app.post("/upload")
async def upload_book(file: UploadFile = File(...)):
    """Handle book uploads."""

    # Keep the extension, process_book dispatches on it
    suffix = os.path.splitext(file.filename)[1].lower()
    if suffix not in SUPPORTED_UPLOADS:
        raise HTTPException(
            status_code=400,
            detail=f"Only {', '.join(SUPPORTED_UPLOADS)} files are supported",
        )

    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
        shutil.copyfileobj(file.file, tmp)
        temp_path = tmp.name

    safe_filename = os.path.basename(file.filename)
    book_id = os.path.splitext(safe_filename)[0] + "_data"
    full_out_dir = os.path.join(BOOKS_DIR, book_id)

    try:
        print(f"Processing {temp_path} -> {full_out_dir}")
        book_obj = process_book(temp_path, full_out_dir)
        # Title falls back to the temp file name otherwise
        book_obj.source_file = safe_filename
        save_to_pickle(book_obj, full_out_dir)

        load_book_cached.cache_clear()
        pagination_cache.invalidate(book_id)

    except Exception as e:
        print(f"Error processing book: {e}")
        if os.path.exists(full_out_dir):
            shutil.rmtree(full_out_dir)
        raise HTTPException(status_code=500, detail=f"Failed to process book: {str(e)}")
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)

    return RedirectResponse(url="/", status_code=303)


@app.delete("/delete/{book_id}")
async def delete_book(book_id: str):
    """
    Deletes a book folder and all its contents.
    """
    safe_book_id = os.path.basename(book_id)
    if not safe_book_id.endswith("_data"):
        raise HTTPException(status_code=400, detail="Invalid book ID")

    book_path = os.path.join(BOOKS_DIR, safe_book_id)

    if not os.path.exists(book_path):
        raise HTTPException(status_code=404, detail="Book not found")

    try:
        shutil.rmtree(book_path)
        load_book_cached.cache_clear()
        pagination_cache.invalidate(safe_book_id)
        state_store.cleanup_book_data(safe_book_id)
        return {"status": "deleted"}
    except Exception as e:
        print(f"Error deleting book {safe_book_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to delete book: {str(e)}")


# ============================================================================
# Reader
# ============================================================================


@app.get("/read/{book_id}", response_class=HTMLResponse)
async def resume_reading(request: Request, book_id: str):
    """Open the book where the reader left off."""
    book = get_book_or_404(book_id)
    state = state_store.get_state(book_id)

    chapter_index = state.current_chapter
    page = state.current_page
    if chapter_index >= len(book.chapters):
        chapter_index, page = 0, 0

    return await read_chapter(
        request=request,
        book_id=book_id,
        chapter_index=chapter_index,
        page=page,
        font_size=state.font_size,
        theme=state.theme,
    )


@app.get("/read/{book_id}/{chapter_index}", response_class=HTMLResponse)
async def read_chapter(request: Request, book_id: str, chapter_index: int, page: int = 0,
                       font_size: str = DEFAULT_FONT_SIZE, theme: str = DEFAULT_THEME):
    """The two-page spread reader."""
    book = get_book_or_404(book_id)
    chapter = get_chapter_or_404(book, chapter_index)
    check_font_size(font_size)
    check_theme(theme)

    page = max(0, page - page % 2)
    pagination = pagination_cache.get(book_id, book.chapters, font_size)
    spread = get_spread_pages(pagination.chapter_pages, chapter_index, page)
    word_starts = chapter_word_starts(chapter.content)

    left = highlight_page(spread.left_page, -1, False, theme, word_starts)
    right = highlight_page(spread.right_page, -1, False, theme, word_starts)

    return templates.TemplateResponse(
        request,
        "reader.html",
        {
            "book": book,
            "book_id": book_id,
            "chapter": chapter,
            "chapter_index": chapter_index,
            "page": page,
            "spread": spread,
            "left_html": render_page_html(left),
            "right_html": render_page_html(right),
            "font_size": font_size,
            "font": FONT_SIZE_CONFIG[font_size],
            "theme": theme,
            "theme_colors": READING_THEMES[theme],
            "absolute_page": absolute_page_number(pagination.chapter_start_pages, chapter_index, page),
            "total_book_pages": pagination.total_book_pages,
            "next": next_spread(pagination.chapter_pages, chapter_index, page),
            "prev": previous_spread(pagination.chapter_pages, chapter_index, page),
        },
    )


# ============================================================================
# Pagination API
# ============================================================================


@app.get("/api/books/{book_id}/pagination")
async def get_book_pagination(book_id: str, font_size: str = DEFAULT_FONT_SIZE):
    """Page counts for the whole book."""
    book = get_book_or_404(book_id)
    check_font_size(font_size)
    pagination = pagination_cache.get(book_id, book.chapters, font_size)

    return {
        "book_id": book_id,
        "font_size": font_size,
        "total_book_pages": pagination.total_book_pages,
        "chapter_start_pages": pagination.chapter_start_pages,
        "chapters": [
            {
                "index": i,
                "title": chapter.title,
                "total_pages": pagination.chapter_pages[i].total_pages,
            }
            for i, chapter in enumerate(book.chapters)
        ],
    }


@app.get("/api/books/{book_id}/chapters/{chapter_index}/pages")
async def get_chapter_pages(book_id: str, chapter_index: int, font_size: str = DEFAULT_FONT_SIZE):
    """Every page of one chapter as text chunks."""
    book = get_book_or_404(book_id)
    get_chapter_or_404(book, chapter_index)
    check_font_size(font_size)
    paginated = pagination_cache.get(book_id, book.chapters, font_size).chapter_pages[chapter_index]

    return {
        "chapter_index": chapter_index,
        "total_pages": paginated.total_pages,
        "pages": [[chunk.to_dict() for chunk in page] for page in paginated.pages],
    }


@app.get("/api/books/{book_id}/spread/{chapter_index}/{page}")
async def get_spread(book_id: str, chapter_index: int, page: int,
                     font_size: str = DEFAULT_FONT_SIZE):
    """
    The spread at a position. Out of range positions give empty pages
    rather than an error, matching what the reader renders.
    """
    book = get_book_or_404(book_id)
    check_font_size(font_size)
    pagination = pagination_cache.get(book_id, book.chapters, font_size)
    spread = get_spread_pages(pagination.chapter_pages, chapter_index, page)

    data = spread.to_dict()
    data["absolute_page"] = absolute_page_number(pagination.chapter_start_pages, chapter_index, page)
    data["total_book_pages"] = pagination.total_book_pages
    data["next"] = next_spread(pagination.chapter_pages, chapter_index, page)
    data["prev"] = previous_spread(pagination.chapter_pages, chapter_index, page)
    return data


# ============================================================================
# Audio Sync API
# ============================================================================


@app.get("/api/books/{book_id}/chapters/{chapter_index}/highlight")
async def get_highlight(book_id: str, chapter_index: int, page: int = 0, time: float = 0.0,
                        playing: bool = True, sync: bool = True,
                        font_size: str = DEFAULT_FONT_SIZE, theme: str = DEFAULT_THEME):
    """
    Highlighted markup for the spread at a playback time.
    Without usable timestamps nothing is highlighted.
    """
    book = get_book_or_404(book_id)
    chapter = get_chapter_or_404(book, chapter_index)
    check_font_size(font_size)
    check_theme(theme)

    pagination = pagination_cache.get(book_id, book.chapters, font_size)
    spread = get_spread_pages(pagination.chapter_pages, chapter_index, page)
    word_starts = chapter_word_starts(chapter.content)
    timestamps = chapter.timestamps()

    current = find_active_word_index(timestamps, time) if playing else -1

    left = highlight_page(spread.left_page, current, playing, theme, word_starts)
    right = highlight_page(spread.right_page, current, playing, theme, word_starts)

    active_word = None
    for item in left + right:
        for span in item.words:
            if span.is_current:
                active_word = span.text

    following = next_spread(pagination.chapter_pages, chapter_index, page)

    return {
        "current_word_index": current,
        "active_word": active_word,
        "has_timestamps": bool(timestamps),
        "left_html": render_page_html(left),
        "right_html": render_page_html(right),
        "span_count": sum(len(item.words) for item in left + right),
        "turn_page": should_turn_page(
            current,
            spread.left_page + spread.right_page,
            following is not None,
            is_playing=playing,
            sync_enabled=sync,
            word_starts=word_starts,
        ),
        "next": following,
    }


@app.get("/api/books/{book_id}/chapters/{chapter_index}/seek")
async def seek_position(book_id: str, chapter_index: int, time: float,
                        font_size: str = DEFAULT_FONT_SIZE):
    """Spread to show after seeking the narration to a time."""
    book = get_book_or_404(book_id)
    chapter = get_chapter_or_404(book, chapter_index)
    check_font_size(font_size)

    timestamps = chapter.timestamps()
    word_index = find_word_index_by_time(timestamps, time)
    word_starts = chapter_word_starts(chapter.content)

    paginated = pagination_cache.get(book_id, book.chapters, font_size).chapter_pages[chapter_index]
    char_pos = 0
    if word_index >= 0 and word_starts:
        # Alignment may report more words than the text holds
        char_pos = word_starts[min(word_index, len(word_starts) - 1)]
    page = page_index_for_char_pos(paginated.pages, char_pos)

    return {
        "word_index": word_index,
        "char_index": char_pos,
        "page": page,
        "spread_page": page - page % 2,
    }


@app.put("/api/books/{book_id}/chapters/{chapter_index}/audio")
async def set_chapter_audio(book_id: str, chapter_index: int, request: Request):
    """Attach narration produced elsewhere to a chapter."""
    book = get_book_or_404(book_id)
    chapter = get_chapter_or_404(book, chapter_index)
    data = await read_json_object(request)

    audio_url = data.get("audioUrl")
    if not audio_url:
        raise HTTPException(status_code=400, detail="audioUrl is required")

    if audio_url != chapter.audio_url:
        # Old timestamps belong to the old recording
        chapter.audio_timestamps = None
    chapter.audio_url = audio_url
    chapter.audio_duration = data.get("audioDuration")

    update_book(os.path.basename(book_id), book)
    return {"status": "updated", "chapter": chapter.to_dict(include_content=False)}


@app.post("/api/generate/audio/alignment")
async def generate_alignment(request: Request):
    """Backfill word timestamps for a chapter's existing audio."""
    data = await read_json_object(request)
    chapter_id = data.get("chapterId")
    if not chapter_id:
        raise HTTPException(status_code=400, detail="Chapter ID is required")

    found = find_chapter_by_id(str(chapter_id))
    if not found:
        raise HTTPException(status_code=404, detail="Chapter not found")
    book_id, book, chapter = found

    if not chapter.audio_url:
        raise HTTPException(status_code=400, detail="Chapter has no audio URL")

    result = await align_audio(chapter.audio_url, alignment_settings.get_settings())
    if not result.get("success"):
        print(f"Alignment failed for chapter {chapter_id}: {result.get('error')}")
        raise HTTPException(status_code=500, detail=result.get("error", "Failed to generate alignment"))

    chapter.audio_timestamps = result["audio_timestamps"]
    update_book(book_id, book)
    print(f"Saved {result['count']} word timestamps for chapter {chapter_id}")

    return {
        "success": True,
        "count": result["count"],
        "audioTimestamps": result["audio_timestamps"],
    }


@app.get("/api/alignment/settings")
async def get_alignment_settings():
    return alignment_settings.to_public_dict()


@app.put("/api/alignment/settings")
async def update_alignment_settings(request: Request):
    data = await read_json_object(request)
    allowed = {"server_url", "model", "api_key_env", "timeout_seconds"}
    alignment_settings.update_settings(**{k: v for k, v in data.items() if k in allowed})
    return alignment_settings.to_public_dict()


# ============================================================================
# Page Timing API
# ============================================================================


@app.get("/api/books/{book_id}/chapters/{chapter_index}/timing")
async def get_chapter_timing(book_id: str, chapter_index: int, font_size: str = DEFAULT_FONT_SIZE):
    """When each page of a chapter is on screen during narration."""
    book = get_book_or_404(book_id)
    chapter = get_chapter_or_404(book, chapter_index)
    check_font_size(font_size)

    timestamps = chapter.timestamps()
    duration = chapter.audio_duration
    if duration is None:
        duration = timestamps[-1].end if timestamps else 0.0

    timing = calculate_chapter_timing(
        chapter_index, chapter.title, chapter.content, timestamps, duration, font_size
    )
    return {
        "chapter_index": timing.chapter_index,
        "chapter_title": timing.chapter_title,
        "total_pages": timing.total_pages,
        "audio_duration": timing.audio_duration,
        "pages": [vars(p) for p in timing.pages],
        "flip_transitions": [vars(f) for f in timing.flip_transitions],
    }


@app.get("/api/books/{book_id}/video-manifest")
async def get_video_manifest(book_id: str, font_size: str = DEFAULT_FONT_SIZE,
                             theme: str = DEFAULT_THEME):
    book = get_book_or_404(book_id)
    check_font_size(font_size)
    check_theme(theme)

    manifest = calculate_book_timing(
        book_id, book.metadata.title, book.metadata.author, book.chapters, font_size, theme
    )
    return manifest.to_dict()


# ============================================================================
# Reading State API
# ============================================================================


@app.get("/api/reading-state/{book_id}")
async def get_reading_state(book_id: str):
    """Saved reading position and preferences for a book."""
    return {
        "book_id": book_id,
        "saved": state_store.get_blob(book_id),
        "state": state_store.get_state(book_id).to_dict(),
    }


@app.post("/api/reading-state/{book_id}")
async def save_reading_state(book_id: str, request: Request):
    """Merge new values into a book's saved state."""
    data = await read_json_object(request)

    blob = state_store.merge_state(book_id, data)
    return {"status": "saved", "saved": blob}
