"""
Imports books (EPUB, plain text, Markdown) into a structured object that the
reader server paginates and narrates.
"""

import os
import pickle
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Optional
import hashlib

import ebooklib
from ebooklib import epub
from bs4 import BeautifulSoup, Comment

from audio_sync import AudioTimestamp, parse_timestamps

# --- Data structures ---

@dataclass
class Chapter:
    """
    One chapter of a book. Content is plain text with paragraphs separated
    by blank lines, which is what the paginator expects.
    """
    id: str
    number: int                # 1-based
    title: str
    content: str
    word_count: int = 0
    status: str = "completed"  # draft, completed
    audio_url: Optional[str] = None
    audio_duration: Optional[float] = None
    audio_timestamps: Optional[List[dict]] = None  # As returned by the alignment service

    def timestamps(self) -> List[AudioTimestamp]:
        """Parsed word timestamps, empty when missing or malformed."""
        return parse_timestamps(self.audio_timestamps)

    def to_dict(self, include_content: bool = True) -> dict:
        data = {
            "id": self.id,
            "number": self.number,
            "title": self.title,
            "wordCount": self.word_count,
            "status": self.status,
            "audioUrl": self.audio_url,
            "audioDuration": self.audio_duration,
            "hasTimestamps": bool(self.timestamps()),
        }
        if include_content:
            data["content"] = self.content
        return data


@dataclass
class BookMetadata:
    """Metadata"""
    title: str
    language: str = "en"
    authors: List[str] = field(default_factory=list)
    description: Optional[str] = None

    @property
    def author(self) -> str:
        return ", ".join(self.authors) if self.authors else "Unknown Author"


@dataclass
class Book:
    """The Master Object to be pickled."""
    metadata: BookMetadata
    chapters: List[Chapter]

    # Meta info
    source_file: str
    processed_at: str
    version: str = "1.0"

    def find_chapter(self, chapter_id: str) -> Optional[Chapter]:
        for chapter in self.chapters:
            if chapter.id == chapter_id:
                return chapter
        return None

    @property
    def word_count(self) -> int:
        return sum(c.word_count for c in self.chapters)


# --- Utilities ---

BLOCK_TAGS = ['p', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'li', 'blockquote', 'pre', 'dd', 'dt']

# Chapter headings recognised in plain text imports
NUMBER_WORDS = (
    r"one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve"
    r"|\w+teen|\w+ty(?:-\w+)?"
)
CHAPTER_PATTERNS = [
    # "Chapter 1", "CHAPTER ONE: Title", "Ch. 3 - Title"
    re.compile(rf"^(?:chapter|ch\.?)\s*(\d+|[ivxlcdm]+|{NUMBER_WORDS})\s*(?:[:.\-–—]\s*(.*))?$", re.I),
    # "Part 1", "PART II"
    re.compile(rf"^part\s*(\d+|[ivxlcdm]+|{NUMBER_WORDS})\s*(?:[:.\-–—]\s*(.*))?$", re.I),
    # Markdown headings
    re.compile(r"^(#{1,2})\s+(.+)$"),
]


def generate_id(seed: str = "") -> str:
    """Generate a unique ID."""
    return hashlib.md5(
        f"{seed}-{datetime.now().isoformat()}-{os.urandom(8).hex()}".encode()
    ).hexdigest()[:12]


def count_words(text: str) -> int:
    return len(text.split())


def clean_text(text: str) -> str:
    """Normalize line endings and whitespace, keeping paragraph breaks."""
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n{4,}', '\n\n\n', text)
    return '\n'.join(line.strip() for line in text.split('\n')).strip()


def clean_html_content(soup: BeautifulSoup) -> BeautifulSoup:

    # Remove dangerous/useless tags
    for tag in soup(['script', 'style', 'iframe', 'video', 'nav', 'form', 'button', 'img', 'svg']):
        tag.decompose()

    # Remove HTML comments
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    return soup


def html_to_paragraphs(soup: BeautifulSoup) -> str:
    """
    Turn cleaned chapter HTML into plain text with one blank line between
    block elements. Falls back to the raw text lines when the document has
    no block markup.
    """
    paragraphs = []
    for block in soup.find_all(BLOCK_TAGS):
        # Only leaf blocks, so nested lists/quotes aren't emitted twice
        if block.find(BLOCK_TAGS):
            continue
        text = ' '.join(block.get_text(separator=' ').split())
        if text:
            paragraphs.append(text)

    if not paragraphs:
        text = soup.get_text(separator='\n')
        paragraphs = [' '.join(line.split()) for line in text.split('\n') if line.strip()]

    return '\n\n'.join(paragraphs)


def flatten_toc(toc_list) -> Dict[str, str]:
    """
    Map file name -> first TOC title pointing at it.
    ebooklib TOC items are Links, Sections, or (Section, [children]) tuples.
    """
    titles = {}

    def visit(items):
        for item in items:
            if isinstance(item, tuple):
                section, children = item
                href = getattr(section, 'href', None)
                if href:
                    titles.setdefault(href.split('#')[0], section.title)
                visit(children)
            elif isinstance(item, (epub.Link, epub.Section)):
                if item.href:
                    titles.setdefault(item.href.split('#')[0], item.title)

    visit(toc_list)
    return titles


def extract_metadata_robust(book_obj) -> BookMetadata:
    """
    Extracts metadata handling both single and list values.
    """
    def get_list(key):
        data = book_obj.get_metadata('DC', key)
        return [x[0] for x in data] if data else []

    def get_one(key):
        data = book_obj.get_metadata('DC', key)
        return data[0][0] if data else None

    return BookMetadata(
        title=get_one('title') or "Untitled",
        language=get_one('language') or "en",
        authors=get_list('creator'),
        description=get_one('description'),
    )


def extract_text_metadata(content: str, file_name: str) -> BookMetadata:
    """Guess title and author from the first lines of a text file."""
    title = ""
    author = ""

    for line in content.split('\n')[:5]:
        line = line.strip().lstrip('#').strip()
        if len(line) <= 2 or len(line) >= 150 or re.match(r'^(chapter|part|section)', line, re.I):
            continue
        if not title:
            title = line
            continue
        if line.lower().startswith('by '):
            author = line[3:].strip()
            break
        if re.match(r'^[A-Z][a-z]+\s+[A-Z][a-z]+$', line):
            author = line
            break

    if not title:
        title = os.path.splitext(os.path.basename(file_name))[0]
        title = ' '.join(title.replace('-', ' ').replace('_', ' ').split())

    return BookMetadata(title=title, authors=[author] if author else [])


def detect_chapters(content: str) -> List[Chapter]:
    """
    Split text on chapter headings. With fewer than two headings the whole
    text becomes a single chapter.
    """
    lines = content.split('\n')
    markers = []

    for i, line in enumerate(lines):
        line = line.strip()
        if not line or len(line) > 200:
            continue
        for pattern in CHAPTER_PATTERNS:
            match = pattern.match(line)
            if not match:
                continue
            # A heading must be followed by content within two lines
            following = [l for l in lines[i + 1:i + 3] if l.strip()]
            if following:
                heading_title = (match.group(2) or '').strip() or line
                markers.append((i, heading_title))
            break

    chapters = []
    if len(markers) >= 2:
        bounds = markers + [(len(lines), None)]
        for (start, title), (end, _) in zip(bounds, bounds[1:]):
            body = '\n'.join(lines[start + 1:end]).strip()
            if body:
                chapters.append((title, body))

        preamble = '\n'.join(lines[:markers[0][0]]).strip()
        if count_words(preamble) > 200:
            chapters.insert(0, ("Introduction", preamble))

    if len(chapters) < 2:
        chapters = [("Full Content", content.strip())] if content.strip() else []

    return [
        Chapter(
            id=generate_id(title),
            number=number,
            title=title,
            content=body,
            word_count=count_words(body),
        )
        for number, (title, body) in enumerate(chapters, start=1)
    ]


# --- Main Conversion Logic ---

def _prepare_output_dir(output_dir: str):
    if os.path.exists(output_dir):
        shutil.rmtree(output_dir)
    os.makedirs(output_dir, exist_ok=True)


def read_text_file(path: str) -> str:
    with open(path, 'rb') as f:
        raw = f.read()
    text = raw.decode('utf-8', errors='replace')
    if '\ufffd' in text:
        text = raw.decode('latin-1')
    return text


def process_text(text_path: str, output_dir: str) -> Book:
    """Process a .txt or .md file into a Book."""
    print(f"Loading {text_path}...")
    content = clean_text(read_text_file(text_path))
    if not content:
        raise ValueError("No text content could be extracted from the file.")

    _prepare_output_dir(output_dir)

    print("Detecting chapters...")
    chapters = detect_chapters(content)

    return Book(
        metadata=extract_text_metadata(content, text_path),
        chapters=chapters,
        source_file=os.path.basename(text_path),
        processed_at=datetime.now().isoformat(),
    )


def process_epub(epub_path: str, output_dir: str) -> Book:

    # 1. Load Book
    print(f"Loading {epub_path}...")
    book = epub.read_epub(epub_path)

    # 2. Extract Metadata
    metadata = extract_metadata_robust(book)

    # 3. Prepare Output Directory
    _prepare_output_dir(output_dir)

    # 4. Chapter titles from the TOC
    print("Parsing Table of Contents...")
    toc_titles = flatten_toc(book.toc)

    # 5. Process Content (spine order is reading order)
    print("Processing chapters...")
    chapters = []

    for item_id, _linear in book.spine:
        item = book.get_item_with_id(item_id)
        if not item or item.get_type() != ebooklib.ITEM_DOCUMENT:
            continue

        raw_content = item.get_content().decode('utf-8', errors='ignore')
        soup = clean_html_content(BeautifulSoup(raw_content, 'html.parser'))
        body = soup.find('body') or soup
        text = html_to_paragraphs(body)

        if not text:
            continue

        number = len(chapters) + 1
        heading = body.find(['h1', 'h2', 'h3'])
        title = (
            toc_titles.get(item.get_name())
            or (heading.get_text(strip=True) if heading else "")
            or f"Chapter {number}"
        )

        chapters.append(Chapter(
            id=generate_id(item_id),
            number=number,
            title=title,
            content=text,
            word_count=count_words(text),
        ))

    return Book(
        metadata=metadata,
        chapters=chapters,
        source_file=os.path.basename(epub_path),
        processed_at=datetime.now().isoformat(),
    )


def process_book(path: str, output_dir: str) -> Book:
    """Dispatch on file extension."""
    suffix = os.path.splitext(path)[1].lower()
    if suffix == '.epub':
        return process_epub(path, output_dir)
    if suffix in ('.txt', '.md', '.markdown'):
        return process_text(path, output_dir)
    raise ValueError(f"Unsupported file type: {suffix}")


def save_to_pickle(book: Book, output_dir: str):
    p_path = os.path.join(output_dir, 'book.pkl')
    with open(p_path, 'wb') as f:
        pickle.dump(book, f)
    print(f"Saved structured data to {p_path}")


# --- CLI ---

if __name__ == "__main__":

    import sys
    if len(sys.argv) < 2:
        print("Usage: python folio.py <file.epub|file.txt|file.md>")
        sys.exit(1)

    book_file = sys.argv[1]
    assert os.path.exists(book_file), "File not found."
    out_dir = os.path.splitext(book_file)[0] + "_data"

    book_obj = process_book(book_file, out_dir)
    save_to_pickle(book_obj, out_dir)
    print("\n--- Summary ---")
    print(f"Title: {book_obj.metadata.title}")
    print(f"Author: {book_obj.metadata.author}")
    print(f"Chapters: {len(book_obj.chapters)}")
    print(f"Words: {book_obj.word_count}")
