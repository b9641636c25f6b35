"""
Tests for book import.
"""

import os

import pytest
from bs4 import BeautifulSoup
from ebooklib import epub

from folio import (
    Book,
    BookMetadata,
    Chapter,
    clean_html_content,
    clean_text,
    detect_chapters,
    extract_text_metadata,
    html_to_paragraphs,
    process_book,
    process_epub,
    process_text,
    save_to_pickle,
)


class TestBookMetadata:
    """Tests for BookMetadata dataclass."""

    def test_author_joins_authors(self):
        metadata = BookMetadata(title="Test Book", authors=["Author One", "Author Two"])
        assert metadata.author == "Author One, Author Two"

    def test_unknown_author(self):
        assert BookMetadata(title="Test Book").author == "Unknown Author"


class TestChapter:
    """Tests for the Chapter dataclass."""

    def test_timestamps_are_parsed(self):
        chapter = Chapter(id="c1", number=1, title="One", content="Hi there",
                          audio_timestamps=[{"word": "Hi", "start": 0, "end": 0.3}])
        assert chapter.timestamps()[0].word == "Hi"
        assert chapter.to_dict()["hasTimestamps"] is True

    def test_malformed_timestamps_disable_highlighting(self):
        chapter = Chapter(id="c1", number=1, title="One", content="Hi",
                          audio_timestamps=[{"word": "Hi"}])
        assert chapter.timestamps() == []

    def test_to_dict_without_content(self):
        data = Chapter(id="c1", number=1, title="One", content="Hi").to_dict(include_content=False)
        assert "content" not in data
        assert data["audioUrl"] is None

    def test_book_lookup_and_word_count(self):
        book = Book(
            metadata=BookMetadata(title="B"),
            chapters=[
                Chapter(id="a", number=1, title="A", content="one two", word_count=2),
                Chapter(id="b", number=2, title="B", content="three", word_count=1),
            ],
            source_file="b.txt",
            processed_at="2024-01-01T00:00:00",
        )
        assert book.find_chapter("b").title == "B"
        assert book.find_chapter("missing") is None
        assert book.word_count == 3


class TestCleanText:
    """Tests for text normalisation."""

    def test_line_endings_and_spaces(self):
        assert clean_text("One  \t two\r\nthree\rfour") == "One two\nthree\nfour"

    def test_excess_blank_lines_are_collapsed(self):
        assert clean_text("a\n\n\n\n\n\nb") == "a\n\n\nb"

    def test_lines_are_stripped(self):
        assert clean_text("  indented\n\n   also  ") == "indented\n\nalso"


class TestHtmlConversion:
    """Tests for turning chapter HTML into paragraphs."""

    def test_dangerous_tags_are_removed(self):
        soup = BeautifulSoup("<div><p>Keep</p><script>alert(1)</script><img src='x.png'/></div>", "html.parser")
        cleaned = clean_html_content(soup)
        assert cleaned.find("script") is None
        assert cleaned.find("img") is None
        assert "Keep" in cleaned.get_text()

    def test_blocks_become_paragraphs(self):
        soup = BeautifulSoup("<body><h1>Title</h1><p>One <b>two</b></p><ul><li>three</li></ul></body>", "html.parser")
        assert html_to_paragraphs(soup) == "Title\n\nOne two\n\nthree"

    def test_nested_blocks_are_not_repeated(self):
        soup = BeautifulSoup("<blockquote><p>Quoted</p></blockquote>", "html.parser")
        assert html_to_paragraphs(soup) == "Quoted"

    def test_plain_markup_falls_back_to_lines(self):
        soup = BeautifulSoup("<div>first line<br/>second   line</div>", "html.parser")
        assert html_to_paragraphs(soup) == "first line\n\nsecond line"


class TestDetectChapters:
    """Tests for chapter detection in plain text."""

    def test_numbered_chapters(self):
        content = "Chapter 1\nIt began.\n\nChapter 2\nIt ended."
        chapters = detect_chapters(content)
        assert [c.title for c in chapters] == ["Chapter 1", "Chapter 2"]
        assert chapters[0].content == "It began."
        assert [c.number for c in chapters] == [1, 2]

    def test_titled_chapters(self):
        content = "CHAPTER ONE: The Start\nFirst.\n\nChapter Two - The Middle\nSecond."
        assert [c.title for c in detect_chapters(content)] == ["The Start", "The Middle"]

    def test_markdown_headings(self):
        content = "# Arrival\n\nThey came.\n\n## Departure\n\nThey left."
        chapters = detect_chapters(content)
        assert [c.title for c in chapters] == ["Arrival", "Departure"]
        assert chapters[1].content == "They left."

    def test_no_headings_gives_single_chapter(self):
        chapters = detect_chapters("Just some text.\n\nAnd more text.")
        assert len(chapters) == 1
        assert chapters[0].title == "Full Content"
        assert chapters[0].word_count == 6

    def test_long_preamble_becomes_introduction(self):
        preamble = " ".join(["word"] * 250)
        content = f"{preamble}\n\nChapter 1\nOne.\n\nChapter 2\nTwo."
        chapters = detect_chapters(content)
        assert [c.title for c in chapters] == ["Introduction", "Chapter 1", "Chapter 2"]

    def test_chapter_ids_are_unique(self):
        chapters = detect_chapters("Chapter 1\nA.\n\nChapter 2\nB.\n\nChapter 3\nC.")
        assert len({c.id for c in chapters}) == 3

    def test_empty_text(self):
        assert detect_chapters("") == []


class TestTextMetadata:
    """Tests for guessing metadata from text files."""

    def test_title_and_author(self):
        metadata = extract_text_metadata("My Novel\nby Jane Doe\n\nChapter 1", "novel.txt")
        assert metadata.title == "My Novel"
        assert metadata.authors == ["Jane Doe"]

    def test_title_from_file_name(self):
        metadata = extract_text_metadata("Chapter 1\nok", "/tmp/the_long-road.md")
        assert metadata.title == "the long road"
        assert metadata.author == "Unknown Author"


class TestProcessing:
    """Tests for whole-file imports."""

    def test_process_text(self, tmp_path):
        source = tmp_path / "novel.txt"
        source.write_text("My Novel\nby Jane Doe\n\nChapter 1\nIt began.\n\nChapter 2\nIt ended.\n",
                          encoding="utf-8")
        out_dir = str(tmp_path / "novel_data")

        book = process_text(str(source), out_dir)

        assert os.path.isdir(out_dir)
        assert book.metadata.title == "My Novel"
        assert book.metadata.author == "Jane Doe"
        assert len(book.chapters) == 2
        assert book.source_file == "novel.txt"

    def test_latin1_text(self, tmp_path):
        source = tmp_path / "cafe.txt"
        source.write_bytes("Un café au lait.".encode("latin-1"))
        book = process_text(str(source), str(tmp_path / "cafe_data"))
        assert "café" in book.chapters[0].content

    def test_empty_text_file_fails(self, tmp_path):
        source = tmp_path / "empty.txt"
        source.write_text("   \n\n", encoding="utf-8")
        with pytest.raises(ValueError):
            process_text(str(source), str(tmp_path / "empty_data"))

    def test_unsupported_type(self, tmp_path):
        with pytest.raises(ValueError):
            process_book(str(tmp_path / "book.pdf"), str(tmp_path / "book_data"))

    def test_process_epub(self, tmp_path):
        """Test importing an EPUB built on the fly."""
        book = epub.EpubBook()
        book.set_identifier("folio-test")
        book.set_title("Built Book")
        book.set_language("en")
        book.add_author("Ada Writer")

        first = epub.EpubHtml(title="Intro", file_name="chap_01.xhtml", lang="en")
        first.content = "<h1>Intro</h1><p>Hello there.</p><p>Second paragraph.</p>"
        second = epub.EpubHtml(title="Finale", file_name="chap_02.xhtml", lang="en")
        second.content = "<h1>Finale</h1><p>Goodbye.</p>"
        book.add_item(first)
        book.add_item(second)
        book.toc = (epub.Link("chap_01.xhtml", "Intro", "intro"),
                    epub.Link("chap_02.xhtml", "Finale", "finale"))
        book.add_item(epub.EpubNcx())
        book.add_item(epub.EpubNav())
        book.spine = [first, second]

        path = str(tmp_path / "built.epub")
        epub.write_epub(path, book)

        result = process_epub(path, str(tmp_path / "built_data"))

        assert result.metadata.title == "Built Book"
        assert result.metadata.authors == ["Ada Writer"]
        assert [c.title for c in result.chapters] == ["Intro", "Finale"]
        assert "Hello there.\n\nSecond paragraph." in result.chapters[0].content

    def test_save_to_pickle(self, tmp_path):
        book = Book(metadata=BookMetadata(title="P"), chapters=[], source_file="p.txt",
                    processed_at="2024-01-01T00:00:00")
        save_to_pickle(book, str(tmp_path))
        assert os.path.exists(tmp_path / "book.pkl")
