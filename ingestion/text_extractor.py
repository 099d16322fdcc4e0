"""Source document unpacking into filtered, numbered chapters."""
import re
from pathlib import Path
from typing import List

from utils.logger import setup_logger
from ingestion.cleaner import count_words
from ingestion.epub_extractor import EpubExtractor, ExtractionError
from ingestion.models import Chapter, ChapterSource, ExtractedBook
from ingestion.pdf_extractor import PDFExtractor
import config

logger = setup_logger(__name__)


def is_front_matter(
    title: str,
    text: str,
    min_chars: int = config.MIN_CHAPTER_CHARS
) -> bool:
    """Heuristic for navigation, copyright and similar non-story pages."""
    if len(text.strip()) < min_chars:
        return True
    normalized = title.strip().lower()
    return any(re.search(pattern, normalized) for pattern in config.FRONT_MATTER_TITLES)


def build_chapters(
    sections: List[ChapterSource],
    min_chars: int = config.MIN_CHAPTER_CHARS
) -> List[Chapter]:
    """Filter front/back matter and number the remaining chapters.

    Chapter numbers are assigned after filtering, so they are always
    consecutive from 1.
    """
    chapters: List[Chapter] = []

    for position, section in enumerate(sections, start=1):
        title = section.title or f"Chapter {position}"

        if is_front_matter(title, section.text, min_chars):
            logger.info(f"Skipping non-story section: {title} ({len(section.text.strip())} chars)")
            continue

        chapters.append(Chapter(
            id=section.id,
            title=title,
            number=len(chapters) + 1,
            content=section.text,
            word_count=count_words(section.text),
        ))

    return chapters


class TextExtractor:
    """Unpacks EPUB or PDF sources into an ExtractedBook."""

    def __init__(self, min_chapter_chars: int = config.MIN_CHAPTER_CHARS):
        self.min_chapter_chars = min_chapter_chars
        self.epub = EpubExtractor()
        self.pdf = PDFExtractor()

    def extract(self, path: str) -> ExtractedBook:
        """Extract metadata and story chapters.

        Raises:
            ExtractionError: Unsupported format or unreadable file
        """
        suffix = Path(path).suffix.lower()

        if suffix == ".epub":
            metadata, sections = self.epub.read(path)
        elif suffix == ".pdf":
            metadata, sections = self.pdf.read(path)
        else:
            raise ExtractionError(f"Unsupported source format: {suffix or 'unknown'}")

        chapters = build_chapters(sections, self.min_chapter_chars)

        if not chapters:
            raise ExtractionError("No story chapters found in source document")

        book = ExtractedBook(metadata=metadata, chapters=chapters)
        logger.info(
            f"Extracted '{metadata.title}': {len(chapters)} chapters, "
            f"{book.word_count} words"
        )
        return book
