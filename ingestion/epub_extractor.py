"""EPUB text extraction module."""
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import ebooklib
from ebooklib import epub
from bs4 import BeautifulSoup

from utils.logger import setup_logger
from ingestion.cleaner import html_to_plain_text
from ingestion.models import BookMetadata, ChapterSource

logger = setup_logger(__name__)


class ExtractionError(Exception):
    """Raised when a source document cannot be read. Not retried."""

    retryable = False


class EpubExtractor:
    """Reads EPUB metadata and spine documents in reading order."""

    def read(self, epub_path: str) -> Tuple[BookMetadata, List[ChapterSource]]:
        """Read an EPUB file.

        Args:
            epub_path: Path to EPUB file

        Returns:
            Book metadata and one source section per spine document

        Raises:
            ExtractionError: If the file is missing or not a readable EPUB
        """
        epub_path = Path(epub_path)

        if not epub_path.exists():
            raise ExtractionError(f"EPUB file not found: {epub_path}")

        logger.info(f"Extracting text from {epub_path.name}")

        try:
            book = epub.read_epub(str(epub_path))
        except Exception as e:
            raise ExtractionError(f"Failed to open EPUB: {e}")

        metadata = self._read_metadata(book, fallback_title=epub_path.stem)
        toc_titles = self._toc_titles(book.toc)

        sections = []
        for idref, _linear in book.spine:
            item = book.get_item_with_id(idref)
            if item is None or item.get_type() != ebooklib.ITEM_DOCUMENT:
                continue

            try:
                html = item.get_content().decode("utf-8", errors="replace")
            except Exception as e:
                logger.warning(f"Error extracting spine item {idref}: {e}")
                continue

            title = toc_titles.get(item.get_name()) or self._first_heading(html)
            sections.append(ChapterSource(
                id=item.get_id(),
                title=title,
                text=html_to_plain_text(html),
            ))

        return metadata, sections

    def _read_metadata(self, book: epub.EpubBook, fallback_title: str) -> BookMetadata:
        def first(name: str) -> Optional[str]:
            values = book.get_metadata("DC", name)
            if values and values[0][0]:
                return str(values[0][0]).strip()
            return None

        isbn = None
        for value, attrs in book.get_metadata("DC", "identifier"):
            scheme = (attrs or {}).get("{http://www.idpf.org/2007/opf}scheme", "")
            if scheme.lower() == "isbn" or str(value).lower().startswith("urn:isbn:"):
                isbn = str(value).split(":")[-1]
                break

        has_cover = any(True for _ in book.get_items_of_type(ebooklib.ITEM_COVER))

        return BookMetadata(
            title=first("title") or fallback_title,
            author=first("creator"),
            language=first("language") or "en",
            isbn=isbn,
            publisher=first("publisher"),
            pubdate=first("date"),
            description=first("description"),
            has_cover=has_cover,
        )

    def _toc_titles(self, toc) -> Dict[str, str]:
        """Map spine file names to table-of-contents titles."""
        titles: Dict[str, str] = {}

        for entry in toc:
            if isinstance(entry, tuple):
                section, children = entry
                href = getattr(section, "href", None)
                if href:
                    titles.setdefault(href.split("#")[0], section.title)
                titles.update({k: v for k, v in self._toc_titles(children).items() if k not in titles})
            elif isinstance(entry, epub.Link):
                titles.setdefault(entry.href.split("#")[0], entry.title)

        return titles

    def _first_heading(self, html: str) -> Optional[str]:
        soup = BeautifulSoup(html, "html.parser")
        heading = soup.find(["h1", "h2", "h3"])
        if heading:
            text = heading.get_text(" ", strip=True)
            return text or None
        return None
