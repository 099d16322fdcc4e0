"""PDF text extraction module."""
import fitz  # PyMuPDF
import re
from pathlib import Path
from typing import List, Tuple
from utils.logger import setup_logger
from ingestion.models import BookMetadata, ChapterSource
from ingestion.cleaner import clean_text
from ingestion.epub_extractor import ExtractionError

logger = setup_logger(__name__)

# Patterns for chapter headings
CHAPTER_HEADING_PATTERNS = [
    re.compile(r'^Chapter\s+(\d+|[IVXLCDM]+)\b.*$', re.IGNORECASE),
    re.compile(r'^Part\s+(\d+|[IVXLCDM]+)\b.*$', re.IGNORECASE),
    re.compile(r'^(Prologue|Epilogue)\b.*$', re.IGNORECASE),
]


class PDFExtractor:
    """Extracts chapter sections from PDF books."""

    def read(self, pdf_path: str) -> Tuple[BookMetadata, List[ChapterSource]]:
        """Extract clean text from a PDF, split on chapter headings.

        Args:
            pdf_path: Path to PDF file

        Returns:
            Book metadata and heading-delimited sections

        Raises:
            ExtractionError: If extraction fails or PDF has no text
        """
        pdf_path = Path(pdf_path)

        if not pdf_path.exists():
            raise ExtractionError(f"PDF file not found: {pdf_path}")

        logger.info(f"Extracting text from {pdf_path.name}")

        try:
            doc = fitz.open(pdf_path)
        except Exception as e:
            raise ExtractionError(f"Failed to open PDF: {e}")

        if doc.page_count == 0:
            raise ExtractionError("PDF has no pages")

        pages = [doc[page_num].get_text() for page_num in range(doc.page_count)]
        pdf_meta = doc.metadata or {}
        doc.close()

        # Check if PDF has extractable text
        if len(''.join(pages).strip()) < 100:
            raise ExtractionError(
                "PDF appears to contain no extractable text. "
                "This may be a scanned image PDF. Please use an OCR'd version."
            )

        raw_text = clean_text('\n\n'.join(pages))

        metadata = BookMetadata(
            title=pdf_meta.get('title') or pdf_path.stem,
            author=pdf_meta.get('author') or None,
        )

        sections = self.split_sections(raw_text)
        logger.info(f"Extracted {len(pages)} pages, {len(sections)} sections")

        return metadata, sections

    def split_sections(self, text: str) -> List[ChapterSource]:
        """Split document text into sections at chapter heading lines.

        Text before the first heading becomes an untitled section, which
        the chapter filter usually drops as front matter.
        """
        sections: List[ChapterSource] = []
        title = None
        lines: List[str] = []

        def flush():
            body = '\n'.join(lines).strip()
            if body:
                sections.append(ChapterSource(
                    id=f"section-{len(sections) + 1}",
                    title=title,
                    text=body,
                ))

        for line in text.split('\n'):
            stripped = line.strip()
            if any(pattern.match(stripped) for pattern in CHAPTER_HEADING_PATTERNS):
                flush()
                title = stripped
                lines = []
            else:
                lines.append(line)

        flush()
        return sections
