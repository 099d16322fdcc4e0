"""Text cleaning utilities."""
import re
from typing import List

from bs4 import BeautifulSoup


def clean_text(text: str) -> str:
    """Clean extracted text by normalizing whitespace and fixing common issues.

    Args:
        text: Raw extracted text

    Returns:
        Cleaned text with paragraphs separated by a single blank line
    """
    # Remove excessive whitespace while preserving paragraph breaks
    text = re.sub(r'\n\s*\n\s*\n+', '\n\n', text)

    # Fix hyphenated line breaks (words split across lines)
    text = re.sub(r'(\w+)-\s*\n\s*(\w+)', r'\1\2', text)

    # Normalize whitespace within lines
    text = re.sub(r'[ \t]+', ' ', text)

    # Remove leading/trailing whitespace from each line
    lines = [line.strip() for line in text.split('\n')]
    text = '\n'.join(lines)

    return text.strip()


BLOCK_TAGS = [
    "p", "div", "section", "article", "blockquote", "li",
    "h1", "h2", "h3", "h4", "h5", "h6",
]
BLOCK_BREAK = "\x00"


def html_to_plain_text(html: str) -> str:
    """Convert chapter HTML to plain text.

    Block elements and line breaks become paragraph boundaries separated
    by blank lines so the segmenter can split on them. Text outside any
    block element is kept.

    Args:
        html: XHTML content of one spine document

    Returns:
        Plain text
    """
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style"]):
        tag.decompose()

    root = soup.body or soup

    for br in root.find_all("br"):
        br.replace_with(BLOCK_BREAK)

    for block in root.find_all(BLOCK_TAGS):
        block.insert_before(BLOCK_BREAK)
        block.append(BLOCK_BREAK)

    paragraphs = [" ".join(chunk.split()) for chunk in root.get_text().split(BLOCK_BREAK)]
    text = "\n\n".join(p for p in paragraphs if p)

    return clean_text(text)


def count_words(text: str) -> int:
    """Count whitespace-separated words."""
    return len(text.split())


def split_paragraphs(text: str) -> List[str]:
    """Split text on blank lines, dropping empty paragraphs."""
    return [p.strip() for p in re.split(r'\n\s*\n+', text) if p.strip()]
