"""Pydantic models for ingestion module."""
from pydantic import BaseModel, Field
from typing import List, Dict, Any, Literal, Optional


SceneType = Literal["narrative", "dialogue", "action", "description", "transition"]


class BookMetadata(BaseModel):
    """Metadata read from the source document."""
    title: str = "Untitled"
    author: Optional[str] = None
    language: str = "en"
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    pubdate: Optional[str] = None
    description: Optional[str] = None
    has_cover: bool = False


class Chapter(BaseModel):
    """A chapter kept after front/back matter filtering."""
    id: str
    title: str
    number: int
    content: str  # Plain text, paragraphs separated by blank lines
    word_count: int


class ExtractedBook(BaseModel):
    """Represents an unpacked source document."""
    metadata: BookMetadata
    chapters: List[Chapter] = Field(default_factory=list)

    @property
    def word_count(self) -> int:
        return sum(chapter.word_count for chapter in self.chapters)


class DetectedScene(BaseModel):
    """Represents a scene produced by the segmenter."""
    chapter_number: int
    chapter_title: str
    scene_number: int  # 1-based within the chapter
    scene_index_global: int  # 0-based across the document
    text: str
    word_count: int
    has_dialogue: bool
    scene_type: SceneType
    character_count: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for database insertion."""
        return {
            'document_id': '',  # Will be set by caller
            'chapter_number': self.chapter_number,
            'chapter_title': self.chapter_title,
            'scene_number': self.scene_number,
            'scene_index_global': self.scene_index_global,
            'text': self.text,
            'word_count': self.word_count,
            'has_dialogue': int(self.has_dialogue),
            'scene_type': self.scene_type,
            'character_count': self.character_count,
        }


class ChapterSource(BaseModel):
    """A raw spine document or heading-delimited section before filtering."""
    id: str
    title: Optional[str] = None
    text: str
