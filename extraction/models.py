"""Pydantic models for character discovery."""
from pydantic import BaseModel, Field
from typing import List, Literal, Optional

from providers.llm import NOT_SPECIFIED

CharacterRole = Literal["protagonist", "supporting", "minor"]


class CharacterMention(BaseModel):
    """One character observation from one analyzed scene."""
    scene_id: str
    scene_index_global: int
    chapter_number: int
    scene_number: int
    name: str
    description: str = ""


class CharacterGroup(BaseModel):
    """Mentions believed to refer to one narrative identity."""
    primary_name: str
    aliases: List[str] = Field(default_factory=list)
    mentions: List[CharacterMention] = Field(default_factory=list)

    @property
    def total_appearances(self) -> int:
        return len(self.mentions)

    @property
    def first_scene_id(self) -> Optional[str]:
        if not self.mentions:
            return None
        return min(self.mentions, key=lambda m: m.scene_index_global).scene_id


class CharacterAppearance(BaseModel):
    """Synthesized visual profile. Unknown attributes hold NOT_SPECIFIED."""
    # Build & proportions
    height: str = NOT_SPECIFIED
    build: str = NOT_SPECIFIED
    body_type: str = NOT_SPECIFIED
    bust_size: str = NOT_SPECIFIED
    shoulders: str = NOT_SPECIFIED

    # Face
    face_shape: str = NOT_SPECIFIED
    eye_color: str = NOT_SPECIFIED
    eye_shape: str = NOT_SPECIFIED
    eyebrows: str = NOT_SPECIFIED
    nose: str = NOT_SPECIFIED
    lips: str = NOT_SPECIFIED
    jawline: str = NOT_SPECIFIED
    cheekbones: str = NOT_SPECIFIED

    # Hair
    hair_color: str = NOT_SPECIFIED
    hair_style: str = NOT_SPECIFIED
    hair_texture: str = NOT_SPECIFIED
    hair_length: str = NOT_SPECIFIED
    facial_hair: str = NOT_SPECIFIED

    # Skin
    skin_tone: str = NOT_SPECIFIED
    ethnicity: str = NOT_SPECIFIED
    complexion: str = NOT_SPECIFIED

    # Age
    age: str = NOT_SPECIFIED
    age_appearance: str = NOT_SPECIFIED

    # Distinctive features
    distinctive_features: List[str] = Field(default_factory=list)
    tattoos: List[str] = Field(default_factory=list)
    piercings: List[str] = Field(default_factory=list)

    # Style
    typical_clothing: str = NOT_SPECIFIED
    clothing_colors: List[str] = Field(default_factory=list)
    accessories: List[str] = Field(default_factory=list)
    overall_style: str = NOT_SPECIFIED

    # Bearing & voice
    posture: str = NOT_SPECIFIED
    gait: str = NOT_SPECIFIED
    voice: str = NOT_SPECIFIED
    accent: str = NOT_SPECIFIED

    # Summaries
    physical_description: str
    visual_summary: str


class DeduplicationResult(BaseModel):
    """LLM verdict on whether two character groups are the same person."""
    same: bool = False
    confidence: float = 0.0
    reasoning: str = "No reasoning provided"


class Character(BaseModel):
    """Persisted character read model."""
    id: str
    document_id: str
    name: str
    aliases: List[str] = Field(default_factory=list)
    role: CharacterRole = "minor"
    appearance: CharacterAppearance
    first_appearance_scene_id: Optional[str] = None
    total_appearances: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Setting(BaseModel):
    """A recurring location, embedded alongside characters."""
    id: str
    document_id: str
    name: str
    description: Optional[str] = None
    visual_keywords: List[str] = Field(default_factory=list)
