"""Text fed to embedding providers for characters and settings."""
from typing import Any, List, Optional

from extraction.models import NOT_SPECIFIED, Character, Setting

KEY_ATTRIBUTES = [
    "height",
    "build",
    "age",
    "hair_color",
    "hair_style",
    "eye_color",
    "skin_tone",
    "ethnicity",
    "typical_clothing",
]


def _present(value: Optional[Any]) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip()) and value.strip().lower() != NOT_SPECIFIED
    return bool(value)


def character_embedding_text(character: Character) -> str:
    """Name, aliases, role, summaries, key attributes and distinctive features."""
    parts: List[str] = [f"Name: {character.name}"]

    if character.aliases:
        parts.append(f"Also known as: {', '.join(character.aliases)}")
    if character.role:
        parts.append(f"Role: {character.role}")

    appearance = character.appearance
    for summary in (appearance.physical_description, appearance.visual_summary):
        if _present(summary):
            parts.append(summary)

    attributes = [getattr(appearance, name) for name in KEY_ATTRIBUTES]
    attributes = [value for value in attributes if _present(value)]
    if attributes:
        parts.append(", ".join(attributes))

    features = [f for f in appearance.distinctive_features if _present(f)]
    if features:
        parts.append(f"Distinctive: {', '.join(features)}")

    return ". ".join(parts)


def setting_embedding_text(setting: Setting) -> str:
    parts = [f"Location: {setting.name}"]

    if _present(setting.description):
        parts.append(setting.description)

    keywords = [k for k in setting.visual_keywords if _present(k)]
    if keywords:
        parts.append(f"Visual elements: {', '.join(keywords)}")

    return ". ".join(parts)
