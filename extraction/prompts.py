"""LLM prompt templates for character deduplication and profile synthesis."""
from typing import List

from extraction.models import CharacterGroup, CharacterMention


def _format_mentions(mentions: List[CharacterMention], limit: int, separator: str = "\n") -> str:
    lines = [
        f"{i + 1}. Scene {m.chapter_number}.{m.scene_number}: {m.description}"
        for i, m in enumerate(mentions[:limit])
    ]
    text = separator.join(lines)
    if len(mentions) > limit:
        text += f"{separator}... and {len(mentions) - limit} more appearances"
    return text


def same_character_prompt(group_a: CharacterGroup, group_b: CharacterGroup, sample_size: int = 5) -> str:
    """Generate prompt asking whether two character groups are one person.

    Args:
        group_a: Earlier group
        group_b: Later group
        sample_size: Mentions shown per group

    Returns:
        Formatted prompt string
    """
    return f"""Analyze if these are the same character from a book. Consider all available descriptions.

Character A: "{group_a.primary_name}"
Appearances:
{_format_mentions(group_a.mentions, sample_size)}

Character B: "{group_b.primary_name}"
Appearances:
{_format_mentions(group_b.mentions, sample_size)}

Analyze if these are the same person. Consider:
- Name similarity (e.g., "Jon" vs "Jon Snow" vs "Lord Snow")
- Physical description consistency
- Context and role in the story

Return ONLY a JSON object:
{{
  "same": true or false,
  "confidence": 0.0 to 1.0 (how confident you are),
  "reasoning": "Brief explanation of your decision"
}}"""


def character_profile_prompt(group: CharacterGroup, sample_size: int = 10) -> str:
    """Generate prompt that synthesizes every mention into one visual profile.

    Args:
        group: Deduplicated character group
        sample_size: Mentions included in the prompt

    Returns:
        Formatted prompt string
    """
    aliases = f"Also known as: {', '.join(group.aliases)}\n" if group.aliases else ""

    return f"""You are analyzing multiple mentions of a character across different scenes.
Create a COMPREHENSIVE visual profile by synthesizing all descriptions.

Character: {group.primary_name}
{aliases}
All Mentions ({group.total_appearances} total):
{_format_mentions(group.mentions, sample_size, separator=chr(10) * 2)}

Extract and synthesize into a detailed JSON profile with the following structure.
Use "not specified" for details not mentioned in the text.

{{
  "height": "specific measurement or relative (tall/short/average)",
  "build": "body type (athletic/slender/muscular/heavyset/etc)",
  "body_type": "overall physique",
  "bust_size": "if mentioned for female characters",
  "shoulders": "broad/narrow/etc",

  "face_shape": "oval/round/angular/square/heart-shaped/etc",
  "eye_color": "specific color",
  "eye_shape": "almond/round/hooded/deep-set/etc",
  "eyebrows": "thick/thin/arched/straight/bushy",
  "nose": "straight/aquiline/button/roman/etc",
  "lips": "full/thin/bow-shaped/wide",
  "jawline": "strong/soft/defined/rounded",
  "cheekbones": "high/prominent/soft",

  "hair_color": "specific color",
  "hair_style": "how it's worn",
  "hair_texture": "straight/wavy/curly/kinky/coiled",
  "hair_length": "specific length",
  "facial_hair": "if applicable",

  "skin_tone": "pale/fair/olive/tan/brown/dark",
  "ethnicity": "inferred from descriptions",
  "complexion": "smooth/weathered/freckled/scarred",

  "age": "specific or estimated range",
  "age_appearance": "youthful/mature/weathered beyond years",

  "distinctive_features": ["all unique marks, scars, features mentioned"],
  "tattoos": ["if mentioned"],
  "piercings": ["if mentioned"],

  "typical_clothing": "what they usually wear",
  "clothing_colors": ["color palette"],
  "accessories": ["jewelry, weapons, items carried"],
  "overall_style": "regal/rugged/elegant/practical/flamboyant/etc",

  "posture": "how they carry themselves",
  "gait": "how they walk/move",
  "voice": "if mentioned - tone, quality",
  "accent": "if mentioned - speech pattern",

  "physical_description": "Comprehensive 3-4 sentence paragraph describing the entire appearance",
  "visual_summary": "Concise 2-3 sentence description optimized for image generation prompts"
}}

CRITICAL INSTRUCTIONS:
- Synthesize consistent details from multiple mentions
- Prioritize first appearance descriptions for baseline
- Note any variations across scenes (but pick most common)
- If a detail isn't mentioned, use "not specified"
- Ensure physical_description and visual_summary are complete sentences

Return ONLY the JSON object."""
