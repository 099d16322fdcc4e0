"""Character profile synthesis from grouped mentions."""
import re
from typing import Any, Dict

from utils.logger import setup_logger
from extraction.models import NOT_SPECIFIED, CharacterAppearance, CharacterGroup, CharacterRole
from extraction.prompts import character_profile_prompt
from providers.exceptions import MalformedResponseError
from providers.llm import GenerateOptions, LLMProvider, is_specified, parse_json_response
import config

logger = setup_logger(__name__)

LIST_FIELDS = {
    name for name, field in CharacterAppearance.model_fields.items()
    if field.annotation is not str
}


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def normalize_appearance(data: Dict[str, Any]) -> CharacterAppearance:
    """Build a total CharacterAppearance from a raw LLM profile.

    Keys may be camelCase or snake_case. Missing, empty or wrongly typed
    attributes become "not specified" (or an empty list).

    Raises:
        ValueError: If either summary field is missing
    """
    values = {_snake_case(key): value for key, value in data.items()}
    profile = {}

    for name in CharacterAppearance.model_fields:
        value = values.get(name)
        if name in LIST_FIELDS:
            if isinstance(value, str):
                value = [value]
            items = value if isinstance(value, list) else []
            profile[name] = [
                str(item).strip() for item in items
                if is_specified(str(item))
            ]
        elif isinstance(value, str) and is_specified(value):
            profile[name] = value.strip()
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            profile[name] = str(value)
        else:
            profile[name] = NOT_SPECIFIED

    for required in ("physical_description", "visual_summary"):
        if profile[required] == NOT_SPECIFIED:
            raise ValueError(f"Missing required description field: {required}")

    return CharacterAppearance(**profile)


def fallback_appearance(group: CharacterGroup) -> CharacterAppearance:
    """Minimal profile built from the first mention's raw description."""
    description = ""
    if group.mentions:
        first = min(group.mentions, key=lambda m: m.scene_index_global)
        description = first.description
    description = description or f"{group.primary_name}. No description available."

    return CharacterAppearance(
        physical_description=description,
        visual_summary=description[:200],
    )


def determine_role(total_appearances: int, total_scenes: int) -> CharacterRole:
    """Role from the share of scenes a character appears in."""
    if total_scenes <= 0:
        return "minor"

    frequency = total_appearances / total_scenes
    if frequency > config.ROLE_PROTAGONIST_RATIO:
        return "protagonist"
    if frequency > config.ROLE_SUPPORTING_RATIO:
        return "supporting"
    return "minor"


class ProfileSynthesizer:
    """Merges all mentions of one character into one visual profile."""

    def __init__(self, llm: LLMProvider, sample_size: int = config.PROFILE_SAMPLE_MENTIONS):
        self.llm = llm
        self.sample_size = sample_size

    async def synthesize(self, group: CharacterGroup) -> CharacterAppearance:
        """Synthesize a profile with one LLM call.

        Falls back to the first mention's description when the response
        cannot be parsed into a profile. Provider errors propagate.
        """
        logger.info(f"Building profile for: {group.primary_name} ({group.total_appearances} appearances)")
        prompt = character_profile_prompt(group, self.sample_size)

        try:
            response = await self.llm.generate(
                prompt,
                GenerateOptions(format="json", temperature=0.5, max_tokens=3000),
            )
            data = parse_json_response(response)
            if not isinstance(data, dict):
                raise ValueError("Profile is not a JSON object")
            return normalize_appearance(data)
        except (MalformedResponseError, ValueError) as e:
            logger.warning(f"Using fallback profile for {group.primary_name}: {e}")
            return fallback_appearance(group)
