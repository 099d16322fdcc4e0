"""LLM provider contract and the scene analysis shared by all vendors."""
import json
import re
from typing import Any, List, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from utils.logger import setup_logger
from providers.credentials import key_hint
from providers.exceptions import (
    MalformedResponseError,
    ProviderCredentialError,
    ProviderError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderUnavailableError,
)

logger = setup_logger(__name__)

NOT_SPECIFIED = "not specified"


def is_specified(value: Any) -> bool:
    """False for None, blank strings and any casing of the "not specified" sentinel."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip()) and value.strip().lower() != NOT_SPECIFIED
    return bool(value)


class GenerateOptions(BaseModel):
    """Per-call overrides for generate()."""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    format: Literal["json", "text"] = "text"


class SceneCharacter(BaseModel):
    """A character as seen in one scene."""
    name: str
    description: str = ""


class SceneAnalysis(BaseModel):
    """Structured analysis of one scene."""
    model_config = ConfigDict(populate_by_name=True)

    characters: List[SceneCharacter] = Field(default_factory=list)
    setting: str = NOT_SPECIFIED
    time_of_day: Optional[str] = Field(default=None, alias="timeOfDay")
    weather: Optional[str] = None
    mood: str = "neutral"
    visual_elements: List[str] = Field(default_factory=list, alias="visualElements")
    key_actions: List[str] = Field(default_factory=list, alias="keyActions")


class LLMProvider(Protocol):
    """Capability every LLM vendor implementation provides."""

    name: str
    model: str

    async def generate(self, prompt: str, options: Optional[GenerateOptions] = None) -> str:
        ...

    async def analyze_scene(self, scene_text: str, chapter_title: Optional[str] = None) -> SceneAnalysis:
        ...

    async def check_health(self) -> bool:
        ...

    async def aclose(self) -> None:
        ...


# Retries inside one call cover network blips only; everything else is
# left to the stage queue's retry policy.
transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception_type(ProviderUnavailableError),
    reraise=True,
)


async def analyze_scene_with(
    provider: LLMProvider,
    prompt: str,
) -> SceneAnalysis:
    """Run an analysis prompt in JSON mode and normalize the result.

    Raises:
        MalformedResponseError: Response is not a JSON object
        ProviderError: Any provider failure from generate()
    """
    response = await provider.generate(prompt, GenerateOptions(format="json"))
    data = parse_json_response(response)
    return normalize_scene_analysis(data)


def parse_json_response(response_text: str) -> Any:
    """Parse JSON from a model response.

    Accepts bare JSON, fenced code blocks, reasoning-model ``<think>``
    preambles and JSON surrounded by prose.

    Raises:
        MalformedResponseError: If no valid JSON can be extracted
    """
    text = re.sub(r"<think>.*?</think>", "", response_text or "", flags=re.DOTALL).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    extracted = None
    if "```json" in text:
        extracted = text.split("```json", 1)[1].split("```")[0].strip()
    elif "```" in text:
        parts = text.split("```")
        if len(parts) >= 3:
            extracted = parts[1].strip()

    if extracted:
        try:
            return json.loads(extracted)
        except json.JSONDecodeError:
            pass

    # Last resort: outermost object or array
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if starts:
        start = min(starts)
        end_char = "}" if text[start] == "{" else "]"
        end = text.rfind(end_char)
        if end > start:
            try:
                return json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                pass

    logger.error(f"Could not extract valid JSON from response. First 500 chars: {text[:500]}")
    raise MalformedResponseError("Could not parse JSON from model response")


def normalize_scene_analysis(data: Any) -> SceneAnalysis:
    """Coerce a parsed analysis into SceneAnalysis.

    Missing or wrongly typed fields fall back to defaults instead of
    failing the scene; only a non-object payload is rejected.
    """
    if not isinstance(data, dict):
        raise MalformedResponseError("Scene analysis is not a JSON object")

    characters = []
    raw_characters = data.get("characters")
    if isinstance(raw_characters, list):
        for entry in raw_characters:
            if isinstance(entry, dict) and isinstance(entry.get("name"), str) and entry["name"].strip():
                description = entry.get("description")
                characters.append(SceneCharacter(
                    name=entry["name"].strip(),
                    description=description.strip() if isinstance(description, str) else "",
                ))
            elif isinstance(entry, str) and entry.strip():
                characters.append(SceneCharacter(name=entry.strip()))

    def text_or(value: Any, default: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and value.strip() and value.strip().lower() != "null":
            return value.strip()
        return default

    def string_list(value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]

    return SceneAnalysis(
        characters=characters,
        setting=text_or(data.get("setting"), NOT_SPECIFIED) if is_specified(data.get("setting")) else NOT_SPECIFIED,
        time_of_day=text_or(data.get("timeOfDay", data.get("time_of_day")), None),
        weather=text_or(data.get("weather"), None),
        mood=text_or(data.get("mood"), "neutral"),
        visual_elements=string_list(data.get("visualElements", data.get("visual_elements"))),
        key_actions=string_list(data.get("keyActions", data.get("key_actions"))),
    )


def build_image_prompt(analysis: SceneAnalysis, style: str = "realistic digital art") -> str:
    """Short comma-joined visual prompt summarizing an analyzed scene."""
    parts = [style]

    if analysis.characters:
        parts.append(", ".join(
            f"{c.name}: {c.description}" if c.description else c.name
            for c in analysis.characters
        ))
    if is_specified(analysis.setting):
        parts.append(analysis.setting)
    if analysis.time_of_day:
        parts.append(analysis.time_of_day)
    if analysis.weather:
        parts.append(analysis.weather)
    if analysis.mood:
        parts.append(f"{analysis.mood} atmosphere")
    parts.extend(analysis.visual_elements[:3])

    return ", ".join(parts)


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Translate an HTTP error response into the provider error taxonomy."""
    if response.is_success:
        return

    detail = _error_detail(response)

    if response.status_code in (401, 403):
        raise ProviderCredentialError(
            f"{provider} API key is invalid or lacks access. {key_hint(provider)}",
            provider,
        )
    if response.status_code == 429:
        raise ProviderRateLimitError(f"{provider} API rate limit exceeded", provider)
    if response.status_code >= 500:
        raise ProviderUnavailableError(
            f"{provider} API error {response.status_code}: {detail}", provider
        )
    raise ProviderRequestError(f"{provider} API error {response.status_code}: {detail}", provider)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.text[:200]


def transport_error(provider: str, error: Exception) -> ProviderError:
    """Wrap an httpx transport failure."""
    return ProviderUnavailableError(f"{provider} is unreachable: {error}", provider)
