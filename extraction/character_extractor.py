"""Character mention extraction and two-phase deduplication."""
from typing import Any, Dict, Iterable, List

from utils.logger import setup_logger
from extraction.models import CharacterGroup, CharacterMention, DeduplicationResult
from extraction.prompts import same_character_prompt
from providers.exceptions import MalformedResponseError
from providers.llm import GenerateOptions, LLMProvider, parse_json_response
import config

logger = setup_logger(__name__)


def extract_mentions(scenes: Iterable[Dict[str, Any]]) -> List[CharacterMention]:
    """Materialize one mention per character listed in each completed scene.

    Args:
        scenes: Scene rows with ``analysis`` already decoded to a dict

    Returns:
        Mentions ordered by global scene index
    """
    completed = [s for s in scenes if s.get("analysis_status") == "completed"]
    completed.sort(key=lambda s: s["scene_index_global"])

    mentions = []
    for scene in completed:
        analysis = scene.get("analysis")
        if not isinstance(analysis, dict):
            continue

        for character in analysis.get("characters") or []:
            if not isinstance(character, dict):
                continue
            name = (character.get("name") or "").strip()
            if not name:
                continue
            mentions.append(CharacterMention(
                scene_id=scene["id"],
                scene_index_global=scene["scene_index_global"],
                chapter_number=scene["chapter_number"],
                scene_number=scene["scene_number"],
                name=name,
                description=(character.get("description") or "").strip(),
            ))

    logger.info(f"Extracted {len(mentions)} character mentions from {len(completed)} analyzed scenes")
    return mentions


def group_by_exact_name(mentions: List[CharacterMention]) -> List[CharacterGroup]:
    """Phase 1: case-insensitive exact name grouping.

    Groups keep first-seen order and the casing of their first mention.
    """
    groups: Dict[str, CharacterGroup] = {}
    for mention in mentions:
        key = mention.name.lower()
        if key not in groups:
            groups[key] = CharacterGroup(primary_name=mention.name)
        groups[key].mentions.append(mention)
    return list(groups.values())


def name_similarity(name1: str, name2: str) -> float:
    """Cheap name similarity used to skip obviously different pairs.

    Containment scores 0.8; otherwise the share of words in common
    relative to the longer name.
    """
    n1 = name1.lower().strip()
    n2 = name2.lower().strip()

    if n1 in n2 or n2 in n1:
        return 0.8

    words1 = n1.split()
    words2 = n2.split()
    shared = [w for w in words1 if w in words2]
    if shared:
        return len(shared) / max(len(words1), len(words2))

    return 0.0


class CharacterDeduplicator:
    """Merges character groups that refer to the same narrative identity."""

    def __init__(
        self,
        llm: LLMProvider,
        confidence_threshold: float = config.DEDUP_CONFIDENCE_THRESHOLD,
        name_similarity_cutoff: float = config.NAME_SIMILARITY_CUTOFF,
        ambiguous_floor: float = config.DEDUP_AMBIGUOUS_FLOOR,
        sample_size: int = config.DEDUP_SAMPLE_MENTIONS,
    ):
        """Initialize deduplicator.

        Args:
            llm: Provider used for same-character verdicts
            confidence_threshold: Merge only above this confidence
            name_similarity_cutoff: Pairs below this never reach the LLM
            ambiguous_floor: Unmerged verdicts at or above this are logged as ambiguous
            sample_size: Mentions per side shown to the LLM
        """
        self.llm = llm
        self.confidence_threshold = confidence_threshold
        self.name_similarity_cutoff = name_similarity_cutoff
        self.ambiguous_floor = ambiguous_floor
        self.sample_size = sample_size
        self.llm_calls = 0

    async def deduplicate(self, mentions: List[CharacterMention]) -> List[CharacterGroup]:
        """Run exact grouping followed by semantic merging."""
        groups = group_by_exact_name(mentions)
        logger.info(f"Phase 1: {len(mentions)} mentions -> {len(groups)} exact name groups")

        merged = await self.merge_groups(groups)
        logger.info(f"Phase 2: {len(groups)} groups -> {len(merged)} unique characters")
        return merged

    async def merge_groups(self, groups: List[CharacterGroup]) -> List[CharacterGroup]:
        """Phase 2: pairwise merge in index order.

        Group i absorbs every later group j judged to be the same person.
        An absorbed group is never compared again.
        """
        groups = [group.model_copy(deep=True) for group in groups]
        absorbed = set()
        result = []

        for i, current in enumerate(groups):
            if i in absorbed:
                continue

            for j in range(i + 1, len(groups)):
                if j in absorbed:
                    continue
                candidate = groups[j]

                similarity = name_similarity(current.primary_name, candidate.primary_name)
                if similarity < self.name_similarity_cutoff:
                    continue

                verdict = await self.are_same_character(current, candidate)
                logger.info(
                    f'"{current.primary_name}" vs "{candidate.primary_name}": '
                    f'{"SAME" if verdict.same else "different"} (confidence: {verdict.confidence})'
                )

                if verdict.same and verdict.confidence > self.confidence_threshold:
                    self._absorb(current, candidate)
                    absorbed.add(j)
                elif verdict.confidence >= self.ambiguous_floor and verdict.same:
                    logger.warning(
                        f'Ambiguous match kept separate: "{current.primary_name}" / '
                        f'"{candidate.primary_name}" (confidence {verdict.confidence}): {verdict.reasoning}'
                    )

            result.append(current)

        return result

    @staticmethod
    def _absorb(target: CharacterGroup, source: CharacterGroup) -> None:
        aliases = target.aliases + [source.primary_name] + source.aliases
        seen = set()
        target.aliases = []
        for alias in aliases:
            key = alias.lower()
            if key == target.primary_name.lower() or key in seen:
                continue
            seen.add(key)
            target.aliases.append(alias)

        target.mentions = sorted(
            target.mentions + source.mentions,
            key=lambda m: m.scene_index_global,
        )

    async def are_same_character(
        self,
        group_a: CharacterGroup,
        group_b: CharacterGroup,
    ) -> DeduplicationResult:
        """Ask the LLM whether two groups are one person.

        An unparseable answer counts as "not the same". Provider errors
        propagate so the stage can be retried.
        """
        self.llm_calls += 1
        prompt = same_character_prompt(group_a, group_b, self.sample_size)

        response = await self.llm.generate(prompt, GenerateOptions(format="json", temperature=0.3))
        try:
            data = parse_json_response(response)
        except MalformedResponseError as e:
            logger.warning(f"Deduplication check failed for {group_a.primary_name} / {group_b.primary_name}: {e}")
            return DeduplicationResult(same=False, confidence=0.0, reasoning="Error during deduplication")

        if not isinstance(data, dict):
            return DeduplicationResult(same=False, confidence=0.0, reasoning="Error during deduplication")

        confidence = data.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = 0.5

        return DeduplicationResult(
            same=data.get("same") is True,
            confidence=min(max(float(confidence), 0.0), 1.0),
            reasoning=str(data.get("reasoning") or "No reasoning provided"),
        )
