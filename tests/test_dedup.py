"""Test mention extraction and character deduplication."""
import asyncio
import json

import pytest

from conftest import StubLLM
from extraction.character_extractor import (
    CharacterDeduplicator,
    extract_mentions,
    group_by_exact_name,
    name_similarity,
)
from extraction.models import CharacterMention
from providers.exceptions import ProviderCredentialError, ProviderRateLimitError, ProviderUnavailableError


def mention(name, index, description="dark cloak"):
    return CharacterMention(
        scene_id=f"s{index}",
        scene_index_global=index,
        chapter_number=1,
        scene_number=index + 1,
        name=name,
        description=description,
    )


def verdict(same=True, confidence=0.9):
    return lambda prompt, options: json.dumps({"same": same, "confidence": confidence, "reasoning": "stub"})


def test_extract_mentions_only_completed_scenes():
    scenes = [
        {"id": "b", "scene_index_global": 1, "chapter_number": 1, "scene_number": 2,
         "analysis_status": "completed",
         "analysis": {"characters": [{"name": "Tom", "description": "short"}]}},
        {"id": "a", "scene_index_global": 0, "chapter_number": 1, "scene_number": 1,
         "analysis_status": "completed",
         "analysis": {"characters": [{"name": " Mary "}, {"name": ""}, "junk"]}},
        {"id": "c", "scene_index_global": 2, "chapter_number": 1, "scene_number": 3,
         "analysis_status": "failed", "analysis": None},
    ]

    mentions = extract_mentions(scenes)

    assert [(m.scene_id, m.name, m.description) for m in mentions] == [
        ("a", "Mary", ""),
        ("b", "Tom", "short"),
    ]


def test_group_by_exact_name_is_case_insensitive():
    groups = group_by_exact_name([mention("Mary", 0), mention("Tom", 1), mention("MARY", 2)])

    assert [g.primary_name for g in groups] == ["Mary", "Tom"]
    assert groups[0].total_appearances == 2
    assert groups[0].first_scene_id == "s0"


def test_name_similarity():
    assert name_similarity("Jon", "Jon Snow") == 0.8
    assert name_similarity("Lord Snow", "Jon Snow") == 0.5
    assert name_similarity("Mary", "Tom") == 0.0


@pytest.mark.parametrize("confidence, merged", [(0.9, True), (0.65, False), (0.3, False)])
def test_merge_depends_on_confidence(confidence, merged):
    llm = StubLLM(verdict(True, confidence))
    dedup = CharacterDeduplicator(llm)

    groups = asyncio.run(dedup.deduplicate([mention("Jon", 0), mention("Jon Snow", 1)]))

    assert dedup.llm_calls == 1
    if merged:
        assert len(groups) == 1
        assert groups[0].primary_name == "Jon"
        assert groups[0].aliases == ["Jon Snow"]
        assert groups[0].total_appearances == 2
    else:
        assert [g.primary_name for g in groups] == ["Jon", "Jon Snow"]


def test_dissimilar_names_skip_the_llm():
    llm = StubLLM(verdict(True, 1.0))
    dedup = CharacterDeduplicator(llm)

    groups = asyncio.run(dedup.deduplicate([mention("Mary", 0), mention("Tom", 1)]))

    assert len(groups) == 2
    assert dedup.llm_calls == 0
    assert llm.prompts == []


def test_absorbed_group_is_not_compared_again():
    llm = StubLLM(verdict(True, 0.95))
    dedup = CharacterDeduplicator(llm)

    groups = asyncio.run(dedup.deduplicate([
        mention("Jon Snow", 0), mention("Jon", 1), mention("Snow", 2),
    ]))

    assert len(groups) == 1
    assert groups[0].aliases == ["Jon", "Snow"]
    # Jon Snow/Jon and Jon Snow/Snow only
    assert dedup.llm_calls == 2
    assert [m.scene_index_global for m in groups[0].mentions] == [0, 1, 2]


def test_deduplication_is_idempotent():
    llm = StubLLM(verdict(True, 0.95))
    dedup = CharacterDeduplicator(llm)

    first = asyncio.run(dedup.deduplicate([mention("Jon", 0), mention("Jon Snow", 1), mention("Mary", 2)]))
    second = asyncio.run(dedup.merge_groups(first))

    assert [g.model_dump() for g in second] == [g.model_dump() for g in first]


def test_merge_groups_does_not_mutate_input():
    llm = StubLLM(verdict(True, 0.95))
    groups = group_by_exact_name([mention("Jon", 0), mention("Jon Snow", 1)])

    asyncio.run(CharacterDeduplicator(llm).merge_groups(groups))

    assert groups[0].aliases == []
    assert len(groups[0].mentions) == 1


def test_malformed_verdict_means_different():
    llm = StubLLM(lambda prompt, options: "no idea")

    groups = asyncio.run(CharacterDeduplicator(llm).deduplicate([mention("Jon", 0), mention("Jon Snow", 1)]))

    assert len(groups) == 2


def test_missing_confidence_defaults_to_half():
    llm = StubLLM(lambda prompt, options: json.dumps({"same": True}))
    dedup = CharacterDeduplicator(llm)

    result = asyncio.run(dedup.are_same_character(
        group_by_exact_name([mention("Jon", 0)])[0],
        group_by_exact_name([mention("Jon Snow", 1)])[0],
    ))

    assert result.same is True
    assert result.confidence == 0.5


@pytest.mark.parametrize("error", [
    ProviderCredentialError("bad key", "stub"),
    ProviderRateLimitError("slow down", "stub"),
    ProviderUnavailableError("down", "stub"),
])
def test_provider_errors_propagate(error):
    def handler(prompt, options):
        raise error

    with pytest.raises(type(error)):
        asyncio.run(CharacterDeduplicator(StubLLM(handler)).deduplicate(
            [mention("Jon", 0), mention("Jon Snow", 1)]
        ))


def test_prompt_samples_at_most_five_mentions():
    llm = StubLLM(verdict(False, 0.1))
    mentions = [mention("Jon", i, description=f"desc {i}") for i in range(7)] + [mention("Jon Snow", 7)]

    asyncio.run(CharacterDeduplicator(llm).deduplicate(mentions))

    assert "desc 4" in llm.prompts[0]
    assert "desc 5" not in llm.prompts[0]
    assert "... and 2 more appearances" in llm.prompts[0]
