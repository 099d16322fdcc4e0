"""End-to-end pipeline runs with stub providers."""
import asyncio
import json

import pytest

from conftest import StubFactory, StubLLM, analysis_json, make_scenes
from extraction.models import CharacterAppearance, Setting
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.stages import DocumentNotFoundError
from pipeline.state_machine import InvalidTransitionError
from providers.exceptions import ProviderCredentialError, ProviderRateLimitError
from test_text_extractor import STORY, write_epub

SCENE_PROMPT = "Analyze this scene from a book"
DEDUP_PROMPT = "Analyze if these are the same character"
PROFILE_PROMPT = "COMPREHENSIVE visual profile"

SCENES = [
    "Scene one. Mary crossed the square while Tom watched from the bakery.",
    "Scene two. Mary argued with Tom about the flour delivery.",
    "Scene three. BROKEN Mary sat alone by the well.",
    "Scene four. Tom carried sacks to the mill.",
    "Scene five. Mary and Tom shared bread at dusk.",
]

PROFILES = {
    "Mary": {
        "hair_color": "red",
        "build": "slender",
        "physical_description": "A tall woman with long red hair and a green cloak.",
        "visual_summary": "Tall redhead in a green cloak.",
    },
    "Tom": {
        "hair_color": "black",
        "build": "stocky",
        "physical_description": "A short stocky baker dusted with flour.",
        "visual_summary": "Stocky baker covered in flour.",
    },
}


def story_handler(broken=()):
    """Answers scene, dedup and profile prompts; scenes whose text holds a broken marker get prose."""

    def handler(prompt, options):
        if PROFILE_PROMPT in prompt:
            name = "Mary" if "Character: Mary" in prompt else "Tom"
            return json.dumps(PROFILES[name])
        if DEDUP_PROMPT in prompt:
            return json.dumps({"same": False, "confidence": 0.9, "reasoning": "different people"})
        if any(marker in prompt for marker in broken):
            return "I am unable to analyze this scene."
        characters = []
        if "Mary" in prompt:
            characters.append(("Mary", "tall woman with red hair"))
        if "Tom" in prompt:
            characters.append(("Tom", "short baker"))
        return analysis_json(*characters)

    return handler


def seed_document(db, texts=SCENES, status="scenes_detected"):
    document_id = db.insert_document("user-1", "/books/village.epub", f"hash-{len(texts)}", title="The Village")
    db.replace_scenes(document_id, make_scenes(texts), total_chapters=1,
                      total_words=sum(len(t.split()) for t in texts))
    db.update_document(document_id, status=status)
    return document_id


@pytest.fixture
def make_orchestrator(db, vector_store, no_backoff):
    def build(llm, factory=None):
        return PipelineOrchestrator(
            db=db,
            vector_store=vector_store,
            factory=factory or StubFactory(llm),
            queue_policies=no_backoff,
            api_call_delay=0,
            poll_interval=0.01,
        )
    return build


def test_scene_failure_then_retry_reaches_characters(db, make_orchestrator):
    document_id = seed_document(db)
    llm = StubLLM(story_handler(broken=("BROKEN",)))
    orchestrator = make_orchestrator(llm)

    assert orchestrator.enqueue_analysis(document_id, provider="ollama") is True
    asyncio.run(orchestrator.run_until_idle())

    status = orchestrator.get_status(document_id)
    assert status["status"] == "scenes_detected"
    assert status["current_step"] == "Analysis complete with 1 error(s)"
    assert status["scenes"] == {"completed": 4, "failed": 1}
    assert llm.count(SCENE_PROMPT) == 5

    failed = db.get_scenes(document_id, statuses=["failed"])
    assert "BROKEN" in failed[0]["text"]
    assert failed[0]["analysis_error"]

    llm.handler = story_handler()
    assert orchestrator.retry(document_id) == "analysis"
    asyncio.run(orchestrator.run_until_idle())

    # Completed scenes are never analyzed again
    assert llm.count(SCENE_PROMPT) == 6

    status = orchestrator.get_status(document_id)
    assert status["status"] == "characters_discovered"
    assert status["scenes"] == {"completed": 5}
    assert status["total_characters"] == 2
    assert status["error_message"] is None

    characters = {c.name: c for c in orchestrator.list_characters(document_id)}
    assert set(characters) == {"Mary", "Tom"}
    assert characters["Mary"].total_appearances == 4
    assert characters["Mary"].role == "protagonist"
    assert characters["Mary"].appearance.hair_color == "red"

    for character in characters.values():
        assert orchestrator.vector_store.get_vector(document_id, "character", character.id) is not None

    document = db.get_document(document_id)
    assert document["llm_provider"] == "stub"
    assert document["embedding_provider"] == "stub"

    jobs = {job["stage"]: job["status"] for job in status["jobs"]}
    assert jobs == {"analysis": "completed", "discovery": "completed"}


def test_completed_scene_keeps_analysis(db, make_orchestrator):
    document_id = seed_document(db)
    orchestrator = make_orchestrator(StubLLM(story_handler()))

    orchestrator.enqueue_analysis(document_id)
    asyncio.run(orchestrator.run_until_idle())

    scene = db.get_scenes(document_id)[0]
    assert scene["analysis_status"] == "completed"
    assert [c["name"] for c in scene["analysis"]["characters"]] == ["Mary", "Tom"]
    assert scene["analysis"]["timeOfDay"] == "morning"
    assert scene["image_prompt"].startswith("realistic digital art, Mary: tall woman with red hair")
    assert scene["analysis_provider"] == "stub"
    assert scene["analyzed_at"]


def test_limit_pauses_analysis(db, make_orchestrator):
    document_id = seed_document(db)
    llm = StubLLM(story_handler())
    orchestrator = make_orchestrator(llm)

    orchestrator.enqueue_analysis(document_id, limit=2)
    asyncio.run(orchestrator.run_until_idle())

    status = orchestrator.get_status(document_id)
    assert status["status"] == "scenes_detected"
    assert status["current_step"] == "Analysis paused with 3 scene(s) remaining"
    assert status["scenes"] == {"completed": 2, "pending": 3}
    assert llm.count(PROFILE_PROMPT) == 0


def test_rate_limit_retries_the_stage(db, make_orchestrator):
    document_id = seed_document(db)
    handler = story_handler()
    calls = {"n": 0}

    def flaky(prompt, options):
        if SCENE_PROMPT in prompt:
            calls["n"] += 1
            if calls["n"] == 2:
                raise ProviderRateLimitError("slow down", "stub")
        return handler(prompt, options)

    llm = StubLLM(flaky)
    orchestrator = make_orchestrator(llm)

    orchestrator.enqueue_analysis(document_id)
    asyncio.run(orchestrator.run_until_idle())

    # One completed scene, one throttled, then the second attempt does the remaining four
    assert calls["n"] == 6
    assert db.get_document(document_id)["status"] == "characters_discovered"
    assert orchestrator.queue.get_status("analysis", document_id).attempts == 2


def test_rate_limited_discovery_is_retried(db, make_orchestrator):
    document_id = seed_document(db)
    handler = story_handler()
    calls = {"n": 0}

    def flaky(prompt, options):
        if PROFILE_PROMPT in prompt:
            calls["n"] += 1
            if calls["n"] == 2:
                raise ProviderRateLimitError("slow down", "stub")
        return handler(prompt, options)

    orchestrator = make_orchestrator(StubLLM(flaky))
    orchestrator.enqueue_analysis(document_id)
    asyncio.run(orchestrator.run_until_idle())

    status = orchestrator.get_status(document_id)
    assert status["status"] == "characters_discovered"
    assert status["total_characters"] == 2
    assert orchestrator.queue.get_status("discovery", document_id).attempts == 2

    # Mary was stored before Tom's profile was throttled; the retry replaces her
    names = [c.name for c in orchestrator.list_characters(document_id)]
    assert sorted(names) == ["Mary", "Tom"]

    tom = next(c for c in orchestrator.list_characters(document_id) if c.name == "Tom")
    assert tom.appearance.hair_color == "black"


def test_credential_error_is_not_retried(db, make_orchestrator):
    document_id = seed_document(db)

    class NoKeyFactory(StubFactory):
        def create_llm(self, caller_id, provider=None, model=None):
            raise ProviderCredentialError("No Claude API key found. Set ANTHROPIC_API_KEY.", "claude")

    orchestrator = make_orchestrator(None, factory=NoKeyFactory(StubLLM(story_handler())))
    orchestrator.enqueue_analysis(document_id, provider="claude")
    asyncio.run(orchestrator.run_until_idle())

    document = db.get_document(document_id)
    assert document["status"] == "scenes_detected"
    assert "No Claude API key" in document["error_message"]

    job = orchestrator.queue.get_status("analysis", document_id)
    assert job.status == "failed"
    assert job.attempts == 1
    assert job.error_kind == "ProviderCredentialError"


def test_unhealthy_provider_leaves_scenes_pending(db, make_orchestrator):
    document_id = seed_document(db)
    orchestrator = make_orchestrator(StubLLM(story_handler(), healthy=False))

    orchestrator.enqueue_analysis(document_id)
    asyncio.run(orchestrator.run_until_idle())

    status = orchestrator.get_status(document_id)
    assert status["status"] == "scenes_detected"
    assert status["scenes"] == {"pending": 5}
    assert "not available" in status["error_message"]
    assert orchestrator.queue.get_status("analysis", document_id).attempts == 2


def test_enqueue_requires_entry_status(db, make_orchestrator):
    document_id = seed_document(db, status="uploading")
    orchestrator = make_orchestrator(StubLLM(story_handler()))

    with pytest.raises(InvalidTransitionError):
        orchestrator.enqueue_analysis(document_id)
    with pytest.raises(DocumentNotFoundError):
        orchestrator.enqueue_analysis("missing")


def test_enqueue_twice_is_a_noop(db, make_orchestrator):
    document_id = seed_document(db)
    orchestrator = make_orchestrator(StubLLM(story_handler()))

    assert orchestrator.enqueue_analysis(document_id) is True
    assert orchestrator.enqueue_analysis(document_id) is False


def test_retry_needs_a_retryable_status(db, make_orchestrator):
    document_id = seed_document(db, status="characters_discovered")
    orchestrator = make_orchestrator(StubLLM(story_handler()))

    with pytest.raises(InvalidTransitionError):
        orchestrator.retry(document_id)


def test_submit_segments_epub(tmp_path, db, make_orchestrator):
    path = tmp_path / "village.epub"
    paragraphs = STORY.split("\n\n")
    write_epub(path, [("Chapter One", paragraphs), ("Chapter Two", paragraphs)])

    llm = StubLLM(story_handler())
    orchestrator = make_orchestrator(llm)
    events = orchestrator.emitter.record()

    document = orchestrator.submit(str(path), "user-1")
    assert document["duplicate"] is False
    assert document["status"] == "uploading"

    asyncio.run(orchestrator.run_until_idle())

    status = orchestrator.get_status(document["id"])
    assert status["status"] == "scenes_detected"
    assert status["title"] == "The Quiet Village"
    assert status["total_chapters"] == 2
    assert status["total_scenes"] > 0
    assert status["scenes"] == {"pending": status["total_scenes"]}
    assert status["progress_percent"] == 100
    # Segmentation does not start analysis on its own
    assert llm.prompts == []

    statuses = [e.data["status"] for e in events if e.type == "status"]
    assert statuses == ["uploading", "parsing", "scenes_detected"]
    percents = [e.data["progress_percent"] for e in events if e.type == "progress"]
    assert percents == sorted(percents)
    complete = [e for e in events if e.type == "complete"]
    assert complete[0].data["stage"] == "segmentation"
    assert complete[0].data["chapters"] == 2

    again = orchestrator.submit(str(path), "user-1")
    assert again["duplicate"] is True
    assert again["id"] == document["id"]
    assert orchestrator.submit(str(path), "user-2")["duplicate"] is False


def test_unreadable_source_fails_document(tmp_path, db, make_orchestrator):
    path = tmp_path / "notes.txt"
    path.write_text("Not a book")
    orchestrator = make_orchestrator(StubLLM(story_handler()))

    document = orchestrator.submit(str(path), "user-1")
    asyncio.run(orchestrator.run_until_idle())

    status = orchestrator.get_status(document["id"])
    assert status["status"] == "failed"
    assert status["failed_stage"] == "segmentation"
    assert "Unsupported source format" in status["error_message"]

    assert orchestrator.retry(document["id"]) == "segmentation"
    assert db.get_document(document["id"])["status"] == "uploading"


def test_analysis_events(db, make_orchestrator):
    document_id = seed_document(db)
    orchestrator = make_orchestrator(StubLLM(story_handler()))
    events = orchestrator.emitter.record()

    orchestrator.enqueue_analysis(document_id)
    asyncio.run(orchestrator.run_until_idle())

    statuses = [e.data["status"] for e in events if e.type == "status"]
    assert statuses[:3] == ["analyzing", "analyzing", "analyzed"]
    assert statuses[-2:] == ["building_character_profiles", "characters_discovered"]

    stages = [e.data["stage"] for e in events if e.type == "complete"]
    assert stages == ["analysis", "discovery"]

    summary = [e for e in events if e.type == "complete"][1].data
    assert summary["characters_discovered"] == 2
    assert summary["embeddings"] == 2
    assert "embedding_error" not in summary
    assert all(e.document_id == document_id for e in events)


def test_character_similarity_and_edits(db, make_orchestrator):
    document_id = seed_document(db)
    orchestrator = make_orchestrator(StubLLM(story_handler()))
    orchestrator.enqueue_analysis(document_id)
    asyncio.run(orchestrator.run_until_idle())

    characters = {c.name: c for c in orchestrator.list_characters(document_id)}
    mary, tom = characters["Mary"], characters["Tom"]

    similar = orchestrator.find_similar_characters(mary.id, threshold=0.0)
    assert [match["character"].name for match in similar] == ["Tom"]
    assert 0.0 <= similar[0]["similarity"] < 1.0

    before = orchestrator.vector_store.get_vector(document_id, "character", mary.id)
    updated = asyncio.run(orchestrator.update_character_appearance(mary.id, CharacterAppearance(
        hair_color="silver",
        physical_description="An old woman with silver hair leaning on a cane.",
        visual_summary="Silver-haired elder with a cane.",
    )))
    assert updated.appearance.hair_color == "silver"
    assert orchestrator.vector_store.get_vector(document_id, "character", mary.id) != before

    assert orchestrator.delete_character(tom.id) is True
    assert orchestrator.get_character(tom.id) is None
    assert orchestrator.vector_store.get_vector(document_id, "character", tom.id) is None
    assert orchestrator.find_similar_characters(mary.id, threshold=0.0) == []
    assert orchestrator.delete_character(tom.id) is False


def test_settings_similarity(db, make_orchestrator):
    document_id = seed_document(db)
    orchestrator = make_orchestrator(StubLLM(story_handler()))
    settings = [
        Setting(id="mill", document_id=document_id, name="The Mill",
                description="An old water mill by the river", visual_keywords=["water wheel"]),
        Setting(id="bakery", document_id=document_id, name="The Bakery",
                description="A warm bakery by the square", visual_keywords=["ovens"]),
        Setting(id="well", document_id=document_id, name="The Well",
                description="A stone well by the river", visual_keywords=["bucket"]),
    ]

    assert asyncio.run(orchestrator.index_settings(document_id, settings)) == 3

    matches = orchestrator.find_similar_settings(document_id, "mill", threshold=0.0)
    assert {m["id"] for m in matches} == {"bakery", "well"}
    assert matches[0]["similarity"] >= matches[1]["similarity"]
    assert asyncio.run(orchestrator.index_settings(document_id, [])) == 0
