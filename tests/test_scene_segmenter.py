"""Test scene segmentation and classification."""
from ingestion.models import Chapter
from ingestion.scene_segmenter import (
    SceneSegmenter,
    classify_scene,
    estimate_character_count,
    extract_speaker,
    has_dialogue,
    is_scene_break,
)


def make_chapter(content: str, number: int = 1) -> Chapter:
    return Chapter(
        id=f"ch{number}",
        title=f"Chapter {number}",
        number=number,
        content=content,
        word_count=len(content.split()),
    )


def test_narrative_paragraphs_become_separate_scenes():
    chapter = make_chapter(
        "The road wound through the hills.\n\n"
        "Smoke rose from the chimneys below."
    )

    scenes = SceneSegmenter().segment_chapter(chapter)

    assert len(scenes) == 2
    assert [s.scene_number for s in scenes] == [1, 2]
    assert scenes[0].text == "The road wound through the hills."


def test_same_speaker_dialogue_is_grouped():
    chapter = make_chapter(
        '"We leave at dawn," Mary said.\n\n'
        '"Pack light," Mary said.\n\n'
        '"Why so early?" asked Tom.'
    )

    scenes = SceneSegmenter().segment_chapter(chapter)

    assert len(scenes) == 2
    assert "Pack light" in scenes[0].text
    assert scenes[1].text.startswith('"Why so early?"')
    assert scenes[0].has_dialogue


def test_scene_breaks_are_dropped():
    chapter = make_chapter(
        "The house was quiet.\n\n"
        "* * *\n\n"
        "Morning came slowly."
    )

    scenes = SceneSegmenter().segment_chapter(chapter)

    assert len(scenes) == 2
    assert all("*" not in s.text for s in scenes)


def test_break_marker_ends_a_dialogue_group():
    chapter = make_chapter(
        '"Stay here," Mary said.\n\n'
        "***\n\n"
        '"I will," Mary said.'
    )

    scenes = SceneSegmenter().segment_chapter(chapter)

    assert len(scenes) == 2


def test_global_indices_are_contiguous_across_chapters():
    chapters = [
        make_chapter("First.\n\nSecond.", number=1),
        make_chapter("Third.\n\nFourth.\n\nFifth.", number=2),
    ]

    scenes = SceneSegmenter().segment(chapters)

    assert [s.scene_index_global for s in scenes] == [0, 1, 2, 3, 4]
    assert [s.scene_number for s in scenes] == [1, 2, 1, 2, 3]
    assert [s.chapter_number for s in scenes] == [1, 1, 2, 2, 2]


def test_segmentation_is_deterministic():
    chapter = make_chapter(
        'Later, the rain stopped.\n\n"Come in," said Anna.\n\nHe ran and jumped.'
    )
    segmenter = SceneSegmenter()

    first = segmenter.segment([chapter])
    second = segmenter.segment([chapter])

    assert [s.model_dump() for s in first] == [s.model_dump() for s in second]


def test_is_scene_break():
    assert is_scene_break("* * *")
    assert is_scene_break("---")
    assert is_scene_break("~~~")
    assert is_scene_break("• • •")
    assert not is_scene_break("She paused - then spoke.")


def test_extract_speaker_prefers_name_before_verb():
    assert extract_speaker('"Go," Mary said to John.') == "Mary"
    assert extract_speaker('"Go," said John.') == "John"
    assert extract_speaker('"Go," he said.') is None
    assert extract_speaker("Then Mary whispered softly.") == "Mary"


def test_has_dialogue():
    assert has_dialogue('"Hello there."')
    assert has_dialogue("Mary whispered the answer.")
    assert not has_dialogue("The wind whispered through the trees.")


def test_classify_scene():
    assert classify_scene('"I am here. I have always been here," she said.') == "dialogue"
    assert classify_scene(
        "He ran, jumped, fought, grabbed the rope, kicked the door and fled."
    ) == "action"
    assert classify_scene("Meanwhile, at the castle, nothing stirred.") == "transition"
    assert classify_scene("Nothing much happened that day.") == "narrative"


def test_estimate_character_count():
    assert estimate_character_count("Mary and Tom met Alice.") == 3
    assert estimate_character_count("the rain fell on him") == 1
    assert estimate_character_count("the rain fell") == 0
