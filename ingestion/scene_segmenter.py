"""Scene segmentation and classification.

Chapters are split into paragraphs on blank lines. Narrative paragraphs
become scenes on their own; consecutive dialogue paragraphs are grouped
while the inferred speaker does not change. Every scene receives a
global index from a single counter, which is the ordering key used by
all later stages.
"""
import re
from typing import List, Optional

from utils.logger import setup_logger
from ingestion.cleaner import count_words, split_paragraphs
from ingestion.models import Chapter, DetectedScene, SceneType

logger = setup_logger(__name__)


SCENE_BREAK_PATTERNS = [
    re.compile(r'^\*\s*\*\s*\*$'),        # * * *
    re.compile(r'^\*{3,}$'),              # ***
    re.compile(r'^-{3,}$'),               # ---
    re.compile(r'^_{3,}$'),               # ___
    re.compile(r'^#{3,}$'),               # ###
    re.compile(r'^~{3,}$'),               # ~~~
    re.compile(r'^\*$'),                  # single *
    re.compile(r'^•\s*•\s*•$'),           # • • •
]

TIME_TRANSITION_PATTERNS = [
    re.compile(r'^(Later|Meanwhile|Soon|Eventually|Finally|Afterward|Next|Then|Now|The next (day|morning|evening|night|week|month|year))', re.I),
    re.compile(r'^(Minutes|Hours|Days|Weeks|Months|Years) (later|passed|went by)', re.I),
    re.compile(r'^Three (hours|days|weeks) (later|had passed)', re.I),
    re.compile(r'^(A (few|couple of) (minutes|hours|days|weeks) (later|passed))', re.I),
    re.compile(r'^(That (night|morning|evening|afternoon))', re.I),
    re.compile(r'^(The following (day|morning|evening|week))', re.I),
]

LOCATION_TRANSITION_PATTERNS = [
    re.compile(r'^(Meanwhile,? (at|in|on))', re.I),
    re.compile(r'^(At the|In the|On the) ', re.I),
    re.compile(r'^(Back (at|in|on))', re.I),
    re.compile(r'^(Elsewhere)', re.I),
    re.compile(r'^(Outside|Inside)', re.I),
    re.compile(r'^(Upstairs|Downstairs)', re.I),
]

# Straight double quotes and curly double/single quotes. Straight single
# quotes are left out because apostrophes make them ambiguous.
QUOTE_PATTERN = re.compile(r'"[^"\n]+"|“[^”]+”|‘[^’]+’')

DIALOGUE_TAG_PATTERN = re.compile(
    r'\b(said|asked|replied|answered|shouted|whispered|muttered|exclaimed|responded)\b',
    re.I
)

SPEECH_VERBS = (
    "said|asked|replied|answered|shouted|whispered|muttered|exclaimed|responded|"
    "called|cried|yelled|screamed|stammered|interrupted|continued|added|agreed|"
    "argued|begged|commanded|demanded|explained|inquired|insisted|protested|"
    "remarked|stated|suggested|warned"
)
NAME = r'([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)'
SPEAKER_NAME_FIRST = re.compile(NAME + r'\s+(?i:' + SPEECH_VERBS + r')\b')
SPEAKER_VERB_FIRST = re.compile(r'\b(?i:' + SPEECH_VERBS + r')\s+' + NAME)

ACTION_WORDS = re.compile(
    r'\b(ran|jumped|fought|attacked|grabbed|threw|kicked|punched|struck|fired|'
    r'shot|chased|fled|rushed|dove|leaped)\b',
    re.I
)
DESCRIPTION_WORDS = re.compile(
    r'\b(was|were|looked|appeared|seemed|beautiful|tall|wide|large|small|'
    r'ancient|modern|ornate|simple)\b',
    re.I
)

CAPITALIZED_WORD = re.compile(r'\b[A-Z][a-z]+\b')
PRONOUNS = re.compile(r'\b(he|she|they|him|her|them)\b', re.I)
NON_NAME_WORDS = {
    'The', 'A', 'An', 'I', 'He', 'She', 'They', 'It', 'We', 'You', 'This',
    'That', 'These', 'Those', 'When', 'Where', 'Why', 'How', 'What', 'Which',
    'Who',
}
# Words that can open a sentence before a speaker's name ("Then Mary said")
SPEAKER_STOPWORDS = NON_NAME_WORDS | {
    'And', 'But', 'Then', 'So', 'Now', 'His', 'Her', 'Their', 'Our', 'My',
    'Him', 'Them', 'Me', 'Us', 'Yes', 'No', 'Well', 'Oh',
}

MAX_CHARACTER_ESTIMATE = 10
DIALOGUE_RATIO_THRESHOLD = 0.3
DESCRIPTION_DIALOGUE_CEILING = 0.1
ACTION_MATCH_THRESHOLD = 5
DESCRIPTION_MATCH_THRESHOLD = 10


class SceneSegmenter:
    """Splits chapters into ordered, classified scenes."""

    def segment(self, chapters: List[Chapter]) -> List[DetectedScene]:
        """Detect scenes across all chapters.

        Args:
            chapters: Chapters in reading order

        Returns:
            Scenes with contiguous global indices starting at 0
        """
        scenes: List[DetectedScene] = []

        for chapter in chapters:
            scenes.extend(self.segment_chapter(chapter, len(scenes)))

        logger.info(f"Detected {len(scenes)} scenes across {len(chapters)} chapters")
        return scenes

    def segment_chapter(self, chapter: Chapter, start_index: int = 0) -> List[DetectedScene]:
        """Detect scenes within a single chapter.

        Args:
            chapter: Chapter to split
            start_index: Global index of the chapter's first scene

        Returns:
            List of scenes for this chapter
        """
        paragraphs = split_paragraphs(chapter.content)
        scenes: List[DetectedScene] = []

        i = 0
        while i < len(paragraphs):
            para = paragraphs[i]

            if is_scene_break(para):
                i += 1
                continue

            if not has_dialogue(para):
                scenes.append(self._create_scene(chapter, [para], len(scenes), start_index))
                i += 1
                continue

            group = [para]
            speaker = extract_speaker(para)
            i += 1

            while i < len(paragraphs):
                next_para = paragraphs[i]
                if is_scene_break(next_para) or not has_dialogue(next_para):
                    break

                next_speaker = extract_speaker(next_para)
                if speaker and next_speaker and speaker != next_speaker:
                    break

                group.append(next_para)
                i += 1

            scenes.append(self._create_scene(chapter, group, len(scenes), start_index))

        return scenes

    def _create_scene(
        self,
        chapter: Chapter,
        paragraphs: List[str],
        position: int,
        start_index: int
    ) -> DetectedScene:
        text = '\n\n'.join(paragraphs)
        return DetectedScene(
            chapter_number=chapter.number,
            chapter_title=chapter.title,
            scene_number=position + 1,
            scene_index_global=start_index + position,
            text=text,
            word_count=count_words(text),
            has_dialogue=has_dialogue(text),
            scene_type=classify_scene(text),
            character_count=estimate_character_count(text),
        )


def is_scene_break(text: str) -> bool:
    """Check if a paragraph is an explicit scene break marker."""
    trimmed = text.strip()
    return any(pattern.match(trimmed) for pattern in SCENE_BREAK_PATTERNS)


def is_time_transition(text: str) -> bool:
    trimmed = text.strip()
    return any(pattern.match(trimmed) for pattern in TIME_TRANSITION_PATTERNS)


def is_location_change(text: str) -> bool:
    trimmed = text.strip()
    return any(pattern.match(trimmed) for pattern in LOCATION_TRANSITION_PATTERNS)


def has_dialogue(text: str) -> bool:
    """Detect quoted speech or a speech verb attributed to a name."""
    if QUOTE_PATTERN.search(text):
        return True
    return bool(DIALOGUE_TAG_PATTERN.search(text)) and extract_speaker(text) is not None


def dialogue_ratio(text: str) -> float:
    """Share of characters that sit inside quotation marks."""
    if not text:
        return 0.0
    quoted = sum(len(match.group(0)) for match in QUOTE_PATTERN.finditer(text))
    return quoted / len(text)


def extract_speaker(text: str) -> Optional[str]:
    """Infer the speaker of a dialogue paragraph.

    Tries "Mary said" before "said Mary". Leading sentence words such as
    "Then" are stripped, and pronouns are not treated as names.

    Returns:
        Speaker name or None if no attribution is found
    """
    for pattern in (SPEAKER_NAME_FIRST, SPEAKER_VERB_FIRST):
        for match in pattern.finditer(text):
            words = [w for w in match.group(1).split() if w not in SPEAKER_STOPWORDS]
            if words:
                return ' '.join(words)
    return None


def classify_scene(text: str) -> SceneType:
    """Classify a scene by dialogue share and keyword density."""
    ratio = dialogue_ratio(text)

    if ratio > DIALOGUE_RATIO_THRESHOLD:
        return 'dialogue'

    if len(ACTION_WORDS.findall(text)) > ACTION_MATCH_THRESHOLD:
        return 'action'

    if (len(DESCRIPTION_WORDS.findall(text)) > DESCRIPTION_MATCH_THRESHOLD
            and ratio < DESCRIPTION_DIALOGUE_CEILING):
        return 'description'

    if is_time_transition(text) or is_location_change(text):
        return 'transition'

    return 'narrative'


def estimate_character_count(text: str) -> int:
    """Rough count of people in a scene from capitalized tokens."""
    names = {w for w in CAPITALIZED_WORD.findall(text) if w not in NON_NAME_WORDS}
    count = min(len(names), MAX_CHARACTER_ESTIMATE)

    if PRONOUNS.search(text) or has_dialogue(text):
        return max(1, count)

    return count
