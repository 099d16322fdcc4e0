"""Document and scene status state machines."""
from enum import Enum
from typing import Dict, FrozenSet, Optional


class DocumentStatus(str, Enum):
    UPLOADING = "uploading"
    PARSING = "parsing"
    SCENES_DETECTED = "scenes_detected"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    DISCOVERING_CHARACTERS = "discovering_characters"
    BUILDING_CHARACTER_PROFILES = "building_character_profiles"
    CHARACTERS_DISCOVERED = "characters_discovered"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class SceneStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidTransitionError(Exception):
    """Requested status change is not allowed from the current status."""

    retryable = False

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move from '{current}' to '{target}'")
        self.current = current
        self.target = target


S = DocumentStatus

# In-flight states can always fall to FAILED; handled in can_transition
IN_FLIGHT: FrozenSet[DocumentStatus] = frozenset({
    S.UPLOADING,
    S.PARSING,
    S.ANALYZING,
    S.DISCOVERING_CHARACTERS,
    S.BUILDING_CHARACTER_PROFILES,
    S.GENERATING,
})

DOCUMENT_TRANSITIONS: Dict[DocumentStatus, FrozenSet[DocumentStatus]] = {
    S.UPLOADING: frozenset({S.PARSING}),
    # A failed parse attempt returns to UPLOADING until the queue gives up
    S.PARSING: frozenset({S.SCENES_DETECTED, S.UPLOADING}),
    S.SCENES_DETECTED: frozenset({S.ANALYZING}),
    S.ANALYZING: frozenset({S.ANALYZED, S.SCENES_DETECTED}),
    S.ANALYZED: frozenset({S.DISCOVERING_CHARACTERS}),
    S.DISCOVERING_CHARACTERS: frozenset({S.BUILDING_CHARACTER_PROFILES, S.ANALYZED}),
    S.BUILDING_CHARACTER_PROFILES: frozenset({S.CHARACTERS_DISCOVERED, S.ANALYZED}),
    S.CHARACTERS_DISCOVERED: frozenset({S.DISCOVERING_CHARACTERS, S.GENERATING}),
    S.GENERATING: frozenset({S.COMPLETED, S.CHARACTERS_DISCOVERED}),
    S.COMPLETED: frozenset(),
    # Leaving FAILED only happens through retry(), which restores the entry state
    S.FAILED: frozenset(),
}

# Status a document must hold for a stage to start
STAGE_ENTRY_STATUS: Dict[str, DocumentStatus] = {
    "segmentation": S.UPLOADING,
    "analysis": S.SCENES_DETECTED,
    "discovery": S.ANALYZED,
}

# Status a stage moves the document into while it runs
STAGE_RUNNING_STATUS: Dict[str, DocumentStatus] = {
    "segmentation": S.PARSING,
    "analysis": S.ANALYZING,
    "discovery": S.DISCOVERING_CHARACTERS,
}

SCENE_TRANSITIONS: Dict[SceneStatus, FrozenSet[SceneStatus]] = {
    SceneStatus.PENDING: frozenset({SceneStatus.PROCESSING}),
    SceneStatus.PROCESSING: frozenset({SceneStatus.COMPLETED, SceneStatus.FAILED}),
    SceneStatus.COMPLETED: frozenset(),
    # A failed scene may be attempted again
    SceneStatus.FAILED: frozenset({SceneStatus.PROCESSING}),
}


def can_transition(current: str, target: str) -> bool:
    current_status = DocumentStatus(current)
    target_status = DocumentStatus(target)

    if target_status == S.FAILED:
        return current_status in IN_FLIGHT
    return target_status in DOCUMENT_TRANSITIONS[current_status]


def check_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def scene_sources(target: str) -> FrozenSet[SceneStatus]:
    """Scene statuses from which target can be reached."""
    target_status = SceneStatus(target)
    return frozenset(
        status for status, targets in SCENE_TRANSITIONS.items()
        if target_status in targets
    )


def retry_target(document: Dict) -> Optional[str]:
    """Stage to re-run for a document the user asked to retry.

    A failed document resumes the stage it failed in. A document resting
    at a stage entry status resumes that stage.
    """
    status = document["status"]
    if status == S.FAILED.value:
        return document.get("failed_stage")

    for stage, entry in STAGE_ENTRY_STATUS.items():
        if entry.value == status:
            return stage
    return None


def check_retry(current: str, stage: str) -> DocumentStatus:
    """Status a retried document returns to before its stage re-runs.

    Raises:
        InvalidTransitionError: Document is neither failed nor at the stage's entry status
    """
    entry = STAGE_ENTRY_STATUS[stage]
    if current not in (S.FAILED.value, entry.value):
        raise InvalidTransitionError(current, entry.value)
    return entry
