"""Pipeline stage jobs: segmentation, scene analysis and character discovery.

Each stage moves its document from the stage's entry status into a
running status, does its work, and leaves the document at the next
stable status. A stage-level failure rolls the document back to the
entry status before the exception reaches the queue.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from utils.logger import setup_logger
from ingestion.scene_segmenter import SceneSegmenter
from ingestion.text_extractor import TextExtractor
from extraction.character_extractor import CharacterDeduplicator, extract_mentions
from extraction.profile_synthesizer import ProfileSynthesizer, determine_role
from monitoring.progress_emitter import ProgressEmitter
from pipeline.state_machine import (
    STAGE_ENTRY_STATUS,
    STAGE_RUNNING_STATUS,
    DocumentStatus,
    SceneStatus,
    can_transition,
    check_transition,
    scene_sources,
)
from providers.exceptions import (
    ProviderCredentialError,
    ProviderRateLimitError,
    ProviderUnavailableError,
)
from providers.factory import ProviderFactory
from providers.embeddings import EmbeddingProvider
from providers.llm import build_image_prompt
from storage.database import Database
from storage.embedding_text import character_embedding_text
from storage.vector_store import VectorStore
import config

logger = setup_logger(__name__)

# Provider errors that stop the whole stage instead of one scene
STAGE_LEVEL_ERRORS = (ProviderCredentialError, ProviderRateLimitError, ProviderUnavailableError)


class DocumentNotFoundError(Exception):
    """The document a job refers to no longer exists. Never retried."""

    retryable = False


async def index_characters(
    db: Database,
    vector_store: VectorStore,
    embedder: EmbeddingProvider,
    document_id: str,
    character_ids: List[str],
) -> int:
    """Embed characters and upsert them into the similarity index.

    Returns:
        Number of embeddings stored
    """
    characters = [db.get_character(cid) for cid in character_ids]
    characters = [c for c in characters if c is not None]
    if not characters:
        return 0

    texts = [character_embedding_text(c) for c in characters]
    vectors = await embedder.embed_batch(texts)

    vector_store.upsert(
        document_id,
        "character",
        [c.id for c in characters],
        vectors,
        provider=embedder.name,
        model=embedder.model,
        dimensions=embedder.dimensions,
        texts=texts,
    )
    return len(characters)


class Stage:
    """Shared document bookkeeping for stage jobs."""

    name = ""

    def __init__(self, db: Database, emitter: Optional[ProgressEmitter] = None):
        self.db = db
        self.emitter = emitter or ProgressEmitter()

    def _get_document(self, document_id: str) -> Dict[str, Any]:
        document = self.db.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        return document

    def _transition(self, document: Dict[str, Any], target: DocumentStatus, **fields: Any) -> None:
        check_transition(document["status"], target.value)
        self.db.update_document(document["id"], status=target.value, **fields)
        document["status"] = target.value
        self.emitter.status(document["id"], target.value)

    def _progress(self, document_id: str, percent: int, step: str) -> None:
        self.db.update_document(document_id, progress_percent=percent, current_step=step)
        self.emitter.progress(document_id, percent, step)

    async def run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run the stage for ``payload["document_id"]``.

        Raises:
            DocumentNotFoundError: Document vanished
            InvalidTransitionError: Document is not at the stage's entry status
        """
        document = self._get_document(payload["document_id"])
        logger.info(f"Starting {self.name} for document {document['id']}")

        self._transition(
            document,
            STAGE_RUNNING_STATUS[self.name],
            error_message=None,
            failed_stage=None,
            progress_percent=0,
        )

        try:
            return await self.execute(document, payload)
        except Exception as e:
            logger.error(f"{self.name} failed for document {document['id']}: {e}")
            self._rollback(document["id"], str(e) or type(e).__name__)
            raise

    async def execute(self, document: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _rollback(self, document_id: str, message: str) -> None:
        entry = STAGE_ENTRY_STATUS[self.name]
        document = self.db.get_document(document_id)
        # Nothing to undo once the stage has reached its final status
        if document is None or not can_transition(document["status"], entry.value):
            return
        self.db.update_document(document_id, status=entry.value, error_message=message)
        self.emitter.error(document_id, message)
        self.emitter.status(document_id, entry.value, error_message=message)

    def on_failed(self, document_id: str, error: BaseException) -> None:
        """Called once the queue gives up on this stage for a document."""
        if isinstance(error, DocumentNotFoundError):
            logger.error(f"Dropping {self.name} job: {error}")
            return

        document = self.db.get_document(document_id)
        if document is None:
            return
        # Status problems are reported on the job only
        if document["status"] != STAGE_ENTRY_STATUS[self.name].value:
            return
        self.db.update_document(document_id, error_message=str(error) or type(error).__name__)


class SegmentationStage(Stage):
    """Extracts chapters from the source file and persists scenes."""

    name = "segmentation"

    def __init__(
        self,
        db: Database,
        emitter: Optional[ProgressEmitter] = None,
        extractor: Optional[TextExtractor] = None,
        segmenter: Optional[SceneSegmenter] = None,
    ):
        super().__init__(db, emitter)
        self.extractor = extractor or TextExtractor()
        self.segmenter = segmenter or SceneSegmenter()

    async def execute(self, document: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        document_id = document["id"]

        self._progress(document_id, 5, "Reading document...")
        book = await asyncio.to_thread(self.extractor.extract, document["source_path"])
        self.db.set_document_metadata(document_id, book.metadata)

        self._progress(document_id, 25, f"Extracted {len(book.chapters)} chapters")

        self._progress(document_id, 40, "Detecting scenes...")
        scenes = self.segmenter.segment(book.chapters)

        self._progress(document_id, 70, f"Saving {len(scenes)} scenes...")
        total_scenes = self.db.replace_scenes(
            document_id,
            scenes,
            total_chapters=len(book.chapters),
            total_words=book.word_count,
        )

        step = f"Detected {total_scenes} scenes in {len(book.chapters)} chapters"
        self._transition(document, DocumentStatus.SCENES_DETECTED, progress_percent=100, current_step=step)

        summary = {
            "chapters": len(book.chapters),
            "scenes": total_scenes,
            "words": book.word_count,
        }
        self.emitter.complete(document_id, stage=self.name, **summary)
        logger.info(f"Segmentation complete for {document_id}: {step}")
        return summary

    def on_failed(self, document_id: str, error: BaseException) -> None:
        """Segmentation has nothing to salvage, so the document is marked failed."""
        if isinstance(error, DocumentNotFoundError):
            logger.error(f"Dropping {self.name} job: {error}")
            return

        document = self.db.get_document(document_id)
        if document is None or document["status"] != STAGE_ENTRY_STATUS[self.name].value:
            return

        message = str(error) or type(error).__name__
        check_transition(document["status"], DocumentStatus.FAILED.value)
        self.db.update_document(
            document_id,
            status=DocumentStatus.FAILED.value,
            failed_stage=self.name,
            error_message=message,
        )
        self.emitter.status(document_id, DocumentStatus.FAILED.value, error_message=message)


class AnalysisStage(Stage):
    """Runs LLM scene analysis over every scene not yet completed."""

    name = "analysis"

    def __init__(
        self,
        db: Database,
        queue,
        factory: ProviderFactory,
        emitter: Optional[ProgressEmitter] = None,
        api_call_delay: float = config.API_CALL_DELAY,
    ):
        super().__init__(db, emitter)
        self.queue = queue
        self.factory = factory
        self.api_call_delay = api_call_delay

    async def execute(self, document: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        document_id = document["id"]
        caller_id = payload.get("caller_id") or document["caller_id"]

        self._progress(document_id, 5, "Connecting to LLM...")
        llm = self.factory.create_llm(caller_id, payload.get("provider"), payload.get("model"))
        try:
            if not await llm.check_health():
                raise ProviderUnavailableError(f"{llm.name} service is not available", llm.name)

            self._progress(document_id, 10, "Loading scenes...")
            self._release_interrupted(document_id)
            scenes = self.db.get_scenes(
                document_id,
                statuses=[SceneStatus.PENDING.value, SceneStatus.FAILED.value],
            )
            limit = payload.get("limit")
            if limit:
                scenes = scenes[:int(limit)]

            self.db.update_document(document_id, llm_provider=llm.name, llm_model=llm.model)
            self.emitter.status(document_id, DocumentStatus.ANALYZING.value, total_scenes=len(scenes))

            analyzed, errors = await self._analyze_scenes(document_id, scenes, llm)
        finally:
            await llm.aclose()

        return self._finish(document, payload, analyzed, errors, len(scenes))

    def _release_interrupted(self, document_id: str) -> None:
        """Scenes left 'processing' by a stopped job become failed, so they are retried."""
        for scene in self.db.get_scenes(document_id, statuses=[SceneStatus.PROCESSING.value]):
            self.db.transition_scene(
                scene["id"],
                [SceneStatus.PROCESSING.value],
                SceneStatus.FAILED.value,
                analysis_error="Interrupted before analysis finished",
            )

    async def _analyze_scenes(self, document_id: str, scenes: List[Dict[str, Any]], llm):
        analyzed = 0
        errors: List[Dict[str, str]] = []
        last_bucket = -1
        processing_sources = [s.value for s in scene_sources(SceneStatus.PROCESSING.value)]

        for i, scene in enumerate(scenes):
            # Coarse progress: 10% to 90% in steps of ten
            progress = 10 + (i * 80) // len(scenes)
            if progress // 10 != last_bucket:
                last_bucket = progress // 10
                self._progress(document_id, progress, f"Analyzing scene {i + 1}/{len(scenes)}...")

            if not self.db.transition_scene(scene["id"], processing_sources, SceneStatus.PROCESSING.value):
                continue

            try:
                analysis = await llm.analyze_scene(scene["text"], scene.get("chapter_title"))
            except STAGE_LEVEL_ERRORS as e:
                self._fail_scene(scene["id"], str(e))
                raise
            except Exception as e:
                logger.warning(f"Failed to analyze scene {scene['scene_index_global']}: {e}")
                self._fail_scene(scene["id"], str(e) or type(e).__name__)
                errors.append({"scene_id": scene["id"], "error": str(e)})
            else:
                self.db.transition_scene(
                    scene["id"],
                    [SceneStatus.PROCESSING.value],
                    SceneStatus.COMPLETED.value,
                    analysis_json=analysis.model_dump_json(by_alias=True),
                    image_prompt=build_image_prompt(analysis),
                    analysis_error=None,
                    analysis_provider=llm.name,
                    analysis_model=llm.model,
                    analyzed_at=datetime.now(timezone.utc).isoformat(),
                )
                analyzed += 1

            if i < len(scenes) - 1 and self.api_call_delay:
                await asyncio.sleep(self.api_call_delay)

        return analyzed, errors

    def _fail_scene(self, scene_id: str, message: str) -> None:
        self.db.transition_scene(
            scene_id,
            [SceneStatus.PROCESSING.value],
            SceneStatus.FAILED.value,
            analysis_error=message,
        )

    def _finish(
        self,
        document: Dict[str, Any],
        payload: Dict[str, Any],
        analyzed: int,
        errors: List[Dict[str, str]],
        attempted: int,
    ) -> Dict[str, Any]:
        document_id = document["id"]
        self._progress(document_id, 95, "Finalizing...")

        counts = self.db.count_scenes_by_status(document_id)
        outstanding = counts.get(SceneStatus.PENDING.value, 0) + counts.get(SceneStatus.FAILED.value, 0)

        if errors:
            status = DocumentStatus.SCENES_DETECTED
            step = f"Analysis complete with {len(errors)} error(s)"
        elif outstanding:
            status = DocumentStatus.SCENES_DETECTED
            step = f"Analysis paused with {outstanding} scene(s) remaining"
        else:
            status = DocumentStatus.ANALYZED
            step = "Scene analysis complete"

        self._transition(document, status, progress_percent=100, current_step=step)

        summary = {
            "scenes_analyzed": analyzed,
            "scenes_attempted": attempted,
            "errors": len(errors),
            "scenes_outstanding": outstanding,
        }
        self.emitter.complete(document_id, stage=self.name, **summary)
        logger.info(f"Analysis for {document_id}: {analyzed}/{attempted} scenes analyzed, {len(errors)} error(s)")

        if status == DocumentStatus.ANALYZED:
            self.queue.enqueue("discovery", document_id, {
                key: payload[key]
                for key in ("caller_id", "provider", "model", "embedding_provider", "embedding_model")
                if payload.get(key)
            })

        return summary


class CharacterDiscoveryStage(Stage):
    """Extracts, deduplicates, profiles and embeds a document's characters."""

    name = "discovery"

    def __init__(
        self,
        db: Database,
        factory: ProviderFactory,
        vector_store: VectorStore,
        emitter: Optional[ProgressEmitter] = None,
        api_call_delay: float = config.API_CALL_DELAY,
    ):
        super().__init__(db, emitter)
        self.factory = factory
        self.vector_store = vector_store
        self.api_call_delay = api_call_delay

    async def execute(self, document: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        document_id = document["id"]
        caller_id = payload.get("caller_id") or document["caller_id"]

        self._progress(document_id, 5, "Connecting to LLM...")
        llm = self.factory.create_llm(caller_id, payload.get("provider"), payload.get("model"))
        try:
            if not await llm.check_health():
                raise ProviderUnavailableError(f"{llm.name} service is not available", llm.name)

            self._progress(document_id, 10, "Loading scenes...")
            scenes = self.db.get_scenes(document_id, statuses=[SceneStatus.COMPLETED.value])

            self._progress(document_id, 20, "Extracting characters from scenes...")
            mentions = extract_mentions(scenes)

            self._progress(document_id, 40, "Identifying unique characters...")
            groups = await CharacterDeduplicator(llm).deduplicate(mentions)

            # Re-discovery replaces the previous cast
            self.vector_store.delete_document(document_id, kinds=("character",))
            self.db.delete_characters(document_id)

            self._transition(
                document,
                DocumentStatus.BUILDING_CHARACTER_PROFILES,
                current_step=f"Found {len(groups)} unique characters",
            )

            character_ids, errors = await self._build_profiles(document, groups, llm)
        finally:
            await llm.aclose()

        embedded, embedding_error = await self._embed(document_id, caller_id, payload, character_ids)
        return self._finish(document, character_ids, groups, errors, embedded, embedding_error)

    async def _build_profiles(self, document: Dict[str, Any], groups, llm):
        document_id = document["id"]
        total_scenes = document.get("total_scenes") or 0
        synthesizer = ProfileSynthesizer(llm)
        character_ids: List[str] = []
        errors: List[Dict[str, str]] = []
        last_bucket = -1

        for i, group in enumerate(groups):
            # Coarse progress: 40% to 80%
            progress = 40 + (i * 40) // len(groups)
            if progress // 10 != last_bucket:
                last_bucket = progress // 10
                self._progress(document_id, progress, f"Building profile {i + 1}/{len(groups)}: {group.primary_name}...")

            try:
                appearance = await synthesizer.synthesize(group)
                character_ids.append(self.db.insert_character(
                    document_id=document_id,
                    name=group.primary_name,
                    aliases=group.aliases,
                    role=determine_role(group.total_appearances, total_scenes),
                    appearance=appearance,
                    first_appearance_scene_id=group.first_scene_id,
                    total_appearances=group.total_appearances,
                ))
            except STAGE_LEVEL_ERRORS:
                raise
            except Exception as e:
                logger.warning(f"Failed to create character {group.primary_name}: {e}")
                errors.append({"character_name": group.primary_name, "error": str(e)})

            if i < len(groups) - 1 and self.api_call_delay:
                await asyncio.sleep(self.api_call_delay)

        return character_ids, errors

    async def _embed(self, document_id: str, caller_id: str, payload: Dict[str, Any], character_ids: List[str]):
        """Embedding failures are reported but never fail discovery."""
        if not character_ids:
            return 0, None

        self._progress(document_id, 85, "Generating embeddings...")
        embedder = None
        try:
            embedder = self.factory.create_embedding(
                caller_id, payload.get("embedding_provider"), payload.get("embedding_model")
            )
            embedded = await index_characters(self.db, self.vector_store, embedder, document_id, character_ids)
            self.db.update_document(document_id, embedding_provider=embedder.name, embedding_model=embedder.model)
            return embedded, None
        except Exception as e:
            logger.warning(f"Failed to generate character embeddings for {document_id}: {e}")
            return 0, str(e)
        finally:
            if embedder is not None:
                await embedder.aclose()

    def _finish(self, document, character_ids, groups, errors, embedded, embedding_error) -> Dict[str, Any]:
        document_id = document["id"]
        self._progress(document_id, 95, "Finalizing...")

        if errors:
            status = DocumentStatus.ANALYZED
            step = f"Character discovery complete with {len(errors)} error(s)"
        else:
            status = DocumentStatus.CHARACTERS_DISCOVERED
            step = "Character discovery complete"

        self._transition(
            document,
            status,
            progress_percent=100,
            current_step=step,
            total_characters=len(character_ids),
        )

        summary = {
            "characters_discovered": len(character_ids),
            "total_characters": len(groups),
            "errors": len(errors),
            "embeddings": embedded,
        }
        if embedding_error:
            summary["embedding_error"] = embedding_error
        self.emitter.complete(document_id, stage=self.name, **summary)
        logger.info(f"Character discovery for {document_id}: {len(character_ids)}/{len(groups)} characters created")
        return summary
