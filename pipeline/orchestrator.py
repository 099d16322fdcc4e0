"""
Pipeline orchestrator.

Entry point for callers: submits documents, triggers and retries stages,
reports status, and exposes the character read models once discovery
has run.
"""

import asyncio
import hashlib
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from utils.logger import setup_logger
from extraction.models import Character, CharacterAppearance, Setting
from monitoring.progress_emitter import ProgressEmitter
from pipeline.job_queue import JobQueue
from pipeline.stages import (
    AnalysisStage,
    CharacterDiscoveryStage,
    DocumentNotFoundError,
    SegmentationStage,
    index_characters,
)
from pipeline.state_machine import (
    STAGE_RUNNING_STATUS,
    InvalidTransitionError,
    check_retry,
    check_transition,
    retry_target,
)
from pipeline.worker import WorkerPool
from providers.factory import ProviderFactory
from storage.database import Database
from storage.embedding_text import setting_embedding_text
from storage.vector_store import VectorStore
import config

logger = setup_logger(__name__)


def compute_file_hash(file_path: Path) -> str:
    """Compute SHA256 hash of a file.

    Args:
        file_path: Path to file

    Returns:
        Hex digest of hash
    """
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for byte_block in iter(lambda: f.read(4096), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


class PipelineOrchestrator:
    """Wires the database, queues, stages and worker pool together."""

    def __init__(
        self,
        db: Optional[Database] = None,
        vector_store: Optional[VectorStore] = None,
        factory: Optional[ProviderFactory] = None,
        emitter: Optional[ProgressEmitter] = None,
        queue_policies: Optional[Dict[str, Dict[str, float]]] = None,
        concurrency: Optional[Dict[str, int]] = None,
        api_call_delay: float = config.API_CALL_DELAY,
        poll_interval: float = config.QUEUE_POLL_INTERVAL,
    ):
        self.db = db or Database()
        self.vector_store = vector_store or VectorStore()
        self.factory = factory or ProviderFactory()
        self.emitter = emitter or ProgressEmitter()
        self.queue = JobQueue(self.db, policies=queue_policies)

        self.stages = {
            "segmentation": SegmentationStage(self.db, self.emitter),
            "analysis": AnalysisStage(self.db, self.queue, self.factory, self.emitter, api_call_delay),
            "discovery": CharacterDiscoveryStage(
                self.db, self.factory, self.vector_store, self.emitter, api_call_delay
            ),
        }
        self.pool = WorkerPool(self.queue, self.stages, concurrency=concurrency, poll_interval=poll_interval)

    # ==================== Submission ====================

    def submit(self, source_path: str, caller_id: str, title: Optional[str] = None) -> Dict[str, Any]:
        """Register a source file and queue its segmentation.

        A file this caller already submitted returns the existing document.
        """
        path = Path(source_path)
        file_hash = compute_file_hash(path)

        existing = self.db.get_document_by_hash(file_hash, caller_id)
        if existing:
            logger.info(f"Document already submitted: {existing['title']} (ID: {existing['id']})")
            return {**existing, "duplicate": True}

        document_id = self.db.insert_document(caller_id, str(path), file_hash, title=title)
        self.emitter.status(document_id, "uploading")
        self.queue.enqueue("segmentation", document_id, {"caller_id": caller_id})
        return {**self.db.get_document(document_id), "duplicate": False}

    def _enqueue(self, stage: str, document_id: str, payload: Dict[str, Any]) -> bool:
        document = self.db.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")

        running = STAGE_RUNNING_STATUS[stage].value
        if document["status"] == running:
            logger.info(f"{stage} already running for {document_id}")
            return False
        check_transition(document["status"], running)

        payload = {key: value for key, value in payload.items() if value is not None}
        payload.setdefault("caller_id", document["caller_id"])
        return self.queue.enqueue(stage, document_id, payload)

    def enqueue_segmentation(self, document_id: str) -> bool:
        return self._enqueue("segmentation", document_id, {})

    def enqueue_analysis(
        self,
        document_id: str,
        caller_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> bool:
        """Queue scene analysis of every pending or failed scene.

        Returns:
            True if a job was queued, False if one is already live
        """
        return self._enqueue("analysis", document_id, {
            "caller_id": caller_id,
            "provider": provider,
            "model": model,
            "limit": limit,
        })

    def enqueue_discovery(
        self,
        document_id: str,
        caller_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        embedding_provider: Optional[str] = None,
        embedding_model: Optional[str] = None,
    ) -> bool:
        return self._enqueue("discovery", document_id, {
            "caller_id": caller_id,
            "provider": provider,
            "model": model,
            "embedding_provider": embedding_provider,
            "embedding_model": embedding_model,
        })

    def retry(self, document_id: str, caller_id: Optional[str] = None, **options: Any) -> str:
        """Re-run the stage a document failed in or is waiting at.

        Completed scenes are never analyzed again; only pending and failed
        ones are picked up.

        Returns:
            Name of the re-queued stage
        """
        document = self.db.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")

        stage = retry_target(document)
        if stage is None:
            raise InvalidTransitionError(document["status"], "retry")

        entry = check_retry(document["status"], stage)
        self.db.update_document(
            document_id,
            status=entry.value,
            failed_stage=None,
            error_message=None,
            current_step="Queued for retry",
        )
        self.emitter.status(document_id, entry.value)

        payload = {key: value for key, value in options.items() if value is not None}
        payload["caller_id"] = caller_id or document["caller_id"]
        self.queue.enqueue(stage, document_id, payload)
        logger.info(f"Retrying {stage} for document {document_id}")
        return stage

    # ==================== Status ====================

    def get_status(self, document_id: str) -> Dict[str, Any]:
        document = self.db.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")

        return {
            "document_id": document_id,
            "title": document["title"],
            "status": document["status"],
            "progress_percent": document["progress_percent"],
            "current_step": document["current_step"],
            "error_message": document["error_message"],
            "failed_stage": document["failed_stage"],
            "total_chapters": document["total_chapters"],
            "total_scenes": document["total_scenes"],
            "total_characters": document["total_characters"],
            "scenes": self.db.count_scenes_by_status(document_id),
            "jobs": [job.model_dump() for job in self.queue.list_jobs(document_id)],
        }

    async def run_until_idle(self) -> None:
        """Process queued jobs, including follow-on stages, until none remain."""
        await self.pool.run_until_idle()

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        self.queue.requeue_active()
        await self.pool.run(stop_event=stop_event)

    def cleanup_jobs(self) -> int:
        return self.queue.cleanup()

    # ==================== Characters ====================

    def list_characters(self, document_id: str) -> List[Character]:
        return self.db.get_characters(document_id)

    def get_character(self, character_id: str) -> Optional[Character]:
        return self.db.get_character(character_id)

    async def update_character_appearance(
        self,
        character_id: str,
        appearance: CharacterAppearance,
        caller_id: Optional[str] = None,
    ) -> Character:
        """Replace a character's appearance profile and recompute its embedding.

        The embedding is recomputed with the provider and model already bound
        to the document's character index, if there is one.
        """
        character = self.db.get_character(character_id)
        if character is None:
            raise LookupError(f"Character not found: {character_id}")

        self.db.update_character_appearance(character_id, appearance)

        info = self.vector_store.collection_info(character.document_id, "character") or {}
        document = self.db.get_document(character.document_id)
        embedder = self.factory.create_embedding(
            caller_id or document["caller_id"],
            info.get("provider"),
            info.get("model"),
        )
        try:
            await index_characters(self.db, self.vector_store, embedder, character.document_id, [character_id])
        except Exception as e:
            logger.warning(f"Failed to update embedding for character {character_id}: {e}")
        finally:
            await embedder.aclose()

        return self.db.get_character(character_id)

    def delete_character(self, character_id: str) -> bool:
        character = self.db.get_character(character_id)
        if character is None:
            return False

        self.vector_store.delete(character.document_id, "character", [character_id])
        return self.db.delete_character(character_id)

    def find_similar_characters(
        self,
        character_id: str,
        limit: int = config.SIMILARITY_LIMIT,
        threshold: float = config.SIMILARITY_THRESHOLD,
    ) -> List[Dict[str, Any]]:
        """Characters of the same document that look most alike.

        Returns:
            Dicts with 'character' and 'similarity', most similar first
        """
        character = self.db.get_character(character_id)
        if character is None:
            raise LookupError(f"Character not found: {character_id}")

        matches = self.vector_store.find_similar(
            character.document_id, "character", character_id, limit=limit, threshold=threshold
        )

        results = []
        for match in matches:
            other = self.db.get_character(match["id"])
            # Index entries can outlive a deleted character row
            if other is not None:
                results.append({"character": other, "similarity": match["similarity"]})
        return results

    # ==================== Settings ====================

    async def index_settings(
        self,
        document_id: str,
        settings: Sequence[Setting],
        caller_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> int:
        """Embed settings a caller persists elsewhere so they can be compared."""
        if not settings:
            return 0

        document = self.db.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")

        embedder = self.factory.create_embedding(caller_id or document["caller_id"], provider, model)
        try:
            texts = [setting_embedding_text(setting) for setting in settings]
            vectors = await embedder.embed_batch(texts)
            self.vector_store.upsert(
                document_id,
                "setting",
                [setting.id for setting in settings],
                vectors,
                provider=embedder.name,
                model=embedder.model,
                dimensions=embedder.dimensions,
                texts=texts,
            )
        finally:
            await embedder.aclose()

        return len(settings)

    def find_similar_settings(
        self,
        document_id: str,
        setting_id: str,
        limit: int = config.SIMILARITY_LIMIT,
        threshold: float = config.SIMILARITY_THRESHOLD,
    ) -> List[Dict[str, Any]]:
        return self.vector_store.find_similar(document_id, "setting", setting_id, limit=limit, threshold=threshold)
