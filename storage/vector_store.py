"""ChromaDB similarity index for character and setting embeddings."""
import chromadb
from chromadb.config import Settings
from typing import List, Dict, Any, Optional, Sequence
from pathlib import Path

from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

ENTITY_KINDS = ("character", "setting")


class EmbeddingMismatchError(Exception):
    """Vector dimensionality or (provider, model) differs from the collection's."""


class EmbeddingNotFoundError(LookupError):
    """No embedding stored for the requested entity."""


class VectorStore:
    """Stores one cosine-space collection per document and entity kind.

    Each collection is bound to the (provider, model, dimensions) that
    created it; vectors from anything else are rejected.
    """

    def __init__(self, chroma_path: Path = config.CHROMA_PATH, client=None):
        """Initialize ChromaDB client.

        Args:
            chroma_path: Path to ChromaDB persistence directory
            client: Existing chromadb client, mainly for tests
        """
        self.chroma_path = chroma_path
        self.client = client or chromadb.PersistentClient(
            path=str(chroma_path),
            settings=Settings(anonymized_telemetry=False)
        )

    def _get_collection_name(self, document_id: str, kind: str) -> str:
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind: {kind}")
        # ChromaDB collection names have restrictions
        return f"{kind}_{document_id.replace('-', '_')}"

    def _find_collection(self, document_id: str, kind: str):
        try:
            return self.client.get_collection(self._get_collection_name(document_id, kind))
        except Exception:
            return None

    def _get_or_create_collection(
        self,
        document_id: str,
        kind: str,
        provider: str,
        model: str,
        dimensions: int,
    ):
        collection = self._find_collection(document_id, kind)
        if collection is None:
            return self.client.create_collection(
                name=self._get_collection_name(document_id, kind),
                metadata={
                    "hnsw:space": "cosine",
                    "document_id": document_id,
                    "kind": kind,
                    "provider": provider,
                    "model": model,
                    "dimensions": dimensions,
                },
            )

        self._check_compatible(collection, provider, model, dimensions)
        return collection

    @staticmethod
    def _check_compatible(
        collection,
        provider: Optional[str],
        model: Optional[str],
        dimensions: Optional[int],
    ) -> None:
        meta = collection.metadata or {}
        if provider is not None and meta.get("provider") != provider:
            raise EmbeddingMismatchError(
                f"Collection {collection.name} holds {meta.get('provider')} embeddings, got {provider}"
            )
        if model is not None and meta.get("model") != model:
            raise EmbeddingMismatchError(
                f"Collection {collection.name} holds {meta.get('model')} embeddings, got {model}"
            )
        if dimensions is not None and meta.get("dimensions") != dimensions:
            raise EmbeddingMismatchError(
                f"Collection {collection.name} expects {meta.get('dimensions')} dimensions, got {dimensions}"
            )

    def collection_info(self, document_id: str, kind: str = "character") -> Optional[Dict[str, Any]]:
        """Provider, model and dimensions bound to a collection, if it exists."""
        collection = self._find_collection(document_id, kind)
        if collection is None:
            return None
        return dict(collection.metadata or {})

    def upsert(
        self,
        document_id: str,
        kind: str,
        entity_ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        provider: str,
        model: str,
        dimensions: int,
        texts: Optional[Sequence[str]] = None,
    ) -> None:
        """Insert or replace embeddings keyed by entity id.

        Raises:
            EmbeddingMismatchError: A vector's length differs from ``dimensions``
                or the collection was built by another provider/model
        """
        if len(entity_ids) != len(vectors):
            raise ValueError("entity_ids and vectors differ in length")
        if not entity_ids:
            return

        for entity_id, vector in zip(entity_ids, vectors):
            if len(vector) != dimensions:
                raise EmbeddingMismatchError(
                    f"Embedding for {entity_id} has {len(vector)} dimensions, expected {dimensions}"
                )

        collection = self._get_or_create_collection(document_id, kind, provider, model, dimensions)
        collection.upsert(
            ids=list(entity_ids),
            embeddings=[[float(x) for x in vector] for vector in vectors],
            documents=list(texts) if texts is not None else None,
            metadatas=[
                {"document_id": document_id, "kind": kind, "provider": provider, "model": model}
                for _ in entity_ids
            ],
        )

        logger.info(f"Upserted {len(entity_ids)} {kind} embeddings for document {document_id}")

    def get_vector(self, document_id: str, kind: str, entity_id: str) -> Optional[List[float]]:
        collection = self._find_collection(document_id, kind)
        if collection is None:
            return None

        result = collection.get(ids=[entity_id], include=["embeddings"])
        embeddings = result.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return None
        return [float(x) for x in embeddings[0]]

    def query(
        self,
        document_id: str,
        kind: str,
        vector: Sequence[float],
        limit: int = config.SIMILARITY_LIMIT,
        threshold: float = config.SIMILARITY_THRESHOLD,
        exclude_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Nearest entities by cosine similarity.

        Args:
            document_id: Document UUID
            kind: "character" or "setting"
            vector: Query vector
            limit: Maximum results
            threshold: Minimum similarity (1 - cosine distance)
            exclude_id: Entity to leave out, usually the query entity itself
            provider: Provider that produced the query vector, checked if given
            model: Model that produced the query vector, checked if given

        Returns:
            Dicts with 'id', 'similarity' and 'distance', closest first
        """
        collection = self._find_collection(document_id, kind)
        if collection is None:
            return []

        self._check_compatible(collection, provider, model, len(vector))

        count = collection.count()
        if count == 0:
            return []

        n_results = min(count, limit + (1 if exclude_id else 0))
        results = collection.query(
            query_embeddings=[[float(x) for x in vector]],
            n_results=n_results,
            include=["distances"],
        )

        matches = []
        ids = results["ids"][0] if results["ids"] else []
        distances = results["distances"][0] if results.get("distances") else []
        for entity_id, distance in zip(ids, distances):
            if entity_id == exclude_id:
                continue
            similarity = 1.0 - float(distance)
            if similarity < threshold:
                continue
            matches.append({"id": entity_id, "similarity": similarity, "distance": float(distance)})

        matches.sort(key=lambda m: m["distance"])
        return matches[:limit]

    def find_similar(
        self,
        document_id: str,
        kind: str,
        entity_id: str,
        limit: int = config.SIMILARITY_LIMIT,
        threshold: float = config.SIMILARITY_THRESHOLD,
    ) -> List[Dict[str, Any]]:
        """Entities of the same document most similar to an embedded entity.

        Raises:
            EmbeddingNotFoundError: The entity has no stored embedding
        """
        vector = self.get_vector(document_id, kind, entity_id)
        if vector is None:
            raise EmbeddingNotFoundError(f"No embedding found for {kind}: {entity_id}")

        return self.query(document_id, kind, vector, limit=limit, threshold=threshold, exclude_id=entity_id)

    def delete(self, document_id: str, kind: str, entity_ids: Sequence[str]) -> None:
        collection = self._find_collection(document_id, kind)
        if collection is None or not entity_ids:
            return
        collection.delete(ids=list(entity_ids))

    def delete_document(self, document_id: str, kinds: Sequence[str] = ENTITY_KINDS) -> None:
        """Delete all embeddings for a document.

        Args:
            document_id: Document UUID
            kinds: Entity kinds to drop
        """
        for kind in kinds:
            collection_name = self._get_collection_name(document_id, kind)
            if self._find_collection(document_id, kind) is None:
                continue
            self.client.delete_collection(collection_name)
            logger.info(f"Deleted collection: {collection_name}")
