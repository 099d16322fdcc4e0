"""Embedding providers.

Every provider returns vectors of a fixed dimensionality for its model;
batch calls return vectors in input order.
"""
import asyncio
from typing import List, Optional, Protocol, Sequence

import httpx

from utils.logger import setup_logger
from providers.exceptions import MalformedResponseError, ProviderRequestError
from providers.llm import raise_for_provider_status, transient_retry, transport_error
import config

logger = setup_logger(__name__)

OPENAI_EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

OLLAMA_EMBEDDING_DIMENSIONS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
}


class EmbeddingProvider(Protocol):
    """Capability every embedding vendor implementation provides."""

    name: str
    model: str

    @property
    def dimensions(self) -> int:
        ...

    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        ...

    async def check_health(self) -> bool:
        ...

    async def aclose(self) -> None:
        ...


class OpenAIEmbeddingProvider:
    """OpenAI embeddings endpoint. Batches natively."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: str = config.OPENAI_BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model or config.OPENAI_EMBEDDING_MODEL
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=60.0)
        self.headers = {"Authorization": f"Bearer {api_key}"}

    @property
    def dimensions(self) -> int:
        return OPENAI_EMBEDDING_DIMENSIONS.get(self.model, 1536)

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    @transient_retry
    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        try:
            response = await self.client.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": list(texts)},
                headers=self.headers,
            )
        except httpx.TransportError as e:
            raise transport_error(self.name, e)

        raise_for_provider_status(response, self.name)

        data = response.json().get("data")
        if not isinstance(data, list) or len(data) != len(texts):
            raise MalformedResponseError("Embedding response does not match input count", self.name)

        # The API may reorder entries; index restores input order
        ordered = sorted(data, key=lambda item: item["index"])
        return [item["embedding"] for item in ordered]

    async def check_health(self) -> bool:
        try:
            await self.embed("test")
            return True
        except Exception as e:
            logger.error(f"OpenAI embedding health check failed: {e}")
            return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class OllamaEmbeddingProvider:
    """Ollama embeddings. No native batching, so batches run sequentially."""

    name = "ollama"

    def __init__(
        self,
        model: Optional[str] = None,
        host: Optional[str] = None,
        batch_delay: float = config.EMBEDDING_BATCH_DELAY,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model or config.OLLAMA_EMBEDDING_MODEL
        self.host = host or config.OLLAMA_HOST
        self.batch_delay = batch_delay
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=60.0)

    @property
    def dimensions(self) -> int:
        return OLLAMA_EMBEDDING_DIMENSIONS.get(self.model, 768)

    @transient_retry
    async def embed(self, text: str) -> List[float]:
        try:
            response = await self.client.post(
                f"{self.host}/api/embeddings",
                json={"model": self.model, "prompt": text},
            )
        except httpx.TransportError as e:
            raise transport_error(self.name, e)

        raise_for_provider_status(response, self.name)

        embedding = response.json().get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise MalformedResponseError("No embedding in Ollama response", self.name)
        return embedding

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        vectors = []
        for i, text in enumerate(texts):
            vectors.append(await self.embed(text))
            if i < len(texts) - 1:
                await asyncio.sleep(self.batch_delay)
        return vectors

    async def check_health(self) -> bool:
        try:
            response = await self.client.get(f"{self.host}/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Ollama embedding health check failed: {e}")
            return False

        models = [m.get("name", "") for m in response.json().get("models", [])]
        if not any(name.startswith(self.model) for name in models):
            logger.warning(f"Embedding model {self.model} not found. Run: ollama pull {self.model}")
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class LocalEmbeddingProvider:
    """sentence-transformers model running in-process. Needs no credential."""

    name = "local"

    def __init__(self, model: Optional[str] = None):
        self.model = model or config.LOCAL_EMBEDDING_MODEL
        self._encoder = None

    def _load(self):
        if self._encoder is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model}")
            self._encoder = SentenceTransformer(self.model)
        return self._encoder

    @property
    def dimensions(self) -> int:
        dims = self._load().get_sentence_embedding_dimension()
        if dims is None:
            raise ProviderRequestError(f"Model {self.model} has no fixed dimension", self.name)
        return dims

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        encoder = self._load()
        # Encoding is CPU bound
        vectors = await asyncio.to_thread(encoder.encode, list(texts), show_progress_bar=False)
        return vectors.tolist()

    async def check_health(self) -> bool:
        try:
            self._load()
            return True
        except Exception as e:
            logger.error(f"Could not load embedding model {self.model}: {e}")
            return False

    async def aclose(self) -> None:
        return None
