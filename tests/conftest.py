"""Shared fixtures: temporary stores and stub providers."""
import hashlib
import json
from typing import Callable, List, Optional

import pytest

from ingestion.models import DetectedScene
from providers import prompts
from providers.llm import GenerateOptions, SceneAnalysis, analyze_scene_with
from storage.database import Database
from storage.vector_store import VectorStore


class StubLLM:
    """LLM provider whose responses come from a handler function."""

    name = "stub"
    model = "stub-model"

    def __init__(self, handler: Callable[[str, Optional[GenerateOptions]], str], healthy: bool = True):
        self.handler = handler
        self.healthy = healthy
        self.prompts: List[str] = []
        self.closed = False

    async def generate(self, prompt: str, options: Optional[GenerateOptions] = None) -> str:
        self.prompts.append(prompt)
        return self.handler(prompt, options)

    async def analyze_scene(self, scene_text: str, chapter_title: Optional[str] = None) -> SceneAnalysis:
        return await analyze_scene_with(self, prompts.scene_analysis_prompt(scene_text, chapter_title))

    async def check_health(self) -> bool:
        return self.healthy

    async def aclose(self) -> None:
        self.closed = True

    def count(self, marker: str) -> int:
        return sum(1 for prompt in self.prompts if marker in prompt)


class StubEmbedder:
    """Deterministic bag-of-words embeddings."""

    name = "stub"
    model = "stub-embed"
    dimensions = 32

    async def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for word in text.lower().split():
            digest = hashlib.md5(word.strip(".,:").encode()).digest()
            vector[digest[0] % self.dimensions] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(text) for text in texts]

    async def check_health(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


class StubFactory:
    """Hands out the same stub providers to every stage."""

    def __init__(self, llm: StubLLM, embedder: Optional[StubEmbedder] = None):
        self.llm = llm
        self.embedder = embedder or StubEmbedder()
        self.llm_requests = []

    def create_llm(self, caller_id, provider=None, model=None):
        self.llm_requests.append((caller_id, provider, model))
        return self.llm

    def create_embedding(self, caller_id, provider=None, model=None):
        return self.embedder


def analysis_json(*characters, setting="A quiet village", mood="calm") -> str:
    return json.dumps({
        "characters": [{"name": name, "description": description} for name, description in characters],
        "setting": setting,
        "timeOfDay": "morning",
        "weather": None,
        "mood": mood,
        "visualElements": ["stone walls", "smoke"],
        "keyActions": ["walks"],
    })


def make_scenes(texts: List[str], chapter_number: int = 1) -> List[DetectedScene]:
    return [
        DetectedScene(
            chapter_number=chapter_number,
            chapter_title=f"Chapter {chapter_number}",
            scene_number=i + 1,
            scene_index_global=i,
            text=text,
            word_count=len(text.split()),
            has_dialogue=False,
            scene_type="narrative",
            character_count=1,
        )
        for i, text in enumerate(texts)
    ]


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "pipeline.db")


@pytest.fixture
def vector_store(tmp_path):
    return VectorStore(tmp_path / "chroma")


@pytest.fixture
def no_backoff():
    return {
        "segmentation": {"attempts": 3, "backoff": 0},
        "analysis": {"attempts": 2, "backoff": 0},
        "discovery": {"attempts": 2, "backoff": 0},
    }
