"""Ollama provider for locally hosted models. Needs no credential."""
from typing import Optional

import httpx

from utils.logger import setup_logger
from providers import prompts
from providers.llm import (
    GenerateOptions,
    SceneAnalysis,
    analyze_scene_with,
    raise_for_provider_status,
    transient_retry,
    transport_error,
)
import config

logger = setup_logger(__name__)


class OllamaProvider:
    """LLM provider backed by the Ollama HTTP API."""

    name = "ollama"

    def __init__(
        self,
        model: Optional[str] = None,
        host: Optional[str] = None,
        temperature: float = config.LLM_TEMPERATURE,
        max_tokens: int = config.LLM_MAX_TOKENS,
        timeout: float = config.LLM_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model or config.OLLAMA_MODEL
        self.host = host or config.OLLAMA_HOST
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

        logger.info(f"Ollama provider initialized: {self.host} with model {self.model}")

    async def check_health(self) -> bool:
        """Check that the server answers; warn if the model is not pulled."""
        try:
            response = await self.client.get(f"{self.host}/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Ollama health check failed: {e}")
            return False

        models = [m.get("name") for m in response.json().get("models", [])]
        if self.model not in models:
            logger.warning(f"Model {self.model} not found on {self.host}. Available models: {models}")

        return True

    @transient_retry
    async def generate(self, prompt: str, options: Optional[GenerateOptions] = None) -> str:
        options = options or GenerateOptions()
        request = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": options.temperature if options.temperature is not None else self.temperature,
                "num_predict": options.max_tokens or self.max_tokens,
                "top_p": 0.9,
            },
        }
        if options.format == "json":
            request["format"] = "json"

        try:
            response = await self.client.post(f"{self.host}/api/generate", json=request)
        except httpx.TransportError as e:
            raise transport_error(self.name, e)

        raise_for_provider_status(response, self.name)
        return response.json().get("response", "")

    async def analyze_scene(self, scene_text: str, chapter_title: Optional[str] = None) -> SceneAnalysis:
        prompt = prompts.scene_analysis_prompt(scene_text, chapter_title)
        return await analyze_scene_with(self, prompt)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
