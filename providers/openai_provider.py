"""OpenAI chat-completions provider."""
from typing import Optional

import httpx

from utils.logger import setup_logger
from providers import prompts
from providers.exceptions import MalformedResponseError
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


class OpenAIProvider:
    """LLM provider backed by the OpenAI REST API."""

    name = "chatgpt"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: str = config.OPENAI_BASE_URL,
        temperature: float = config.LLM_TEMPERATURE,
        max_tokens: int = 4000,
        timeout: float = config.LLM_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model or config.OPENAI_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)
        self.headers = {"Authorization": f"Bearer {api_key}"}

        logger.info(f"OpenAI provider initialized with model {self.model}")

    async def check_health(self) -> bool:
        """List models to verify the key."""
        try:
            response = await self.client.get(f"{self.base_url}/models", headers=self.headers)
        except httpx.TransportError as e:
            logger.error(f"OpenAI health check failed: {e}")
            return False

        if response.status_code == 401:
            logger.error("OpenAI API key is invalid")
            return False
        return response.status_code == 200

    @transient_retry
    async def generate(self, prompt: str, options: Optional[GenerateOptions] = None) -> str:
        options = options or GenerateOptions()
        messages = []

        if options.format == "json":
            messages.append({"role": "system", "content": prompts.JSON_SYSTEM_INSTRUCTION})
        messages.append({"role": "user", "content": prompt})

        request = {
            "model": self.model,
            "messages": messages,
            "temperature": options.temperature if options.temperature is not None else self.temperature,
            "max_tokens": options.max_tokens or self.max_tokens,
        }
        if options.format == "json":
            request["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.post(f"{self.base_url}/chat/completions", json=request, headers=self.headers)
        except httpx.TransportError as e:
            raise transport_error(self.name, e)

        raise_for_provider_status(response, self.name)

        choices = response.json().get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise MalformedResponseError("No content in OpenAI response", self.name)

        return content

    async def analyze_scene(self, scene_text: str, chapter_title: Optional[str] = None) -> SceneAnalysis:
        prompt = prompts.chatgpt_scene_analysis_prompt(scene_text, chapter_title)
        return await analyze_scene_with(self, prompt)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
