"""Anthropic Claude provider."""
from typing import Optional

import anthropic
import httpx
from anthropic import AsyncAnthropic

from utils.logger import setup_logger
from providers import prompts
from providers.credentials import key_hint
from providers.exceptions import (
    MalformedResponseError,
    ProviderCredentialError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from providers.llm import GenerateOptions, SceneAnalysis, analyze_scene_with, transient_retry
import config

logger = setup_logger(__name__)


class AnthropicProvider:
    """LLM provider backed by the Anthropic Messages API."""

    name = "claude"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        temperature: float = config.LLM_TEMPERATURE,
        max_tokens: int = 4096,
        timeout: float = config.LLM_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the provider.

        Args:
            api_key: Anthropic API key
            model: Model name, defaults to config.ANTHROPIC_MODEL
            temperature: Default sampling temperature
            max_tokens: Default completion limit
            timeout: Request timeout in seconds
            http_client: Optional transport, mainly for tests
        """
        self.model = model or config.ANTHROPIC_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._owns_client = http_client is None
        # SDK retries are disabled; transient_retry and the queue own retrying
        self.client = AsyncAnthropic(
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

        logger.info(f"Anthropic provider initialized with model {self.model}")

    async def check_health(self) -> bool:
        """Send a one-token message to confirm the key and model work."""
        try:
            await self.client.messages.create(
                model=self.model,
                max_tokens=1,
                messages=[{"role": "user", "content": "ping"}],
            )
            return True
        except anthropic.APIError as e:
            logger.error(f"Anthropic health check failed: {e}")
            return False

    @transient_retry
    async def generate(self, prompt: str, options: Optional[GenerateOptions] = None) -> str:
        options = options or GenerateOptions()
        request = {
            "model": self.model,
            "max_tokens": options.max_tokens or self.max_tokens,
            "temperature": options.temperature if options.temperature is not None else self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if options.format == "json":
            request["system"] = prompts.JSON_SYSTEM_INSTRUCTION

        try:
            message = await self.client.messages.create(**request)
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError):
            raise ProviderCredentialError(
                f"Claude API key is invalid. {key_hint(self.name)}", self.name
            )
        except anthropic.RateLimitError:
            raise ProviderRateLimitError("Claude API rate limit exceeded", self.name)
        except (anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            raise ProviderUnavailableError(f"Claude API unavailable: {e}", self.name)
        except anthropic.APIStatusError as e:
            raise ProviderRequestError(f"Claude API error {e.status_code}: {e.message}", self.name)

        text_blocks = [block.text for block in message.content if getattr(block, "type", None) == "text"]
        if not text_blocks:
            raise MalformedResponseError("No text content in Claude response", self.name)

        return "".join(text_blocks)

    async def analyze_scene(self, scene_text: str, chapter_title: Optional[str] = None) -> SceneAnalysis:
        prompt = prompts.claude_scene_analysis_prompt(scene_text, chapter_title)
        return await analyze_scene_with(self, prompt)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.close()
