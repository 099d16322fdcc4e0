"""Builds provider instances per caller from injected credentials."""
from typing import Dict, List, Optional

import httpx

from utils.logger import setup_logger
from providers.credentials import CredentialResolver, EnvCredentialResolver, key_hint
from providers.exceptions import ProviderCredentialError, UnknownProviderError
from providers.llm import LLMProvider
from providers.embeddings import (
    EmbeddingProvider,
    LocalEmbeddingProvider,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
)
import config

logger = setup_logger(__name__)

LLM_ALIASES = {
    "anthropic": "claude",
    "claude": "claude",
    "openai": "chatgpt",
    "gpt": "chatgpt",
    "chatgpt": "chatgpt",
    "ollama": "ollama",
}

EMBEDDING_ALIASES = {
    "openai": "openai",
    "chatgpt": "openai",
    "ollama": "ollama",
    "local": "local",
    "sentence-transformers": "local",
}

# Providers that run without a credential
LOCAL_LLM_PROVIDERS = ["ollama"]

PROVIDER_LABELS = {
    "claude": "Claude",
    "chatgpt": "ChatGPT",
    "ollama": "Ollama",
}


def normalize_llm_provider(name: str) -> str:
    """Map a provider name or alias to its canonical tag."""
    canonical = LLM_ALIASES.get((name or "").strip().lower())
    if canonical is None:
        raise UnknownProviderError(f"Unknown LLM provider: {name}", name)
    return canonical


def normalize_embedding_provider(name: str) -> str:
    canonical = EMBEDDING_ALIASES.get((name or "").strip().lower())
    if canonical is None:
        raise UnknownProviderError(f"Unknown embedding provider: {name}", name)
    return canonical


class ProviderFactory:
    """Creates LLM and embedding providers for one call context.

    Credentials are looked up each time a provider is created, never
    cached on the factory.
    """

    def __init__(
        self,
        credential_resolver: Optional[CredentialResolver] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the factory.

        Args:
            credential_resolver: Source of per-caller API keys
            http_client: Optional shared transport handed to HTTP providers
        """
        self.credentials = credential_resolver or EnvCredentialResolver()
        self.http_client = http_client

    def _require_key(self, caller_id: str, provider: str) -> str:
        api_key = self.credentials.get_api_key(caller_id, provider)
        if not api_key:
            label = PROVIDER_LABELS.get(provider, provider)
            raise ProviderCredentialError(
                f"No {label} API key found. {key_hint(provider)}",
                provider,
            )
        return api_key

    def create_llm(
        self,
        caller_id: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> LLMProvider:
        """Create an LLM provider for a caller.

        Raises:
            UnknownProviderError: Provider name is not recognised
            ProviderCredentialError: Keyed provider with no key for this caller
        """
        name = normalize_llm_provider(provider or config.DEFAULT_LLM_PROVIDER)

        if name == "claude":
            from providers.anthropic_provider import AnthropicProvider

            return AnthropicProvider(
                api_key=self._require_key(caller_id, name),
                model=model,
                http_client=self.http_client,
            )

        if name == "chatgpt":
            from providers.openai_provider import OpenAIProvider

            return OpenAIProvider(
                api_key=self._require_key(caller_id, name),
                model=model,
                http_client=self.http_client,
            )

        from providers.ollama_provider import OllamaProvider

        return OllamaProvider(model=model, http_client=self.http_client)

    def create_embedding(
        self,
        caller_id: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> EmbeddingProvider:
        """Create an embedding provider for a caller."""
        name = normalize_embedding_provider(provider or config.DEFAULT_EMBEDDING_PROVIDER)

        if name == "openai":
            return OpenAIEmbeddingProvider(
                api_key=self._require_key(caller_id, "chatgpt"),
                model=model,
                http_client=self.http_client,
            )
        if name == "ollama":
            return OllamaEmbeddingProvider(model=model, http_client=self.http_client)

        return LocalEmbeddingProvider(model=model)

    def available_providers(self, caller_id: str) -> List[Dict[str, object]]:
        """List LLM providers with whether this caller can use them."""
        providers = []
        for name, label in PROVIDER_LABELS.items():
            if name in LOCAL_LLM_PROVIDERS:
                available = True
            else:
                available = bool(self.credentials.get_api_key(caller_id, name))
            providers.append({"name": name, "label": label, "available": available})
        return providers
