"""Per-caller credential resolution for keyed providers."""
import os
from typing import Dict, Optional, Protocol, Tuple


class CredentialResolver(Protocol):
    """Looks up a caller's API key for a provider."""

    def get_api_key(self, caller_id: str, provider: str) -> Optional[str]:
        ...


# Provider name -> environment variable holding its key
PROVIDER_KEY_ENV = {
    "claude": "ANTHROPIC_API_KEY",
    "chatgpt": "OPENAI_API_KEY",
}


def key_hint(provider: str) -> str:
    """Tell the operator which environment variable supplies the key."""
    # OpenAI embeddings use the chat key
    env_name = PROVIDER_KEY_ENV.get("chatgpt" if provider == "openai" else provider)
    if not env_name:
        return "Check the provider configuration."
    return f"Set {env_name} (or {env_name}__<CALLER_ID> for a single caller)."


class EnvCredentialResolver:
    """Reads keys from the environment at lookup time.

    A caller-specific variable (``OPENAI_API_KEY__<CALLER>``) wins over the
    shared one. Nothing is cached, so a rotated key is picked up by the
    next stage that starts.
    """

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self.environ = environ if environ is not None else os.environ

    def get_api_key(self, caller_id: str, provider: str) -> Optional[str]:
        env_name = PROVIDER_KEY_ENV.get(provider)
        if not env_name:
            return None

        caller_suffix = caller_id.upper().replace("-", "_")
        return (
            self.environ.get(f"{env_name}__{caller_suffix}")
            or self.environ.get(env_name)
            or None
        )


class StaticCredentialResolver:
    """Fixed (caller, provider) -> key mapping, with an optional wildcard caller."""

    def __init__(self, keys: Optional[Dict[Tuple[str, str], str]] = None):
        self.keys = dict(keys or {})

    def get_api_key(self, caller_id: str, provider: str) -> Optional[str]:
        return self.keys.get((caller_id, provider)) or self.keys.get(("*", provider))
