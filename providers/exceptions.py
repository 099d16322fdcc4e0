"""Provider error taxonomy.

The queue layer decides whether to retry from the exception type alone,
so vendors must translate their failures into these classes.
"""
from typing import Optional


class ProviderError(Exception):
    """Base class for LLM and embedding provider failures."""

    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderCredentialError(ProviderError):
    """Missing or rejected API key. Needs user action, never retried."""

    retryable = False


class ProviderRateLimitError(ProviderError):
    """Provider throttled the request. Retried with a longer backoff."""


class ProviderUnavailableError(ProviderError):
    """Network failure, timeout or server-side error."""


class MalformedResponseError(ProviderError):
    """Response could not be parsed into the expected JSON shape."""

    retryable = False


class UnknownProviderError(ProviderError):
    """Provider name does not map to any implementation."""

    retryable = False


class ProviderRequestError(ProviderError):
    """Provider rejected the request itself (bad model name, bad payload)."""

    retryable = False
