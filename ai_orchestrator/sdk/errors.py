"""
Provider error types.

Adapters translate SDK exceptions into these so callers handle one
hierarchy regardless of which endpoint failed.
"""

from typing import Optional


class ProviderError(Exception):
    """A provider call failed or returned unusable content."""

    def __init__(self, message: str, provider: str, retryable: bool = False,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """The provider cannot be called at all, e.g. its API key is not set."""

    def __init__(self, message: str, provider: str):
        super().__init__(message, provider, retryable=False)
