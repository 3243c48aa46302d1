"""
Provider adapters for AI Orchestrator.

Wraps OpenAI-compatible endpoints for search and completion.
"""

from .errors import ProviderError, ProviderUnavailable
from .openai_client import CompletionClient
from .search_client import SearchClient, SearchRequest, SearchType, Timeframe

__all__ = [
    "CompletionClient",
    "ProviderError",
    "ProviderUnavailable",
    "SearchClient",
    "SearchRequest",
    "SearchType",
    "Timeframe",
]
