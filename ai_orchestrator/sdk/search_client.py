"""
Search provider adapter.

Queries a primary online-search model, falls back to a secondary
analytical model, and finally to a static templated answer. A result is
always returned; provider failures are logged, never raised.
"""

import re
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import openai
from openai import OpenAI

from ..config.loader import ProviderSettings
from ..core.retry import NO_RETRY, RetryPolicy
from ..logger import get_logger
from ..storage.models import (
    Insight,
    SearchEngine,
    SearchLogEntry,
    SearchResult,
    SearchStatus,
)
from ..storage.repository import SearchAuditLog
from .errors import ProviderError
from .openai_client import create_client, translate_error

logger = get_logger(__name__)

MAX_SOURCES = 5
MAX_INSIGHTS = 3
PRIMARY_CONFIDENCE = 0.9
SECONDARY_CONFIDENCE = 0.7
FALLBACK_CONFIDENCE = 0.5
SEARCH_MAX_TOKENS = 2000


class SearchType(Enum):
    COMPETITIVE = "competitive"
    FINANCIAL = "financial"
    MARKET = "market"
    COMPREHENSIVE = "comprehensive"


class Timeframe(Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"

    @property
    def recency_filter(self) -> str:
        """Provider recency filter; there is no quarter filter, so it maps to month."""
        if self is Timeframe.QUARTER:
            return "month"
        return self.value


_TIMEFRAME_TEXT = {
    Timeframe.HOUR: "the last hour",
    Timeframe.DAY: "the last 24 hours",
    Timeframe.WEEK: "the last week",
    Timeframe.MONTH: "the last month",
    Timeframe.QUARTER: "the last 3 months",
}

_SEARCH_FOCUS = {
    SearchType.FINANCIAL: "financial performance, revenue, key metrics and share price",
    SearchType.COMPETITIVE: "competitive analysis, market position and strategic moves",
    SearchType.MARKET: "market trends, industry analysis and sector dynamics",
    SearchType.COMPREHENSIVE: "overall strategy, business intelligence and market context",
}


@dataclass(frozen=True)
class SearchRequest:
    """A single search query with optional company and industry hints."""
    query: str
    context: str = "General search"
    search_type: SearchType = SearchType.COMPREHENSIVE
    timeframe: Timeframe = Timeframe.MONTH
    company_name: Optional[str] = None
    industry: Optional[str] = None

    def __post_init__(self):
        if not self.query or not self.query.strip():
            raise ValueError("query is required and cannot be empty")

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "SearchRequest":
        """Build from the search endpoint request shape.

        Raises:
            ValueError: If query is missing or an enum value is unknown
        """
        return cls(
            query=data.get("query") or "",
            context=data.get("context") or "General search",
            search_type=SearchType(data.get("searchType") or SearchType.COMPREHENSIVE.value),
            timeframe=Timeframe(data.get("timeframe") or Timeframe.MONTH.value),
            company_name=data.get("companyName"),
            industry=data.get("industry"),
        )


def build_primary_query(request: SearchRequest) -> str:
    """Single-shot query for the online search model."""
    return (
        f"Analyze {request.company_name or 'the company'} in the "
        f"{request.industry or 'relevant'} industry. "
        f"Focus on {_SEARCH_FOCUS[request.search_type]} during {_TIMEFRAME_TEXT[request.timeframe]}. "
        f"Specific question: {request.query}. "
        "Provide specific data with verifiable sources."
    )


def build_analysis_prompt(request: SearchRequest) -> str:
    """Paraphrased analytical prompt for the secondary model."""
    return f"""Provide a detailed strategic analysis of: {request.query}

Context:
- Company: {request.company_name or 'Not specified'}
- Industry: {request.industry or 'General'}
- Analysis type: {request.search_type.value}
- Timeframe: {request.timeframe.value}

Include:
1. Current situation
2. Key trends
3. Opportunities and threats
4. Strategic recommendations
5. Metrics worth tracking

Give specific, actionable insights."""


def build_fallback_content(request: SearchRequest) -> str:
    """Static answer used when every provider fails."""
    company = request.company_name or "the target company"
    industry = request.industry or "its sector"
    return f"""Strategic analysis for {company} in {industry}:

**Analysis context:**
- Query: {request.query}
- Focus: {request.search_type.value}
- Timeframe: {request.timeframe.value}

**General analysis:**
1. **Competitive positioning**: Assess the current market position through strengths, weaknesses and differentiation.
2. **Sector trends**: {industry} needs continuous monitoring of innovation, regulation and shifting customer preferences.
3. **Strategic opportunities**: Look for niche markets, geographic expansion, partnerships and new offerings.
4. **Risk management**: Evaluate competitive threats, regulatory risk, technology change and market volatility.

*Note: live web data was unavailable; this analysis is based on general sector patterns.*"""


def extract_insights(content: str) -> Tuple[Insight, ...]:
    """Pull up to MAX_INSIGHTS "Title: description" lines from ``content``.

    Always returns at least one insight.
    """
    insights: List[Insight] = []
    lines = [line.strip() for line in content.split("\n") if len(line.strip()) > 20]

    for i, line in enumerate(lines[:MAX_INSIGHTS]):
        if ":" not in line or len(line) <= 30:
            continue
        title, _, description = line.partition(":")
        title = re.sub(r"^(?:[-*]\s*|\d+\.\s*)", "", title).strip("* ").strip()
        description = description.strip("* ").strip()
        if title and description:
            insights.append(Insight(title=title, description=description, confidence=round(0.8 - i * 0.1, 2)))

    if not insights:
        insights.append(Insight(
            title="Competitive analysis",
            description="Strategic analysis based on available information",
            confidence=0.7,
        ))
    return tuple(insights)


def _citation_sources(citations: Any) -> Tuple[str, ...]:
    if not isinstance(citations, list):
        return ()
    sources = []
    for citation in citations:
        if isinstance(citation, str):
            sources.append(citation)
        elif isinstance(citation, dict):
            sources.append(citation.get("url") or citation.get("title") or citation.get("source") or "Web source")
    return tuple(sources[:MAX_SOURCES])


def _response_extra(response: Any, key: str) -> Any:
    value = getattr(response, key, None)
    if value is None:
        extra = getattr(response, "model_extra", None) or {}
        value = extra.get(key)
    return value


class SearchClient:
    """Search adapter with a single primary → secondary → static chain."""

    def __init__(
        self,
        primary: ProviderSettings,
        secondary: ProviderSettings,
        audit_log: Optional[SearchAuditLog] = None,
        retry_policy: RetryPolicy = NO_RETRY,
        primary_client: Optional[OpenAI] = None,
        secondary_client: Optional[OpenAI] = None,
    ):
        self.primary = primary
        self.secondary = secondary
        self.audit_log = audit_log
        self.retry_policy = retry_policy
        self._clients: Dict[str, Optional[OpenAI]] = {
            primary.provider_id: primary_client,
            secondary.provider_id: secondary_client,
        }

    def _client_for(self, settings: ProviderSettings) -> OpenAI:
        client = self._clients.get(settings.provider_id)
        if client is None:
            client = create_client(settings)
            self._clients[settings.provider_id] = client
        return client

    def search(self, request: SearchRequest) -> SearchResult:
        """Run the fallback chain for ``request``.

        Args:
            request: Query and hints

        Returns:
            SearchResult from the first link that succeeds
        """
        logger.info(
            "search.start",
            extra={
                "event": "search.start",
                "query": request.query[:80],
                "search_type": request.search_type.value,
                "company_name": request.company_name,
            },
        )

        errors: List[str] = []
        result: Optional[SearchResult] = None

        for settings, attempt in (
            (self.primary, self._search_primary),
            (self.secondary, self._search_secondary),
        ):
            start_time = time.time()
            try:
                result = self.retry_policy.call(
                    lambda: attempt(settings, request),
                    description=f"{settings.provider_id}.search",
                )
                logger.info(
                    "search.success",
                    extra={
                        "event": "search.success",
                        "provider": settings.provider_id,
                        "engine": result.engine.value,
                        "source_count": result.source_count,
                        "elapsed_ms": int((time.time() - start_time) * 1000),
                    },
                )
                break
            except ProviderError as e:
                errors.append(str(e))
                logger.warning(
                    "search.fallback",
                    extra={
                        "event": "search.fallback",
                        "provider": settings.provider_id,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                        "status_code": e.status_code,
                    },
                )

        if result is None:
            content = build_fallback_content(request)
            result = SearchResult(
                content=content,
                sources=(),
                confidence=FALLBACK_CONFIDENCE,
                source_count=0,
                engine=SearchEngine.FALLBACK,
                status=SearchStatus.FALLBACK,
                insights=extract_insights(content),
                relevance_score=0.3,
                error_message="; ".join(errors) or None,
            )
            logger.warning(
                "search.static_fallback",
                extra={"event": "search.static_fallback", "errors": errors},
            )

        if self.audit_log is not None:
            self.audit_log.append(SearchLogEntry(
                timestamp=datetime.now(),
                query=request.query,
                search_type=request.search_type.value,
                engine=result.engine,
                success=result.engine != SearchEngine.FALLBACK,
                confidence=result.confidence,
                company_name=request.company_name,
                industry=request.industry,
                error_message=result.error_message,
            ))

        return result

    def _chat(self, settings: ProviderSettings, messages: List[Dict[str, str]],
              temperature: float, extra_body: Optional[Dict[str, Any]] = None) -> Any:
        if not settings.model:
            raise ProviderError(f"No model configured for {settings.provider_id}", settings.provider_id)
        client = self._client_for(settings)
        kwargs: Dict[str, Any] = {
            "model": settings.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": SEARCH_MAX_TOKENS,
        }
        if extra_body:
            kwargs["extra_body"] = extra_body
        try:
            response = client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise translate_error(e, settings.provider_id) from e

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        if not content.strip():
            raise ProviderError(f"Empty response from {settings.provider_id}", settings.provider_id)
        return response, content

    def _search_primary(self, settings: ProviderSettings, request: SearchRequest) -> SearchResult:
        response, content = self._chat(
            settings,
            [
                {
                    "role": "system",
                    "content": (
                        "You are an expert competitive intelligence analyst. Give detailed, factual "
                        f"analysis with specific data and sources. Focus on {request.search_type.value} intelligence."
                    ),
                },
                {"role": "user", "content": build_primary_query(request)},
            ],
            temperature=0.1,
            extra_body={
                "return_citations": True,
                "search_recency_filter": request.timeframe.recency_filter,
            },
        )
        sources = _citation_sources(_response_extra(response, "citations"))
        return SearchResult(
            content=content,
            sources=sources,
            confidence=PRIMARY_CONFIDENCE,
            source_count=len(sources),
            engine=SearchEngine.PRIMARY,
            status=SearchStatus.SUCCESS,
            insights=extract_insights(content),
            relevance_score=0.85,
        )

    def _search_secondary(self, settings: ProviderSettings, request: SearchRequest) -> SearchResult:
        _, content = self._chat(
            settings,
            [
                {
                    "role": "system",
                    "content": "You are an expert business analyst. Give detailed strategic analysis with actionable insights.",
                },
                {"role": "user", "content": build_analysis_prompt(request)},
            ],
            temperature=0.2,
        )
        return SearchResult(
            content=content,
            sources=(f"{settings.model} knowledge base",),
            confidence=SECONDARY_CONFIDENCE,
            source_count=1,
            engine=SearchEngine.SECONDARY,
            status=SearchStatus.PARTIAL,
            insights=extract_insights(content),
            relevance_score=0.7,
        )
