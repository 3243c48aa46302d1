"""
Data models for storage layer.

Defines provider results, ledger entries and persisted sessions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SearchEngine(Enum):
    """Which link of the search fallback chain produced a result."""
    PRIMARY = "primary"
    SECONDARY = "secondary"
    FALLBACK = "fallback"


class SearchStatus(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FALLBACK = "fallback"


class UsageStatus(Enum):
    """Outcome recorded for a completion call."""
    SUCCESS = "success"
    ERROR = "error"
    BLOCKED = "blocked"


class SessionStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


@dataclass(frozen=True)
class Insight:
    """Short titled finding extracted from search content."""
    title: str
    description: str
    confidence: float


@dataclass(frozen=True)
class SearchResult:
    """Result of one search query, produced once and never mutated."""
    content: str
    sources: Tuple[str, ...]
    confidence: float
    source_count: int
    engine: SearchEngine
    status: SearchStatus
    insights: Tuple[Insight, ...] = ()
    relevance_score: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)
    error_message: Optional[str] = None

    def __post_init__(self):
        """Validate confidence bounds and source count."""
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")
        if self.source_count < 0:
            raise ValueError("source_count cannot be negative")

    @property
    def has_search_data(self) -> bool:
        """True when content came from a live provider rather than the template."""
        return self.engine != SearchEngine.FALLBACK and bool(self.content.strip())

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the search endpoint response shape."""
        payload = {
            "content": self.content,
            "sources": list(self.sources),
            "insights": [
                {"title": i.title, "description": i.description, "confidence": i.confidence}
                for i in self.insights
            ],
            "metrics": {
                "confidence": self.confidence,
                "sourceCount": self.source_count,
                "relevanceScore": self.relevance_score,
            },
            "timestamp": self.timestamp.isoformat(),
            "searchEngine": self.engine.value,
            "status": self.status.value,
        }
        if self.error_message:
            payload["errorMessage"] = self.error_message
        return payload


@dataclass(frozen=True)
class CompletionRequest:
    """Everything needed for one chat-completion call. Built fresh per call."""
    system_prompt: str
    prior_messages: Tuple[Dict[str, str], ...]
    model: str
    temperature: float
    max_tokens: Optional[int] = None

    def to_messages(self) -> List[Dict[str, str]]:
        """Render as an OpenAI-style message list."""
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(dict(m) for m in self.prior_messages)
        return messages


@dataclass(frozen=True)
class CompletionResult:
    """Text and metered usage returned by a completion provider."""
    text: str
    prompt_tokens: int
    completion_tokens: int
    cost_estimate: Decimal
    model: str
    request_id: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class UsageLogEntry:
    """Immutable ledger row for one completion call.

    Append-only: once written, entries are never modified or removed.
    """
    timestamp: datetime
    user_id: str
    function_name: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    cost: Decimal
    status: UsageStatus
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")
        if self.cost < 0:
            raise ValueError("cost cannot be negative")

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class SearchLogEntry:
    """Audit row written once per search adapter call."""
    timestamp: datetime
    query: str
    search_type: str
    engine: SearchEngine
    success: bool
    confidence: float
    company_name: Optional[str] = None
    industry: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class SessionConfig:
    """Per-session business context supplied by the caller."""
    company_name: Optional[str] = None
    industry: Optional[str] = None
    analysis_focus: Optional[str] = None
    profile: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> "SessionConfig":
        data = data or {}
        return cls(
            company_name=data.get("companyName"),
            industry=data.get("industry"),
            analysis_focus=data.get("analysisFocus"),
            profile=data.get("profile"),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "companyName": self.company_name,
            "industry": self.industry,
            "analysisFocus": self.analysis_focus,
            "profile": self.profile,
        }
        return {k: v for k, v in payload.items() if v is not None}


MAX_MANUAL_RETRIES = 3


@dataclass
class Session:
    """One conversation: its messages, configuration and retry budget.

    Owned by the caller and passed explicitly to the pipeline.
    """
    session_id: str
    user_id: str
    agent_type: str
    config: SessionConfig = field(default_factory=SessionConfig)
    messages: List[Dict[str, str]] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    retry_count: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def add_message(self, role: str, content: str, agent: Optional[str] = None) -> None:
        message = {"role": role, "content": content}
        if agent:
            message["agent"] = agent
        self.messages.append(message)
        self.updated_at = datetime.now()

    @property
    def can_retry(self) -> bool:
        return self.retry_count < MAX_MANUAL_RETRIES

    def record_retry(self) -> None:
        """Count one manual retry; refuse once the budget is spent."""
        if not self.can_retry:
            raise ValueError(f"retry limit of {MAX_MANUAL_RETRIES} reached for session {self.session_id}")
        self.retry_count += 1
        self.updated_at = datetime.now()
