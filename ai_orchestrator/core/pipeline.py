"""
Per-turn orchestration.

One user turn moves through:

    idle -> searching -> composing -> completing -> validating
         -> (regenerating) -> logging -> idle

Any failure enters ``error``, which always ends the turn with an
apologetic assistant message and a bounded manual-retry flag. Quota is
checked before any provider call; a blocked turn makes no network calls.
"""

import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ai_orchestrator.config.loader import (
    COMPLETION,
    PRIMARY_SEARCH,
    SECONDARY_SEARCH,
    STYLING,
    AppConfig,
)
from ai_orchestrator.logger import get_logger
from ai_orchestrator.sdk.errors import ProviderError
from ai_orchestrator.sdk.openai_client import CompletionClient
from ai_orchestrator.sdk.search_client import SearchClient, SearchRequest, SearchType, Timeframe
from ai_orchestrator.storage.models import (
    CompletionRequest,
    CompletionResult,
    SearchResult,
    Session,
    SessionConfig,
    UsageLogEntry,
    UsageStatus,
)
from ai_orchestrator.storage.repository import (
    SearchAuditLog,
    SessionStore,
    UsageLedger,
    initialize_schema,
)

from .agents import AgentType, get_profile
from .guardrails import EnforcementAction, QuotaExceeded, QuotaState, check_quota
from .pricing import estimate_request_cost
from .prompts import ContextBlock, build_completion_request, trailing_history
from .token_counter import estimate_tokens
from .validator import ValidationScore, build_regeneration_request, score_response

logger = get_logger(__name__)

APOLOGY_MESSAGE = (
    "I'm sorry, something went wrong while preparing this answer. "
    "Please try again in a moment."
)
QUOTA_MESSAGE = (
    "Your usage limit has been reached, so this request was not processed. "
    "Please try again once your quota resets."
)
RETRY_EXHAUSTED_MESSAGE = (
    "This request has failed several times. Please start a new conversation "
    "or try again later."
)

INTERPRET_MODEL = "gpt-4o"

_AGENT_SEARCH_TYPES = {
    AgentType.MENTOR: SearchType.COMPREHENSIVE,
    AgentType.CONTENT_GENERATOR: SearchType.MARKET,
    AgentType.RESEARCH_ENGINE: SearchType.COMPREHENSIVE,
    AgentType.CDV: SearchType.COMPETITIVE,
    AgentType.CIA: SearchType.COMPETITIVE,
    AgentType.CIR: SearchType.COMPETITIVE,
}


class TurnState(Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    COMPOSING = "composing"
    COMPLETING = "completing"
    VALIDATING = "validating"
    REGENERATING = "regenerating"
    LOGGING = "logging"
    ERROR = "error"


@dataclass
class TurnResult:
    """Outcome of one user turn."""
    response: str
    agent: AgentType
    tokens_used: int = 0
    cost: Decimal = Decimal("0")
    model: Optional[str] = None
    states: List[TurnState] = field(default_factory=list)
    validation: Optional[ValidationScore] = None
    regenerated: bool = False
    search: Optional[SearchResult] = None
    completion_calls: int = 0
    can_retry: bool = False
    quota_exceeded: bool = False
    error: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.quota_exceeded

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the chat endpoint response shape."""
        metadata = {
            "agentType": self.agent.value,
            "sessionId": self.session_id,
            "states": [s.value for s in self.states],
            "regenerated": self.regenerated,
            "completionCalls": self.completion_calls,
            "canRetry": self.can_retry,
            "quotaExceeded": self.quota_exceeded,
        }
        if self.validation is not None:
            metadata["validation"] = {
                "score": self.validation.score,
                "issues": list(self.validation.issues),
                "skipped": self.validation.skipped,
            }
        if self.search is not None:
            metadata["searchEngine"] = self.search.engine.value
            metadata["sources"] = list(self.search.sources)
            metadata["confidence"] = self.search.confidence
        if self.error:
            metadata["error"] = self.error
        metadata.update(self.metadata)
        return {
            "response": self.response,
            "tokensUsed": self.tokens_used,
            "cost": float(self.cost),
            "model": self.model,
            "metadata": metadata,
        }


@dataclass(frozen=True)
class ChatRequest:
    """Chat endpoint request: ``{message, agentType, sessionConfig, userContext}``."""
    message: str
    agent: AgentType
    user_id: str
    session_id: Optional[str] = None
    session_config: SessionConfig = field(default_factory=SessionConfig)
    knowledge: tuple = ()

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ChatRequest":
        """Parse and validate a request payload.

        Raises:
            ValueError: If message, agentType or userContext.userId is missing
        """
        message = data.get("message")
        if not message or not str(message).strip():
            raise ValueError("message is required and cannot be empty")
        user_context = data.get("userContext") or {}
        user_id = user_context.get("userId")
        if not user_id:
            raise ValueError("userContext.userId is required")
        return cls(
            message=str(message),
            agent=AgentType.parse(data.get("agentType") or ""),
            user_id=str(user_id),
            session_id=user_context.get("sessionId"),
            session_config=SessionConfig.from_payload(data.get("sessionConfig")),
            knowledge=tuple(user_context.get("knowledge") or ()),
        )


class Pipeline:
    """Runs user turns against the configured providers and ledger."""

    def __init__(
        self,
        config: AppConfig,
        completion: CompletionClient,
        search: SearchClient,
        ledger: UsageLedger,
        session_store: Optional[SessionStore] = None,
        styling: Optional[CompletionClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.completion = completion
        self.search = search
        self.ledger = ledger
        self.session_store = session_store
        self.styling = styling
        self.sleep = sleep

    @classmethod
    def from_config(cls, config: AppConfig) -> "Pipeline":
        """Wire clients, ledger and stores from configuration."""
        initialize_schema(config.db_path)
        policy = config.retry.to_policy()
        return cls(
            config=config,
            completion=CompletionClient(config.provider(COMPLETION), retry_policy=policy),
            search=SearchClient(
                config.provider(PRIMARY_SEARCH),
                config.provider(SECONDARY_SEARCH),
                audit_log=SearchAuditLog(config.db_path),
                retry_policy=policy,
            ),
            ledger=UsageLedger(config.db_path),
            session_store=SessionStore(config.db_path),
            styling=CompletionClient(config.provider(STYLING), retry_policy=policy),
        )

    def new_session(self, user_id: str, agent: AgentType,
                    config: Optional[SessionConfig] = None) -> Session:
        session = Session(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            agent_type=agent.value,
            config=config or SessionConfig(),
        )
        self._save(session)
        return session

    def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Serve one chat endpoint request and return the response payload.

        Raises:
            ValueError: If the payload is invalid
        """
        request = ChatRequest.from_payload(payload)
        session = None
        if request.session_id and self.session_store is not None:
            session = self.session_store.load(request.session_id)
        if session is None:
            session = Session(
                session_id=request.session_id or str(uuid.uuid4()),
                user_id=request.user_id,
                agent_type=request.agent.value,
                config=request.session_config,
            )
        elif session.user_id != request.user_id:
            raise ValueError("session does not belong to this user")
        result = self.run_turn(session, request.message, knowledge=request.knowledge, agent=request.agent)
        return result.to_payload()

    # Turn entry points

    def run_turn(
        self,
        session: Session,
        message: str,
        knowledge: Sequence[str] = (),
        agent: Optional[AgentType] = None,
    ) -> TurnResult:
        """Run one user turn.

        Never raises for provider, validation or quota problems; those are
        reported through the returned TurnResult.

        Raises:
            ValueError: If message is empty or the agent type is unknown
        """
        if not message or not message.strip():
            raise ValueError("message is required and cannot be empty")
        agent = agent or AgentType.parse(session.agent_type)
        return self._run(session, message, knowledge, agent, record_user=True)

    def retry_turn(self, session: Session, message: str,
                   knowledge: Sequence[str] = (), agent: Optional[AgentType] = None) -> TurnResult:
        """Manually retry a failed turn; at most MAX_MANUAL_RETRIES per session.

        Raises:
            ValueError: If the last exchange in the session did not fail
        """
        agent = agent or AgentType.parse(session.agent_type)
        if not session.can_retry:
            return TurnResult(
                response=RETRY_EXHAUSTED_MESSAGE,
                agent=agent,
                states=[TurnState.IDLE, TurnState.ERROR],
                can_retry=False,
                error="retry limit reached",
                session_id=session.session_id,
            )
        if not self._last_exchange_failed(session, message):
            raise ValueError("nothing to retry: the last turn did not fail")
        session.record_retry()
        del session.messages[-2:]
        return self.run_turn(session, message, knowledge=knowledge, agent=agent)

    def run_collaborative(
        self,
        session: Session,
        message: str,
        agents: Sequence[AgentType],
        knowledge: Sequence[str] = (),
    ) -> List[TurnResult]:
        """Ask several agents in turn, pausing between them.

        Agents run sequentially; each later agent sees earlier answers in
        the conversation history.
        """
        if not agents:
            raise ValueError("at least one agent is required")
        results = []
        recorded = False
        for i, agent in enumerate(agents):
            if i > 0 and self.config.collaboration_delay_s > 0:
                self.sleep(self.config.collaboration_delay_s)
            # Blocked turns do not touch the session
            result = self._run(session, message, knowledge, agent, record_user=not recorded)
            recorded = recorded or not result.quota_exceeded
            results.append(result)
        return results

    def run_tripartite(self, session: Session, message: str,
                       knowledge: Sequence[str] = ()) -> TurnResult:
        """Interpret the query, search with the refined query, then style the answer.

        The styling call uses the styling provider when its key is set and
        the regular completion provider otherwise.
        """
        agent = AgentType.parse(session.agent_type)
        states = [TurnState.IDLE]
        calls: List[CompletionResult] = []
        styling = self.styling if self._styling_available() else self.completion
        style_model = styling.settings.model or get_profile(agent).model

        blocked = self._gate(session, agent, INTERPRET_MODEL, message, states)
        if blocked is not None:
            return blocked

        try:
            states.append(TurnState.COMPOSING)
            interpretation = self._complete(
                CompletionRequest(
                    system_prompt="You are an expert analyst of business questions.",
                    prior_messages=({"role": "user", "content": build_interpretation_prompt(agent, session, message)},),
                    model=INTERPRET_MODEL,
                    temperature=0.2,
                    max_tokens=600,
                ),
                self.completion, session, "tripartite-interpret", calls, states,
            )
            refined = parse_optimized_search(interpretation.text) or message

            states.append(TurnState.SEARCHING)
            search_result = self.search.search(self._search_request(agent, session, refined))

            context = ContextBlock(profile=session.config.profile, knowledge=tuple(knowledge), search=search_result)
            request = build_completion_request(agent, context, message, session.messages)
            request = CompletionRequest(
                system_prompt=request.system_prompt + "\n\n## QUERY INTERPRETATION\n" + interpretation.text.strip(),
                prior_messages=request.prior_messages,
                model=style_model,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
            final, validation, regenerated = self._complete_validated(
                request, styling, session, "tripartite-style", calls, states, search_result,
            )
            return self._finish(session, message, agent, final, calls, states,
                                validation, regenerated, search_result, record_user=True)
        except Exception as e:
            return self._fail(session, message, agent, e, calls, states, record_user=True)

    # Internals

    def _run(self, session: Session, message: str, knowledge: Sequence[str],
             agent: AgentType, record_user: bool) -> TurnResult:
        profile = get_profile(agent)
        states = [TurnState.IDLE]
        calls: List[CompletionResult] = []

        logger.info(
            "turn.start",
            extra={
                "event": "turn.start",
                "session_id": session.session_id,
                "user_id": session.user_id,
                "agent": agent.value,
            },
        )

        history_text = "\n".join(m["content"] for m in trailing_history(session.messages))
        blocked = self._gate(session, agent, profile.model, history_text + "\n" + message, states)
        if blocked is not None:
            return blocked

        try:
            search_result = None
            if profile.uses_search:
                states.append(TurnState.SEARCHING)
                search_result = self.search.search(self._search_request(agent, session, message))

            states.append(TurnState.COMPOSING)
            context = ContextBlock(profile=session.config.profile, knowledge=tuple(knowledge), search=search_result)
            request = build_completion_request(agent, context, message, session.messages)

            final, validation, regenerated = self._complete_validated(
                request, self.completion, session, f"agent-{agent.value}", calls, states, search_result,
            )
            return self._finish(session, message, agent, final, calls, states,
                                validation, regenerated, search_result, record_user)
        except Exception as e:
            return self._fail(session, message, agent, e, calls, states, record_user)

    def _gate(self, session: Session, agent: AgentType, model: str,
              prompt_text: str, states: List[TurnState]) -> Optional[TurnResult]:
        """Check quota; return a blocked TurnResult or None when allowed."""
        estimate = estimate_request_cost(model, prompt_text)
        try:
            action = check_quota(self.config.quota, QuotaState.from_ledger(self.ledger, session.user_id), estimate)
        except QuotaExceeded as e:
            logger.warning(
                "turn.quota_exceeded",
                extra={
                    "event": "turn.quota_exceeded",
                    "session_id": session.session_id,
                    "user_id": session.user_id,
                    "reason": e.reason,
                },
            )
            states.append(TurnState.LOGGING)
            self.ledger.append(UsageLogEntry(
                timestamp=datetime.now(),
                user_id=session.user_id,
                function_name=f"agent-{agent.value}",
                model=model,
                prompt_tokens=0,
                completion_tokens=0,
                cost=Decimal("0"),
                status=UsageStatus.BLOCKED,
                session_id=session.session_id,
                error_message=e.reason,
            ))
            states.append(TurnState.IDLE)
            return TurnResult(
                response=QUOTA_MESSAGE,
                agent=agent,
                model=model,
                states=states,
                quota_exceeded=True,
                error=e.reason,
                session_id=session.session_id,
            )

        if action == EnforcementAction.WARN:
            logger.warning(
                "turn.quota_near_limit",
                extra={"event": "turn.quota_near_limit", "user_id": session.user_id},
            )
        return None

    def _complete_validated(self, request, client, session, function_name, calls, states, search_result):
        states.append(TurnState.COMPLETING)
        first = self._complete(request, client, session, function_name, calls, states)

        states.append(TurnState.VALIDATING)
        validation = score_response(first.text, search_result)
        logger.info(
            "turn.validated",
            extra={
                "event": "turn.validated",
                "session_id": session.session_id,
                "score": validation.score,
                "skipped": validation.skipped,
                "issues": list(validation.issues),
            },
        )
        if not validation.needs_regeneration(self.config.validation.threshold):
            return first, validation, False

        # One regeneration; its output is accepted without re-validation
        states.append(TurnState.REGENERATING)
        regen_request = build_regeneration_request(request, first.text, validation)
        try:
            second = self._complete(regen_request, client, session, f"{function_name}-regenerate", calls, states)
        except ProviderError as e:
            logger.warning(
                "turn.regeneration_failed",
                extra={
                    "event": "turn.regeneration_failed",
                    "session_id": session.session_id,
                    "error_message": str(e),
                },
            )
            return first, validation, False
        return second, validation, True

    def _complete(self, request: CompletionRequest, client: CompletionClient, session: Session,
                  function_name: str, calls: List[CompletionResult],
                  states: List[TurnState]) -> CompletionResult:
        """One metered completion call; a ledger row is written either way."""
        try:
            result = client.complete(request)
        except Exception as e:
            prompt_text = "\n".join(m["content"] for m in request.to_messages())
            self.ledger.append(UsageLogEntry(
                timestamp=datetime.now(),
                user_id=session.user_id,
                function_name=function_name,
                model=request.model,
                prompt_tokens=estimate_tokens(prompt_text),
                completion_tokens=0,
                cost=Decimal("0"),
                status=UsageStatus.ERROR,
                session_id=session.session_id,
                error_message=str(e),
            ))
            raise

        calls.append(result)
        self.ledger.append(UsageLogEntry(
            timestamp=datetime.now(),
            user_id=session.user_id,
            function_name=function_name,
            model=result.model,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            cost=result.cost_estimate,
            status=UsageStatus.SUCCESS,
            request_id=result.request_id,
            session_id=session.session_id,
            metadata={"elapsed_ms": result.elapsed_ms, "provider": client.provider},
        ))
        return result

    def _finish(self, session, message, agent, final, calls, states, validation,
                regenerated, search_result, record_user) -> TurnResult:
        states.append(TurnState.LOGGING)
        if record_user:
            session.add_message("user", message)
        session.add_message("assistant", final.text, agent=agent.value)
        session.retry_count = 0
        self._save(session)
        states.append(TurnState.IDLE)

        result = TurnResult(
            response=final.text,
            agent=agent,
            tokens_used=sum(c.total_tokens for c in calls),
            cost=sum((c.cost_estimate for c in calls), Decimal("0")),
            model=final.model,
            states=states,
            validation=validation,
            regenerated=regenerated,
            search=search_result,
            completion_calls=len(calls),
            session_id=session.session_id,
        )
        logger.info(
            "turn.complete",
            extra={
                "event": "turn.complete",
                "session_id": session.session_id,
                "agent": agent.value,
                "tokens_used": result.tokens_used,
                "cost": str(result.cost),
                "regenerated": regenerated,
                "completion_calls": len(calls),
            },
        )
        return result

    def _fail(self, session, message, agent, error, calls, states, record_user) -> TurnResult:
        logger.error(
            "turn.error",
            extra={
                "event": "turn.error",
                "session_id": session.session_id,
                "agent": agent.value,
                "state": states[-1].value if states else None,
                "error_type": type(error).__name__,
                "error_message": str(error),
            },
            exc_info=True,
        )
        states.append(TurnState.ERROR)
        if record_user:
            session.add_message("user", message)
        session.add_message("assistant", APOLOGY_MESSAGE, agent=agent.value)
        self._save(session)
        return TurnResult(
            response=APOLOGY_MESSAGE,
            agent=agent,
            tokens_used=sum(c.total_tokens for c in calls),
            cost=sum((c.cost_estimate for c in calls), Decimal("0")),
            states=states,
            completion_calls=len(calls),
            can_retry=session.can_retry,
            error=f"{type(error).__name__}: {error}",
            session_id=session.session_id,
        )

    def _search_request(self, agent: AgentType, session: Session, query: str) -> SearchRequest:
        return SearchRequest(
            query=query,
            context=f"{get_profile(agent).display_name} analysis",
            search_type=_AGENT_SEARCH_TYPES[agent],
            timeframe=Timeframe.MONTH,
            company_name=session.config.company_name,
            industry=session.config.industry,
        )

    def _styling_available(self) -> bool:
        return self.styling is not None and self.styling.settings.api_key() is not None

    def _save(self, session: Session) -> None:
        if self.session_store is not None:
            self.session_store.save(session)

    @staticmethod
    def _last_exchange_failed(session: Session, message: str) -> bool:
        msgs = session.messages
        return (len(msgs) >= 2 and msgs[-1]["role"] == "assistant"
                and msgs[-1]["content"] == APOLOGY_MESSAGE
                and msgs[-2]["role"] == "user" and msgs[-2]["content"] == message)


def build_interpretation_prompt(agent: AgentType, session: Session, message: str) -> str:
    """Prompt asking a model to refine the user query for web search."""
    return f"""Interpret the following user question and design an optimized web search.

ORIGINAL QUESTION: "{message}"
TARGET AGENT: {agent.value.upper()}
CONTEXT: {session.config.company_name or 'company'} in {session.config.industry or 'general sector'}

Reply in exactly this format:
INTENT: <what the user wants>
OPTIMIZED_SEARCH: <one-line web search query>
KEY_TERMS: <comma-separated terms>
TIMEFRAME: <hour/day/week/month>"""


def parse_optimized_search(text: str) -> Optional[str]:
    """Extract the OPTIMIZED_SEARCH line from an interpretation, if present."""
    match = re.search(r"OPTIMIZED_SEARCH:\s*(.+?)\s*(?:\n|$)", text)
    if not match or not match.group(1).strip():
        return None
    return match.group(1).strip()
