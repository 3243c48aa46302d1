"""
Tests for per-turn orchestration.

Providers are mocked at the OpenAI client level; the ledger, audit log and
session store use a temporary SQLite file.
"""

import os
import shutil
import tempfile
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

import httpx
import openai
import pytest

from ai_orchestrator.config.loader import (
    COMPLETION,
    PRIMARY_SEARCH,
    SECONDARY_SEARCH,
    STYLING,
    AppConfig,
    ProviderSettings,
    QuotaConfig,
)
from ai_orchestrator.core.agents import AgentType
from ai_orchestrator.core.pipeline import (
    APOLOGY_MESSAGE,
    QUOTA_MESSAGE,
    RETRY_EXHAUSTED_MESSAGE,
    ChatRequest,
    Pipeline,
    TurnState,
    parse_optimized_search,
)
from ai_orchestrator.sdk.openai_client import CompletionClient
from ai_orchestrator.sdk.search_client import SearchClient
from ai_orchestrator.storage.models import (
    SearchEngine,
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

SEARCH_TEXT = "Acme raised $50M in March 2024 and now employs 1,200 people."
GROUNDED = "According to Reuters, Acme raised $50M in March 2024 and employs 1,200 people."
VAGUE = "Acme is doing well and growing quickly."

PRIMARY = ProviderSettings(PRIMARY_SEARCH, "TEST_PPLX_KEY", "https://api.perplexity.ai",
                           "llama-3.1-sonar-large-128k-online")
SECONDARY = ProviderSettings(SECONDARY_SEARCH, "TEST_OPENAI_KEY", None, "gpt-4o")
COMPLETION_SETTINGS = ProviderSettings(COMPLETION, "TEST_OPENAI_KEY")
STYLING_SETTINGS = ProviderSettings(STYLING, "TEST_ANTHROPIC_KEY", "https://api.anthropic.com/v1/",
                                    "claude-3-5-sonnet-20241022")


def chat_response(text, prompt_tokens=100, completion_tokens=50, citations=None):
    response = Mock()
    response.id = "req_" + str(abs(hash(text)) % 10000)
    response.choices = [Mock(message=Mock(content=text))]
    response.usage = Mock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    response.citations = citations
    response.model_extra = {}
    return response


def status_error(status):
    request = httpx.Request("POST", "https://api.example.com/chat/completions")
    return openai.APIStatusError(
        f"HTTP {status}", response=httpx.Response(status, request=request), body=None,
    )


def sequence_client(*side_effect):
    client = Mock()
    client.chat.completions.create.side_effect = list(side_effect)
    return client


def fixed_client(response):
    client = Mock()
    client.chat.completions.create.return_value = response
    return client


class PipelineTestCase:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.config = AppConfig(db_path=self.db_path)
        self.ledger = UsageLedger(self.db_path)
        self.store = SessionStore(self.db_path)
        self.audit_log = SearchAuditLog(self.db_path)
        self.sleeps = []

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def build(self, completions, primary=None, secondary=None, styling=None):
        self.completion_api = sequence_client(*completions)
        self.primary_api = primary or fixed_client(
            chat_response(SEARCH_TEXT, citations=["https://www.reuters.com/acme"])
        )
        self.secondary_api = secondary or fixed_client(chat_response("Secondary analysis."))
        self.styling_api = styling
        return Pipeline(
            config=self.config,
            completion=CompletionClient(COMPLETION_SETTINGS, client=self.completion_api),
            search=SearchClient(PRIMARY, SECONDARY, audit_log=self.audit_log,
                                primary_client=self.primary_api, secondary_client=self.secondary_api),
            ledger=self.ledger,
            session_store=self.store,
            styling=CompletionClient(STYLING_SETTINGS, client=styling) if styling else None,
            sleep=self.sleeps.append,
        )

    def session(self, pipeline, agent=AgentType.CDV, user="alice"):
        return pipeline.new_session(user, agent, SessionConfig(company_name="Acme", industry="Retail"))

    def ledger_statuses(self):
        return [e.status for e in reversed(self.ledger.fetch_recent())]


class TestRunTurn(PipelineTestCase):
    def test_grounded_answer_needs_one_call(self):
        pipeline = self.build([chat_response(GROUNDED)])
        session = self.session(pipeline)

        result = pipeline.run_turn(session, "How is Acme funded?")

        assert result.succeeded
        assert result.response == GROUNDED
        assert result.completion_calls == 1
        assert not result.regenerated
        assert result.validation.score == 100
        assert result.search.engine == SearchEngine.PRIMARY
        assert result.states == [
            TurnState.IDLE, TurnState.SEARCHING, TurnState.COMPOSING, TurnState.COMPLETING,
            TurnState.VALIDATING, TurnState.LOGGING, TurnState.IDLE,
        ]
        assert result.tokens_used == 150
        assert result.cost == Decimal("0.000750")
        assert self.ledger_statuses() == [UsageStatus.SUCCESS]

    def test_search_data_reaches_the_prompt(self):
        pipeline = self.build([chat_response(GROUNDED)])
        pipeline.run_turn(self.session(pipeline), "How is Acme funded?")

        messages = self.completion_api.chat.completions.create.call_args.kwargs["messages"]
        assert "## WEB SEARCH DATA" in messages[0]["content"]
        assert SEARCH_TEXT in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "How is Acme funded?"}

    def test_low_score_regenerates_once(self):
        pipeline = self.build([chat_response(VAGUE), chat_response(GROUNDED)])
        result = pipeline.run_turn(self.session(pipeline), "How is Acme funded?")

        assert result.regenerated
        assert result.response == GROUNDED
        assert result.completion_calls == 2
        assert TurnState.REGENERATING in result.states
        assert self.completion_api.chat.completions.create.call_count == 2
        assert self.primary_api.chat.completions.create.call_count == 1
        assert self.ledger.count() == 2

        regen_messages = self.completion_api.chat.completions.create.call_args.kwargs["messages"]
        assert "## REVISION REQUIRED" in regen_messages[0]["content"]
        assert {"role": "assistant", "content": VAGUE} in regen_messages

    def test_second_answer_accepted_unconditionally(self):
        pipeline = self.build([chat_response(VAGUE), chat_response("Still vague.")])
        result = pipeline.run_turn(self.session(pipeline), "How is Acme funded?")

        assert result.response == "Still vague."
        assert result.completion_calls == 2
        assert self.completion_api.chat.completions.create.call_count == 2

    def test_regeneration_failure_keeps_first_answer(self):
        pipeline = self.build([chat_response(VAGUE), status_error(400)])
        result = pipeline.run_turn(self.session(pipeline), "How is Acme funded?")

        assert result.succeeded
        assert result.response == VAGUE
        assert not result.regenerated
        assert self.ledger_statuses() == [UsageStatus.SUCCESS, UsageStatus.ERROR]

    def test_static_fallback_skips_validation(self):
        pipeline = self.build(
            [chat_response(VAGUE)],
            primary=sequence_client(status_error(500)),
            secondary=sequence_client(status_error(500)),
        )
        result = pipeline.run_turn(self.session(pipeline), "How is Acme funded?")

        assert result.search.engine == SearchEngine.FALLBACK
        assert result.validation.skipped
        assert result.completion_calls == 1

    def test_agent_without_search(self):
        pipeline = self.build([chat_response("Focus on one skill per quarter.")])
        result = pipeline.run_turn(self.session(pipeline, agent=AgentType.MENTOR), "How do I grow?")

        assert result.search is None
        assert result.validation.skipped
        self.primary_api.chat.completions.create.assert_not_called()
        assert self.audit_log.fetch_recent() == []

    def test_agent_settings_sent_to_provider(self):
        pipeline = self.build([chat_response(GROUNDED)])
        pipeline.run_turn(self.session(pipeline), "q", agent=AgentType.CIR)

        kwargs = self.completion_api.chat.completions.create.call_args.kwargs
        assert (kwargs["model"], kwargs["temperature"], kwargs["max_tokens"]) == ("gpt-4o", 0.1, 3000)

    def test_session_updated_and_persisted(self):
        pipeline = self.build([chat_response(GROUNDED), chat_response(GROUNDED)])
        session = self.session(pipeline)
        pipeline.run_turn(session, "first")
        pipeline.run_turn(session, "second")

        stored = self.store.load(session.session_id)
        assert [m["role"] for m in stored.messages] == ["user", "assistant", "user", "assistant"]
        assert stored.messages[1]["agent"] == "cdv"

        history = self.completion_api.chat.completions.create.call_args.kwargs["messages"]
        assert [m["content"] for m in history[1:]] == ["first", GROUNDED, "second"]

    def test_ledger_matches_returned_costs(self):
        pipeline = self.build([
            chat_response(GROUNDED, 120, 40),
            chat_response(VAGUE, 200, 30),
            chat_response(GROUNDED, 260, 90),
            chat_response(GROUNDED, 333, 77),
        ])
        session = self.session(pipeline)

        results = [pipeline.run_turn(session, q) for q in ("one", "two", "three")]

        assert [r.regenerated for r in results] == [False, True, False]
        assert self.ledger.count() == sum(r.completion_calls for r in results) == 4
        assert self.ledger.user_cost("alice") == sum((r.cost for r in results), Decimal("0"))
        assert sum(r.to_payload()["cost"] for r in results) == pytest.approx(
            float(self.ledger.user_cost("alice"))
        )

    def test_empty_message_rejected(self):
        pipeline = self.build([])
        with pytest.raises(ValueError, match="message is required"):
            pipeline.run_turn(self.session(pipeline), "   ")


class TestQuotaGate(PipelineTestCase):
    def spend(self, user, cost):
        self.ledger.append(UsageLogEntry(
            timestamp=datetime.now(), user_id=user, function_name="agent-cdv", model="gpt-4o",
            prompt_tokens=1, completion_tokens=1, cost=Decimal(cost), status=UsageStatus.SUCCESS,
        ))

    def test_user_at_daily_limit_is_blocked_without_provider_calls(self):
        self.spend("alice", "5.00")
        pipeline = self.build([chat_response(GROUNDED)])

        result = pipeline.run_turn(self.session(pipeline), "How is Acme funded?")

        assert result.quota_exceeded
        assert not result.succeeded
        assert result.response == QUOTA_MESSAGE
        assert "Daily user limit" in result.error
        self.completion_api.chat.completions.create.assert_not_called()
        self.primary_api.chat.completions.create.assert_not_called()

        blocked = self.ledger.fetch_recent(user_id="alice")[0]
        assert blocked.status == UsageStatus.BLOCKED
        assert blocked.cost == Decimal("0")

    def test_other_users_unaffected(self):
        self.spend("alice", "5.00")
        pipeline = self.build([chat_response(GROUNDED)])

        result = pipeline.run_turn(self.session(pipeline, user="bob"), "How is Acme funded?")
        assert result.succeeded

    def test_payload_reports_quota(self):
        self.spend("alice", "5.00")
        pipeline = self.build([])
        payload = pipeline.run_turn(self.session(pipeline), "q").to_payload()

        assert payload["metadata"]["quotaExceeded"] is True
        assert payload["tokensUsed"] == 0


class TestErrorBranch(PipelineTestCase):
    def test_provider_failure_returns_apology(self):
        pipeline = self.build([status_error(400)])
        session = self.session(pipeline)

        result = pipeline.run_turn(session, "How is Acme funded?")

        assert result.response == APOLOGY_MESSAGE
        assert result.can_retry
        assert result.error.startswith("ProviderError")
        assert result.states[-1] == TurnState.ERROR
        assert session.messages[-1]["content"] == APOLOGY_MESSAGE
        assert self.ledger_statuses() == [UsageStatus.ERROR]

    def test_missing_api_key_is_an_error_turn(self, monkeypatch):
        monkeypatch.delenv("TEST_OPENAI_KEY", raising=False)
        pipeline = self.build([])
        pipeline.completion = CompletionClient(COMPLETION_SETTINGS)

        result = pipeline.run_turn(self.session(pipeline), "q")
        assert result.response == APOLOGY_MESSAGE
        assert "Missing environment variable" in result.error

    def test_retry_replaces_failed_exchange(self):
        pipeline = self.build([status_error(400), chat_response(GROUNDED)])
        session = self.session(pipeline)
        pipeline.run_turn(session, "How is Acme funded?")

        result = pipeline.retry_turn(session, "How is Acme funded?")

        assert result.succeeded
        assert [m["content"] for m in session.messages] == ["How is Acme funded?", GROUNDED]
        assert session.retry_count == 0

    def test_retry_after_success_rejected(self):
        pipeline = self.build([chat_response(GROUNDED)])
        session = self.session(pipeline)
        pipeline.run_turn(session, "How is Acme funded?")

        with pytest.raises(ValueError, match="did not fail"):
            pipeline.retry_turn(session, "How is Acme funded?")

        assert [m["role"] for m in session.messages] == ["user", "assistant"]
        assert session.retry_count == 0
        assert self.completion_api.chat.completions.create.call_count == 1

    def test_retries_are_bounded(self):
        pipeline = self.build([status_error(400)] * 4)
        session = self.session(pipeline)
        result = pipeline.run_turn(session, "q")

        for _ in range(3):
            assert result.can_retry
            result = pipeline.retry_turn(session, "q")

        assert not result.can_retry
        exhausted = pipeline.retry_turn(session, "q")
        assert exhausted.response == RETRY_EXHAUSTED_MESSAGE
        assert self.completion_api.chat.completions.create.call_count == 4


class TestCollaborative(PipelineTestCase):
    def test_agents_run_in_order_with_delay(self):
        pipeline = self.build([chat_response(GROUNDED), chat_response(GROUNDED), chat_response(GROUNDED)])
        session = self.session(pipeline)

        results = pipeline.run_collaborative(session, "Map the market", [AgentType.CDV, AgentType.CIA, AgentType.CIR])

        assert [r.agent for r in results] == [AgentType.CDV, AgentType.CIA, AgentType.CIR]
        assert self.sleeps == [2.0, 2.0]
        assert [m["role"] for m in session.messages] == ["user", "assistant", "assistant", "assistant"]
        assert [m.get("agent") for m in session.messages[1:]] == ["cdv", "cia", "cir"]

    def test_user_message_kept_when_first_agent_blocked(self):
        # gpt-4o estimates exceed the cap, gpt-4o-mini estimates do not
        self.config = AppConfig(db_path=self.db_path, quota=QuotaConfig(max_cost_per_request=Decimal("0.00002")))
        pipeline = self.build([chat_response(GROUNDED)])
        session = self.session(pipeline)

        results = pipeline.run_collaborative(session, "Map the market", [AgentType.CDV, AgentType.RESEARCH_ENGINE])

        assert [r.quota_exceeded for r in results] == [True, False]
        assert [m["role"] for m in session.messages] == ["user", "assistant"]
        assert session.messages[0]["content"] == "Map the market"
        assert [m["role"] for m in self.store.load(session.session_id).messages] == ["user", "assistant"]

    def test_requires_agents(self):
        pipeline = self.build([])
        with pytest.raises(ValueError):
            pipeline.run_collaborative(self.session(pipeline), "q", [])


class TestTripartite(PipelineTestCase):
    INTERPRETATION = (
        "INTENT: funding history\n"
        "OPTIMIZED_SEARCH: Acme funding round 2024\n"
        "KEY_TERMS: Acme, funding\n"
        "TIMEFRAME: month"
    )

    def test_interpret_search_style(self, monkeypatch):
        monkeypatch.setenv("TEST_ANTHROPIC_KEY", "sk-ant-test")
        styling = sequence_client(chat_response(GROUNDED))
        pipeline = self.build([chat_response(self.INTERPRETATION)], styling=styling)

        result = pipeline.run_tripartite(self.session(pipeline), "How is Acme funded?")

        assert result.succeeded
        assert result.response == GROUNDED
        assert result.model == "claude-3-5-sonnet-20241022"
        assert result.completion_calls == 2

        search_prompt = self.primary_api.chat.completions.create.call_args.kwargs["messages"][1]["content"]
        assert "Acme funding round 2024" in search_prompt

        style_kwargs = styling.chat.completions.create.call_args.kwargs
        assert "## QUERY INTERPRETATION" in style_kwargs["messages"][0]["content"]
        assert [e.function_name for e in reversed(self.ledger.fetch_recent())] == [
            "tripartite-interpret", "tripartite-style",
        ]

    def test_styling_falls_back_to_completion_provider(self, monkeypatch):
        monkeypatch.delenv("TEST_ANTHROPIC_KEY", raising=False)
        pipeline = self.build(
            [chat_response(self.INTERPRETATION), chat_response(GROUNDED)],
            styling=sequence_client(),
        )

        result = pipeline.run_tripartite(self.session(pipeline), "How is Acme funded?")

        assert result.response == GROUNDED
        assert result.model == "gpt-4o"
        assert self.completion_api.chat.completions.create.call_count == 2

    def test_parse_optimized_search(self):
        assert parse_optimized_search(self.INTERPRETATION) == "Acme funding round 2024"
        assert parse_optimized_search("no structure here") is None


class TestHandlePayload(PipelineTestCase):
    def test_request_response_shape(self):
        pipeline = self.build([chat_response(GROUNDED)])
        payload = pipeline.handle({
            "message": "How is Acme funded?",
            "agentType": "cia",
            "sessionConfig": {"companyName": "Acme", "industry": "Retail"},
            "userContext": {"userId": "alice"},
        })

        assert payload["response"] == GROUNDED
        assert payload["tokensUsed"] == 150
        assert payload["cost"] == pytest.approx(0.00075)
        assert payload["model"] == "gpt-4o"
        assert payload["metadata"]["agentType"] == "cia"
        assert payload["metadata"]["searchEngine"] == "primary"
        assert self.store.load(payload["metadata"]["sessionId"]) is not None

    def test_existing_session_continues(self):
        pipeline = self.build([chat_response(GROUNDED), chat_response(GROUNDED)])
        first = pipeline.handle({"message": "one", "agentType": "cdv", "userContext": {"userId": "alice"}})
        session_id = first["metadata"]["sessionId"]
        pipeline.handle({
            "message": "two", "agentType": "cdv",
            "userContext": {"userId": "alice", "sessionId": session_id},
        })

        assert len(self.store.load(session_id).messages) == 4

    def test_session_of_another_user_rejected(self):
        pipeline = self.build([chat_response(GROUNDED)])
        first = pipeline.handle({"message": "one", "agentType": "cdv", "userContext": {"userId": "alice"}})

        with pytest.raises(ValueError, match="does not belong"):
            pipeline.handle({
                "message": "two", "agentType": "cdv",
                "userContext": {"userId": "mallory", "sessionId": first["metadata"]["sessionId"]},
            })

    def test_invalid_requests(self):
        with pytest.raises(ValueError, match="message is required"):
            ChatRequest.from_payload({"message": "", "agentType": "cdv", "userContext": {"userId": "a"}})
        with pytest.raises(ValueError, match="userId"):
            ChatRequest.from_payload({"message": "hi", "agentType": "cdv"})
        with pytest.raises(ValueError, match="Unknown agent type"):
            ChatRequest.from_payload({"message": "hi", "agentType": "zzz", "userContext": {"userId": "a"}})
