"""
CLI interface for AI Orchestrator.

Provides command-line access to chat turns, web search and the usage ledger.
"""

import logging
import sys
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_orchestrator.config.loader import AppConfig, default_config, load_config
from ai_orchestrator.core.agents import AgentType, get_profile
from ai_orchestrator.core.guardrails import QuotaState, remaining_budget
from ai_orchestrator.core.pipeline import Pipeline, TurnResult
from ai_orchestrator.logger import configure_logging
from ai_orchestrator.sdk.search_client import SearchRequest, SearchType, Timeframe
from ai_orchestrator.storage.models import Session, SessionConfig
from ai_orchestrator.storage.repository import UsageLedger, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_COLLABORATORS = [AgentType.CDV.value, AgentType.CIA.value, AgentType.CIR.value]

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")


def _load(config_path: Optional[str]) -> AppConfig:
    if config_path is None:
        return default_config()
    return load_config(config_path)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount) -> str:
    return f"${float(amount):,.4f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Emit JSON debug logs on stderr"),
):
    """AI Orchestrator CLI."""
    if verbose:
        configure_logging(logging.DEBUG)
    if ctx.invoked_subcommand is None:
        console.print("AI Orchestrator - Use --help to see available commands")


@app.command()
def init(config_path: Optional[str] = CONFIG_OPTION):
    """Initialize the ledger, search log and session tables."""
    try:
        config = _load(config_path)
        initialize_schema(config.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))


def _resolve_session(pipeline: Pipeline, session_id: Optional[str], user: str,
                     agent: AgentType, session_config: SessionConfig) -> Session:
    if session_id and pipeline.session_store is not None:
        session = pipeline.session_store.load(session_id)
        if session is not None:
            if session.user_id != user:
                raise ValueError(f"Session {session_id} belongs to another user")
            session.agent_type = agent.value
            return session
    if session_id:
        return Session(session_id=session_id, user_id=user, agent_type=agent.value, config=session_config)
    return pipeline.new_session(user, agent, session_config)


def _display_turn(result: TurnResult, as_json: bool) -> None:
    if as_json:
        console.print_json(data=result.to_payload())
        return

    title = get_profile(result.agent).display_name
    console.print(f"\n[bold]{title}[/bold]")
    console.print("-" * 40)
    console.print(result.response)
    console.print()

    if result.quota_exceeded:
        console.print(f"[yellow]Quota exceeded:[/] {result.error}")
        return
    if result.error:
        retry_hint = "retry available" if result.can_retry else "no retries left"
        console.print(f"[red]Failed:[/] {result.error} ({retry_hint})")
        return

    details = [
        f"model: {result.model}",
        f"tokens: {result.tokens_used}",
        f"cost: {_format_currency(result.cost)}",
    ]
    if result.search is not None:
        details.append(f"search: {result.search.engine.value} ({result.search.confidence:.2f})")
    if result.validation is not None and not result.validation.skipped:
        details.append(f"validation: {result.validation.score}/100")
    if result.regenerated:
        details.append("regenerated")
    console.print("[dim]" + " | ".join(details) + "[/]")


@app.command()
def ask(
    message: str = typer.Argument(..., help="Question for the agent"),
    agent: str = typer.Option(AgentType.CDV.value, "--agent", "-a", help="Agent type"),
    user: str = typer.Option("cli-user", "--user", "-u", help="User id charged for the turn"),
    session_id: Optional[str] = typer.Option(None, "--session", "-s", help="Continue an existing session"),
    company: Optional[str] = typer.Option(None, "--company", help="Company name for context"),
    industry: Optional[str] = typer.Option(None, "--industry", help="Industry for context"),
    tripartite: bool = typer.Option(False, "--tripartite", help="Interpret, search, then style the answer"),
    as_json: bool = typer.Option(False, "--json", help="Print the response payload as JSON"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """
    Run one chat turn through search, completion and validation.

    Exits with 1 when the turn failed or was blocked by quota.
    """
    try:
        config = _load(config_path)
        agent_type = AgentType.parse(agent)
        pipeline = Pipeline.from_config(config)
        session = _resolve_session(
            pipeline, session_id, user, agent_type,
            SessionConfig(company_name=company, industry=industry),
        )
        if tripartite:
            result = pipeline.run_tripartite(session, message)
        else:
            result = pipeline.run_turn(session, message, agent=agent_type)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))
        return

    _display_turn(result, as_json)
    sys.exit(EXIT_CODE_PASS if result.succeeded else EXIT_CODE_FAIL)


@app.command()
def collaborate(
    message: str = typer.Argument(..., help="Question for every agent"),
    agents: Optional[List[str]] = typer.Option(None, "--agent", "-a", help="Agent type; repeat for several"),
    user: str = typer.Option("cli-user", "--user", "-u", help="User id charged for the turns"),
    company: Optional[str] = typer.Option(None, "--company", help="Company name for context"),
    industry: Optional[str] = typer.Option(None, "--industry", help="Industry for context"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Ask several agents the same question, one after another."""
    try:
        config = _load(config_path)
        agent_types = [AgentType.parse(a) for a in (agents or DEFAULT_COLLABORATORS)]
        pipeline = Pipeline.from_config(config)
        session = pipeline.new_session(
            user, agent_types[0], SessionConfig(company_name=company, industry=industry),
        )
        results = pipeline.run_collaborative(session, message, agent_types)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))
        return

    for result in results:
        _display_turn(result, as_json=False)
    sys.exit(EXIT_CODE_PASS if all(r.succeeded for r in results) else EXIT_CODE_FAIL)


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    search_type: str = typer.Option(SearchType.COMPREHENSIVE.value, "--type", "-t", help="competitive, financial, market or comprehensive"),
    timeframe: str = typer.Option(Timeframe.MONTH.value, "--timeframe", help="hour, day, week, month or quarter"),
    company: Optional[str] = typer.Option(None, "--company", help="Company name"),
    industry: Optional[str] = typer.Option(None, "--industry", help="Industry"),
    as_json: bool = typer.Option(False, "--json", help="Print the search payload as JSON"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Run the web search fallback chain directly."""
    try:
        config = _load(config_path)
        request = SearchRequest.from_payload({
            "query": query,
            "searchType": search_type,
            "timeframe": timeframe,
            "companyName": company,
            "industry": industry,
        })
        result = Pipeline.from_config(config).search.search(request)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))
        return

    if as_json:
        console.print_json(data=result.to_payload())
        sys.exit(EXIT_CODE_PASS)

    console.print(f"\n[bold]Search result[/bold] ({result.engine.value}, confidence {result.confidence:.2f})")
    console.print("-" * 40)
    console.print(result.content)
    if result.sources:
        console.print("\n[bold]Sources[/bold]")
        for source in result.sources:
            console.print(f"- {source}")
    if result.error_message:
        console.print(f"\n[yellow]Providers failed:[/] {result.error_message}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Show per-user spend for this user"),
    limit: int = typer.Option(10, "--limit", "-l", help="Number of recent ledger rows to show"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Show spend against quota limits and the most recent ledger rows."""
    try:
        config = _load(config_path)
        initialize_schema(config.db_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))
        return

    ledger = UsageLedger(config.db_path)
    state = QuotaState.from_ledger(ledger, user or "")

    table = Table(title="Spend vs. limits")
    table.add_column("Scope")
    table.add_column("Spent", justify="right")
    table.add_column("Limit", justify="right")
    if user:
        table.add_row(f"User {user} (today)", _format_currency(state.user_daily),
                      _format_currency(config.quota.per_user_daily))
    table.add_row("System (today)", _format_currency(state.system_daily), _format_currency(config.quota.daily))
    table.add_row("System (month)", _format_currency(state.system_monthly), _format_currency(config.quota.monthly))
    console.print(table)

    if user:
        console.print(f"Remaining budget: {_format_currency(remaining_budget(config.quota, state))}")

    entries = ledger.fetch_recent(user_id=user, limit=limit)
    if not entries:
        console.print("\n[dim]No usage recorded yet.[/]")
        sys.exit(EXIT_CODE_PASS)

    recent = Table(title="Recent calls")
    for column in ("Time", "User", "Function", "Model", "Tokens", "Cost", "Status"):
        recent.add_column(column)
    for entry in entries:
        recent.add_row(
            entry.timestamp.strftime("%m-%d %H:%M"),
            entry.user_id,
            entry.function_name,
            entry.model,
            str(entry.total_tokens),
            _format_currency(entry.cost),
            entry.status.value,
        )
    console.print(recent)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
