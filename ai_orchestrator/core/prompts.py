"""
Prompt composition.

Merges an agent's role prompt, retrieved context and the user query into
one instruction block. Everything here is pure: the same inputs always
produce the same prompt string.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from ai_orchestrator.storage.models import CompletionRequest, SearchResult

from .agents import AgentType, get_profile

SNIPPET_CHAR_LIMIT = 1000
HISTORY_WINDOW = 10
TRUNCATION_MARKER = "..."


@dataclass(frozen=True)
class ContextBlock:
    """Retrieved context for one turn."""
    profile: Optional[str] = None
    knowledge: Tuple[str, ...] = ()
    search: Optional[SearchResult] = None


def truncate_snippet(text: str, limit: int = SNIPPET_CHAR_LIMIT) -> str:
    """Cut ``text`` to at most ``limit`` characters, marking the cut."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - len(TRUNCATION_MARKER)].rstrip() + TRUNCATION_MARKER


def _search_section(search: SearchResult) -> str:
    lines = [
        f"## WEB SEARCH DATA (engine: {search.engine.value}, confidence: {search.confidence:.2f})",
        search.content.strip(),
    ]
    if search.sources:
        lines.append("Sources:")
        lines.extend(f"- {source}" for source in search.sources)
    return "\n".join(lines)


def compose_prompt(agent: AgentType, context: ContextBlock, query: str) -> str:
    """Build the system prompt for ``agent``.

    Sections appear in a fixed order and empty sections are omitted.

    Args:
        agent: Agent whose role prompt opens the block
        context: Profile, knowledge snippets and search result
        query: The user's message

    Returns:
        The composed prompt string
    """
    sections = [get_profile(agent).role_prompt.strip()]

    if context.profile and context.profile.strip():
        sections.append("## USER PROFILE\n" + truncate_snippet(context.profile))

    snippets = [truncate_snippet(s) for s in context.knowledge if s and s.strip()]
    if snippets:
        numbered = "\n".join(f"[{i}] {snippet}" for i, snippet in enumerate(snippets, start=1))
        sections.append("## KNOWLEDGE BASE\n" + numbered)

    if context.search is not None and context.search.content.strip():
        sections.append(_search_section(context.search))

    sections.append("## USER QUERY\n" + query.strip())
    return "\n\n".join(sections)


def trailing_history(
    history: Sequence[Dict[str, str]],
    window: int = HISTORY_WINDOW,
) -> Tuple[Dict[str, str], ...]:
    """Keep the last ``window`` user/assistant messages."""
    relevant = [
        {"role": m["role"], "content": m["content"]}
        for m in history
        if m.get("role") in ("user", "assistant")
    ]
    if window <= 0:
        return ()
    return tuple(relevant[-window:])


def build_completion_request(
    agent: AgentType,
    context: ContextBlock,
    query: str,
    history: Sequence[Dict[str, str]] = (),
) -> CompletionRequest:
    """Compose a full completion request for one agent turn."""
    profile = get_profile(agent)
    messages = trailing_history(history) + ({"role": "user", "content": query},)
    return CompletionRequest(
        system_prompt=compose_prompt(agent, context, query),
        prior_messages=messages,
        model=profile.model,
        temperature=profile.temperature,
        max_tokens=profile.max_tokens,
    )
