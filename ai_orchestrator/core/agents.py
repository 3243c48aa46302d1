"""
Agent personas and their model settings.

Every AgentType has exactly one AgentProfile; a missing profile fails
at import time.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class AgentType(Enum):
    """Fixed personas that select a role prompt and model settings."""
    MENTOR = "clipogino"
    CONTENT_GENERATOR = "enhanced-content-generator"
    RESEARCH_ENGINE = "research-engine"
    CDV = "cdv"  # Competitor discovery & validation
    CIA = "cia"  # Competitive intelligence analysis
    CIR = "cir"  # Competitive intelligence retrieval

    @classmethod
    def parse(cls, value: str) -> "AgentType":
        """Resolve a wire value (case-insensitive) to an AgentType.

        Raises:
            ValueError: If the value names no known agent
        """
        if isinstance(value, cls):
            return value
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized or member.name.lower() == normalized:
                return member
        valid = [member.value for member in cls]
        raise ValueError(f"Unknown agent type '{value}'. Valid agent types: {valid}")


@dataclass(frozen=True)
class AgentProfile:
    """Static settings for one agent type."""
    display_name: str
    model: str
    temperature: float
    max_tokens: int
    role_prompt: str
    uses_search: bool = True


_COMPETITIVE_RULES = """Ground every claim in the supplied web search data.
Quote concrete figures, dates and sources. When the data does not cover a
question, say so instead of guessing."""

AGENT_PROFILES: Dict[AgentType, AgentProfile] = {
    AgentType.MENTOR: AgentProfile(
        display_name="Clipogino",
        model="gpt-4o-mini",
        temperature=0.7,
        max_tokens=1500,
        role_prompt=(
            "You are Clipogino, a professional development mentor and career coach.\n"
            "Be encouraging but realistic, practical, and focused on measurable growth.\n"
            "Reference the user's profile and knowledge base by name when relevant, and\n"
            "finish with concrete next steps."
        ),
        uses_search=False,
    ),
    AgentType.CONTENT_GENERATOR: AgentProfile(
        display_name="Enhanced Content Generator",
        model="gpt-4o-mini",
        temperature=0.3,
        max_tokens=1500,
        role_prompt=(
            "You are an executive content strategist. Produce publication-ready content\n"
            "for senior audiences, built on current, verifiable data.\n" + _COMPETITIVE_RULES
        ),
    ),
    AgentType.RESEARCH_ENGINE: AgentProfile(
        display_name="Elite Research Engine",
        model="gpt-4o-mini",
        temperature=0.3,
        max_tokens=1500,
        role_prompt=(
            "You are an elite research analyst producing investment-grade briefs with an\n"
            "executive summary, key data points, strategic implications and sources.\n"
            + _COMPETITIVE_RULES
        ),
    ),
    AgentType.CDV: AgentProfile(
        display_name="CDV - Competitor Discovery & Validator",
        model="gpt-4o",
        temperature=0.3,
        max_tokens=2000,
        role_prompt=(
            "You are CDV, a competitor discovery specialist. Identify direct, indirect and\n"
            "emerging competitors and validate each with evidence.\n" + _COMPETITIVE_RULES
        ),
    ),
    AgentType.CIA: AgentProfile(
        display_name="CIA - Competitive Intelligence Analysis",
        model="gpt-4o",
        temperature=0.2,
        max_tokens=2500,
        role_prompt=(
            "You are CIA, a strategic competitive intelligence analyst. Assess threats and\n"
            "opportunities and give C-suite recommendations.\n" + _COMPETITIVE_RULES
        ),
    ),
    AgentType.CIR: AgentProfile(
        display_name="CIR - Competitive Intelligence Retriever",
        model="gpt-4o",
        temperature=0.1,
        max_tokens=3000,
        role_prompt=(
            "You are CIR, a competitive metrics specialist. Report traffic, pricing, domain\n"
            "authority and benchmark numbers with their sources.\n" + _COMPETITIVE_RULES
        ),
    ),
}

_missing = set(AgentType) - set(AGENT_PROFILES)
if _missing:
    raise RuntimeError(f"Agent types without a profile: {sorted(a.value for a in _missing)}")


def get_profile(agent: AgentType) -> AgentProfile:
    """Return the profile for ``agent``."""
    return AGENT_PROFILES[agent]
