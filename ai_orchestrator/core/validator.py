"""
Response validation against supplied search data.

Scores how much of the web search content a completion actually used and
builds the single regeneration request issued when the score is too low.

Scoring:
- Facts (money amounts, percentages, dates, years, multi-digit numbers)
  are extracted from the search content. The score is the fraction of
  facts found in the completion, with FACT_TARGET matches earning full
  marks.
- When the content holds no facts, distinctive keywords are used the
  same way with KEYWORD_TARGET matches earning full marks.
- Without live search content, validation is skipped with score 0 and
  never triggers regeneration.
"""

import re
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from ai_orchestrator.storage.models import CompletionRequest, SearchResult

DEFAULT_THRESHOLD = 50
FACT_TARGET = 5
KEYWORD_TARGET = 10
MIN_KEYWORD_LENGTH = 5
MAX_LISTED_FACTS = 8

_MONTHS = (
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
)
_MONTH_PATTERN = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)

# Ordered by priority: earlier patterns claim their span first
_FACT_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("money", re.compile(
        r"[$€£]\s?\d[\d,]*(?:\.\d+)?(?:\s?(?:million|billion|thousand|bn|[kmbt])\b)?",
        re.IGNORECASE,
    )),
    ("percent", re.compile(r"\d+(?:[.,]\d+)?\s?%")),
    ("date", re.compile(
        rf"\b{_MONTH_PATTERN}\.?\s+(?:\d{{1,2}},?\s+)?(?:19|20)\d{{2}}\b",
        re.IGNORECASE,
    )),
    ("date", re.compile(r"\b(?:19|20)\d{2}-\d{2}-\d{2}\b")),
    ("year", re.compile(r"\b(?:19|20)\d{2}\b")),
    ("number", re.compile(r"\b\d[\d,]*(?:\.\d+)?\b")),
)

_STOPWORDS = frozenset({
    "about", "above", "after", "again", "against", "among", "based", "being",
    "below", "between", "could", "during", "every", "first", "their", "there",
    "these", "those", "through", "under", "until", "where", "which", "while",
    "would", "should", "other", "since", "still", "within", "without", "across",
    "including", "according", "company", "companies",
})

# Footnote markers such as [3] that search providers attach to sentences
_CITATION_MARKER = re.compile(r"\[\d+\]")


@dataclass(frozen=True)
class ValidationScore:
    """Heuristic 0-100 measure of search data usage. Never persisted."""
    score: int
    issues: Tuple[str, ...] = ()
    skipped: bool = False
    matched: Tuple[str, ...] = ()
    missing: Tuple[str, ...] = ()

    def passes(self, threshold: int = DEFAULT_THRESHOLD) -> bool:
        return self.skipped or self.score >= threshold

    def needs_regeneration(self, threshold: int = DEFAULT_THRESHOLD) -> bool:
        return not self.passes(threshold)


def _normalize(text: str) -> str:
    """Lower-case, abbreviate months and units, drop thousands separators and whitespace."""
    text = text.lower()
    text = re.sub(r"(?<=\d),(?=\d{3}\b)", "", text)
    for month in _MONTHS:
        text = re.sub(rf"\b{month}\b", month[:3], text)
    text = re.sub(r"\bsept\b", "sep", text)
    text = re.sub(r"\s?\bmillion\b", "m", text)
    text = re.sub(r"\s?\bbillion\b", "b", text)
    text = re.sub(r"\s?\bbn\b", "b", text)
    text = re.sub(r"\s?\bthousand\b", "k", text)
    text = re.sub(r"(?<=[a-z])\.(?=\s)", "", text)
    return re.sub(r"\s+", "", text)


def extract_facts(content: str) -> List[Tuple[str, str]]:
    """Return unique (kind, literal) facts in order of first appearance."""
    claimed: List[Tuple[int, int]] = []
    found: List[Tuple[int, str, str]] = []
    content = _CITATION_MARKER.sub(" ", content)

    for kind, pattern in _FACT_PATTERNS:
        for match in pattern.finditer(content):
            start, end = match.span()
            if any(start < c_end and end > c_start for c_start, c_end in claimed):
                continue
            literal = match.group(0).strip()
            digits = re.sub(r"\D", "", literal)
            if kind == "number" and len(digits) < 2:
                continue
            claimed.append((start, end))
            found.append((start, kind, literal))

    seen = set()
    facts = []
    for _, kind, literal in sorted(found):
        key = _normalize(literal)
        if key in seen:
            continue
        seen.add(key)
        facts.append((kind, literal))
    return facts


def _contains(fact: str, normalized_text: str) -> bool:
    """Match ``fact`` only where it is not part of a longer number."""
    return re.search(rf"(?<![\d.]){re.escape(fact)}(?!\d)", normalized_text) is not None


def _fact_present(kind: str, literal: str, normalized_text: str) -> bool:
    fact = _normalize(literal)
    if _contains(fact, normalized_text):
        return True
    if kind == "money":
        return _contains(fact.lstrip("$€£"), normalized_text)
    return False


def extract_keywords(content: str) -> List[str]:
    """Distinctive lower-case words from ``content`` in order of appearance."""
    seen = set()
    keywords = []
    for word in re.findall(r"[a-záéíóúñü]+", content.lower()):
        if len(word) < MIN_KEYWORD_LENGTH or word in _STOPWORDS or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
    return keywords


def _cites_source(text: str, sources: Tuple[str, ...]) -> bool:
    lowered = text.lower()
    for source in sources:
        source = source.lower()
        host = re.sub(r"^https?://(www\.)?", "", source).split("/")[0]
        name = host.split(".")[0] if host else ""
        if source in lowered or (host and host in lowered) or (len(name) > 3 and name in lowered):
            return True
    return False


def score_response(text: str, search: Optional[SearchResult]) -> ValidationScore:
    """Score how well ``text`` uses the content of ``search``.

    Args:
        text: Completion text to check
        search: Search result supplied to the completion, if any

    Returns:
        ValidationScore; ``skipped`` is set when no live search data exists
    """
    if search is None or not search.has_search_data:
        return ValidationScore(score=0, skipped=True)

    issues: List[str] = []
    facts = extract_facts(search.content)

    if facts:
        normalized = _normalize(text)
        matched = [lit for kind, lit in facts if _fact_present(kind, lit, normalized)]
        missing = [lit for kind, lit in facts if lit not in matched]
        target = min(len(facts), FACT_TARGET)
        score = min(100, round(100 * len(matched) / target))
        if len(matched) < target:
            listed = ", ".join(missing[:MAX_LISTED_FACTS])
            issues.append(f"Response omits specific figures and dates from the search data: {listed}")
    else:
        keywords = extract_keywords(search.content)
        words = set(re.findall(r"[a-záéíóúñü]+", text.lower()))
        matched = [k for k in keywords if k in words]
        missing = [k for k in keywords if k not in words]
        target = min(len(keywords), KEYWORD_TARGET)
        score = min(100, round(100 * len(matched) / target)) if target else 0
        if len(matched) < target:
            issues.append("Response does not draw on the terms used in the search data")

    if search.sources and not _cites_source(text, search.sources):
        issues.append("Response does not attribute information to the listed sources")

    return ValidationScore(
        score=int(score),
        issues=tuple(issues),
        matched=tuple(matched),
        missing=tuple(missing),
    )


def build_regeneration_request(
    request: CompletionRequest,
    previous_text: str,
    validation: ValidationScore,
) -> CompletionRequest:
    """Return ``request`` with the validator's complaints appended.

    The previous draft is added as an assistant turn followed by a user
    instruction to revise it.
    """
    complaints = "\n".join(f"- {issue}" for issue in validation.issues) or "- Low use of search data"
    system_prompt = (
        f"{request.system_prompt}\n\n"
        "## REVISION REQUIRED\n"
        f"A previous draft scored {validation.score}/100 for use of the web search data.\n"
        f"{complaints}\n"
        "Rewrite the answer using the exact figures, dates and sources from WEB SEARCH DATA."
    )
    revision_turns = (
        {"role": "assistant", "content": previous_text},
        {"role": "user", "content": "Revise your previous answer to address the issues listed above."},
    )
    return replace(
        request,
        system_prompt=system_prompt,
        prior_messages=tuple(request.prior_messages) + revision_turns,
    )
