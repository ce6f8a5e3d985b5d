"""
Query expansion.

A small chat model turns a question about the codebase into search terms:
keywords (with synonyms), file path fragments, code identifiers, whether it
is an architecture question, and a one-line intent. The terms are appended
to the query text before hybrid/vector/text search.

Best effort: any failure falls back to the query's own words longer than
three characters.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from openai import AsyncOpenAI

from codechat.config import (
    HTTP_TIMEOUT_S,
    QUERY_EXPANSION_MAX_OUTPUT_TOKENS,
    QUERY_EXPANSION_MODEL,
    require_openai_key,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You analyze questions about a codebase and extract search terms.

Return ONLY a JSON object with these keys:
- "keywords": technical terms that would appear in relevant code
- "file_patterns": directory or file name fragments without wildcards (e.g. "auth", "api", "utils")
- "concepts": function, class or variable names that might be relevant
- "is_architecture_question": true if the question asks HOW something works, WHERE something is stored or WHAT technology is used
- "intent": one sentence describing the code that would answer the question

Be thorough and include synonyms and related terms. For example:
- "authentication" also means "auth", "login", "session", "jwt", "token"
- "database" also means "db", "prisma", "postgres", "storage"
- "API endpoints" also means "route", "api", "handler"
"""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class ExpandedQuery:
    keywords: List[str] = field(default_factory=list)
    file_patterns: List[str] = field(default_factory=list)
    concepts: List[str] = field(default_factory=list)
    is_architecture_question: bool = False
    intent: str = ""


def fallback_expansion(query: str) -> ExpandedQuery:
    """The query's own words longer than three characters."""
    return ExpandedQuery(
        keywords=[word for word in (query or "").split() if len(word) > 3],
        intent=query or "",
    )


def _strings(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_expansion(text: Optional[str], query: str) -> ExpandedQuery:
    """Read the model's JSON reply; malformed replies give the fallback expansion."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        logger.warning("[query_expander] No JSON object in model reply")
        return fallback_expansion(query)
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.warning(f"[query_expander] Invalid JSON in model reply: {e}")
        return fallback_expansion(query)
    if not isinstance(data, dict):
        return fallback_expansion(query)

    intent = data.get("intent")
    return ExpandedQuery(
        keywords=_strings(data.get("keywords")),
        file_patterns=_strings(data.get("file_patterns")),
        concepts=_strings(data.get("concepts")),
        is_architecture_question=data.get("is_architecture_question") is True,
        intent=intent.strip() if isinstance(intent, str) else query,
    )


def to_search_query(query: str, expanded: ExpandedQuery) -> str:
    """Original query followed by the new keywords and concepts, de-duplicated."""
    seen = {word.lower() for word in query.split()}
    extra = []
    for term in expanded.keywords + expanded.concepts:
        if term.lower() not in seen:
            seen.add(term.lower())
            extra.append(term)
    return " ".join([query.strip()] + extra)


def expansion_summary(expanded: ExpandedQuery) -> str:
    keywords = ", ".join(expanded.keywords[:5]) + ("..." if len(expanded.keywords) > 5 else "")
    patterns = ", ".join(expanded.file_patterns[:3]) + ("..." if len(expanded.file_patterns) > 3 else "")
    return f"keywords=[{keywords}] patterns=[{patterns}] architecture={expanded.is_architecture_question}"


class QueryExpander:
    """LLM-backed extraction of search terms from a question."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = QUERY_EXPANSION_MODEL,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self._client = client or AsyncOpenAI(
            api_key=api_key or require_openai_key(),
            timeout=HTTP_TIMEOUT_S,
        )

    async def expand(self, query: str) -> ExpandedQuery:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f'Question: "{query}"'},
                ],
                max_tokens=QUERY_EXPANSION_MAX_OUTPUT_TOKENS,
                temperature=0,
            )
            text = response.choices[0].message.content
        except Exception as e:
            logger.error(f"[query_expander] LLM call failed: {e}")
            return fallback_expansion(query)

        expanded = parse_expansion(text, query)
        logger.debug(f"[query_expander] {expansion_summary(expanded)}")
        return expanded


_expander: Optional[QueryExpander] = None


def get_query_expander() -> QueryExpander:
    global _expander
    if _expander is None:
        _expander = QueryExpander()
    return _expander


__all__ = [
    "ExpandedQuery",
    "QueryExpander",
    "expansion_summary",
    "fallback_expansion",
    "get_query_expander",
    "parse_expansion",
    "to_search_query",
]
