"""
Pure ranking functions for retrieval.

No I/O here: the retriever loads candidates, these functions score and
order them. Every score is in [0, 1]. Ties are broken by (file_path,
start_line) so equal inputs always produce the same order.
"""

import math
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

_NON_WORD = re.compile(r"[^\w\s]")
_TERM = re.compile(r"\w+")

# Text score = coverage weight * matched-term fraction + density weight * occurrence density
COVERAGE_WEIGHT = 0.8
DENSITY_WEIGHT = 0.2
DENSITY_SATURATION = 3  # occurrences per term at which density maxes out


@dataclass
class RetrievedChunk:
    """A stored chunk returned by a search, with its relevance score."""
    id: str
    file_path: str
    start_line: int
    end_line: int
    content: str
    language: str
    chunk_type: str
    symbol_name: Optional[str] = None
    score: float = 0.0
    context: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)


# =============================================================================
# VECTOR
# =============================================================================

def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero-norm vectors."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0

    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def rank_by_vector(
    query_vector: Sequence[float],
    candidates: Iterable[Tuple[RetrievedChunk, Sequence[float]]],
    threshold: float = 0.0,
    limit: Optional[int] = None,
) -> List[RetrievedChunk]:
    """Score candidates by cosine similarity (clamped to [0,1]), keep those >= threshold."""
    scored = []
    for chunk, vector in candidates:
        score = min(1.0, max(0.0, cosine_similarity(query_vector, vector)))
        if score >= threshold:
            scored.append(replace(chunk, score=score))
    ranked = sort_scored(scored)
    return ranked[:limit] if limit is not None else ranked


# =============================================================================
# TEXT
# =============================================================================

def sanitize_text_query(query: str) -> str:
    """Replace punctuation with spaces and trim."""
    return _NON_WORD.sub(" ", query or "").strip()


def query_terms(query: str) -> List[str]:
    """Unique lowercase word tokens of the sanitized query, in order."""
    return list(dict.fromkeys(t.lower() for t in _TERM.findall(sanitize_text_query(query))))


def text_match_score(terms: Sequence[str], content: str, symbol_name: Optional[str] = None) -> float:
    """
    [0,1] relevance of a chunk to the query terms.

    Coverage (fraction of terms present) dominates; density (occurrences
    per term, saturating at DENSITY_SATURATION) breaks near-ties.
    """
    if not terms:
        return 0.0
    haystack = f"{content} {symbol_name or ''}".lower()

    matched = 0
    occurrences = 0
    for term in terms:
        count = haystack.count(term)
        if count:
            matched += 1
            occurrences += count
    if not matched:
        return 0.0

    coverage = matched / len(terms)
    density = min(1.0, occurrences / (DENSITY_SATURATION * len(terms)))
    return COVERAGE_WEIGHT * coverage + DENSITY_WEIGHT * density


def rank_by_text(
    query: str,
    candidates: Iterable[RetrievedChunk],
    limit: Optional[int] = None,
) -> List[RetrievedChunk]:
    """Score candidates by term matching; chunks with no match are dropped."""
    terms = query_terms(query)
    if not terms:
        return []

    scored = []
    for chunk in candidates:
        score = text_match_score(terms, chunk.content, chunk.symbol_name)
        if score > 0:
            scored.append(replace(chunk, score=score))
    ranked = sort_scored(scored)
    return ranked[:limit] if limit is not None else ranked


# =============================================================================
# COMBINATION
# =============================================================================

def normalize_weights(vector_weight: float, text_weight: float) -> Tuple[float, float]:
    """Clamp negatives to 0 and scale to sum 1 (equal split if both are 0)."""
    vector_weight = max(0.0, vector_weight)
    text_weight = max(0.0, text_weight)
    total = vector_weight + text_weight
    if total == 0:
        return 0.5, 0.5
    return vector_weight / total, text_weight / total


def combine_scores(
    vector_scores: Dict[str, float],
    text_scores: Dict[str, float],
    vector_weight: float,
    text_weight: float,
) -> Dict[str, float]:
    """Weighted sum per chunk id; a missing score counts as 0."""
    vw, tw = normalize_weights(vector_weight, text_weight)
    combined = {}
    for chunk_id in set(vector_scores) | set(text_scores):
        score = vw * vector_scores.get(chunk_id, 0.0) + tw * text_scores.get(chunk_id, 0.0)
        combined[chunk_id] = min(1.0, max(0.0, score))
    return combined


def sort_scored(chunks: Iterable[RetrievedChunk]) -> List[RetrievedChunk]:
    """Descending score, then file path and start line."""
    return sorted(chunks, key=lambda c: (-c.score, c.file_path, c.start_line))
