"""Retrieval of earlier notes that share entities with a new note.

The snippets feed the extractor's fusion step, which decides whether a new
mention is another name for something already in the graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .normalize import tokenize
from .resolver import EntityResolver
from .storage import GraphStorage

logger = logging.getLogger(__name__)

CANDIDATES_PER_ENTITY = 8
TOP_K = 6
MAX_CONTEXT_CHARS = 2800
MAX_NOTE_CHARS = 520
MIN_RELEVANCE = 0.12

_W_OVERLAP = 0.65
_W_ENTITY = 0.25
_W_SEED = 0.10


@dataclass
class Candidate:
    memory_id: int
    content: str
    seed_hits: int = 0
    score: float = 0.0
    token_overlap: int = 0
    entity_hits: int = 0


def relevance_score(
    query_tokens: Set[str],
    entity_terms: Sequence[str],
    content: str,
    seed_hits: int,
) -> Tuple[float, int, int]:
    """Score one candidate note. Returns ``(score, token_overlap, entity_hits)``.

    ``0.65 * overlap_ratio + 0.25 * entity_ratio + 0.10 * min(seed_hits, 3) / 3``
    """
    candidate_tokens = set(tokenize(content))
    overlap = len(query_tokens & candidate_tokens) if query_tokens else 0
    overlap_ratio = overlap / len(query_tokens) if query_tokens else 0.0

    lowered = content.lower()
    entity_hits = sum(1 for term in entity_terms if term in lowered)
    entity_ratio = entity_hits / len(entity_terms) if entity_terms else 0.0
    seed_ratio = min(seed_hits, 3) / 3.0

    score = overlap_ratio * _W_OVERLAP + entity_ratio * _W_ENTITY + seed_ratio * _W_SEED
    return score, overlap, entity_hits


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "…"


class HistoryRetriever:
    def __init__(self, storage: GraphStorage, resolver: EntityResolver) -> None:
        self.storage = storage
        self.resolver = resolver

    def collect(
        self,
        entity_names: Sequence[str],
        content: str,
        exclude_memory_id: Optional[int] = None,
    ) -> List[str]:
        """Return up to TOP_K relevant note snippets within MAX_CONTEXT_CHARS."""
        candidates: Dict[int, Candidate] = {}
        for name in entity_names:
            entity_id = self.resolver.find(name)
            if entity_id is None:
                continue
            notes = self.storage.memories_for_entity(entity_id, limit=CANDIDATES_PER_ENTITY + 1)
            notes = [n for n in notes if n["id"] != exclude_memory_id][:CANDIDATES_PER_ENTITY]
            for note in notes:
                cand = candidates.setdefault(note["id"], Candidate(note["id"], note["content"]))
                cand.seed_hits += 1

        if not candidates:
            return []

        query_tokens = set(tokenize(content))
        entity_terms = [
            t for t in (name.strip().lower() for name in entity_names) if len(t) >= 2
        ]
        for cand in candidates.values():
            cand.score, cand.token_overlap, cand.entity_hits = relevance_score(
                query_tokens, entity_terms, cand.content, cand.seed_hits
            )

        ranked = sorted(candidates.values(), key=lambda c: c.score, reverse=True)[:TOP_K]
        selected: List[str] = []
        budget = MAX_CONTEXT_CHARS
        for cand in ranked:
            relevant = (
                cand.score >= MIN_RELEVANCE or cand.entity_hits > 0 or cand.token_overlap >= 2
            )
            if not relevant:
                continue
            if budget <= 0:
                break
            trimmed = cand.content.strip()
            if not trimmed:
                continue
            snippet = truncate(trimmed, min(budget, MAX_NOTE_CHARS))
            selected.append(snippet)
            budget -= len(snippet)

        logger.info(
            "History: %d candidate notes, %d selected (%d chars)",
            len(candidates), len(selected), MAX_CONTEXT_CHARS - max(budget, 0),
        )
        return selected
