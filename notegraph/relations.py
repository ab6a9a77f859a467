"""Typed, weighted relations between resolved entities."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Tuple

from .normalize import normalize_relation_type
from .storage import GraphStorage

logger = logging.getLogger(__name__)


class RelationPolicy:
    """Per-type direction policy.

    Relation types are directional unless listed as symmetric (compared
    case-insensitively). Symmetric edges are stored with the lower entity id
    as ``from`` so both directions land on the same row.
    """

    def __init__(self, symmetric: Iterable[str] = ()) -> None:
        self._symmetric = {normalize_relation_type(t).casefold() for t in symmetric if t}

    def is_symmetric(self, relation_type: str) -> bool:
        return normalize_relation_type(relation_type).casefold() in self._symmetric

    def endpoints(self, from_id: int, to_id: int, relation_type: str) -> Tuple[int, int]:
        if self.is_symmetric(relation_type) and from_id > to_id:
            return to_id, from_id
        return from_id, to_id


class RelationUpserter:
    """Insert-or-strengthen for ``(from, to, type)`` edges."""

    def __init__(self, storage: GraphStorage, policy: Optional[RelationPolicy] = None) -> None:
        self.storage = storage
        self.policy = policy or RelationPolicy()

    def upsert(self, from_id: int, to_id: int, relation_type: str, evidence: int = 1) -> int:
        """Existing edge: ``strength += evidence``. New edge: ``strength = evidence``.

        Strength is not capped.
        """
        label = normalize_relation_type(relation_type)
        if not label:
            raise ValueError("relation type must not be empty")
        if evidence < 1:
            raise ValueError("evidence must be >= 1")
        src, dst = self.policy.endpoints(from_id, to_id, label)

        with self.storage.transaction():
            existing = self.storage.find_relation(src, dst, label)
            if existing:
                self.storage.add_relation_strength(existing["id"], evidence)
                logger.debug(
                    "Strengthened relation %d (%d -[%s]-> %d) by %d",
                    existing["id"], src, label, dst, evidence,
                )
                return existing["id"]
            relation_id = self.storage.insert_relation(src, dst, label, evidence)
            logger.debug("Created relation %d (%d -[%s]-> %d)", relation_id, src, label, dst)
            return relation_id
