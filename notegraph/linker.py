"""Note <-> entity associations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from .storage import GraphStorage

logger = logging.getLogger(__name__)


@dataclass
class LinkDiff:
    """Result of relinking a note to a new entity set.

    ``removed`` entities are sweep candidates; they may still be linked to
    other notes and are never deleted here.
    """
    added: List[int] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)
    kept: List[int] = field(default_factory=list)


class MemoryLinker:
    def __init__(self, storage: GraphStorage) -> None:
        self.storage = storage

    def link(self, memory_id: int, entity_ids: Iterable[int]) -> List[int]:
        """Insert missing link rows. Returns the entity ids newly linked."""
        added: List[int] = []
        with self.storage.transaction():
            for eid in dict.fromkeys(entity_ids):
                if self.storage.insert_link(memory_id, eid):
                    added.append(eid)
        return added

    def relink(self, memory_id: int, entity_ids: Iterable[int]) -> LinkDiff:
        """Make the note's links exactly ``entity_ids`` and report the change."""
        wanted = list(dict.fromkeys(entity_ids))
        with self.storage.transaction():
            current = self.storage.entity_ids_for_memory(memory_id)
            removed = sorted(current - set(wanted))
            self.storage.delete_links(memory_id, removed)
            added = self.link(memory_id, [eid for eid in wanted if eid not in current])
        diff = LinkDiff(
            added=added,
            removed=removed,
            kept=[eid for eid in wanted if eid in current],
        )
        logger.debug(
            "Relinked note %d: +%d -%d =%d",
            memory_id, len(diff.added), len(diff.removed), len(diff.kept),
        )
        return diff
