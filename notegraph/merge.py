"""Alias consolidation: fold a duplicate entity into its canonical entity.

Every dependent row is migrated before the duplicate is deleted, so foreign
key enforcement never has to be relaxed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import EntityNotFound, IntegrityViolation
from .normalize import clean_display_name, normalize_name
from .relations import RelationPolicy
from .storage import GraphStorage

logger = logging.getLogger(__name__)


@dataclass
class MergeReport:
    canonical_id: int
    duplicate_id: int
    aliases_moved: int = 0
    links_moved: int = 0
    links_dropped: int = 0
    relations_moved: int = 0
    relations_folded: int = 0
    self_loops_dropped: int = 0
    alias_added: bool = False

    def to_dict(self) -> Dict[str, int]:
        return {
            "canonical_id": self.canonical_id,
            "duplicate_id": self.duplicate_id,
            "aliases_moved": self.aliases_moved,
            "links_moved": self.links_moved,
            "links_dropped": self.links_dropped,
            "relations_moved": self.relations_moved,
            "relations_folded": self.relations_folded,
            "self_loops_dropped": self.self_loops_dropped,
            "alias_added": self.alias_added,
        }


class MergeCoordinator:
    def __init__(self, storage: GraphStorage, policy: Optional[RelationPolicy] = None) -> None:
        self.storage = storage
        self.policy = policy or RelationPolicy()

    # ------------------------------------------------------------------
    # Aliases
    # ------------------------------------------------------------------

    def add_alias(self, entity_id: int, alias: str) -> Optional[int]:
        """Record ``alias`` as another name of ``entity_id``.

        Returns the alias row id, or None when nothing was written: the alias
        equals the entity's own name, or it already names another entity (the
        existing mapping is kept).
        """
        display = clean_display_name(alias)
        norm = normalize_name(display)
        if not norm:
            raise ValueError("alias must not be empty")

        with self.storage.transaction():
            entity = self.storage.get_entity(entity_id)
            if entity is None:
                raise EntityNotFound(entity_id)
            if entity["name_norm"] == norm:
                return None
            existing = self.storage.find_alias(norm)
            if existing is not None:
                if existing["entity_id"] == entity_id:
                    return existing["id"]
                logger.warning(
                    "Alias %r already names entity %d; not re-pointing to %d",
                    display, existing["entity_id"], entity_id,
                )
                return None
            alias_id = self.storage.insert_alias(entity_id, display)
            logger.info("Alias %r -> entity %d", display, entity_id)
            return alias_id

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(self, canonical_id: int, duplicate_id: int) -> MergeReport:
        """Migrate everything that references ``duplicate_id`` to ``canonical_id``
        and delete the duplicate, as one transaction.

        Order: aliases, note links, relation endpoints, the duplicate's own
        name as a new alias, then the delete. Relations that collide on
        ``(from, to, type)`` after re-pointing are folded by summing
        strength; relations between the two merged entities become self-loops
        and are dropped. The duplicate's attributes fill keys the canonical
        entity lacks.
        """
        if canonical_id == duplicate_id:
            raise ValueError("cannot merge an entity into itself")

        report = MergeReport(canonical_id=canonical_id, duplicate_id=duplicate_id)
        with self.storage.transaction():
            canonical = self.storage.get_entity(canonical_id)
            if canonical is None:
                raise EntityNotFound(canonical_id)
            duplicate = self.storage.get_entity(duplicate_id)
            if duplicate is None:
                raise EntityNotFound(duplicate_id)

            self._move_aliases(canonical, duplicate_id, report)
            self._move_links(canonical_id, duplicate_id, report)
            self._move_relations(canonical_id, duplicate_id, report)
            self._alias_duplicate_name(canonical, duplicate, report)

            if duplicate["attributes"]:
                merged = dict(duplicate["attributes"])
                merged.update(canonical["attributes"])
                self.storage.set_entity_attributes(canonical_id, merged)
            else:
                self.storage.touch_entity(canonical_id)

            refs = self.storage.entity_reference_counts(duplicate_id)
            if any(refs.values()):
                raise IntegrityViolation(
                    f"entity {duplicate_id} still referenced after merge: {refs}"
                )
            self.storage.delete_entity(duplicate_id)

        logger.info(
            "Merged entity %d (%s) into %d (%s): %s",
            duplicate_id, duplicate["name"], canonical_id, canonical["name"], report.to_dict(),
        )
        return report

    def _move_aliases(self, canonical: dict, duplicate_id: int, report: MergeReport) -> None:
        for alias in self.storage.aliases_for_entity(duplicate_id):
            self.storage.repoint_alias(alias["id"], canonical["id"])
            report.aliases_moved += 1

    def _move_links(self, canonical_id: int, duplicate_id: int, report: MergeReport) -> None:
        for memory_id in self.storage.memory_ids_for_entity(duplicate_id):
            if canonical_id in self.storage.entity_ids_for_memory(memory_id):
                report.links_dropped += self.storage.delete_links(memory_id, [duplicate_id])
            else:
                self.storage.repoint_link(memory_id, duplicate_id, canonical_id)
                report.links_moved += 1

    def _move_relations(self, canonical_id: int, duplicate_id: int, report: MergeReport) -> None:
        for rel in self.storage.relations_for_entity(duplicate_id):
            src = canonical_id if rel["from_entity_id"] == duplicate_id else rel["from_entity_id"]
            dst = canonical_id if rel["to_entity_id"] == duplicate_id else rel["to_entity_id"]
            if src == dst:
                self.storage.delete_relation(rel["id"])
                report.self_loops_dropped += 1
                continue
            src, dst = self.policy.endpoints(src, dst, rel["relation_type"])
            existing = self.storage.find_relation(src, dst, rel["relation_type"])
            if existing is not None and existing["id"] != rel["id"]:
                self.storage.add_relation_strength(existing["id"], rel["strength"])
                self.storage.delete_relation(rel["id"])
                report.relations_folded += 1
            else:
                self.storage.set_relation_endpoints(rel["id"], src, dst)
                report.relations_moved += 1

    def _alias_duplicate_name(self, canonical: dict, duplicate: dict, report: MergeReport) -> None:
        norm = duplicate["name_norm"]
        if norm == canonical["name_norm"] and duplicate["type"] == canonical["type"]:
            return
        existing = self.storage.find_alias(norm)
        if existing is not None:
            # the merged name must resolve to the survivor
            if existing["entity_id"] != canonical["id"]:
                logger.warning(
                    "Re-pointing alias %r from entity %d to %d",
                    duplicate["name"], existing["entity_id"], canonical["id"],
                )
                self.storage.repoint_alias(existing["id"], canonical["id"])
                report.alias_added = True
            return
        self.storage.insert_alias(canonical["id"], duplicate["name"])
        report.alias_added = True
