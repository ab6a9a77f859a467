"""Consistency sweep: remove orphaned entities and dangling rows.

Runs in one write transaction, in this order:

1. links whose note or entity no longer exists
2. relations with a missing endpoint
3. orphan entities (no links); each orphan's relations and aliases are
   deleted before the entity row itself
4. relations left dangling by step 3
5. aliases whose entity no longer exists

With foreign keys enforced, steps 1, 2, 4 and 5 normally find nothing; they
repair databases written by older versions that ran with enforcement off.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, List

from .errors import IntegrityViolation, SweepFailure
from .storage import GraphStorage

logger = logging.getLogger(__name__)


_DANGLING_LINKS_SQL = """
DELETE FROM memory_entities
WHERE memory_id NOT IN (SELECT id FROM memories)
   OR entity_id NOT IN (SELECT id FROM entities)
"""

_DANGLING_RELATIONS_SQL = """
DELETE FROM relations
WHERE from_entity_id NOT IN (SELECT id FROM entities)
   OR to_entity_id NOT IN (SELECT id FROM entities)
"""

_DANGLING_ALIASES_SQL = """
DELETE FROM entity_aliases
WHERE entity_id NOT IN (SELECT id FROM entities)
"""

_ORPHANS_SQL = """
SELECT e.id, e.type, e.name FROM entities e
WHERE NOT EXISTS (SELECT 1 FROM memory_entities me WHERE me.entity_id = e.id)
ORDER BY e.id
"""


@dataclass
class SweepReport:
    removed_entities: int = 0
    removed_relations: int = 0
    removed_links: int = 0
    removed_aliases: int = 0

    @property
    def is_empty(self) -> bool:
        return not (
            self.removed_entities or self.removed_relations
            or self.removed_links or self.removed_aliases
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "removed_entities": self.removed_entities,
            "removed_relations": self.removed_relations,
            "removed_links": self.removed_links,
            "removed_aliases": self.removed_aliases,
        }


class ConsistencySweeper:
    def __init__(self, storage: GraphStorage) -> None:
        self.storage = storage

    def sweep(self) -> SweepReport:
        """Run the five passes atomically. Safe to re-run; a second run with no
        writes in between returns an empty report.

        Raises SweepFailure (after rolling back) if any pass fails. Called
        inside an outer transaction the sweep joins it, and a failure rolls
        back the outer operation too.
        """
        report = SweepReport()
        try:
            with self.storage.transaction() as conn:
                report.removed_links += conn.execute(_DANGLING_LINKS_SQL).rowcount
                report.removed_relations += conn.execute(_DANGLING_RELATIONS_SQL).rowcount

                orphans = conn.execute(_ORPHANS_SQL).fetchall()
                orphan_ids: List[int] = [row["id"] for row in orphans]
                for entity_id in orphan_ids:
                    report.removed_relations += conn.execute(
                        "DELETE FROM relations WHERE from_entity_id = ? OR to_entity_id = ?",
                        (entity_id, entity_id),
                    ).rowcount
                    report.removed_aliases += conn.execute(
                        "DELETE FROM entity_aliases WHERE entity_id = ?", (entity_id,)
                    ).rowcount
                    report.removed_entities += conn.execute(
                        "DELETE FROM entities WHERE id = ?", (entity_id,)
                    ).rowcount

                report.removed_relations += conn.execute(_DANGLING_RELATIONS_SQL).rowcount
                report.removed_aliases += conn.execute(_DANGLING_ALIASES_SQL).rowcount
        except (sqlite3.Error, IntegrityViolation) as exc:
            logger.error("Sweep failed and was rolled back: %s", exc)
            raise SweepFailure(str(exc)) from exc

        if report.is_empty:
            logger.debug("Sweep: nothing to remove")
        else:
            logger.info(
                "Sweep removed %s (orphans: %s)",
                report.to_dict(),
                ", ".join(f"{row['type']}/{row['name']}" for row in orphans),
            )
        return report

    def preview(self) -> SweepReport:
        """Count what a sweep would remove without writing anything."""
        conn = self.storage._get_read_conn()

        def _count(sql: str) -> int:
            return conn.execute(sql).fetchone()[0]

        report = SweepReport()
        report.removed_links = _count(
            "SELECT COUNT(*) FROM memory_entities "
            "WHERE memory_id NOT IN (SELECT id FROM memories) "
            "OR entity_id NOT IN (SELECT id FROM entities)"
        )
        # entities left without links once dangling links are gone
        report.removed_entities = _count(
            "SELECT COUNT(*) FROM entities e WHERE NOT EXISTS ("
            "SELECT 1 FROM memory_entities me JOIN memories m ON m.id = me.memory_id "
            "WHERE me.entity_id = e.id)"
        )
        report.removed_relations = _count(
            "SELECT COUNT(*) FROM relations r WHERE "
            "r.from_entity_id NOT IN (SELECT id FROM entities) "
            "OR r.to_entity_id NOT IN (SELECT id FROM entities) "
            "OR NOT EXISTS (SELECT 1 FROM memory_entities me JOIN memories m "
            "ON m.id = me.memory_id WHERE me.entity_id = r.from_entity_id) "
            "OR NOT EXISTS (SELECT 1 FROM memory_entities me JOIN memories m "
            "ON m.id = me.memory_id WHERE me.entity_id = r.to_entity_id)"
        )
        report.removed_aliases = _count(
            "SELECT COUNT(*) FROM entity_aliases a WHERE "
            "a.entity_id NOT IN (SELECT id FROM entities) "
            "OR NOT EXISTS (SELECT 1 FROM memory_entities me JOIN memories m "
            "ON m.id = me.memory_id WHERE me.entity_id = a.entity_id)"
        )
        return report
