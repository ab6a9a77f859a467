"""SQLite storage layer for notes and the knowledge graph.

Single-file database with:
* ``memories`` (the note store) and ``memory_entities`` links
* Knowledge graph tables (entities, entity_aliases, relations)
* Foreign keys always enforced, no cascades: dependents are removed explicitly
* One serialized write path (``transaction()``), concurrent per-thread readers
* Auto-create schema on first use
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from .errors import IntegrityViolation
from .normalize import normalize_name

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- Note store
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    tags TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);

-- Knowledge graph: entities
CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    name_norm TEXT NOT NULL,
    attributes TEXT DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_type_norm ON entities(type, name_norm);
CREATE INDEX IF NOT EXISTS idx_entities_norm ON entities(name_norm);

-- Knowledge graph: aliases (an alias resolves to at most one entity)
CREATE TABLE IF NOT EXISTS entity_aliases (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id INTEGER NOT NULL REFERENCES entities(id),
    alias TEXT NOT NULL,
    alias_norm TEXT NOT NULL UNIQUE,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entity_aliases_entity ON entity_aliases(entity_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_entity_aliases_norm ON entity_aliases(alias_norm);

-- Knowledge graph: relations
CREATE TABLE IF NOT EXISTS relations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    from_entity_id INTEGER NOT NULL REFERENCES entities(id),
    to_entity_id INTEGER NOT NULL REFERENCES entities(id),
    relation_type TEXT NOT NULL,
    strength INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    UNIQUE(from_entity_id, to_entity_id, relation_type)
);

CREATE INDEX IF NOT EXISTS idx_relations_from ON relations(from_entity_id);
CREATE INDEX IF NOT EXISTS idx_relations_to ON relations(to_entity_id);

-- Note <-> entity links
CREATE TABLE IF NOT EXISTS memory_entities (
    memory_id INTEGER NOT NULL REFERENCES memories(id),
    entity_id INTEGER NOT NULL REFERENCES entities(id),
    PRIMARY KEY (memory_id, entity_id)
);

CREATE INDEX IF NOT EXISTS idx_memory_entities_entity ON memory_entities(entity_id)
"""


def _entity_row(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["attributes"] = json.loads(d.get("attributes") or "{}")
    return d


class GraphStorage:
    """SQLite-backed note + knowledge graph storage."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        from .config import load_config

        self.db_path = db_path or load_config().db_path

        # Ensure parent directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._write_lock = threading.RLock()
        self._tx_depth = 0
        self._tx_thread: Optional[int] = None
        self._local = threading.local()
        self._read_conns: List[sqlite3.Connection] = []
        self._read_conns_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    def _get_conn(self) -> sqlite3.Connection:
        """The single writer connection."""
        if self._conn is None:
            self._conn = self._connect()
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA temp_store = MEMORY")
        return self._conn

    def _get_read_conn(self) -> sqlite3.Connection:
        """Per-thread read connection (sees the last committed state).

        A thread that currently holds the write transaction reads through the
        writer so it observes its own uncommitted rows.
        """
        if self._tx_depth and self._tx_thread == threading.get_ident():
            return self._get_conn()
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            conn.execute("PRAGMA query_only=ON")
            self._local.conn = conn
            with self._read_conns_lock:
                self._read_conns.append(conn)
        return conn

    def close(self) -> None:
        with self._read_conns_lock:
            for conn in self._read_conns:
                conn.close()
            self._read_conns.clear()
        self._local = threading.local()
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction (``BEGIN IMMEDIATE``).

        Re-entrant: a nested call joins the outer transaction and only the
        outermost block commits. Any exception rolls the whole transaction
        back; ``sqlite3.IntegrityError`` is re-raised as IntegrityViolation.
        """
        with self._write_lock:
            conn = self._get_conn()
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield conn
                finally:
                    self._tx_depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            self._tx_thread = threading.get_ident()
            try:
                yield conn
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                logger.error("Transaction rolled back on integrity error: %s", exc)
                raise IntegrityViolation(str(exc)) from exc
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()
            finally:
                self._tx_depth = 0
                self._tx_thread = None

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Read transaction: every read on this thread inside the block sees
        one committed state. Inside a write transaction it is a no-op.
        """
        conn = self._get_read_conn()
        if conn is self._conn or conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN")
        try:
            yield conn
        finally:
            conn.rollback()

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        conn = self._get_conn()

        # Safe migrations for databases written before name_norm/alias_norm
        def _col_exists(table: str, col: str) -> bool:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            return any(r[1] == col for r in rows)

        def _table_exists(table: str) -> bool:
            row = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
            ).fetchone()
            return row is not None

        with self.transaction():
            if _table_exists("memories"):
                if not _col_exists("memories", "tags"):
                    conn.execute("ALTER TABLE memories ADD COLUMN tags TEXT")
                    logger.info("Schema migration: added memories.tags")
                if not _col_exists("memories", "updated_at"):
                    conn.execute("ALTER TABLE memories ADD COLUMN updated_at REAL")
                    conn.execute("UPDATE memories SET updated_at = created_at")
                    logger.info("Schema migration: added memories.updated_at")
            if _table_exists("entities") and not _col_exists("entities", "name_norm"):
                conn.execute("ALTER TABLE entities ADD COLUMN name_norm TEXT NOT NULL DEFAULT ''")
                for row in conn.execute("SELECT id, name FROM entities").fetchall():
                    conn.execute(
                        "UPDATE entities SET name_norm = ? WHERE id = ?",
                        (normalize_name(row["name"]), row["id"]),
                    )
                logger.info("Schema migration: added entities.name_norm")
            if _table_exists("entity_aliases") and not _col_exists("entity_aliases", "alias_norm"):
                conn.execute(
                    "ALTER TABLE entity_aliases ADD COLUMN alias_norm TEXT NOT NULL DEFAULT ''"
                )
                for row in conn.execute("SELECT id, alias FROM entity_aliases").fetchall():
                    conn.execute(
                        "UPDATE entity_aliases SET alias_norm = ? WHERE id = ?",
                        (normalize_name(row["alias"]), row["id"]),
                    )
                logger.info("Schema migration: added entity_aliases.alias_norm")
            if _table_exists("relations") and not _col_exists("relations", "updated_at"):
                conn.execute("ALTER TABLE relations ADD COLUMN updated_at REAL")
                logger.info("Schema migration: added relations.updated_at")

            for stmt in _SCHEMA_SQL.split(";"):
                stmt = stmt.strip()
                if not stmt:
                    continue
                try:
                    conn.execute(stmt)
                except sqlite3.IntegrityError as exc:
                    # A unique index over legacy rows that collide after
                    # normalisation; the graph still works without it.
                    logger.warning("Schema statement skipped (%s): %s", exc, stmt.splitlines()[0])

    # ------------------------------------------------------------------
    # Note CRUD
    # ------------------------------------------------------------------

    def insert_memory(self, content: str, tags: Optional[List[str]] = None) -> int:
        """Insert a note. Returns the note ID."""
        now = time.time()
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO memories (content, tags, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (content, json.dumps(tags or []), now, now),
            )
            return int(cur.lastrowid)

    def update_memory(
        self, memory_id: int, content: str, tags: Optional[List[str]] = None
    ) -> bool:
        """Replace a note's content (and tags when given). Returns True if found."""
        with self.transaction() as conn:
            if tags is None:
                cur = conn.execute(
                    "UPDATE memories SET content = ?, updated_at = ? WHERE id = ?",
                    (content, time.time(), memory_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE memories SET content = ?, tags = ?, updated_at = ? WHERE id = ?",
                    (content, json.dumps(tags), time.time(), memory_id),
                )
            return cur.rowcount > 0

    def delete_memory(self, memory_id: int) -> bool:
        """Delete a note row. Its links must already be gone."""
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            return cur.rowcount > 0

    def get_memory(self, memory_id: int) -> Optional[Dict[str, Any]]:
        """Return a single note dict or None."""
        row = self._get_read_conn().execute(
            "SELECT * FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if not row:
            return None
        d = dict(row)
        d["tags"] = json.loads(d.get("tags") or "[]")
        return d

    def list_memories(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Notes, newest first."""
        sql = "SELECT * FROM memories ORDER BY created_at DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        results = []
        for row in self._get_read_conn().execute(sql, params).fetchall():
            d = dict(row)
            d["tags"] = json.loads(d.get("tags") or "[]")
            results.append(d)
        return results

    # ------------------------------------------------------------------
    # Entity CRUD
    # ------------------------------------------------------------------

    def find_entity(self, entity_type: str, name_norm: str) -> Optional[Dict[str, Any]]:
        row = self._get_read_conn().execute(
            "SELECT * FROM entities WHERE type = ? AND name_norm = ?",
            (entity_type, name_norm),
        ).fetchone()
        return _entity_row(row) if row else None

    def find_entities_by_norm(self, name_norm: str) -> List[Dict[str, Any]]:
        """All entities with this normalized name, any type, oldest first."""
        rows = self._get_read_conn().execute(
            "SELECT * FROM entities WHERE name_norm = ? ORDER BY id", (name_norm,)
        ).fetchall()
        return [_entity_row(r) for r in rows]

    def insert_entity(
        self,
        entity_type: str,
        name: str,
        attributes: Optional[Dict[str, str]] = None,
    ) -> int:
        now = time.time()
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO entities (type, name, name_norm, attributes, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    entity_type,
                    name,
                    normalize_name(name),
                    json.dumps(attributes or {}, ensure_ascii=False),
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid)

    def set_entity_attributes(self, entity_id: int, attributes: Dict[str, str]) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE entities SET attributes = ?, updated_at = ? WHERE id = ?",
                (json.dumps(attributes, ensure_ascii=False), time.time(), entity_id),
            )

    def touch_entity(self, entity_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE entities SET updated_at = ? WHERE id = ?", (time.time(), entity_id)
            )

    def get_entity(self, entity_id: int) -> Optional[Dict[str, Any]]:
        """Return entity dict (with ``aliases``) or None."""
        conn = self._get_read_conn()
        row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        if not row:
            return None
        d = _entity_row(row)
        d["aliases"] = [
            r["alias"]
            for r in conn.execute(
                "SELECT alias FROM entity_aliases WHERE entity_id = ? ORDER BY id", (entity_id,)
            ).fetchall()
        ]
        return d

    def list_entities(self) -> List[Dict[str, Any]]:
        rows = self._get_read_conn().execute(
            "SELECT * FROM entities ORDER BY type, name"
        ).fetchall()
        return [_entity_row(r) for r in rows]

    def search_entities(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Substring search over normalized names and aliases."""
        pattern = f"%{normalize_name(query)}%"
        rows = self._get_read_conn().execute(
            """SELECT DISTINCT e.* FROM entities e
               LEFT JOIN entity_aliases a ON a.entity_id = e.id
               WHERE e.name_norm LIKE ? OR a.alias_norm LIKE ?
               ORDER BY e.id LIMIT ?""",
            (pattern, pattern, limit),
        ).fetchall()
        return [_entity_row(r) for r in rows]

    def delete_entity(self, entity_id: int) -> bool:
        """Delete an entity row. Its aliases, relations and links must already be gone."""
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))
            return cur.rowcount > 0

    def entity_reference_counts(self, entity_id: int) -> Dict[str, int]:
        """Rows that still point at an entity, by table."""
        conn = self._get_read_conn()
        aliases = conn.execute(
            "SELECT COUNT(*) AS c FROM entity_aliases WHERE entity_id = ?", (entity_id,)
        ).fetchone()["c"]
        relations = conn.execute(
            "SELECT COUNT(*) AS c FROM relations WHERE from_entity_id = ? OR to_entity_id = ?",
            (entity_id, entity_id),
        ).fetchone()["c"]
        links = conn.execute(
            "SELECT COUNT(*) AS c FROM memory_entities WHERE entity_id = ?", (entity_id,)
        ).fetchone()["c"]
        return {"aliases": aliases, "relations": relations, "links": links}

    # ------------------------------------------------------------------
    # Aliases
    # ------------------------------------------------------------------

    def find_alias(self, alias_norm: str) -> Optional[Dict[str, Any]]:
        row = self._get_read_conn().execute(
            "SELECT * FROM entity_aliases WHERE alias_norm = ?", (alias_norm,)
        ).fetchone()
        return dict(row) if row else None

    def insert_alias(self, entity_id: int, alias: str) -> int:
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO entity_aliases (entity_id, alias, alias_norm, created_at)
                   VALUES (?, ?, ?, ?)""",
                (entity_id, alias, normalize_name(alias), time.time()),
            )
            return int(cur.lastrowid)

    def aliases_for_entity(self, entity_id: int) -> List[Dict[str, Any]]:
        rows = self._get_read_conn().execute(
            "SELECT * FROM entity_aliases WHERE entity_id = ? ORDER BY id", (entity_id,)
        ).fetchall()
        return [dict(r) for r in rows]

    def repoint_alias(self, alias_id: int, entity_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE entity_aliases SET entity_id = ? WHERE id = ?", (entity_id, alias_id)
            )

    def list_aliases(self) -> List[Dict[str, Any]]:
        rows = self._get_read_conn().execute(
            "SELECT * FROM entity_aliases ORDER BY id"
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def find_relation(
        self, from_id: int, to_id: int, relation_type: str
    ) -> Optional[Dict[str, Any]]:
        row = self._get_read_conn().execute(
            """SELECT * FROM relations
               WHERE from_entity_id = ? AND to_entity_id = ? AND relation_type = ?""",
            (from_id, to_id, relation_type),
        ).fetchone()
        return dict(row) if row else None

    def insert_relation(
        self, from_id: int, to_id: int, relation_type: str, strength: int
    ) -> int:
        now = time.time()
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO relations (from_entity_id, to_entity_id, relation_type,
                                          strength, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (from_id, to_id, relation_type, strength, now, now),
            )
            return int(cur.lastrowid)

    def add_relation_strength(self, relation_id: int, amount: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE relations SET strength = strength + ?, updated_at = ? WHERE id = ?",
                (amount, time.time(), relation_id),
            )

    def set_relation_endpoints(self, relation_id: int, from_id: int, to_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                """UPDATE relations SET from_entity_id = ?, to_entity_id = ?, updated_at = ?
                   WHERE id = ?""",
                (from_id, to_id, time.time(), relation_id),
            )

    def delete_relation(self, relation_id: int) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM relations WHERE id = ?", (relation_id,))

    def relations_for_entity(self, entity_id: int) -> List[Dict[str, Any]]:
        rows = self._get_read_conn().execute(
            """SELECT * FROM relations WHERE from_entity_id = ? OR to_entity_id = ?
               ORDER BY id""",
            (entity_id, entity_id),
        ).fetchall()
        return [dict(r) for r in rows]

    def list_relations(self) -> List[Dict[str, Any]]:
        rows = self._get_read_conn().execute("SELECT * FROM relations ORDER BY id").fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Note <-> entity links
    # ------------------------------------------------------------------

    def insert_link(self, memory_id: int, entity_id: int) -> bool:
        """Returns True if a new link row was written."""
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO memory_entities (memory_id, entity_id) VALUES (?, ?)",
                (memory_id, entity_id),
            )
            return cur.rowcount > 0

    def delete_links(self, memory_id: int, entity_ids: Iterable[int]) -> int:
        removed = 0
        with self.transaction() as conn:
            for eid in entity_ids:
                cur = conn.execute(
                    "DELETE FROM memory_entities WHERE memory_id = ? AND entity_id = ?",
                    (memory_id, eid),
                )
                removed += cur.rowcount
        return removed

    def delete_all_links(self, memory_id: int) -> int:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM memory_entities WHERE memory_id = ?", (memory_id,))
            return cur.rowcount

    def repoint_link(self, memory_id: int, from_entity_id: int, to_entity_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE memory_entities SET entity_id = ? WHERE memory_id = ? AND entity_id = ?",
                (to_entity_id, memory_id, from_entity_id),
            )

    def memory_ids_for_entity(self, entity_id: int) -> List[int]:
        rows = self._get_read_conn().execute(
            "SELECT memory_id FROM memory_entities WHERE entity_id = ? ORDER BY memory_id",
            (entity_id,),
        ).fetchall()
        return [r["memory_id"] for r in rows]

    def entity_ids_for_memory(self, memory_id: int) -> Set[int]:
        rows = self._get_read_conn().execute(
            "SELECT entity_id FROM memory_entities WHERE memory_id = ?", (memory_id,)
        ).fetchall()
        return {r["entity_id"] for r in rows}

    def memories_for_entity(self, entity_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Notes linked to an entity, newest first."""
        sql = """SELECT m.* FROM memories m
                 JOIN memory_entities me ON me.memory_id = m.id
                 WHERE me.entity_id = ?
                 ORDER BY m.created_at DESC, m.id DESC"""
        params: tuple = (entity_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (entity_id, limit)
        results = []
        for row in self._get_read_conn().execute(sql, params).fetchall():
            d = dict(row)
            d["tags"] = json.loads(d.get("tags") or "[]")
            results.append(d)
        return results

    # ------------------------------------------------------------------
    # Bulk maintenance
    # ------------------------------------------------------------------

    def clear_all(self) -> Dict[str, int]:
        """Delete every row in dependency order, keeping the schema."""
        removed: Dict[str, int] = {}
        with self.transaction() as conn:
            for table in ("memory_entities", "relations", "entity_aliases", "memories", "entities"):
                removed[table] = conn.execute(f"DELETE FROM {table}").rowcount
            conn.execute(
                "DELETE FROM sqlite_sequence WHERE name IN "
                "('memories', 'entities', 'entity_aliases', 'relations')"
            )
        logger.info("Cleared all graph data: %s", removed)
        return removed

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return database statistics."""
        conn = self._get_read_conn()
        memories = conn.execute("SELECT COUNT(*) AS c FROM memories").fetchone()["c"]
        entities = conn.execute("SELECT COUNT(*) AS c FROM entities").fetchone()["c"]
        aliases = conn.execute("SELECT COUNT(*) AS c FROM entity_aliases").fetchone()["c"]
        relations = conn.execute("SELECT COUNT(*) AS c FROM relations").fetchone()["c"]
        links = conn.execute("SELECT COUNT(*) AS c FROM memory_entities").fetchone()["c"]
        by_type = conn.execute(
            "SELECT type, COUNT(*) AS c FROM entities GROUP BY type"
        ).fetchall()

        return {
            "total_memories": memories,
            "entities": entities,
            "aliases": aliases,
            "relations": relations,
            "links": links,
            "entities_by_type": {r["type"]: r["c"] for r in by_type},
        }
