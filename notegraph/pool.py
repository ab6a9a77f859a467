"""Per-library graph databases.

Each library gets its own SQLite database file:
    - main/default: {base_dir}/graph.sqlite
    - named library: {base_dir}/graph-{library_id}.sqlite

The pool lazily creates GraphStorage instances (and the KnowledgeGraph on top)
on first access. Schema is auto-created by GraphStorage.__init__.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import Config
from .errors import LibraryNotFound
from .extraction import Extractor
from .graph import KnowledgeGraph
from .storage import GraphStorage

logger = logging.getLogger(__name__)

# Valid library ID: lowercase alphanumeric, hyphens, underscores, 1-64 chars.
_LIBRARY_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


class LibraryPool:
    """Manages per-library GraphStorage / KnowledgeGraph instances."""

    def __init__(
        self,
        base_dir: str,
        extractor_factory: Callable[[], Extractor],
        cfg: Optional[Config] = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.extractor_factory = extractor_factory
        self.cfg = cfg
        self._graphs: Dict[str, KnowledgeGraph] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: Config, extractor_factory: Callable[[], Extractor]) -> "LibraryPool":
        """Pool rooted at the directory holding ``cfg.db_path``."""
        return cls(str(Path(cfg.db_path).parent), extractor_factory, cfg)

    @staticmethod
    def normalize_key(library_id: Optional[str]) -> str:
        """Normalize and validate a library parameter to a cache key.

        Raises ValueError for invalid library IDs (path traversal, reserved words).
        """
        if not library_id or library_id == "main":
            return "main"
        library_id = library_id.strip().lower()
        if library_id == "all":
            raise ValueError("'all' is a reserved library ID")
        if not _LIBRARY_ID_RE.match(library_id):
            raise ValueError(
                f"Invalid library ID '{library_id}': must match [a-z0-9][a-z0-9_-]{{0,63}}"
            )
        return library_id

    def _db_path(self, key: str) -> str:
        if key == "main":
            return str(self.base_dir / "graph.sqlite")
        return str(self.base_dir / f"graph-{key}.sqlite")

    def exists(self, library_id: Optional[str] = None) -> bool:
        """True for main, open libraries and libraries with a database file."""
        key = self.normalize_key(library_id)
        if key == "main":
            return True
        with self._lock:
            if key in self._graphs:
                return True
        return Path(self._db_path(key)).exists()

    def get(self, library_id: Optional[str] = None, create: bool = True) -> KnowledgeGraph:
        """Get the KnowledgeGraph for the given library.

        With ``create=False`` an unknown named library raises
        :class:`LibraryNotFound` instead of creating an empty database.
        """
        key = self.normalize_key(library_id)
        with self._lock:
            graph = self._graphs.get(key)
            if graph is None:
                db_path = self._db_path(key)
                if not create and key != "main" and not Path(db_path).exists():
                    raise LibraryNotFound(key)
                graph = KnowledgeGraph(
                    GraphStorage(db_path=db_path),
                    self.extractor_factory(),
                    cfg=self.cfg,
                )
                self._graphs[key] = graph
                logger.info("LibraryPool: opened %s -> %s", key, db_path)
            return graph

    def get_all_libraries(self) -> List[str]:
        """Discover all library IDs from existing database files."""
        libraries: List[str] = []
        if (self.base_dir / "graph.sqlite").exists():
            libraries.append("main")
        for f in sorted(self.base_dir.glob("graph-*.sqlite")):
            if f.suffix != ".sqlite" or ".bak" in f.name:
                continue
            library_id = f.stem.replace("graph-", "", 1)
            if library_id and _LIBRARY_ID_RE.match(library_id):
                libraries.append(library_id)
        return libraries

    def get_all_graphs(self) -> Dict[str, KnowledgeGraph]:
        """Graphs for all discovered libraries (plus any already open)."""
        for library_id in self.get_all_libraries():
            self.get(library_id)
        with self._lock:
            return dict(self._graphs)

    def delete(self, library_id: str) -> None:
        """Close a named library and remove its database files."""
        key = self.normalize_key(library_id)
        if key == "main":
            raise ValueError("the main library cannot be deleted")
        if not self.exists(key):
            raise LibraryNotFound(key)
        db_path = Path(self._db_path(key))
        with self._lock:
            graph = self._graphs.pop(key, None)
            if graph is not None:
                graph.storage.close()
            for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
                if path.exists():
                    path.unlink()
        logger.info("LibraryPool: deleted %s (%s)", key, db_path)

    def close_all(self) -> None:
        """Close all open database connections."""
        with self._lock:
            for graph in self._graphs.values():
                graph.storage.close()
            self._graphs.clear()
