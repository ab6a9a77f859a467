"""Entity resolution: candidate name + type -> entity id.

Lookup order is exact ``(type, name_norm)`` match, then the alias table, then
create. Names are compared with :func:`normalize_name` (NFKC, trim, collapse
whitespace, case-fold); the display name keeps the casing it was first seen
with.
"""

from __future__ import annotations

import logging
import warnings
from typing import Dict, Optional, Tuple

from .errors import ResolutionAmbiguous
from .normalize import clean_display_name, normalize_entity_type, normalize_name
from .storage import GraphStorage

logger = logging.getLogger(__name__)

__all__ = ["EntityResolver", "normalize_name"]


def _warn_ambiguous(name: str, chosen_id: int, candidate_ids) -> None:
    warning = ResolutionAmbiguous(name, chosen_id, candidate_ids)
    logger.warning("Ambiguous entity name: %s", warning)
    warnings.warn(warning, stacklevel=3)


class EntityResolver:
    """Maps mentions onto entity ids, creating entities on a miss.

    Resolution is idempotent within a batch: every created or found id is
    cached under its ``(type, name_norm)`` key until :meth:`reset_batch`.
    """

    def __init__(self, storage: GraphStorage) -> None:
        self.storage = storage
        self._batch: Dict[Tuple[str, str], int] = {}

    def reset_batch(self) -> None:
        self._batch.clear()

    def resolve(
        self,
        name: str,
        entity_type: str,
        attributes: Optional[Dict[str, str]] = None,
    ) -> int:
        """Return the id for ``name``/``entity_type``, creating the entity if needed.

        On a hit the incoming attributes are merged into the stored map
        (incoming keys win).
        """
        display = clean_display_name(name)
        if not display:
            raise ValueError("entity name must not be empty")
        etype = normalize_entity_type(entity_type)
        norm = normalize_name(display)
        incoming = {str(k): str(v) for k, v in (attributes or {}).items()}

        with self.storage.transaction():
            entity_id = self._lookup(etype, norm, display)
            if entity_id is None:
                entity_id = self.storage.insert_entity(etype, display, incoming)
                logger.debug("Created entity %d %s/%s", entity_id, etype, display)
            else:
                self._merge_attributes(entity_id, incoming)
            self._batch[(etype, norm)] = entity_id
        return entity_id

    def find(self, name: str) -> Optional[int]:
        """Type-agnostic name-or-alias lookup without creating anything.

        Several entities sharing the name across types resolve to the lowest
        id with a :class:`ResolutionAmbiguous` warning.
        """
        norm = normalize_name(name)
        if not norm:
            return None
        matches = self.storage.find_entities_by_norm(norm)
        if matches:
            if len(matches) > 1:
                _warn_ambiguous(name, matches[0]["id"], [m["id"] for m in matches])
            return matches[0]["id"]
        alias = self.storage.find_alias(norm)
        return alias["entity_id"] if alias else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, etype: str, norm: str, display: str) -> Optional[int]:
        cached = self._batch.get((etype, norm))
        if cached is not None:
            if self.storage.get_entity(cached) is not None:
                return cached
            # merged away or swept since it was cached
            del self._batch[(etype, norm)]

        exact = self.storage.find_entity(etype, norm)
        alias = self.storage.find_alias(norm)
        if exact is not None:
            if alias is not None and alias["entity_id"] != exact["id"]:
                _warn_ambiguous(display, exact["id"], [exact["id"], alias["entity_id"]])
            return exact["id"]
        if alias is not None:
            return alias["entity_id"]
        return None

    def _merge_attributes(self, entity_id: int, incoming: Dict[str, str]) -> None:
        if not incoming:
            self.storage.touch_entity(entity_id)
            return
        entity = self.storage.get_entity(entity_id)
        merged = dict(entity["attributes"]) if entity else {}
        merged.update(incoming)
        self.storage.set_entity_attributes(entity_id, merged)
