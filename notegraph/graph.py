"""Note workflow over the knowledge graph.

``KnowledgeGraph`` ties the pieces together:

* extraction (and fusion against earlier notes) runs first, outside any
  write transaction; a failure there leaves the database untouched
* the note row is written in its own transaction
* resolution, merges, links and relations for the note are one transaction
* edits and deletes end with a consistency sweep inside that transaction
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from rapidfuzz import fuzz, process as rfprocess

from . import metrics
from .config import Config, load_config
from .errors import EntityNotFound, ExtractionUnavailable, NoteNotFound
from .extraction import ExtractionResult, Extractor
from .history import HistoryRetriever
from .linker import LinkDiff, MemoryLinker
from .merge import MergeCoordinator, MergeReport
from .normalize import normalize_name
from .relations import RelationPolicy, RelationUpserter
from .resolver import EntityResolver
from .storage import GraphStorage
from .sweeper import ConsistencySweeper, SweepReport
from .temporal import TimeNormalizer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str, Dict[str, Any]], None]

STEPS = (
    "extracting",
    "looking_up_history",
    "fusing",
    "resolving",
    "merging",
    "linking",
    "cleaning_up",
    "done",
)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class NoteResult:
    memory_id: int
    entity_ids: List[int] = field(default_factory=list)
    relation_ids: List[int] = field(default_factory=list)
    merges: List[MergeReport] = field(default_factory=list)
    aliases_added: int = 0
    fused: bool = False
    links: Optional[LinkDiff] = None
    sweep: Optional[SweepReport] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "memory_id": self.memory_id,
            "entity_ids": list(self.entity_ids),
            "relation_ids": list(self.relation_ids),
            "merges": [m.to_dict() for m in self.merges],
            "aliases_added": self.aliases_added,
            "fused": self.fused,
        }
        if self.links is not None:
            d["links"] = {
                "added": self.links.added,
                "removed": self.links.removed,
                "kept": self.links.kept,
            }
        if self.sweep is not None:
            d["sweep"] = self.sweep.to_dict()
        return d


class _Progress:
    """Step reporter; remembers the running step so failures name it."""

    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self.callback = callback
        self.step = "extracting"

    def __call__(self, step: str, status: str, **detail: Any) -> None:
        self.step = step
        logger.debug("step %s: %s %s", step, status, detail or "")
        if self.callback is not None:
            self.callback(step, status, detail)

    def fail(self, exc: BaseException) -> None:
        if self.callback is not None:
            self.callback(self.step, "error", {"message": str(exc)})


# ---------------------------------------------------------------------------
# Knowledge graph facade
# ---------------------------------------------------------------------------

class KnowledgeGraph:
    """Saves, edits and deletes notes while keeping the graph consistent."""

    def __init__(
        self,
        storage: GraphStorage,
        extractor: Extractor,
        cfg: Optional[Config] = None,
        policy: Optional[RelationPolicy] = None,
    ) -> None:
        cfg = cfg or load_config()
        self.storage = storage
        self.extractor = extractor
        self.min_extract_chars = cfg.min_extract_chars
        self.fuzzy_threshold = cfg.fuzzy_threshold
        self.policy = policy or RelationPolicy(cfg.symmetric_relations)

        self.resolver = EntityResolver(storage)
        self.relations = RelationUpserter(storage, self.policy)
        self.linker = MemoryLinker(storage)
        self.merger = MergeCoordinator(storage, self.policy)
        self.sweeper = ConsistencySweeper(storage)
        self.history = HistoryRetriever(storage, self.resolver)
        self.time_normalizer = (
            TimeNormalizer(cfg.time_languages) if cfg.normalize_time else None
        )

    # ------------------------------------------------------------------
    # Note workflow
    # ------------------------------------------------------------------

    def save_note(
        self,
        content: str,
        tags: Optional[List[str]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> NoteResult:
        """Extract, store the note, then weave its facts into the graph."""
        report = _Progress(progress)
        extracted, fused = self._analyze(content, None, report)

        memory_id = self.storage.insert_memory(content, tags)
        logger.info("Saved note %d (%d chars)", memory_id, len(content))

        try:
            with self.storage.transaction():
                result = self._apply(memory_id, extracted, report, relink=False)
        except Exception as exc:
            report.fail(exc)
            raise
        result.fused = fused
        self._record(result)
        report("done", "success", memory_id=memory_id)
        return result

    def update_note(
        self,
        memory_id: int,
        content: str,
        tags: Optional[List[str]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> NoteResult:
        """Re-extract an edited note, relink it and sweep what it dropped."""
        if self.storage.get_memory(memory_id) is None:
            raise NoteNotFound(memory_id)

        report = _Progress(progress)
        extracted, fused = self._analyze(content, memory_id, report)

        if not self.storage.update_memory(memory_id, content, tags):
            raise NoteNotFound(memory_id)
        logger.info("Updated note %d (%d chars)", memory_id, len(content))

        try:
            with self.storage.transaction():
                result = self._apply(memory_id, extracted, report, relink=True)
                report("cleaning_up", "running")
                result.sweep = self.sweeper.sweep()
                report("cleaning_up", "success", **result.sweep.to_dict())
        except Exception as exc:
            report.fail(exc)
            raise
        result.fused = fused
        self._record(result)
        report("done", "success", memory_id=memory_id)
        return result

    def delete_note(self, memory_id: int) -> SweepReport:
        """Unlink and delete a note, then sweep, as one transaction."""
        with self.storage.transaction():
            if self.storage.get_memory(memory_id) is None:
                raise NoteNotFound(memory_id)
            dropped = self.storage.delete_all_links(memory_id)
            self.storage.delete_memory(memory_id)
            sweep = self.sweeper.sweep()
        logger.info("Deleted note %d (%d links): sweep %s", memory_id, dropped, sweep.to_dict())
        metrics.record_sweep(_sweep_kinds(sweep))
        return sweep

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def merge_entities(self, canonical_id: int, duplicate_id: int) -> MergeReport:
        report = self.merger.merge(canonical_id, duplicate_id)
        metrics.record_merge()
        return report

    def add_alias(self, entity_id: int, alias: str) -> Optional[int]:
        return self.merger.add_alias(entity_id, alias)

    def sweep(self) -> SweepReport:
        report = self.sweeper.sweep()
        metrics.record_sweep(_sweep_kinds(report))
        return report

    def clear_all(self) -> Dict[str, int]:
        return self.storage.clear_all()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def export_graph(self) -> Dict[str, List[Dict[str, Any]]]:
        """Nodes + directed labelled edges, from one committed state."""
        with self.storage.snapshot():
            entities = self.storage.list_entities()
            aliases = self.storage.list_aliases()
            relations = self.storage.list_relations()

        aliases_by_entity: Dict[int, List[str]] = {}
        for a in aliases:
            aliases_by_entity.setdefault(a["entity_id"], []).append(a["alias"])

        nodes = [
            {
                "id": e["id"],
                "name": e["name"],
                "type": e["type"],
                "attributes": e["attributes"],
                "aliases": aliases_by_entity.get(e["id"], []),
            }
            for e in entities
        ]
        links = [
            {
                "id": r["id"],
                "source": r["from_entity_id"],
                "target": r["to_entity_id"],
                "relation": r["relation_type"],
                "strength": r["strength"],
            }
            for r in relations
        ]
        return {"nodes": nodes, "links": links}

    def entity_profile(self, entity_id: int) -> Dict[str, Any]:
        """Entity with aliases, linked notes and named relations."""
        with self.storage.snapshot():
            entity = self.storage.get_entity(entity_id)
            if entity is None:
                raise EntityNotFound(entity_id)
            notes = self.storage.memories_for_entity(entity_id)
            relations = self.storage.relations_for_entity(entity_id)
            names: Dict[int, str] = {entity_id: entity["name"]}
            for rel in relations:
                for eid in (rel["from_entity_id"], rel["to_entity_id"]):
                    if eid not in names:
                        other = self.storage.get_entity(eid)
                        names[eid] = other["name"] if other else ""

        enriched = []
        for rel in relations:
            enriched.append({
                "id": rel["id"],
                "from_entity_id": rel["from_entity_id"],
                "from_name": names[rel["from_entity_id"]],
                "to_entity_id": rel["to_entity_id"],
                "to_name": names[rel["to_entity_id"]],
                "relation": rel["relation_type"],
                "strength": rel["strength"],
            })
        return {"entity": entity, "notes": notes, "relations": enriched}

    def lookup(self, name: str) -> Optional[Dict[str, Any]]:
        """Name-or-alias lookup: exact, alias, substring, then fuzzy.

        The returned entity carries a ``match`` key naming the stage that hit.
        """
        norm = normalize_name(name)
        if not norm:
            return None

        with self.storage.snapshot():
            entity_id = self.resolver.find(name)
            if entity_id is not None:
                entity = self.storage.get_entity(entity_id)
                match = "exact" if entity and entity["name_norm"] == norm else "alias"
                return _with_match(entity, match)

            if len(norm) >= 2:
                hits = self.storage.search_entities(norm, limit=1)
                if hits:
                    return _with_match(self.storage.get_entity(hits[0]["id"]), "substring")

            entity_id = self._fuzzy_match(norm)
            if entity_id is not None:
                return _with_match(self.storage.get_entity(entity_id), "fuzzy")
        return None

    def list_notes(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.storage.list_memories(limit)

    def get_note(self, memory_id: int) -> Dict[str, Any]:
        with self.storage.snapshot():
            note = self.storage.get_memory(memory_id)
            if note is None:
                raise NoteNotFound(memory_id)
            note["entity_ids"] = sorted(self.storage.entity_ids_for_memory(memory_id))
        return note

    def notes_for_entity(self, entity_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if self.storage.get_entity(entity_id) is None:
            raise EntityNotFound(entity_id)
        return self.storage.memories_for_entity(entity_id, limit)

    def stats(self) -> Dict[str, Any]:
        with self.storage.snapshot():
            return self.storage.stats()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _analyze(
        self, content: str, exclude_memory_id: Optional[int], report: _Progress
    ) -> Tuple[ExtractionResult, bool]:
        """Extraction, history lookup and fusion. Never writes."""
        if len(content.strip()) <= self.min_extract_chars:
            report("extracting", "skipped", reason="too short")
            return ExtractionResult(), False

        report("extracting", "running")
        try:
            extracted = self.extractor.extract(content)
        except ExtractionUnavailable as exc:
            metrics.record_extraction_failure()
            report.fail(exc)
            raise
        except Exception as exc:
            metrics.record_extraction_failure()
            report.fail(exc)
            raise ExtractionUnavailable(str(exc)) from exc
        report(
            "extracting", "success",
            entities=len(extracted.entities), relations=len(extracted.relations),
        )
        self._normalize_times(extracted)

        report("looking_up_history", "running")
        history = self.history.collect(extracted.entity_names(), content, exclude_memory_id)
        report("looking_up_history", "success", count=len(history))

        if not history:
            report("fusing", "skipped")
            return extracted, False

        report("fusing", "running")
        try:
            fused = self.extractor.fuse(history, content)
        except Exception as exc:
            logger.warning("Fusion failed, using plain extraction: %s", exc)
            report("fusing", "warning", message=str(exc))
            return extracted, False
        if not fused.entities and extracted.entities:
            logger.warning("Fusion returned no entities, using plain extraction")
            report("fusing", "warning", message="fusion returned no entities")
            return extracted, False
        report(
            "fusing", "success",
            entities=len(fused.entities), aliases=len(fused.aliases),
        )
        self._normalize_times(fused)
        return fused, True

    def _apply(
        self,
        memory_id: int,
        extracted: ExtractionResult,
        report: _Progress,
        relink: bool,
    ) -> NoteResult:
        """Resolve, merge, link and relate; caller holds the transaction."""
        result = NoteResult(memory_id=memory_id)
        self.resolver.reset_batch()

        report("resolving", "running")
        # one id per mention; the same name under two types is two entities,
        # while relation and hint endpoints name the first mention
        mention_ids: List[int] = []
        ids_by_name: Dict[str, int] = {}
        for mention in extracted.entities:
            entity_id = self.resolver.resolve(mention.name, mention.type, mention.attributes)
            mention_ids.append(entity_id)
            ids_by_name.setdefault(normalize_name(mention.name), entity_id)
        report("resolving", "success", count=len(set(mention_ids)))

        report("merging", "running")
        for hint in extracted.aliases:
            primary_norm = normalize_name(hint.primary)
            alias_norm = normalize_name(hint.alias)
            if primary_norm == alias_norm:
                continue
            primary_id = ids_by_name.get(primary_norm)
            if primary_id is None:
                primary_id = self.resolver.find(hint.primary)
            if primary_id is None:
                logger.debug("Alias hint %r -> %r: primary unknown", hint.alias, hint.primary)
                continue
            alias_id = ids_by_name.get(alias_norm)
            if alias_id is None:
                alias_id = self.resolver.find(hint.alias)

            if alias_id is None:
                if self.merger.add_alias(primary_id, hint.alias) is not None:
                    result.aliases_added += 1
            elif alias_id != primary_id:
                result.merges.append(self.merger.merge(primary_id, alias_id))
                for key, eid in ids_by_name.items():
                    if eid == alias_id:
                        ids_by_name[key] = primary_id
                mention_ids = [primary_id if eid == alias_id else eid for eid in mention_ids]
            ids_by_name[alias_norm] = primary_id
        report("merging", "success", merges=len(result.merges), aliases=result.aliases_added)

        report("linking", "running")
        result.entity_ids = list(dict.fromkeys(mention_ids))
        if relink:
            result.links = self.linker.relink(memory_id, result.entity_ids)
        else:
            self.linker.link(memory_id, result.entity_ids)

        for rel in extracted.relations:
            src = ids_by_name.get(normalize_name(rel.source))
            dst = ids_by_name.get(normalize_name(rel.target))
            if src is None or dst is None:
                logger.debug("Skipping relation %r -> %r: endpoint not in note", rel.source, rel.target)
                continue
            if src == dst:
                continue
            relation_id = self.relations.upsert(src, dst, rel.relation)
            if relation_id not in result.relation_ids:
                result.relation_ids.append(relation_id)
        report(
            "linking", "success",
            entities=len(result.entity_ids), relations=len(result.relation_ids),
        )
        return result

    def _normalize_times(self, extracted: ExtractionResult) -> None:
        if self.time_normalizer is not None:
            self.time_normalizer.apply(extracted)

    def _fuzzy_match(self, norm: str) -> Optional[int]:
        names: List[str] = []
        owners: List[int] = []
        for e in self.storage.list_entities():
            names.append(e["name_norm"])
            owners.append(e["id"])
        for a in self.storage.list_aliases():
            names.append(a["alias_norm"])
            owners.append(a["entity_id"])
        if not names:
            return None
        best = rfprocess.extractOne(
            norm, names, scorer=fuzz.WRatio, score_cutoff=self.fuzzy_threshold
        )
        if best is None:
            return None
        matched, score, idx = best
        logger.debug("Fuzzy lookup %r matched %r (score %.1f)", norm, matched, score)
        return owners[idx]

    def _record(self, result: NoteResult) -> None:
        if result.merges:
            metrics.record_merge(len(result.merges))
        if result.sweep is not None:
            metrics.record_sweep(_sweep_kinds(result.sweep))


def _with_match(entity: Optional[Dict[str, Any]], match: str) -> Optional[Dict[str, Any]]:
    if entity is None:
        return None
    entity["match"] = match
    return entity


def _sweep_kinds(report: SweepReport) -> Dict[str, int]:
    return {
        "entities": report.removed_entities,
        "relations": report.removed_relations,
        "links": report.removed_links,
        "aliases": report.removed_aliases,
    }
