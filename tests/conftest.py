"""Shared fixtures for note graph tests."""

from __future__ import annotations

import sqlite3
from typing import Dict, Iterable, List, Sequence, Tuple

import pytest

from notegraph.config import Config
from notegraph.errors import ExtractionUnavailable
from notegraph.extraction import (
    AliasHint,
    ExtractedEntity,
    ExtractedRelation,
    ExtractionResult,
)
from notegraph.graph import KnowledgeGraph
from notegraph.storage import GraphStorage


# ---------------------------------------------------------------------------
# Keep tests away from the user's database and API key
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    monkeypatch.setenv("NOTEGRAPH_DB", str(tmp_path / "default-graph.sqlite"))
    monkeypatch.delenv("NOTEGRAPH_API_KEY", raising=False)
    monkeypatch.delenv("NOTEGRAPH_CONFIG", raising=False)
    monkeypatch.delenv("NOTEGRAPH_SYMMETRIC_RELATIONS", raising=False)
    monkeypatch.delenv("NOTEGRAPH_NORMALIZE_TIME", raising=False)
    monkeypatch.delenv("NOTEGRAPH_TIME_LANGUAGES", raising=False)


# ---------------------------------------------------------------------------
# Storage fixture (temporary DB)
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_storage(tmp_path):
    """Create a fresh GraphStorage backed by a temp SQLite file."""
    s = GraphStorage(db_path=str(tmp_path / "test.sqlite"))
    yield s
    s.close()


@pytest.fixture
def legacy_sql(tmp_storage):
    """Run SQL on a separate connection with foreign keys OFF.

    Simulates rows written by older versions that disabled enforcement.
    """
    def _run(sql: str, params: Sequence = ()) -> None:
        conn = sqlite3.connect(tmp_storage.db_path)
        try:
            conn.execute("PRAGMA foreign_keys=OFF")
            conn.execute(sql, tuple(params))
            conn.commit()
        finally:
            conn.close()
    return _run


# ---------------------------------------------------------------------------
# Scripted extractor
# ---------------------------------------------------------------------------

def build_result(
    entities: Iterable[Tuple] = (),
    relations: Iterable[Tuple[str, str, str]] = (),
    aliases: Iterable[Tuple[str, str]] = (),
) -> ExtractionResult:
    return ExtractionResult(
        entities=[
            ExtractedEntity(item[0], item[1], dict(item[2]) if len(item) > 2 else {})
            for item in entities
        ],
        relations=[ExtractedRelation(s, t, r) for s, t, r in relations],
        aliases=[AliasHint(p, a) for p, a in aliases],
    )


class FakeExtractor:
    """Deterministic extractor scripted per note text.

    Unscripted texts extract to an empty result; unscripted fusions return
    the plain extraction of the text.
    """

    def __init__(self) -> None:
        self.extractions: Dict[str, ExtractionResult] = {}
        self.fusions: Dict[str, ExtractionResult] = {}
        self.fail_extract = False
        self.fail_fuse = False
        self.extract_calls: List[str] = []
        self.fuse_calls: List[Tuple[List[str], str]] = []

    def script(self, text: str, entities=(), relations=(), aliases=()) -> None:
        self.extractions[text] = build_result(entities, relations, aliases)

    def script_fusion(self, text: str, entities=(), relations=(), aliases=()) -> None:
        self.fusions[text] = build_result(entities, relations, aliases)

    def extract(self, text: str) -> ExtractionResult:
        self.extract_calls.append(text)
        if self.fail_extract:
            raise ExtractionUnavailable("extractor offline")
        return self.extractions.get(text, ExtractionResult())

    def fuse(self, history: Sequence[str], text: str) -> ExtractionResult:
        self.fuse_calls.append((list(history), text))
        if self.fail_fuse:
            raise ExtractionUnavailable("fusion offline")
        if text in self.fusions:
            return self.fusions[text]
        return self.extractions.get(text, ExtractionResult())


@pytest.fixture
def fake_extractor():
    return FakeExtractor()


# ---------------------------------------------------------------------------
# Knowledge graph
# ---------------------------------------------------------------------------

@pytest.fixture
def graph_config(tmp_path):
    return Config(db_path=str(tmp_path / "test.sqlite"), min_extract_chars=5)


@pytest.fixture
def graph(tmp_storage, fake_extractor, graph_config):
    """KnowledgeGraph wired to temp storage + scripted extractor."""
    return KnowledgeGraph(tmp_storage, fake_extractor, cfg=graph_config)
