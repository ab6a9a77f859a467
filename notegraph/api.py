"""FastAPI HTTP API for the note graph.

Endpoints:
    POST   /v1/notes               -- Save a note (extract, fuse, weave into the graph)
    GET    /v1/notes               -- List notes, newest first
    GET    /v1/notes/{id}          -- One note with its linked entity ids
    PUT    /v1/notes/{id}          -- Edit a note (re-extract, relink, sweep)
    DELETE /v1/notes/{id}          -- Delete a note (unlink, delete, sweep)
    GET    /v1/graph               -- Full graph export (nodes + links)
    GET    /v1/entities/lookup     -- Name-or-alias lookup (?name=)
    GET    /v1/entities/{id}       -- Entity profile
    POST   /v1/entities/merge      -- Merge a duplicate entity into a canonical one
    POST   /v1/sweep               -- On-demand consistency sweep
    POST   /v1/clear               -- Delete all notes and graph rows
    GET    /v1/stats               -- Row counts
    GET    /v1/libraries           -- Known libraries
    POST   /v1/libraries           -- Create an empty library
    DELETE /v1/libraries/{id}      -- Delete a library and its database
    GET    /v1/health              -- Health check
    GET    /metrics                -- Prometheus text exposition

All endpoints accept an optional ``library`` parameter for per-library DB routing:
    - None / "main"  -> main graph database (graph.sqlite)
    - "{library_id}" -> library-specific database (graph-{library_id}.sqlite)

Saving a note creates its library on first use; every other endpoint
answers 404 for a library that does not exist.

Run: ``python -m notegraph.api``
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import anyio.to_thread
from fastapi import FastAPI, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from .config import Config, load_config
from .errors import (
    EntityNotFound,
    ExtractionUnavailable,
    IntegrityViolation,
    LibraryNotFound,
    NoteNotFound,
    SweepFailure,
)
from .extraction import LLMExtractor
from .graph import KnowledgeGraph
from .metrics import render_prometheus_metrics, set_graph_gauges
from .middleware import APIKeyMiddleware, AuditLogMiddleware, RequestMetricsMiddleware
from .pool import LibraryPool

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared state (initialised in lifespan)
# ---------------------------------------------------------------------------

_pool: Optional[LibraryPool] = None
_config: Optional[Config] = None
_start_time: float = 0.0

logging.getLogger("audit").setLevel(logging.INFO)


def _get_graph(library: Optional[str] = None, create: bool = False) -> KnowledgeGraph:
    """Get the KnowledgeGraph for the given library.

    Unknown named libraries are a 404 unless ``create`` is set (saving a note).
    """
    if _pool is None:
        raise HTTPException(503, "Library pool not initialised")
    try:
        return _pool.get(library, create=create)
    except ValueError as exc:
        raise HTTPException(400, str(exc))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    global _pool, _config, _start_time

    _config = load_config()
    errors = _config.validate()
    if errors:
        logger.warning("Config validation warnings: %s", errors)

    cfg = _config
    _pool = LibraryPool.from_config(cfg, lambda: LLMExtractor(cfg))
    # Pre-open main library to ensure schema exists
    _pool.get("main")
    _start_time = time.time()

    logger.info(
        "Note graph API ready -- base_dir=%s libraries=%s model=%s symmetric=%s",
        _pool.base_dir, _pool.get_all_libraries(), cfg.llm_model, cfg.symmetric_relations,
    )

    yield

    _pool.close_all()


app = FastAPI(
    title="Note Graph API",
    version="0.1.0",
    lifespan=lifespan,
)

# --- Middleware (order matters: last added = first to run) ---
app.add_middleware(RequestMetricsMiddleware)
app.add_middleware(AuditLogMiddleware)

_api_key = load_config().api_key
if _api_key:
    app.add_middleware(APIKeyMiddleware, api_key=_api_key)
    logger.info("API key authentication enabled")
else:
    logger.warning("No NOTEGRAPH_API_KEY set -- API is UNAUTHENTICATED")


# --- Centralized error handling ---

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "status_code": status_code},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "detail": exc.errors()},
    )


@app.exception_handler(ExtractionUnavailable)
async def extraction_exception_handler(request, exc):
    logger.warning("Extraction unavailable: %s (path=%s)", exc, request.url.path)
    return _error(502, str(exc))


@app.exception_handler(NoteNotFound)
@app.exception_handler(LibraryNotFound)
@app.exception_handler(EntityNotFound)
async def not_found_exception_handler(request, exc):
    return _error(404, str(exc))


@app.exception_handler(IntegrityViolation)
async def integrity_exception_handler(request, exc):
    logger.error("Integrity violation: %s (path=%s)", exc, request.url.path)
    return _error(409, str(exc))


@app.exception_handler(SweepFailure)
async def sweep_exception_handler(request, exc):
    logger.error("Sweep failure: %s (path=%s)", exc, request.url.path)
    return _error(500, f"sweep failed: {exc}")


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return _error(500, "Internal server error")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class NoteRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=20000)
    tags: Optional[List[str]] = None
    library: Optional[str] = None


class MergeRequest(BaseModel):
    canonical_id: int = Field(..., ge=1)
    duplicate_id: int = Field(..., ge=1)
    library: Optional[str] = None


class LibraryRequest(BaseModel):
    library: Optional[str] = None


class NewLibraryRequest(BaseModel):
    library: str = Field(..., min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------

@app.post("/v1/notes")
async def save_note(req: NoteRequest) -> Dict[str, Any]:
    """Save a note. Extraction failures return 502 and write nothing."""
    graph = _get_graph(req.library, create=True)
    result = await anyio.to_thread.run_sync(graph.save_note, req.content, req.tags)
    return result.to_dict()


@app.get("/v1/notes")
async def list_notes(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    library: Optional[str] = None,
) -> Dict[str, Any]:
    notes = _get_graph(library).list_notes(limit)
    return {"notes": notes, "count": len(notes)}


@app.get("/v1/notes/{memory_id}")
async def get_note(memory_id: int, library: Optional[str] = None) -> Dict[str, Any]:
    return _get_graph(library).get_note(memory_id)


@app.put("/v1/notes/{memory_id}")
async def update_note(memory_id: int, req: NoteRequest) -> Dict[str, Any]:
    graph = _get_graph(req.library)
    result = await anyio.to_thread.run_sync(graph.update_note, memory_id, req.content, req.tags)
    return result.to_dict()


@app.delete("/v1/notes/{memory_id}")
async def delete_note(memory_id: int, library: Optional[str] = None) -> Dict[str, Any]:
    graph = _get_graph(library)
    report = await anyio.to_thread.run_sync(graph.delete_note, memory_id)
    return {"deleted": memory_id, "sweep": report.to_dict()}


# ---------------------------------------------------------------------------
# Graph reads
# ---------------------------------------------------------------------------

@app.get("/v1/graph")
async def export_graph(library: Optional[str] = None) -> Dict[str, Any]:
    return _get_graph(library).export_graph()


@app.get("/v1/entities/lookup")
async def lookup_entity(
    name: str = Query(..., min_length=1, max_length=200),
    library: Optional[str] = None,
) -> Dict[str, Any]:
    entity = _get_graph(library).lookup(name)
    if entity is None:
        raise HTTPException(404, f"no entity matches {name!r}")
    return entity


@app.get("/v1/entities/{entity_id}")
async def entity_profile(entity_id: int, library: Optional[str] = None) -> Dict[str, Any]:
    return _get_graph(library).entity_profile(entity_id)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@app.post("/v1/entities/merge")
async def merge_entities(req: MergeRequest) -> Dict[str, Any]:
    if req.canonical_id == req.duplicate_id:
        raise HTTPException(400, "canonical_id and duplicate_id must differ")
    graph = _get_graph(req.library)
    report = await anyio.to_thread.run_sync(
        graph.merge_entities, req.canonical_id, req.duplicate_id
    )
    return report.to_dict()


@app.post("/v1/sweep")
async def sweep(req: Optional[LibraryRequest] = None) -> Dict[str, Any]:
    library = req.library if req else None
    report = await anyio.to_thread.run_sync(_get_graph(library).sweep)
    return report.to_dict()


@app.post("/v1/clear")
async def clear_all(req: Optional[LibraryRequest] = None) -> Dict[str, Any]:
    library = req.library if req else None
    removed = await anyio.to_thread.run_sync(_get_graph(library).clear_all)
    return {"cleared": True, "removed": removed}


@app.get("/v1/stats")
async def stats(library: Optional[str] = None) -> Dict[str, Any]:
    return _get_graph(library).stats()


# ---------------------------------------------------------------------------
# Libraries
# ---------------------------------------------------------------------------

@app.get("/v1/libraries")
async def list_libraries() -> Dict[str, Any]:
    if _pool is None:
        raise HTTPException(503, "Library pool not initialised")
    libraries = _pool.get_all_libraries()
    return {"libraries": libraries, "count": len(libraries)}


@app.post("/v1/libraries", status_code=201)
async def create_library(req: NewLibraryRequest) -> Dict[str, Any]:
    if _pool is None:
        raise HTTPException(503, "Library pool not initialised")
    try:
        key = _pool.normalize_key(req.library)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    if _pool.exists(key):
        raise HTTPException(409, f"library {key!r} already exists")
    _get_graph(key, create=True)
    return {"created": key}


@app.delete("/v1/libraries/{library_id}")
async def delete_library(library_id: str) -> Dict[str, Any]:
    if _pool is None:
        raise HTTPException(503, "Library pool not initialised")
    try:
        await anyio.to_thread.run_sync(_pool.delete, library_id)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return {"deleted": _pool.normalize_key(library_id)}


@app.get("/v1/health")
async def health() -> Dict[str, Any]:
    """Returns status "ok" when the main database answers a read, else "down"."""
    checks: Dict[str, bool] = {"storage": False}
    if _pool is not None:
        try:
            conn = _pool.get("main").storage._get_read_conn()
            conn.execute("SELECT 1").fetchone()
            checks["storage"] = True
        except Exception as exc:
            logger.warning("Health check: storage probe failed: %s", exc)

    return {
        "status": "ok" if all(checks.values()) else "down",
        "checks": checks,
        "uptime_seconds": round(time.time() - _start_time, 1) if _start_time else 0.0,
    }


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics() -> PlainTextResponse:
    """Prometheus exposition. Graph row gauges are refreshed on each scrape."""
    if _pool is not None:
        rows: Dict[str, Dict[str, int]] = {}
        for library, graph in _pool.get_all_graphs().items():
            s = graph.stats()
            rows[library] = {
                "memories": s["total_memories"],
                "entities": s["entities"],
                "aliases": s["aliases"],
                "relations": s["relations"],
                "links": s["links"],
            }
        set_graph_gauges(rows_by_library=rows)
    return PlainTextResponse(
        render_prometheus_metrics(),
        media_type="text/plain; version=0.0.4",
    )


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Note Graph API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "notegraph.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
