"""FastAPI application exposing memory search and file tools over HTTP."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from memdex.config import AppConfig, ConfigurationError, MemoryConfig
from memdex.manager import MemoryManager
from memdex.workspace import WorkspaceError

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="memdex", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_manager: Optional[MemoryManager] = None


class SearchPayload(BaseModel):
    query: str
    max_results: Optional[int] = Field(default=None, ge=1, le=50)
    min_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    source: Optional[str] = None


class SearchHit(BaseModel):
    rank: int
    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: str


class GetPayload(BaseModel):
    path: str
    from_line: Optional[int] = Field(default=None, ge=1)
    lines: Optional[int] = Field(default=None, ge=0)


class StorePayload(BaseModel):
    path: str
    content: str


class DeletePayload(BaseModel):
    path: str


class SyncPayload(BaseModel):
    force: bool = False


def configure(app_config: AppConfig, memory_config: MemoryConfig, **kwargs: Any) -> MemoryManager:
    """Open the manager the endpoints work against, replacing any previous one."""
    global _manager
    if _manager is not None:
        _manager.close()
    _manager = MemoryManager(app_config, memory_config, **kwargs)
    return _manager


def _get_manager() -> MemoryManager:
    if _manager is None:
        raise HTTPException(status_code=503, detail="Memory index is not configured")
    return _manager


def _workspace_error(exc: WorkspaceError) -> HTTPException:
    status = 404 if "not found" in str(exc).lower() else 400
    return HTTPException(status_code=status, detail=str(exc))


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if _manager is not None:
        _manager.close()


@app.post("/search")
async def search_memory(payload: SearchPayload) -> dict[str, Any]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query cannot be empty")

    manager = _get_manager()
    try:
        results = await asyncio.to_thread(
            manager.search,
            query,
            max_results=payload.max_results,
            min_score=payload.min_score,
            source=payload.source,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    hits: List[SearchHit] = [
        SearchHit(rank=idx, **result.to_dict()) for idx, result in enumerate(results, start=1)
    ]
    return {"query": query, "result_count": len(hits), "results": hits}


@app.post("/memory/get")
async def get_memory(payload: GetPayload) -> dict[str, Any]:
    manager = _get_manager()
    try:
        text = await asyncio.to_thread(
            manager.read, payload.path, from_line=payload.from_line, lines=payload.lines
        )
    except WorkspaceError as exc:
        raise _workspace_error(exc) from exc
    return {"path": payload.path, "text": text}


@app.post("/memory/store")
async def store_memory(payload: StorePayload) -> dict[str, Any]:
    manager = _get_manager()
    try:
        await asyncio.to_thread(manager.write, payload.path, payload.content)
    except WorkspaceError as exc:
        raise _workspace_error(exc) from exc
    return {"status": "ok", "path": payload.path, "chars": len(payload.content)}


@app.post("/memory/delete")
async def delete_memory(payload: DeletePayload) -> dict[str, Any]:
    manager = _get_manager()
    try:
        await asyncio.to_thread(manager.delete, payload.path)
    except WorkspaceError as exc:
        raise _workspace_error(exc) from exc
    return {"status": "ok", "path": payload.path}


@app.post("/sync")
async def sync_index(payload: SyncPayload) -> dict[str, Any]:
    manager = _get_manager()
    try:
        stats = await asyncio.to_thread(manager.sync, force=payload.force)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if stats is None:
        return {"status": "skipped"}
    return {
        "status": "ok",
        "stats": {
            "inserted": stats.inserted,
            "updated": stats.updated,
            "skipped": stats.skipped,
            "deleted": stats.deleted,
            "failed": stats.failed,
            "degraded": stats.degraded,
        },
    }


@app.get("/stats")
async def index_stats() -> dict[str, Any]:
    return await asyncio.to_thread(_get_manager().stats)
