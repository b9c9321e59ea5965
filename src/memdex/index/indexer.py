"""Incremental synchronization of workspace memory files into the index."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from memdex.config import ConfigurationError, MemoryConfig
from memdex.embedding.encoder import EmbeddingProvider
from memdex.index.storage import SQLiteMemoryStore, now_ms
from memdex.models import DocumentRecord, IndexedChunk, MemoryChunk
from memdex.utils.files import hash_text, list_memory_files, relative_key
from memdex.utils.text import chunk_markdown

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexStats:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    failed: int = 0
    degraded: int = 0
    processed_files: list[str] = field(default_factory=list)

    def increment(self, status: str, path: str) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        elif status == "skipped":
            self.skipped += 1
        elif status == "deleted":
            self.deleted += 1
        else:
            self.failed += 1
        self.processed_files.append(path)

    @property
    def changed(self) -> int:
        """Documents whose index records were written or removed."""
        return self.inserted + self.updated + self.deleted


def assign_chunk_ids(path: str, chunks: Sequence[MemoryChunk]) -> None:
    """Bind chunks to ``path``.

    Chunk ids are ``<path>:<start>-<end>``. Only chunks cut from one very long
    line can share a span; repeats of a span get a ``#n`` suffix so that
    no chunk overwrites another.
    """
    seen: Dict[tuple[int, int], int] = {}
    for chunk in chunks:
        chunk.path = path
        span = (chunk.start_line, chunk.end_line)
        chunk.duplicate = seen.get(span, 0)
        seen[span] = chunk.duplicate + 1


class Indexer:
    """Keeps the store in step with the memory files of one workspace.

    Work only happens when the index is marked dirty (at construction and on
    every change notification) or when a sync is forced. Unchanged files are
    recognized by content hash and left alone, so syncing an unchanged
    workspace writes nothing.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: SQLiteMemoryStore,
        workspace_dir: Path,
        config: MemoryConfig,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.workspace_dir = Path(workspace_dir)
        self.config = config
        self._dirty = config.enabled
        self._sync_guard = threading.Lock()

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def syncing(self) -> bool:
        return self._sync_guard.locked()

    def mark_dirty(self) -> None:
        """Record that the workspace changed; the next sync will do work."""
        self._dirty = True

    def sync(self, *, force: bool = False) -> Optional[IndexStats]:
        """Bring the index up to date with the workspace.

        Returns ``None`` when nothing ran: the index is clean and ``force`` is
        not set, or another sync is already running (its pass covers this
        request).
        """
        if not self.config.enabled:
            raise ConfigurationError("Memory indexing is disabled")
        if not self._dirty and not force:
            return None
        if not self._sync_guard.acquire(blocking=False):
            LOGGER.debug("Sync already in progress, skipping")
            return None
        try:
            # Cleared up front so changes reported mid-pass trigger another sync.
            self._dirty = False
            try:
                stats = self._sync_pass()
            except Exception:
                self._dirty = True
                raise
        finally:
            self._sync_guard.release()

        LOGGER.info(
            "Sync finished: inserted=%d updated=%d skipped=%d deleted=%d failed=%d",
            stats.inserted,
            stats.updated,
            stats.skipped,
            stats.deleted,
            stats.failed,
        )
        return stats

    def _sync_pass(self) -> IndexStats:
        stats = IndexStats()
        discovered: set[str] = set()

        for abs_path in list_memory_files(self.workspace_dir):
            rel_path = relative_key(abs_path, self.workspace_dir)
            discovered.add(rel_path)
            try:
                status = self._index_file(abs_path, rel_path, stats)
            except Exception as exc:
                LOGGER.error("Failed to index %s: %s", rel_path, exc)
                status = "failed"
            stats.increment(status, rel_path)

        for record in self.store.list_files(source=self.config.source):
            if record.path in discovered:
                continue
            try:
                self.remove_file(record.path)
            except Exception as exc:
                LOGGER.error("Failed to remove %s from the index: %s", record.path, exc)
                stats.increment("failed", record.path)
                continue
            stats.increment("deleted", record.path)

        return stats

    def _index_file(self, abs_path: Path, rel_path: str, stats: IndexStats) -> str:
        content = abs_path.read_text(encoding="utf-8")
        content_hash = hash_text(content)

        existing = self.store.get_file(rel_path)
        if existing is not None and existing.hash == content_hash:
            return "skipped"

        stat = abs_path.stat()
        chunks = chunk_markdown(
            content,
            tokens=self.config.chunk_tokens,
            overlap=self.config.chunk_overlap,
            source=self.config.source,
        )
        assign_chunk_ids(rel_path, chunks)
        embeddings = self._embed_chunks(rel_path, chunks, stats)
        updated_at = now_ms()

        with self.store.transaction():
            if existing is not None:
                self.store.delete_chunks_by_path(rel_path)
            self.store.upsert_file(
                DocumentRecord(
                    path=rel_path,
                    source=self.config.source,
                    hash=content_hash,
                    mtime=stat.st_mtime,
                    size=stat.st_size,
                )
            )
            for chunk, vector in zip(chunks, embeddings):
                self.store.upsert_chunk(
                    IndexedChunk(
                        chunk=chunk,
                        embedding=vector,
                        model=self.embedder.model,
                        updated_at=updated_at,
                    )
                )

        LOGGER.debug("Indexed %s (%d chunks)", rel_path, len(chunks))
        return "updated" if existing is not None else "inserted"

    def _embed_chunks(
        self, rel_path: str, chunks: List[MemoryChunk], stats: IndexStats
    ) -> np.ndarray:
        """Embed all chunk texts of one document in a single request.

        A failed request leaves the document keyword-searchable: its chunks
        get all-zero vectors, which vector search ignores.
        """
        if not chunks:
            return np.zeros((0, 0), dtype="float32")
        if not self.embedder.enabled:
            return np.zeros((len(chunks), 0), dtype="float32")
        try:
            return self.embedder.embed([chunk.text for chunk in chunks])
        except Exception as exc:
            LOGGER.warning("Embedding failed for %s, storing zero vectors: %s", rel_path, exc)
            stats.degraded += 1
            return np.zeros((len(chunks), self.embedder.dimension), dtype="float32")

    def remove_file(self, rel_path: str) -> None:
        """Drop a document and all of its chunks from the index."""
        with self.store.transaction():
            self.store.delete_chunks_by_path(rel_path)
            self.store.delete_file(rel_path)
        LOGGER.debug("Removed %s from the index", rel_path)
