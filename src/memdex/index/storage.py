"""SQLite store holding memory files, chunks, embeddings and the FTS5 index.

The same database backs both search engines: FTS5 for keyword ranking and a
numpy cosine scan over float32 embedding blobs for vector ranking.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import numpy as np

from memdex.models import (
    DocumentRecord,
    IndexedChunk,
    KeywordCandidate,
    VectorCandidate,
)

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
# Derived from the workspace files, dropped when the schema version changes.
INDEX_TABLES = ("chunks_fts", "chunks", "files", "embedding_cache")
KEYWORD_SNIPPET_TOKENS = 32


def now_ms() -> int:
    return int(time.time() * 1000)


def vector_to_blob(vector: Sequence[float] | np.ndarray) -> bytes:
    return sqlite3.Binary(np.asarray(vector, dtype="float32").tobytes())


class SQLiteMemoryStore:
    """Persistence layer for memory files, chunks and their embeddings.

    One connection is shared by indexing and search; a re-entrant lock
    serializes access so a search never observes a half-written document.
    """

    def __init__(self, db_path: Path, *, vector_enabled: bool = True) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._fts_available = False
        self._vector_available = vector_enabled
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    @property
    def vector_available(self) -> bool:
        return self._vector_available

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on error; nested blocks join the outer one."""
        with self._lock:
            self._depth += 1
            try:
                yield self._conn
            except Exception:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self._conn.commit()

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            stored_version = self.get_meta("schema_version")
            if stored_version is not None and stored_version != SCHEMA_VERSION:
                LOGGER.warning(
                    "Index schema version %s does not match %s, rebuilding %s",
                    stored_version,
                    SCHEMA_VERSION,
                    self.db_path,
                )
                for table in INDEX_TABLES:
                    conn.execute(f"DROP TABLE IF EXISTS {table}")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    path TEXT PRIMARY KEY,
                    source TEXT NOT NULL DEFAULT 'memory',
                    hash TEXT NOT NULL,
                    mtime REAL NOT NULL,
                    size INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id TEXT PRIMARY KEY,
                    path TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'memory',
                    start_line INTEGER NOT NULL,
                    end_line INTEGER NOT NULL,
                    hash TEXT NOT NULL,
                    model TEXT NOT NULL,
                    text TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS embedding_cache (
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    provider_key TEXT NOT NULL,
                    hash TEXT NOT NULL,
                    embedding TEXT NOT NULL,
                    dims INTEGER,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (provider, model, provider_key, hash)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_embedding_cache_updated_at "
                "ON embedding_cache(updated_at)"
            )
            self.set_meta("schema_version", SCHEMA_VERSION)
            try:
                conn.execute(
                    """
                    CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                        text,
                        id UNINDEXED,
                        path UNINDEXED,
                        source UNINDEXED,
                        model UNINDEXED,
                        start_line UNINDEXED,
                        end_line UNINDEXED
                    )
                    """
                )
                self._fts_available = True
            except sqlite3.OperationalError as exc:
                LOGGER.warning("FTS5 not available, keyword search disabled: %s", exc)
                self._fts_available = False

    # -- meta ---------------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO meta(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    # -- files --------------------------------------------------------------

    def get_file(self, path: str) -> Optional[DocumentRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT path, source, hash, mtime, size FROM files WHERE path = ?", (path,)
            ).fetchone()
        if row is None:
            return None
        return DocumentRecord(
            path=row["path"],
            source=row["source"],
            hash=row["hash"],
            mtime=row["mtime"],
            size=row["size"],
        )

    def list_files(self, source: Optional[str] = None) -> List[DocumentRecord]:
        sql = "SELECT path, source, hash, mtime, size FROM files"
        params: list[Any] = []
        if source:
            sql += " WHERE source = ?"
            params.append(source)
        sql += " ORDER BY path"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            DocumentRecord(
                path=row["path"],
                source=row["source"],
                hash=row["hash"],
                mtime=row["mtime"],
                size=row["size"],
            )
            for row in rows
        ]

    def upsert_file(self, document: DocumentRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO files(path, source, hash, mtime, size)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    source = excluded.source,
                    hash = excluded.hash,
                    mtime = excluded.mtime,
                    size = excluded.size
                """,
                (document.path, document.source, document.hash, document.mtime, document.size),
            )

    def delete_file(self, path: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM files WHERE path = ?", (path,))

    # -- chunks -------------------------------------------------------------

    def upsert_chunk(self, indexed: IndexedChunk) -> None:
        chunk = indexed.chunk
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO chunks(
                    id, path, source, start_line, end_line, hash, model, text,
                    embedding, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    path = excluded.path,
                    source = excluded.source,
                    start_line = excluded.start_line,
                    end_line = excluded.end_line,
                    hash = excluded.hash,
                    model = excluded.model,
                    text = excluded.text,
                    embedding = excluded.embedding,
                    updated_at = excluded.updated_at
                """,
                (
                    chunk.id,
                    chunk.path,
                    chunk.source,
                    chunk.start_line,
                    chunk.end_line,
                    chunk.hash,
                    indexed.model,
                    chunk.text,
                    vector_to_blob(indexed.embedding),
                    indexed.updated_at,
                ),
            )
            if self._fts_available:
                conn.execute("DELETE FROM chunks_fts WHERE id = ?", (chunk.id,))
                conn.execute(
                    """
                    INSERT INTO chunks_fts(text, id, path, source, model, start_line, end_line)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.text,
                        chunk.id,
                        chunk.path,
                        chunk.source,
                        indexed.model,
                        chunk.start_line,
                        chunk.end_line,
                    ),
                )

    def delete_chunks_by_path(self, path: str) -> int:
        with self.transaction() as conn:
            removed = conn.execute("DELETE FROM chunks WHERE path = ?", (path,)).rowcount
            if self._fts_available:
                conn.execute("DELETE FROM chunks_fts WHERE path = ?", (path,))
        return removed

    def chunk_count(self, source: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) AS count FROM chunks"
        params: list[Any] = []
        if source:
            sql += " WHERE source = ?"
            params.append(source)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return int(row["count"]) if row else 0

    def file_count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS count FROM files").fetchone()
        return int(row["count"]) if row else 0

    def stats(self) -> Dict[str, Any]:
        return {
            "file_count": self.file_count(),
            "chunk_count": self.chunk_count(),
            "fts_available": self._fts_available,
            "vector_available": self._vector_available,
            "db_path": str(self.db_path),
        }

    # -- search -------------------------------------------------------------

    def search_keyword(
        self, fts_query: str, *, limit: int, source: Optional[str] = None
    ) -> List[KeywordCandidate]:
        """Run an FTS5 query and return candidates best-first.

        The reported rank is relative to the best hit: 0 for the best
        candidate, increasingly negative for weaker ones.
        """
        if not self._fts_available:
            raise RuntimeError("Keyword search not available (FTS5 missing)")

        sql = f"""
            SELECT
                id,
                path,
                source,
                start_line,
                end_line,
                snippet(chunks_fts, 0, '', '', '...', {KEYWORD_SNIPPET_TOKENS}) AS snippet,
                bm25(chunks_fts) AS score
            FROM chunks_fts
            WHERE chunks_fts MATCH ?
        """
        params: list[Any] = [fts_query]
        if source:
            sql += " AND source = ?"
            params.append(source)
        sql += " ORDER BY score ASC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        if not rows:
            return []

        best = float(rows[0]["score"])
        return [
            KeywordCandidate(
                id=row["id"],
                path=row["path"],
                source=row["source"],
                start_line=int(row["start_line"]),
                end_line=int(row["end_line"]),
                snippet=row["snippet"],
                rank=best - float(row["score"]),
            )
            for row in rows
        ]

    def search_vector(
        self,
        embedding: Sequence[float] | np.ndarray,
        *,
        limit: int,
        source: Optional[str] = None,
    ) -> List[VectorCandidate]:
        """Return the ``limit`` chunks closest to ``embedding`` by cosine distance.

        Chunks whose stored vector is all zeros or has a different dimension
        than the query carry no usable signal and are left out.
        """
        if not self._vector_available:
            raise RuntimeError("Vector search not available")

        query = np.asarray(embedding, dtype="float32")
        query_norm = float(np.linalg.norm(query))
        if query.size == 0 or query_norm == 0.0:
            return []

        sql = "SELECT id, path, source, start_line, end_line, text, embedding FROM chunks"
        params: list[Any] = []
        if source:
            sql += " WHERE source = ?"
            params.append(source)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()

        expected_bytes = query.size * 4
        usable = [row for row in rows if len(row["embedding"]) == expected_bytes]
        if len(usable) != len(rows):
            LOGGER.debug(
                "Skipping %d chunk(s) with missing or mismatched embeddings",
                len(rows) - len(usable),
            )
        if not usable:
            return []

        matrix = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in usable])
        norms = np.linalg.norm(matrix, axis=1)
        valid = norms > 0
        if not valid.any():
            return []

        similarities = np.zeros(len(usable), dtype="float32")
        similarities[valid] = (matrix[valid] @ query) / (norms[valid] * query_norm)
        distances = 1.0 - similarities

        order = [int(i) for i in np.argsort(distances, kind="stable") if valid[i]]
        results: List[VectorCandidate] = []
        for idx in order[:limit]:
            row = usable[idx]
            results.append(
                VectorCandidate(
                    id=row["id"],
                    path=row["path"],
                    source=row["source"],
                    start_line=int(row["start_line"]),
                    end_line=int(row["end_line"]),
                    snippet=row["text"],
                    distance=float(distances[idx]),
                )
            )
        return results

    # -- embedding cache ----------------------------------------------------

    def get_cached_embedding(
        self, provider: str, model: str, provider_key: str, hash_: str
    ) -> Optional[np.ndarray]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT embedding FROM embedding_cache
                WHERE provider = ? AND model = ? AND provider_key = ? AND hash = ?
                """,
                (provider, model, provider_key, hash_),
            ).fetchone()
        if row is None:
            return None
        try:
            parsed = json.loads(row["embedding"])
            if not isinstance(parsed, list) or not parsed:
                raise ValueError("cached embedding is not a non-empty list")
            return np.asarray(parsed, dtype="float32")
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring corrupt cached embedding %s: %s", hash_[:12], exc)
            return None

    def cache_embedding(
        self,
        provider: str,
        model: str,
        provider_key: str,
        hash_: str,
        embedding: Sequence[float] | np.ndarray,
    ) -> None:
        values = [float(v) for v in np.asarray(embedding, dtype="float32")]
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO embedding_cache(
                    provider, model, provider_key, hash, embedding, dims, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, model, provider_key, hash) DO UPDATE SET
                    embedding = excluded.embedding,
                    dims = excluded.dims,
                    updated_at = excluded.updated_at
                """,
                (provider, model, provider_key, hash_, json.dumps(values), len(values), now_ms()),
            )
