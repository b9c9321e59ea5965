"""Core memdex data models."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

DEFAULT_SOURCE = "memory"


def make_chunk_id(path: str, start_line: int, end_line: int) -> str:
    """Return the public chunk id, ``<path>:<start>-<end>``."""
    return f"{path}:{start_line}-{end_line}"


@dataclass(slots=True)
class DocumentRecord:
    """A tracked memory file, keyed by its workspace-relative path."""

    path: str
    source: str
    hash: str
    mtime: float
    size: int


@dataclass(slots=True)
class MemoryChunk:
    """A span of document lines produced by the chunker.

    ``start_line`` and ``end_line`` are 1-based and inclusive. ``path`` stays
    empty until the chunk is bound to a document.
    """

    start_line: int
    end_line: int
    text: str
    hash: str
    path: str = ""
    source: str = DEFAULT_SOURCE
    duplicate: int = 0

    @property
    def id(self) -> str:
        base = make_chunk_id(self.path, self.start_line, self.end_line)
        return f"{base}#{self.duplicate}" if self.duplicate else base


@dataclass(slots=True)
class IndexedChunk:
    """Chunk paired with its embedding, as written to the index engines."""

    chunk: MemoryChunk
    embedding: np.ndarray
    model: str
    updated_at: int

    @property
    def id(self) -> str:
        return self.chunk.id


@dataclass(slots=True)
class KeywordCandidate:
    id: str
    path: str
    source: str
    start_line: int
    end_line: int
    snippet: str
    rank: float


@dataclass(slots=True)
class VectorCandidate:
    id: str
    path: str
    source: str
    start_line: int
    end_line: int
    snippet: str
    distance: float


@dataclass(slots=True)
class ScoredCandidate:
    """Candidate whose native relevance signal has been normalized to [0, 1]."""

    id: str
    path: str
    source: str
    start_line: int
    end_line: int
    snippet: str
    score: float


@dataclass(slots=True)
class MergedResult:
    id: str
    path: str
    source: str
    start_line: int
    end_line: int
    snippet: str
    score: float
    vector_score: float = 0.0
    text_score: float = 0.0


@dataclass(slots=True)
class SearchResult:
    """Public search result shape."""

    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: str

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "score": self.score,
            "snippet": self.snippet,
            "source": self.source,
        }


@dataclass(slots=True)
class SearchReport:
    """Search results plus which legs actually contributed."""

    results: list[SearchResult] = field(default_factory=list)
    keyword_used: bool = False
    vector_used: bool = False
