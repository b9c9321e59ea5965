"""Shared fixtures for memdex tests."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Iterable, List, Sequence

import numpy as np
import pytest

from memdex.config import MemoryConfig
from memdex.embedding.encoder import EmbeddingError, EmbeddingProvider
from memdex.index.storage import SQLiteMemoryStore

_WORD_RE = re.compile(r"\w+")


class FakeEmbedding(EmbeddingProvider):
    """Deterministic bag-of-words embedding; texts sharing words end up close."""

    name = "fake"

    def __init__(self, dimension: int = 16, fail_on: str | None = None) -> None:
        self._dimension = dimension
        self.fail_on = fail_on
        self.calls: List[List[str]] = []

    @property
    def model(self) -> str:
        return "fake-model"

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        batch = list(texts)
        self.calls.append(batch)
        if self.fail_on and any(self.fail_on in text for text in batch):
            raise EmbeddingError("provider unavailable")
        matrix = np.zeros((len(batch), self._dimension), dtype="float32")
        for row, text in enumerate(batch):
            for token in _WORD_RE.findall(text.lower()):
                bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self._dimension
                matrix[row, bucket] += 1.0
        return matrix


def write_file(root: Path, rel_path: str, content: str) -> Path:
    path = root / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    (root / "memory").mkdir(parents=True)
    return root


@pytest.fixture
def store(tmp_path: Path):
    db = SQLiteMemoryStore(tmp_path / "memory.db")
    yield db
    db.close()


@pytest.fixture
def memory_config() -> MemoryConfig:
    return MemoryConfig(provider="none", chunk_tokens=50, chunk_overlap=0)


@pytest.fixture
def fake_embedder() -> FakeEmbedding:
    return FakeEmbedding()


@pytest.fixture
def make_embedder():
    """Factory for fake providers with custom dimension or failure trigger."""
    return FakeEmbedding
