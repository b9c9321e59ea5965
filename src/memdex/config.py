"""Application configuration defaults."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from memdex.models import DEFAULT_SOURCE

PROVIDERS = ("local", "openai", "none")
DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"

_OWNER_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class ConfigurationError(ValueError):
    """Raised when memdex is configured in a way it cannot run with."""


@dataclass(slots=True)
class MemoryConfig:
    """Chunking, embedding and ranking options.

    Every default is settled here, once; indexing and search read the
    resulting values and never fall back to their own defaults.
    """

    enabled: bool = True
    provider: str = "local"
    model: str | None = None
    chunk_tokens: int = 400
    chunk_overlap: int = 80
    vector_weight: float = 0.7
    text_weight: float = 0.3
    min_score: float = 0.35
    max_results: int = 6
    candidate_multiplier: int = 3
    max_candidates: int = 200
    snippet_max_chars: int = 700
    source: str = DEFAULT_SOURCE
    cache_enabled: bool = True

    def __post_init__(self) -> None:
        if self.provider not in PROVIDERS:
            raise ConfigurationError(
                f"Unknown embedding provider {self.provider!r}; expected one of {PROVIDERS}"
            )
        if self.model is None:
            self.model = DEFAULT_OPENAI_MODEL if self.provider == "openai" else DEFAULT_LOCAL_MODEL
        if self.chunk_tokens <= 0:
            raise ConfigurationError("chunk_tokens must be positive")
        if self.chunk_overlap < 0:
            raise ConfigurationError("chunk_overlap cannot be negative")
        if self.vector_weight < 0 or self.text_weight < 0:
            raise ConfigurationError("Hybrid weights cannot be negative")
        if self.vector_weight == 0 and self.text_weight == 0:
            raise ConfigurationError("At least one hybrid weight must be positive")
        if not 0.0 <= self.min_score <= 1.0:
            raise ConfigurationError("min_score must lie in [0, 1]")
        if self.max_results <= 0:
            raise ConfigurationError("max_results must be positive")
        if self.candidate_multiplier <= 0 or self.max_candidates <= 0:
            raise ConfigurationError("Candidate limits must be positive")
        if self.snippet_max_chars <= 0:
            raise ConfigurationError("snippet_max_chars must be positive")

    def candidate_count(self, max_results: int) -> int:
        """Candidates fetched per engine for a request of ``max_results``."""
        return min(self.max_candidates, max(1, max_results * self.candidate_multiplier))


@dataclass(slots=True)
class AppConfig:
    """Where the workspace and its index live."""

    workspace_dir: Path = Path(".")
    data_dir: Path = Path("data")
    user_id: str = "default"
    session_id: str | None = None

    def __post_init__(self) -> None:
        self.workspace_dir = Path(self.workspace_dir)
        self.data_dir = Path(self.data_dir)
        if not _OWNER_ID_RE.match(self.user_id):
            raise ConfigurationError(f"Invalid user id: {self.user_id!r}")
        if self.session_id is not None and not _OWNER_ID_RE.match(self.session_id):
            raise ConfigurationError(f"Invalid session id: {self.session_id!r}")

    @property
    def db_name(self) -> str:
        suffix = f"_{self.session_id}" if self.session_id else ""
        return f"memory_{self.user_id}{suffix}.db"

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        db_path = self.data_dir / self.db_name
        if db_path.is_absolute() or base_dir is None:
            return db_path
        return base_dir / db_path
