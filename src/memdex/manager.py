"""Memory manager: one workspace, its index, and the operations on both."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from watchfiles import Change, DefaultFilter
from watchfiles import watch as watch_changes

from memdex.config import AppConfig, MemoryConfig
from memdex.embedding.cache import CachedEmbedder
from memdex.embedding.encoder import EmbeddingProvider, create_embedding_provider
from memdex.index.indexer import Indexer, IndexStats
from memdex.index.search import Searcher
from memdex.index.storage import SQLiteMemoryStore
from memdex.models import SearchResult
from memdex.utils.files import is_memory_path
from memdex.workspace import MemoryWorkspace, WorkspaceError

LOGGER = logging.getLogger(__name__)

WATCH_DEBOUNCE_MS = 500
WATCH_JOIN_TIMEOUT = 10.0


class MemoryFileFilter(DefaultFilter):
    """Pass only changes to ``MEMORY.md``/``memory.md`` and ``memory/**/*.md``."""

    def __init__(self, workspace_dir: str) -> None:
        super().__init__()
        self.workspace_dir = workspace_dir

    def __call__(self, change: Change, path: str) -> bool:
        rel_path = os.path.relpath(path, self.workspace_dir)
        return is_memory_path(rel_path) and super().__call__(change, path)


class MemoryManager:
    """Wires store, embedder, indexer, searcher and workspace together.

    Usage::

        with MemoryManager(AppConfig(workspace_dir=ws)) as memory:
            memory.sync()
            hits = memory.search("what did we decide about caching?")
    """

    def __init__(
        self,
        app_config: Optional[AppConfig] = None,
        memory_config: Optional[MemoryConfig] = None,
        *,
        provider: Optional[EmbeddingProvider] = None,
        vector_enabled: bool = True,
        base_dir: Optional[Path] = None,
    ) -> None:
        self.app_config = app_config or AppConfig()
        self.config = memory_config or MemoryConfig()

        # Providers built here are closed with the manager; injected ones belong to the caller.
        self._owns_provider = provider is None
        self.provider = provider or create_embedding_provider(self.config)

        db_path = self.app_config.resolve_db_path(base_dir)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.store = SQLiteMemoryStore(db_path, vector_enabled=vector_enabled)
        self.embedder = CachedEmbedder(self.provider, self.store, enabled=self.config.cache_enabled)
        self.indexer = Indexer(self.embedder, self.store, self.app_config.workspace_dir, self.config)
        self.searcher = Searcher(self.embedder, self.store, self.config, indexer=self.indexer)
        self.workspace = MemoryWorkspace(self.app_config.workspace_dir, on_change=self.mark_dirty)
        self._watch_thread: Optional[threading.Thread] = None
        self._watch_stop: Optional[threading.Event] = None
        self._closed = False
        LOGGER.debug("Memory manager ready (db: %s, provider: %s)", db_path, self.provider.name)

    def __enter__(self) -> "MemoryManager":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def mark_dirty(self) -> None:
        self.indexer.mark_dirty()

    @property
    def watching(self) -> bool:
        return self._watch_thread is not None and self._watch_thread.is_alive()

    def watch(
        self, *, debounce_ms: int = WATCH_DEBOUNCE_MS, force_polling: Optional[bool] = None
    ) -> None:
        """Mark the index dirty whenever a memory file is added, changed or removed.

        Changes are picked up by a background thread; the next ``search`` or
        ``sync`` does the re-indexing. Calling ``watch`` twice is a no-op.
        """
        if self._watch_thread is not None:
            return
        root = os.path.realpath(self.app_config.workspace_dir)
        if not os.path.isdir(root):
            raise WorkspaceError(f"Workspace directory not found: {root}")

        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._watch_loop,
            args=(root, stop_event, debounce_ms, force_polling),
            name="memdex-watch",
            daemon=True,
        )
        self._watch_stop = stop_event
        self._watch_thread = thread
        thread.start()
        LOGGER.info("Watching memory files in %s", root)

    def unwatch(self) -> None:
        """Stop the watcher started by :meth:`watch`, if any."""
        thread, stop_event = self._watch_thread, self._watch_stop
        if thread is None or stop_event is None:
            return
        stop_event.set()
        thread.join(timeout=WATCH_JOIN_TIMEOUT)
        if thread.is_alive():
            LOGGER.warning("Memory file watcher did not stop within %.0fs", WATCH_JOIN_TIMEOUT)
        self._watch_thread = None
        self._watch_stop = None

    def _watch_loop(
        self,
        root: str,
        stop_event: threading.Event,
        debounce_ms: int,
        force_polling: Optional[bool],
    ) -> None:
        for changes in watch_changes(
            root,
            watch_filter=MemoryFileFilter(root),
            debounce=debounce_ms,
            stop_event=stop_event,
            force_polling=force_polling,
            raise_interrupt=False,
        ):
            LOGGER.debug("Memory files changed: %s", sorted(path for _, path in changes))
            self.mark_dirty()

    def sync(self, *, force: bool = False) -> Optional[IndexStats]:
        return self.indexer.sync(force=force)

    def search(
        self,
        query: str,
        *,
        max_results: Optional[int] = None,
        min_score: Optional[float] = None,
        source: Optional[str] = None,
    ) -> List[SearchResult]:
        return self.searcher.search(
            query, max_results=max_results, min_score=min_score, source=source
        )

    def read(self, rel_path: str, *, from_line: Optional[int] = None, lines: Optional[int] = None) -> str:
        return self.workspace.read(rel_path, from_line=from_line, lines=lines)

    def write(self, rel_path: str, content: str) -> Path:
        return self.workspace.write(rel_path, content)

    def delete(self, rel_path: str) -> None:
        self.workspace.delete(rel_path)

    def chunk_count(self, source: Optional[str] = None) -> int:
        return self.store.chunk_count(source)

    def stats(self) -> Dict[str, Any]:
        stats = self.store.stats()
        stats.update(
            {
                "workspace_dir": str(self.app_config.workspace_dir),
                "provider": self.embedder.name,
                "model": self.embedder.model,
                "dirty": self.indexer.dirty,
                "watching": self.watching,
            }
        )
        return stats

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.unwatch()
        self.store.close()
        close_provider = getattr(self.provider, "close", None)
        if self._owns_provider and callable(close_provider):
            close_provider()
