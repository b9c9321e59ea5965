"""Hybrid keyword + vector search over the memory index."""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional

import numpy as np

from memdex.config import ConfigurationError, MemoryConfig
from memdex.embedding.encoder import EmbeddingProvider
from memdex.index.indexer import Indexer
from memdex.index.scoring import (
    merge_hybrid_results,
    score_keyword_candidates,
    score_vector_candidates,
)
from memdex.index.storage import SQLiteMemoryStore
from memdex.models import ScoredCandidate, SearchReport, SearchResult
from memdex.utils.text import build_fts_query, truncate_snippet

LOGGER = logging.getLogger(__name__)


class Searcher:
    """High-level API to query the memory index.

    Each search asks both engines for candidates, normalizes and merges them,
    then applies the score threshold and result limit. A leg whose engine or
    embedding provider is unavailable, or that fails, is left out and the
    search continues with the other one.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: SQLiteMemoryStore,
        config: MemoryConfig,
        *,
        indexer: Optional[Indexer] = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.config = config
        self.indexer = indexer

    def search(
        self,
        query: str,
        *,
        max_results: Optional[int] = None,
        min_score: Optional[float] = None,
        source: Optional[str] = None,
    ) -> List[SearchResult]:
        return self.search_report(
            query, max_results=max_results, min_score=min_score, source=source
        ).results

    def search_report(
        self,
        query: str,
        *,
        max_results: Optional[int] = None,
        min_score: Optional[float] = None,
        source: Optional[str] = None,
    ) -> SearchReport:
        """Like :meth:`search`, also reporting which legs produced candidates."""
        if not self.config.enabled:
            raise ConfigurationError("Memory search is disabled")
        max_results = self.config.max_results if max_results is None else max_results
        min_score = self.config.min_score if min_score is None else min_score
        if max_results <= 0:
            raise ConfigurationError("max_results must be positive")

        if self.indexer is not None and self.indexer.dirty:
            self._sync_before_search()

        cleaned = query.strip()
        if not cleaned:
            return SearchReport()

        limit = self.config.candidate_count(max_results)
        keyword = self._keyword_leg(cleaned, limit, source)
        vector = self._vector_leg(cleaned, limit, source)

        merged = merge_hybrid_results(
            vector or [],
            keyword or [],
            vector_weight=self.config.vector_weight,
            text_weight=self.config.text_weight,
        )
        results = [
            SearchResult(
                path=entry.path,
                start_line=entry.start_line,
                end_line=entry.end_line,
                score=entry.score,
                snippet=entry.snippet,
                source=entry.source,
            )
            for entry in merged
            if entry.score >= min_score
        ][:max_results]
        return SearchReport(
            results=results,
            keyword_used=keyword is not None,
            vector_used=vector is not None,
        )

    def _sync_before_search(self) -> None:
        assert self.indexer is not None
        try:
            self.indexer.sync()
        except ConfigurationError:
            raise
        except Exception as exc:
            LOGGER.warning("Sync before search failed, searching the current index: %s", exc)

    def _keyword_leg(
        self, query: str, limit: int, source: Optional[str]
    ) -> Optional[List[ScoredCandidate]]:
        if not self.store.fts_available:
            return None
        fts_query = build_fts_query(query)
        if fts_query is None:
            return None
        try:
            rows = self.store.search_keyword(fts_query, limit=limit, source=source)
        except sqlite3.Error as exc:
            LOGGER.warning("Keyword search failed: %s", exc)
            return None
        return score_keyword_candidates(rows)

    def _vector_leg(
        self, query: str, limit: int, source: Optional[str]
    ) -> Optional[List[ScoredCandidate]]:
        if not self.store.vector_available or not self.embedder.enabled:
            return None
        try:
            query_vector = self.embedder.embed_query(query)
        except Exception as exc:
            LOGGER.warning("Query embedding failed, using keyword results only: %s", exc)
            return None
        if not np.any(query_vector):
            return None
        try:
            rows = self.store.search_vector(query_vector, limit=limit, source=source)
        except (sqlite3.Error, ValueError) as exc:
            LOGGER.warning("Vector search failed: %s", exc)
            return None
        for row in rows:
            row.snippet = truncate_snippet(row.snippet, self.config.snippet_max_chars)
        return score_vector_candidates(rows)
