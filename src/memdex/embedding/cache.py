"""Embedding memoization on top of the store's ``embedding_cache`` table."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

import numpy as np

from memdex.embedding.encoder import EmbeddingProvider, check_embeddings
from memdex.index.storage import SQLiteMemoryStore
from memdex.utils.files import hash_text

LOGGER = logging.getLogger(__name__)


class CachedEmbedder(EmbeddingProvider):
    """Serve embeddings from the cache and send only misses to the provider.

    Entries are keyed by (provider name, model, provider key, text hash).
    A missing, unreadable or wrongly sized entry is simply a miss. Misses
    for one call go to the provider as a single batch.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: Optional[SQLiteMemoryStore],
        *,
        enabled: bool = True,
    ) -> None:
        self.provider = provider
        self.store = store
        self.cache_enabled = enabled and store is not None
        self.name = provider.name
        self.enabled = provider.enabled

    @property
    def model(self) -> str:
        return self.provider.model

    @property
    def provider_key(self) -> str:
        return self.provider.provider_key

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    def _lookup(self, hash_: str) -> Optional[np.ndarray]:
        assert self.store is not None
        vector = self.store.get_cached_embedding(
            self.provider.name, self.provider.model, self.provider.provider_key, hash_
        )
        if vector is None:
            return None
        expected = self.provider.dimension
        if expected and vector.shape != (expected,):
            LOGGER.debug("Cached embedding %s has shape %s, ignoring", hash_[:12], vector.shape)
            return None
        return vector

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        inputs = list(texts)
        if not self.cache_enabled or not self.enabled or not inputs:
            return check_embeddings(inputs, self.provider.embed(inputs))

        hashes = [hash_text(text) for text in inputs]
        found: dict[str, np.ndarray] = {}
        missing: dict[str, str] = {}
        for text, hash_ in zip(inputs, hashes):
            if hash_ in found or hash_ in missing:
                continue
            cached = self._lookup(hash_)
            if cached is None:
                missing[hash_] = text
            else:
                found[hash_] = cached

        if missing:
            miss_texts = list(missing.values())
            fresh = check_embeddings(miss_texts, self.provider.embed(miss_texts))
            assert self.store is not None
            with self.store.transaction():
                for hash_, vector in zip(missing.keys(), fresh):
                    found[hash_] = vector
                    self.store.cache_embedding(
                        self.provider.name,
                        self.provider.model,
                        self.provider.provider_key,
                        hash_,
                        vector,
                    )
            LOGGER.debug("Embedding cache: %d hit(s), %d miss(es)", len(found) - len(missing), len(missing))

        return check_embeddings(inputs, np.vstack([found[hash_] for hash_ in hashes]))
