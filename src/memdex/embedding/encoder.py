"""Embedding providers.

Every provider turns an ordered list of texts into a ``(len(texts), dim)``
float32 matrix in the same order, or raises :class:`EmbeddingError`.
"""

from __future__ import annotations

import logging
import os
import platform
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Literal, Sequence

import httpx
import numpy as np

from memdex.config import (
    DEFAULT_LOCAL_MODEL,
    DEFAULT_OPENAI_MODEL,
    ConfigurationError,
    MemoryConfig,
)
from memdex.utils.files import hash_text

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """An embedding request failed or returned an unusable shape."""


def check_embeddings(texts: Sequence[str], embeddings: np.ndarray) -> np.ndarray:
    """Validate provider output against its input and coerce to float32."""
    array = np.asarray(embeddings, dtype="float32")
    if array.ndim != 2 or array.shape[0] != len(texts):
        raise EmbeddingError(
            f"Expected {len(texts)} embeddings, got array of shape {array.shape}"
        )
    return array


class EmbeddingProvider(ABC):
    """Single-capability interface: ordered texts in, ordered vectors out."""

    name: str = "base"
    enabled: bool = True

    @property
    @abstractmethod
    def model(self) -> str:
        """Identifier of the model producing the vectors."""

    @property
    def provider_key(self) -> str:
        """Distinguishes otherwise identical models served from different places."""
        return ""

    @property
    def dimension(self) -> int:
        """Vector width, or 0 when not known yet."""
        return 0

    @abstractmethod
    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 embeddings for input texts."""

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]


class DisabledEmbedding(EmbeddingProvider):
    """Stand-in used when no embedding provider is configured.

    Chunks indexed with it carry empty vectors and search runs keyword-only.
    """

    name = "none"
    enabled = False

    @property
    def model(self) -> str:
        return "none"

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        return np.zeros((len(list(texts)), 0), dtype="float32")


def _check_gpu_availability() -> tuple[bool, str | None]:
    """Check if GPU is available and return GPU type ("cuda", "mps", "rocm")."""
    try:
        import torch

        if torch.cuda.is_available():
            logger.debug("CUDA GPU detected: %s", torch.cuda.get_device_name(0))
            return (True, "cuda")
        if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            logger.debug("Apple MPS GPU detected")
            return (True, "mps")
        if getattr(torch.version, "hip", None) is not None:
            logger.debug("AMD ROCm GPU detected")
            return (True, "rocm")
        return (False, None)
    except ImportError:
        logger.debug("PyTorch not available for GPU detection")
        return (False, None)


def _check_onnx_providers() -> list[str]:
    try:
        import onnxruntime as ort

        return ort.get_available_providers()
    except ImportError:
        return []


def detect_optimal_backend() -> Literal["torch", "onnx"]:
    """Pick the sentence-transformers backend for this machine.

    ONNX is used on macOS and whenever onnxruntime exposes a provider that
    matches the detected accelerator; PyTorch otherwise.
    """
    _, gpu_type = _check_gpu_availability()
    onnx_providers = _check_onnx_providers()
    if not onnx_providers:
        logger.info("ONNX not available, using PyTorch backend on %s", sys.platform)
        return "torch"
    if sys.platform == "darwin":
        logger.info("Detected macOS (%s) - using ONNX backend", platform.machine())
        return "onnx"
    if gpu_type == "cuda" and "CUDAExecutionProvider" not in onnx_providers:
        return "torch"
    if gpu_type == "rocm" and "ROCMExecutionProvider" not in onnx_providers:
        return "torch"
    logger.info("Using ONNX backend (providers: %s)", ", ".join(onnx_providers))
    return "onnx"


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_LOCAL_MODEL
    batch_size: int = 16
    normalize: bool = True
    backend: Literal["torch", "onnx", "openvino"] | None = None
    device: str | None = None


class EmbeddingModel(EmbeddingProvider):
    """Local `SentenceTransformer` model.

    The model loads lazily on first use. If a non-PyTorch backend fails to
    load, PyTorch is tried before giving up.
    """

    name = "local"

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self._model: SentenceTransformer | None = None
        self._dimension = 0

    @property
    def model(self) -> str:
        return self.config.model_name

    @property
    def provider_key(self) -> str:
        return "normalized" if self.config.normalize else "raw"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> SentenceTransformer:
        if self._model is not None:
            return self._model
        if self.config.backend is None:
            self.config.backend = detect_optimal_backend()
        try:
            self._model = self._load_model()
        except Exception as exc:
            if self.config.backend == "torch":
                raise EmbeddingError(f"Failed to load {self.config.model_name}: {exc}") from exc
            logger.warning(
                "Failed to load model with backend '%s': %s. Falling back to PyTorch.",
                self.config.backend,
                exc,
            )
            self.config.backend = "torch"
            self._model = self._load_model()
        self._dimension = int(self._model.get_sentence_embedding_dimension() or 0)
        logger.info(
            "Loaded %s (backend: %s, dimension: %d)",
            self.config.model_name,
            self.config.backend,
            self._dimension,
        )
        return self._model

    def _load_model(self) -> SentenceTransformer:
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(
            self.config.model_name,
            backend=self.config.backend,
            device=self.config.device,
        )

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self._dimension), dtype="float32")
        model = self._ensure_model()
        try:
            embeddings = model.encode(
                sentences,
                batch_size=self.config.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.config.normalize,
            )
        except Exception as exc:
            raise EmbeddingError(f"Local embedding failed: {exc}") from exc
        return check_embeddings(sentences, embeddings)


class OpenAIEmbedding(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` endpoint.

    Args:
        api_key: API key. Falls back to the ``OPENAI_API_KEY`` environment
            variable.
        model: Embedding model name.
        base_url: API base URL (Azure or compatible proxies).
        timeout: Request timeout in seconds.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_OPENAI_MODEL,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self._api_key:
            raise ConfigurationError(
                "An OpenAI API key is required: pass api_key or set OPENAI_API_KEY"
            )
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._dimension = OPENAI_DIMENSIONS.get(model, 0)
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def model(self) -> str:
        return self._model

    @property
    def provider_key(self) -> str:
        return hash_text(self._base_url)[:16]

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        inputs = list(texts)
        if not inputs:
            return np.zeros((0, self._dimension), dtype="float32")
        try:
            response = self._client.post(
                f"{self._base_url}/embeddings",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self._model, "input": inputs},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EmbeddingError(f"OpenAI embeddings failed: {exc}") from exc

        data = sorted(payload.get("data") or [], key=lambda item: item.get("index", 0))
        vectors = [item.get("embedding") or [] for item in data]
        try:
            embeddings = check_embeddings(inputs, np.asarray(vectors, dtype="float32"))
        except ValueError as exc:
            raise EmbeddingError(f"OpenAI returned malformed embeddings: {exc}") from exc
        self._dimension = int(embeddings.shape[1])
        return embeddings

    def close(self) -> None:
        self._client.close()


def create_embedding_provider(
    config: MemoryConfig, *, api_key: str | None = None
) -> EmbeddingProvider:
    """Build the provider variant selected by ``config.provider``."""
    if config.provider == "none":
        return DisabledEmbedding()
    if config.provider == "openai":
        return OpenAIEmbedding(api_key=api_key, model=config.model or DEFAULT_OPENAI_MODEL)
    return EmbeddingModel(EmbeddingConfig(model_name=config.model or DEFAULT_LOCAL_MODEL))
