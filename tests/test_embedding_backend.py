"""Tests for embedding providers and backend detection."""

from __future__ import annotations

import json
import sys
from unittest.mock import MagicMock, patch

import httpx
import numpy as np
import pytest

from memdex.config import ConfigurationError, MemoryConfig
from memdex.embedding.encoder import (
    DisabledEmbedding,
    EmbeddingConfig,
    EmbeddingError,
    EmbeddingModel,
    OpenAIEmbedding,
    _check_gpu_availability,
    check_embeddings,
    create_embedding_provider,
    detect_optimal_backend,
)


class TestGPUDetection:
    """Test GPU availability detection."""

    def test_check_gpu_availability_no_torch(self) -> None:
        """Should return (False, None) if torch is not available."""
        with patch.dict("sys.modules", {"torch": None}):
            has_gpu, gpu_type = _check_gpu_availability()
            assert has_gpu is False
            assert gpu_type is None


class TestBackendDetection:
    """Test auto-detection of the sentence-transformers backend."""

    @patch("memdex.embedding.encoder._check_gpu_availability", return_value=(False, None))
    @patch("memdex.embedding.encoder._check_onnx_providers", return_value=[])
    def test_no_onnx_uses_torch(self, mock_onnx: MagicMock, mock_gpu: MagicMock) -> None:
        assert detect_optimal_backend() == "torch"

    @patch("memdex.embedding.encoder._check_gpu_availability", return_value=(False, None))
    @patch("memdex.embedding.encoder._check_onnx_providers", return_value=["CPUExecutionProvider"])
    def test_macos_uses_onnx(
        self, mock_onnx: MagicMock, mock_gpu: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(sys, "platform", "darwin")
        assert detect_optimal_backend() == "onnx"

    @patch("memdex.embedding.encoder._check_gpu_availability", return_value=(True, "cuda"))
    @patch("memdex.embedding.encoder._check_onnx_providers", return_value=["CPUExecutionProvider"])
    def test_cuda_without_onnx_provider_uses_torch(
        self, mock_onnx: MagicMock, mock_gpu: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        assert detect_optimal_backend() == "torch"

    @patch("memdex.embedding.encoder._check_gpu_availability", return_value=(True, "cuda"))
    @patch(
        "memdex.embedding.encoder._check_onnx_providers",
        return_value=["CUDAExecutionProvider", "CPUExecutionProvider"],
    )
    def test_cuda_with_onnx_provider(
        self, mock_onnx: MagicMock, mock_gpu: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        assert detect_optimal_backend() == "onnx"

    @patch("memdex.embedding.encoder._check_gpu_availability", return_value=(True, "rocm"))
    @patch("memdex.embedding.encoder._check_onnx_providers", return_value=["CPUExecutionProvider"])
    def test_rocm_without_onnx_provider_uses_torch(
        self, mock_onnx: MagicMock, mock_gpu: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        assert detect_optimal_backend() == "torch"


class TestEmbeddingConfig:
    """Test EmbeddingConfig dataclass."""

    def test_default_config(self) -> None:
        config = EmbeddingConfig()
        assert config.model_name == "sentence-transformers/all-MiniLM-L6-v2"
        assert config.batch_size == 16
        assert config.normalize is True
        assert config.backend is None
        assert config.device is None


def _fake_sentence_model(dim: int = 4) -> MagicMock:
    model = MagicMock()
    model.get_sentence_embedding_dimension.return_value = dim
    model.encode.side_effect = lambda sentences, **kwargs: np.ones((len(sentences), dim))
    return model


class TestEmbeddingModel:
    """Test the local sentence-transformers provider with the model mocked out."""

    def test_lazy_load(self) -> None:
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))
        with patch.object(EmbeddingModel, "_load_model", return_value=_fake_sentence_model()) as load:
            assert model.dimension == 0
            load.assert_not_called()

            embeddings = model.embed(["hello", "world"])

            load.assert_called_once()
        assert embeddings.shape == (2, 4)
        assert embeddings.dtype == np.float32
        assert model.dimension == 4

    def test_empty_input_skips_load(self) -> None:
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))
        with patch.object(EmbeddingModel, "_load_model") as load:
            assert model.embed([]).shape[0] == 0
            load.assert_not_called()

    def test_embed_query(self) -> None:
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))
        with patch.object(EmbeddingModel, "_load_model", return_value=_fake_sentence_model(3)):
            assert model.embed_query("q").shape == (3,)

    def test_onnx_failure_falls_back_to_torch(self) -> None:
        model = EmbeddingModel(EmbeddingConfig(backend="onnx"))
        with patch.object(
            EmbeddingModel,
            "_load_model",
            side_effect=[RuntimeError("no onnx export"), _fake_sentence_model()],
        ):
            model.embed(["text"])
        assert model.config.backend == "torch"

    def test_torch_failure_raises(self) -> None:
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))
        with patch.object(EmbeddingModel, "_load_model", side_effect=OSError("missing weights")):
            with pytest.raises(EmbeddingError):
                model.embed(["text"])

    def test_encode_failure_raises(self) -> None:
        broken = _fake_sentence_model()
        broken.encode.side_effect = RuntimeError("out of memory")
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))
        with patch.object(EmbeddingModel, "_load_model", return_value=broken):
            with pytest.raises(EmbeddingError):
                model.embed(["text"])

    def test_provider_key_tracks_normalization(self) -> None:
        assert EmbeddingModel(EmbeddingConfig(normalize=True)).provider_key == "normalized"
        assert EmbeddingModel(EmbeddingConfig(normalize=False)).provider_key == "raw"


def _openai_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestOpenAIEmbedding:
    """Test the OpenAI-compatible HTTP provider."""

    def test_requires_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigurationError):
            OpenAIEmbedding()

    def test_reads_key_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        provider = OpenAIEmbedding(client=_openai_client(lambda request: httpx.Response(200)))
        assert provider.model == "text-embedding-3-small"
        assert provider.dimension == 1536

    def test_embed_orders_by_index(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            assert request.headers["Authorization"] == "Bearer sk-test"
            assert request.url.path.endswith("/embeddings")
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"index": 1, "embedding": [0.0, 1.0]},
                        {"index": 0, "embedding": [1.0, 0.0]},
                    ]
                },
            )

        provider = OpenAIEmbedding(api_key="sk-test", model="custom", client=_openai_client(handler))

        embeddings = provider.embed(["first", "second"])

        np.testing.assert_allclose(embeddings, [[1.0, 0.0], [0.0, 1.0]])
        assert seen == [{"model": "custom", "input": ["first", "second"]}]
        assert provider.dimension == 2

    def test_http_error_raises(self) -> None:
        provider = OpenAIEmbedding(
            api_key="sk-test",
            client=_openai_client(lambda request: httpx.Response(500, json={"error": "down"})),
        )
        with pytest.raises(EmbeddingError):
            provider.embed(["text"])

    def test_wrong_count_raises(self) -> None:
        provider = OpenAIEmbedding(
            api_key="sk-test",
            client=_openai_client(
                lambda request: httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})
            ),
        )
        with pytest.raises(EmbeddingError):
            provider.embed(["a", "b"])

    def test_provider_key_depends_on_base_url(self) -> None:
        client = _openai_client(lambda request: httpx.Response(200))
        first = OpenAIEmbedding(api_key="k", base_url="https://a.example/v1", client=client)
        second = OpenAIEmbedding(api_key="k", base_url="https://b.example/v1", client=client)
        assert first.provider_key != second.provider_key


class TestProviderFactory:
    """Test create_embedding_provider."""

    def test_none(self) -> None:
        provider = create_embedding_provider(MemoryConfig(provider="none"))
        assert isinstance(provider, DisabledEmbedding)
        assert provider.enabled is False
        assert provider.embed(["a", "b"]).shape == (2, 0)

    def test_local(self) -> None:
        provider = create_embedding_provider(MemoryConfig(provider="local", model="my/model"))
        assert isinstance(provider, EmbeddingModel)
        assert provider.model == "my/model"

    def test_openai(self) -> None:
        provider = create_embedding_provider(MemoryConfig(provider="openai"), api_key="sk-test")
        assert isinstance(provider, OpenAIEmbedding)
        provider.close()


def test_check_embeddings_rejects_wrong_shape() -> None:
    with pytest.raises(EmbeddingError):
        check_embeddings(["a", "b"], np.zeros((3, 4)))
    with pytest.raises(EmbeddingError):
        check_embeddings(["a"], np.zeros(4))
