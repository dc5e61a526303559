"""Tests for embedding backend detection and the async model wrapper."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from vaultsearch.embedding.encoder import (
    DEFAULT_MODEL,
    Embedder,
    EmbeddingConfig,
    EmbeddingModel,
    _check_onnx_providers,
    detect_backend,
    get_embedding_dimensions,
    validate_batch,
)
from vaultsearch.errors import ConfigurationMissing, EmbeddingDimensionMismatch, EmbeddingFailure


def _fake_transformer(dimension: int = 4) -> MagicMock:
    model = MagicMock()
    model.get_sentence_embedding_dimension.return_value = dimension
    model.encode.side_effect = lambda sentences, **kwargs: np.ones(
        (len(sentences), dimension), dtype="float64"
    )
    return model


class TestEmbeddingDimensions:
    """Test dimension resolution from model names."""

    @pytest.mark.parametrize(
        ("model_name", "expected"),
        [
            ("BAAI/bge-large-en-v1.5", 1024),
            ("BAAI/bge-base-en-v1.5", 768),
            ("BAAI/bge-small-en-v1.5", 384),
            ("sentence-transformers/all-MiniLM-L6-v2", 1024),
        ],
    )
    def test_known_families(self, model_name: str, expected: int) -> None:
        assert get_embedding_dimensions(model_name) == expected

    def test_explicit_wins(self) -> None:
        assert get_embedding_dimensions("BAAI/bge-large-en-v1.5", "384") == 384

    @pytest.mark.parametrize("explicit", ["abc", "0", "-5"])
    def test_invalid_explicit(self, explicit: str) -> None:
        """Invalid explicit dimensions are a configuration error."""
        with pytest.raises(ConfigurationMissing):
            get_embedding_dimensions(DEFAULT_MODEL, explicit)


class TestValidateBatch:
    """Test embedding output validation."""

    def test_valid(self) -> None:
        validate_batch(["a", "b"], [[0.1, 0.2], [0.3, 0.4]], 2)

    def test_length_mismatch(self) -> None:
        """Fewer vectors than texts is a shape error."""
        with pytest.raises(EmbeddingDimensionMismatch, match="length mismatch"):
            validate_batch(["a", "b"], [[0.1, 0.2]], 2)

    def test_dimension_mismatch(self) -> None:
        """A vector of the wrong size names its index."""
        with pytest.raises(EmbeddingDimensionMismatch, match="index 1"):
            validate_batch(["a", "b"], [[0.1, 0.2], [0.3]], 2)


class TestBackendDetection:
    """Test backend auto-detection."""

    @patch("vaultsearch.embedding.encoder._check_onnx_providers", return_value=[])
    def test_torch_without_onnx(self, mock_providers: MagicMock) -> None:
        assert detect_backend() == "torch"

    @patch(
        "vaultsearch.embedding.encoder._check_onnx_providers",
        return_value=["CPUExecutionProvider"],
    )
    def test_onnx_when_available(self, mock_providers: MagicMock) -> None:
        assert detect_backend() == "onnx"

    def test_check_onnx_providers_without_package(self) -> None:
        """Should return an empty list if onnxruntime is missing."""
        with patch.dict("sys.modules", {"onnxruntime": None}):
            assert _check_onnx_providers() == []


class TestEmbeddingConfig:
    """Test EmbeddingConfig dataclass."""

    def test_default_config(self) -> None:
        """Should create config with default values."""
        config = EmbeddingConfig()
        assert config.model_name == DEFAULT_MODEL
        assert config.batch_size == 16
        assert config.normalize is True
        assert config.backend is None
        assert config.dimensions is None
        assert config.device is None


class TestEmbeddingModel:
    """Test the SentenceTransformer wrapper without downloading a model."""

    @patch("vaultsearch.embedding.encoder.SentenceTransformer")
    def test_loads_and_reports_dimension(self, mock_st: MagicMock) -> None:
        mock_st.return_value = _fake_transformer(4)
        model = EmbeddingModel(EmbeddingConfig(model_name="test-model", backend="torch"))

        assert model.dimension == 4
        assert isinstance(model, Embedder)
        mock_st.assert_called_once_with("test-model", backend="torch", device=None)

    @patch("vaultsearch.embedding.encoder.SentenceTransformer")
    def test_dimension_check(self, mock_st: MagicMock) -> None:
        """A model producing the wrong size is rejected at load time."""
        mock_st.return_value = _fake_transformer(4)
        with pytest.raises(EmbeddingDimensionMismatch):
            EmbeddingModel(EmbeddingConfig(backend="torch", dimensions=8))

    @patch("vaultsearch.embedding.encoder.SentenceTransformer")
    def test_onnx_falls_back_to_torch(self, mock_st: MagicMock) -> None:
        """A failing ONNX load should retry with PyTorch."""
        mock_st.side_effect = [RuntimeError("no onnx"), _fake_transformer(4)]
        model = EmbeddingModel(EmbeddingConfig(backend="onnx"))

        assert model.config.backend == "torch"
        assert mock_st.call_count == 2

    @patch("vaultsearch.embedding.encoder.SentenceTransformer")
    def test_torch_failure_is_configuration_error(self, mock_st: MagicMock) -> None:
        mock_st.side_effect = OSError("model not found")
        with pytest.raises(ConfigurationMissing, match="Unable to load"):
            EmbeddingModel(EmbeddingConfig(backend="torch"))

    @pytest.mark.asyncio
    @patch("vaultsearch.embedding.encoder.SentenceTransformer")
    async def test_embed_batch(self, mock_st: MagicMock) -> None:
        """Should return plain float lists, one per text."""
        mock_st.return_value = _fake_transformer(4)
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))

        vectors = await model.embed_batch(["a", "b", "c"])

        assert len(vectors) == 3
        assert vectors[0] == [1.0, 1.0, 1.0, 1.0]
        assert await model.embed("single") == [1.0, 1.0, 1.0, 1.0]

    @pytest.mark.asyncio
    @patch("vaultsearch.embedding.encoder.SentenceTransformer")
    async def test_embed_batch_empty(self, mock_st: MagicMock) -> None:
        mock_st.return_value = _fake_transformer(4)
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))
        with pytest.raises(EmbeddingFailure):
            await model.embed_batch([])

    @pytest.mark.asyncio
    @patch("vaultsearch.embedding.encoder.SentenceTransformer")
    async def test_encode_error_wrapped(self, mock_st: MagicMock) -> None:
        """Errors raised by the model surface as EmbeddingFailure."""
        transformer = _fake_transformer(4)
        transformer.encode.side_effect = RuntimeError("CUDA out of memory")
        mock_st.return_value = transformer
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))

        with pytest.raises(EmbeddingFailure, match="CUDA out of memory"):
            await model.embed_batch(["a"])

    @pytest.mark.asyncio
    @patch("vaultsearch.embedding.encoder.SentenceTransformer")
    async def test_wrong_output_size(self, mock_st: MagicMock) -> None:
        """A response with the wrong vector count is a dimension mismatch."""
        transformer = _fake_transformer(4)
        transformer.encode.side_effect = lambda sentences, **kwargs: np.ones((1, 4))
        mock_st.return_value = transformer
        model = EmbeddingModel(EmbeddingConfig(backend="torch"))

        with pytest.raises(EmbeddingDimensionMismatch):
            await model.embed_batch(["a", "b"])
