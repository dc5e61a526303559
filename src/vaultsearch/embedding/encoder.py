"""Embedding model management."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Literal, Protocol, Sequence, runtime_checkable

import numpy as np
from sentence_transformers import SentenceTransformer

from vaultsearch.errors import ConfigurationMissing, EmbeddingDimensionMismatch, EmbeddingFailure

DEFAULT_MODEL = "BAAI/bge-large-en-v1.5"
DEFAULT_DIMENSIONS = 1024

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Capability turning text into fixed-length vectors."""

    dimension: int

    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]: ...


def get_embedding_dimensions(model_name: str, explicit: int | str | None = None) -> int:
    """Resolve the index dimensionality for a model.

    An explicit value wins; otherwise known model families are recognised by
    name and anything else falls back to 1024.
    """
    if explicit not in (None, ""):
        try:
            dimensions = int(explicit)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ConfigurationMissing(f"Invalid embedding dimensions: {explicit!r}") from exc
        if dimensions <= 0:
            raise ConfigurationMissing(f"Invalid embedding dimensions: {explicit!r}")
        return dimensions

    name = model_name.lower()
    if "bge-large" in name:
        return 1024
    if "bge-base" in name:
        return 768
    if "bge-small" in name:
        return 384
    return DEFAULT_DIMENSIONS


def validate_batch(
    texts: Sequence[str], vectors: Sequence[Sequence[float]], dimension: int
) -> None:
    """Raise ``EmbeddingDimensionMismatch`` unless ``vectors`` fits ``texts``."""
    if len(vectors) != len(texts):
        raise EmbeddingDimensionMismatch(
            f"Embedding response length mismatch: expected {len(texts)}, got {len(vectors)}"
        )
    for index, vector in enumerate(vectors):
        if len(vector) != dimension:
            raise EmbeddingDimensionMismatch(
                f"Invalid embedding at index {index}: expected {dimension} dimensions, "
                f"got {len(vector)}"
            )


def _check_onnx_providers() -> list[str]:
    """Return the available ONNX Runtime execution providers, if any."""
    try:
        import onnxruntime as ort

        return ort.get_available_providers()
    except ImportError:
        return []


def detect_backend() -> Literal["torch", "onnx"]:
    """Prefer ONNX when onnxruntime is installed, PyTorch otherwise."""
    providers = _check_onnx_providers()
    if providers:
        logger.info("Using ONNX backend (providers: %s)", ", ".join(providers))
        return "onnx"
    logger.info("ONNX not available, using PyTorch backend")
    return "torch"


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    dimensions: int | None = None
    backend: Literal["torch", "onnx", "openvino"] | None = None
    device: str | None = None


class EmbeddingModel:
    """Thin async wrapper around `SentenceTransformer`.

    Encoding runs in a worker thread so the event loop is never blocked.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        if self.config.backend is None:
            self.config.backend = detect_backend()

        try:
            self._model = self._load_model()
        except Exception as exc:
            if self.config.backend == "torch":
                raise ConfigurationMissing(
                    f"Unable to load embedding model {self.config.model_name!r}: {exc}"
                ) from exc
            logger.warning(
                "Failed to load model with backend '%s': %s. Falling back to PyTorch.",
                self.config.backend,
                exc,
            )
            self.config.backend = "torch"
            self._model = self._load_model()

        model_dimension = int(self._model.get_sentence_embedding_dimension())
        expected = self.config.dimensions or model_dimension
        if expected != model_dimension:
            raise EmbeddingDimensionMismatch(
                f"Model {self.config.model_name!r} produces {model_dimension}-dimensional "
                f"vectors but the index expects {expected}"
            )
        self.dimension = model_dimension
        logger.info(
            "Loaded %s (backend: %s, dimension: %d)",
            self.config.model_name,
            self.config.backend,
            self.dimension,
        )

    def _load_model(self) -> SentenceTransformer:
        return SentenceTransformer(
            self.config.model_name,
            backend=self.config.backend,
            device=self.config.device,
        )

    def _encode(self, sentences: List[str]) -> np.ndarray:
        embeddings = self._model.encode(
            sentences,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
        )
        return embeddings.astype("float32", copy=False)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Return one vector per input text, in input order."""
        sentences = list(texts)
        if not sentences:
            raise EmbeddingFailure("No texts provided for embedding generation")
        try:
            embeddings = await asyncio.to_thread(self._encode, sentences)
        except Exception as exc:
            raise EmbeddingFailure(f"Failed to generate embeddings: {exc}") from exc
        vectors = embeddings.tolist()
        validate_batch(sentences, vectors, self.dimension)
        return vectors

    async def embed(self, text: str) -> List[float]:
        """Convenience wrapper for single-text embedding."""
        return (await self.embed_batch([text]))[0]
