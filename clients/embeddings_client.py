"""
Embedding providers - text to vectors behind one interface.

Backends:
- openai: OpenAI embeddings API via the openai SDK
- jina:   Jina REST API (no jina library installation required)
- mock:   deterministic hash vectors for offline/mock mode

The backend is chosen once from config by get_embedding_provider().
"""

import hashlib
import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np
import requests
from openai import OpenAI

from utils.config import PipelineConfig
from utils.exceptions import NetworkError, ValidationError
from utils.metrics import EMBEDDING_CALLS, EMBEDDING_LATENCY

logger = logging.getLogger(__name__)

JINA_ENDPOINT = "https://api.jina.ai/v1/embeddings"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1].

    Symmetric; 1.0 for identical direction, 0.0 for orthogonal, -1.0 for opposite.
    Returns 0.0 when either vector has zero magnitude.
    """
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise ValidationError(
            f"Vector dimension mismatch: {va.shape[0] if va.ndim else 0} vs {vb.shape[0] if vb.ndim else 0}",
            error_code="DIMENSION_MISMATCH",
        )
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    value = float(np.dot(va, vb) / norm)
    return max(-1.0, min(1.0, value))


class EmbeddingProvider(ABC):
    """Order-preserving text embedder."""

    name = "base"

    def __init__(self, model: str, dimension: int, batch_size: int = 64):
        self.model = model
        self.dimension = dimension
        self.batch_size = max(1, batch_size)

    def embed_text(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts in batches.

        Args:
            texts: Strings to embed

        Returns:
            One vector per input, in input order. Empty input makes no call.
        """
        if not texts:
            return []

        logger.info(f"Embedding {len(texts)} texts with {self.name}/{self.model}")
        vectors: List[List[float]] = []
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size

        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            start = time.time()
            try:
                batch_vectors = self._embed_batch(batch)
            except Exception:
                EMBEDDING_CALLS.labels(provider=self.name, status="error").inc()
                raise
            EMBEDDING_LATENCY.labels(provider=self.name).observe(time.time() - start)
            EMBEDDING_CALLS.labels(provider=self.name, status="success").inc()

            if len(batch_vectors) != len(batch):
                raise NetworkError(
                    f"{self.name} returned {len(batch_vectors)} embeddings for {len(batch)} inputs",
                    provider=self.name,
                )
            vectors.extend(batch_vectors)
            logger.debug(f"Embedded batch {i // self.batch_size + 1}/{total_batches}")

        return vectors

    @abstractmethod
    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"

    def __init__(self, api_key: str, model: str, dimension: int, batch_size: int = 64):
        super().__init__(model, dimension, batch_size)
        self.client = OpenAI(api_key=api_key)
        logger.info(f"Initialized OpenAI embedder ({model})")

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        try:
            response = self.client.embeddings.create(model=self.model, input=batch)
        except Exception as e:
            status = getattr(e, "status_code", None)
            raise NetworkError(f"OpenAI embeddings failed: {e}", provider=self.name, http_status=status) from e
        # The API returns items with an index; keep input order regardless of response order
        data = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in data]


class JinaEmbeddingProvider(EmbeddingProvider):
    name = "jina"

    def __init__(self, api_key: str, model: str, dimension: int, batch_size: int = 64):
        super().__init__(model, dimension, batch_size)
        self.api_key = api_key
        self.endpoint = JINA_ENDPOINT
        logger.info(f"Initialized Jina embedder ({model})")

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}"
        }
        payload = {
            "model": self.model,
            "input": batch,
            "normalized": True,
            "embedding_type": "float"
        }
        try:
            response = requests.post(self.endpoint, headers=headers, json=payload, timeout=30)
        except requests.RequestException as e:
            raise NetworkError(f"Jina embeddings request failed: {e}", provider=self.name) from e

        if response.status_code >= 400:
            retry_after = response.headers.get("Retry-After")
            raise NetworkError(
                f"Jina embeddings returned HTTP {response.status_code}: {response.text[:200]}",
                provider=self.name,
                http_status=response.status_code,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        result = response.json()
        data = sorted(result["data"], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in data]


class MockEmbeddingProvider(EmbeddingProvider):
    """Deterministic unit vectors derived from a hash of the text."""

    name = "mock"

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        return [self._vector_for(text) for text in batch]

    def _vector_for(self, text: str) -> List[float]:
        seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:16], 16)
        rng = np.random.default_rng(seed)
        vec = rng.standard_normal(self.dimension)
        norm = np.linalg.norm(vec)
        return (vec / norm).tolist() if norm else vec.tolist()


def get_embedding_provider(config: PipelineConfig, batch_size: Optional[int] = None) -> EmbeddingProvider:
    """Select the embedding backend once, from configuration."""
    size = batch_size or config.embedding_batch_size
    if config.embedding_provider == "mock":
        return MockEmbeddingProvider(config.embedding_model, config.embedding_dimension, size)
    if config.embedding_provider == "jina":
        api_key = config.require("jina_api_key", "JINA_API_KEY")
        return JinaEmbeddingProvider(api_key, config.embedding_model, config.embedding_dimension, size)
    api_key = config.require("openai_api_key", "OPENAI_API_KEY")
    return OpenAIEmbeddingProvider(api_key, config.embedding_model, config.embedding_dimension, size)
