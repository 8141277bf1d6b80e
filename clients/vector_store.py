"""
Vector store interface for module chunks.

One implementation per backend (Qdrant filter-scroll, Pinecone list+fetch,
in-memory for mock mode), selected once at startup by get_vector_store().
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from models.flashcard_models import Chunk
from utils.config import PipelineConfig

logger = logging.getLogger(__name__)

# Upper bound on chunks pulled for a single module
MAX_MODULE_CHUNKS = 200

_CHUNK_FIELDS = set(Chunk.model_fields.keys())


def chunk_from_payload(payload: Dict[str, Any]) -> Chunk:
    """Rebuild a Chunk from a stored payload, ignoring backend bookkeeping keys."""
    data = {k: v for k, v in payload.items() if k in _CHUNK_FIELDS and k != "embedding"}
    data.setdefault("chunk_id", payload.get("_original_id", "unknown"))
    data.setdefault("text", "")
    return Chunk(**data)


def chunk_to_payload(chunk: Chunk, module_id: str) -> Dict[str, Any]:
    """Payload written next to the vector: chunk fields plus module_id."""
    payload = chunk.model_dump(exclude={"embedding", "score"})
    payload["module_id"] = module_id
    return payload


class VectorStore(ABC):
    """Chunk storage keyed by module_id."""

    provider = "base"

    @abstractmethod
    def ensure_collection(self, dimension: int) -> None:
        """Create the backing collection/index if it does not exist yet."""

    @abstractmethod
    def fetch_module_chunks(self, module_id: str, limit: int = MAX_MODULE_CHUNKS) -> List[Chunk]:
        """Return stored chunks for a module (unordered, at most `limit`)."""

    @abstractmethod
    def upsert_points(self, module_id: str, points: List[Dict[str, Any]]) -> int:
        """Write `{id, payload, vector}` points. Re-writing an id overwrites it."""


class MemoryVectorStore(VectorStore):
    """Process-local store used in mock/offline mode and tests."""

    provider = "memory"

    def __init__(self):
        self._points: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self.dimension = None

    def ensure_collection(self, dimension: int) -> None:
        if self.dimension is None:
            self.dimension = dimension
            logger.info(f"Memory vector store ready (dimension={dimension})")

    def fetch_module_chunks(self, module_id: str, limit: int = MAX_MODULE_CHUNKS) -> List[Chunk]:
        with self._lock:
            points = list(self._points.get(module_id, {}).values())
        return [chunk_from_payload(p["payload"]) for p in points[:limit]]

    def upsert_points(self, module_id: str, points: List[Dict[str, Any]]) -> int:
        with self._lock:
            bucket = self._points.setdefault(module_id, {})
            for point in points:
                bucket[point["id"]] = point
        return len(points)


def get_vector_store(config: PipelineConfig) -> VectorStore:
    """Select the vector store backend once, from configuration."""
    if config.vector_db_provider == "memory":
        return MemoryVectorStore()
    if config.vector_db_provider == "pinecone":
        from clients.pinecone_client import PineconeVectorStore
        return PineconeVectorStore(config)
    from clients.qdrant_client import QdrantVectorStore
    return QdrantVectorStore(config)
