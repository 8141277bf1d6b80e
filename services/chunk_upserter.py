"""
Chunk ingestion into the vector store.
Embeds chunks that arrive without a vector and writes them as
{id, payload, vector} points, creating the collection on first use.
"""

import asyncio
import logging
from typing import Dict, List

from clients.embeddings_client import EmbeddingProvider
from clients.vector_store import VectorStore, chunk_to_payload
from models.flashcard_models import Chunk
from utils.exceptions import ValidationError
from utils.retry import with_retry

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100


class ChunkUpserter:
    """Idempotent chunk writer: re-upserting a chunk_id overwrites vector and payload."""

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingProvider,
        batch_size: int = MAX_BATCH_SIZE,
        max_attempts: int = 3,
        initial_delay_ms: int = 1000,
    ):
        self.store = store
        self.embedder = embedder
        self.batch_size = min(max(1, batch_size), MAX_BATCH_SIZE)
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms
        self._collection_ready = False

    async def _retry(self, fn, operation: str):
        return await with_retry(
            fn,
            operation=operation,
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
        )

    async def ensure_collection(self) -> None:
        if self._collection_ready:
            return
        await self._retry(
            lambda: asyncio.to_thread(self.store.ensure_collection, self.embedder.dimension),
            "vector_ensure_collection",
        )
        self._collection_ready = True

    async def upsert_chunks(self, module_id: str, chunks: List[Chunk]) -> int:
        """
        Embed (where needed) and write chunks for a module.

        Returns:
            Number of points written.
        """
        if not module_id:
            raise ValidationError("module_id is required", error_code="MISSING_MODULE_ID")
        if not chunks:
            return 0

        # Last occurrence of a chunk_id wins within one call
        unique: Dict[str, Chunk] = {}
        for chunk in chunks:
            unique[chunk.chunk_id] = chunk
        ordered = list(unique.values())

        await self.ensure_collection()

        missing = [c for c in ordered if not c.embedding]
        vectors_by_id: Dict[str, List[float]] = {c.chunk_id: c.embedding for c in ordered if c.embedding}
        if missing:
            logger.info(f"Embedding {len(missing)}/{len(ordered)} chunks for module {module_id}")
            vectors = await self._retry(
                lambda: asyncio.to_thread(self.embedder.embed_text, [c.text for c in missing]),
                "embed_chunks",
            )
            for chunk, vector in zip(missing, vectors):
                vectors_by_id[chunk.chunk_id] = vector

        points = []
        for chunk in ordered:
            vector = vectors_by_id[chunk.chunk_id]
            if len(vector) != self.embedder.dimension:
                raise ValidationError(
                    f"Chunk {chunk.chunk_id} has dimension {len(vector)}, expected {self.embedder.dimension}",
                    error_code="DIMENSION_MISMATCH",
                )
            points.append({
                "id": chunk.chunk_id,
                "payload": chunk_to_payload(chunk, module_id),
                "vector": list(vector),
            })

        written = 0
        for i in range(0, len(points), self.batch_size):
            batch = points[i:i + self.batch_size]
            written += await self._retry(
                lambda batch=batch: asyncio.to_thread(self.store.upsert_points, module_id, batch),
                "vector_upsert",
            )

        logger.info(f"Upserted {written} chunks for module {module_id} to {self.store.provider}")
        return written
