"""
Chunk retrieval for a module.
Pulls a module's chunks from the vector store and reports whether there is
enough grounding material to generate flashcards.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from clients.vector_store import VectorStore
from models.flashcard_models import Chunk
from utils.config import MIN_CHUNKS_FOR_GENERATION, clamp_retrieval_k
from utils.metrics import RETRIEVALS
from utils.retry import with_retry

logger = logging.getLogger(__name__)


@dataclass
class RetrievalResult:
    chunks: List[Chunk]
    total_found: int
    provider: str
    insufficient: bool = field(init=False)

    def __post_init__(self):
        self.insufficient = self.total_found < MIN_CHUNKS_FOR_GENERATION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks": [c.model_dump(exclude={"embedding"}) for c in self.chunks],
            "metadata": {
                "insufficient": self.insufficient,
                "total_found": self.total_found,
                "provider": self.provider,
            },
        }


def _location_sort_key(chunk: Chunk):
    page = chunk.slide_or_page
    if isinstance(page, int):
        page_key = (0, page, "")
    elif isinstance(page, str) and page.strip().isdigit():
        page_key = (0, int(page.strip()), "")
    elif page:
        page_key = (1, 0, str(page))
    else:
        page_key = (2, 0, "")
    return (chunk.source_file, page_key, chunk.start_sec or 0.0, chunk.chunk_id)


def select_chunks(chunks: List[Chunk], retrieval_k: Optional[int], provider: str) -> RetrievalResult:
    """Stable-order and truncate a module's chunks to the clamped K."""
    ordered = sorted(chunks, key=_location_sort_key)
    return RetrievalResult(
        chunks=ordered[:clamp_retrieval_k(retrieval_k)],
        total_found=len(chunks),
        provider=provider,
    )


class ChunkRetriever:
    """Module-scoped retrieval over any VectorStore backend."""

    def __init__(self, store: VectorStore, max_attempts: int = 3, initial_delay_ms: int = 1000):
        self.store = store
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms

    async def retrieve(
        self,
        module_id: str,
        retrieval_k: Optional[int] = None,
        checkpoint: Optional[Callable[[str], None]] = None,
    ) -> RetrievalResult:
        """
        Fetch up to K chunks for a module.

        `insufficient` is a signal for the caller, not an error. Network errors
        are retried; once attempts are exhausted the last error propagates.
        """
        k = clamp_retrieval_k(retrieval_k)
        logger.info(f"Retrieving chunks for module {module_id} (K={k}, provider={self.store.provider})")

        try:
            found = await with_retry(
                lambda: asyncio.to_thread(self.store.fetch_module_chunks, module_id),
                operation="vector_retrieve",
                max_attempts=self.max_attempts,
                initial_delay_ms=self.initial_delay_ms,
                checkpoint=checkpoint,
            )
        except Exception:
            RETRIEVALS.labels(provider=self.store.provider, outcome="error").inc()
            raise

        result = select_chunks(found, k, self.store.provider)

        outcome = "insufficient" if result.insufficient else "ok"
        RETRIEVALS.labels(provider=self.store.provider, outcome=outcome).inc()
        if result.insufficient:
            logger.warning(
                f"Module {module_id} has only {result.total_found} chunks "
                f"(minimum {MIN_CHUNKS_FOR_GENERATION})"
            )
        else:
            logger.info(f"Retrieved {len(result.chunks)}/{result.total_found} chunks for module {module_id}")
        return result
