"""
Enrichment (transcription queue) work.

When a module has too few chunks the orchestrator enqueues a job here. The
job re-reads the module from the catalog, chunks every source that already
carries text or a transcript, and upserts those chunks so the next
generation run has enough grounding material. Sources with no text yet are
reported back as still pending.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from models.flashcard_models import ModuleContentRequest
from services.chunk_upserter import ChunkUpserter
from services.content_fetcher import ContentFetcher, prepare_chunks_from_content, unprocessed_media

logger = logging.getLogger(__name__)


class ContentEnricher:

    def __init__(self, fetcher: ContentFetcher, upserter: ChunkUpserter):
        self.fetcher = fetcher
        self.upserter = upserter

    async def enrich_module(self, request: ModuleContentRequest, job_id: Optional[str] = None) -> Dict[str, Any]:
        content = await asyncio.to_thread(self.fetcher.fetch_module_content, request)
        chunks = prepare_chunks_from_content(content)
        written = await self.upserter.upsert_chunks(content.module_id, chunks) if chunks else 0
        pending = unprocessed_media(content)

        logger.info(
            f"[Enrichment] {content.module_id}: upserted {written} chunks, "
            f"{len(pending)} sources still need transcription/extraction"
            + (f" (job {job_id})" if job_id else "")
        )
        return {
            "module_id": content.module_id,
            "chunks_upserted": written,
            "pending_sources": pending,
        }
