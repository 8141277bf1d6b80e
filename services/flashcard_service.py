"""
Flashcard service: wires the pipeline together from a PipelineConfig and
exposes the operations the API routes need (enqueueing, job status, deck and
card reads, review actions, chunk ingestion).
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from clients.embeddings_client import EmbeddingProvider, get_embedding_provider
from clients.llm_client import ChatClient, get_llm_client
from clients.vector_store import VectorStore, get_vector_store
from models.flashcard_models import (
    Chunk,
    GenerateFromModuleRequest,
    ModuleContent,
    ModuleContentRequest,
    OrchestratorSettings,
    ReviewStatus,
    RunStatus,
)
from services.chunk_retriever import ChunkRetriever
from services.chunk_upserter import ChunkUpserter
from services.content_fetcher import ContentFetcher
from services.deck_store import DeckStore
from services.enrichment import ContentEnricher
from services.job_queue import ORCHESTRATOR_QUEUE, TRANSCRIPTION_QUEUE, Job, JobQueue, build_job_status
from services.orchestrator import FlashcardOrchestrator, parse_module_id
from services.stage_a import StageASummarizer
from services.stage_b import FlashcardGenerator
from utils.config import PipelineConfig
from utils.exceptions import ConfigurationError, GenerationError, NotFoundError, ValidationError
from utils.job_logger import JobLogger

logger = logging.getLogger(__name__)


class FlashcardService:
    """Pipeline wiring plus the route-facing operations."""

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[VectorStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
        llm: Optional[ChatClient] = None,
        job_queue: Optional[JobQueue] = None,
        retry_delay_ms: int = 1000,
    ):
        self.config = config
        self.store = store or get_vector_store(config)
        self.embedder = embedder or get_embedding_provider(config)
        if llm is None and not config.mock_mode:
            try:
                llm = get_llm_client(config)
            except ConfigurationError as e:
                # Stage A degrades and Stage B fails the run with this message
                logger.error(f"LLM client unavailable: {e.message}")
        self.llm = llm

        attempts = config.max_retries
        self.fetcher = ContentFetcher(config.course_catalog_path, config.data_dir)
        self.retriever = ChunkRetriever(self.store, max_attempts=attempts, initial_delay_ms=retry_delay_ms)
        self.upserter = ChunkUpserter(self.store, self.embedder, max_attempts=attempts, initial_delay_ms=retry_delay_ms)
        self.deck_store = DeckStore(config.data_dir, preserve_approved=config.preserve_approved_decks)
        self.job_logger = JobLogger(config.data_dir)
        self.enricher = ContentEnricher(self.fetcher, self.upserter)
        self.stage_a = StageASummarizer(
            llm=self.llm,
            max_chars=config.stage_a_max_chars,
            mock_mode=config.mock_mode,
            max_attempts=attempts,
            initial_delay_ms=retry_delay_ms,
        )
        self.stage_b = FlashcardGenerator(
            llm=self.llm,
            mock_mode=config.mock_mode,
            max_attempts=attempts,
            initial_delay_ms=retry_delay_ms,
        )
        self.orchestrator = FlashcardOrchestrator(
            fetcher=self.fetcher,
            retriever=self.retriever,
            stage_a=self.stage_a,
            stage_b=self.stage_b,
            deck_store=self.deck_store,
            job_logger=self.job_logger,
            enqueue_enrichment=self.enqueue_enrichment,
            default_model="mock" if config.mock_mode else config.llm_model,
        )

        self.jobs = job_queue or JobQueue()
        self.jobs.register(ORCHESTRATOR_QUEUE, self._run_generation_job)
        self.jobs.register(TRANSCRIPTION_QUEUE, self._run_transcription_job)
        logger.info(f"Flashcard service ready: {config.summary()}")

    # Jobs

    def _settings_from(self, raw: Optional[Dict[str, Any]]) -> OrchestratorSettings:
        try:
            settings = OrchestratorSettings.model_validate(raw or {})
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first["loc"])
            raise ValidationError(f"Invalid settings.{field}: {first['msg']}", error_code="INVALID_SETTINGS")
        if self.config.mock_mode:
            settings.mock_mode = True
        return settings

    async def enqueue_generation(self, request: GenerateFromModuleRequest) -> Job:
        missing = [name for name in ("courseSlug", "moduleIndex") if getattr(request, name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required field(s): {', '.join(missing)}",
                error_code="MISSING_FIELDS",
                context={"missing": missing},
            )
        if request.moduleIndex < 0:
            raise ValidationError("moduleIndex must be >= 0")
        settings = self._settings_from(request.settings)
        return await self.jobs.enqueue(ORCHESTRATOR_QUEUE, {
            "courseSlug": request.courseSlug,
            "moduleIndex": request.moduleIndex,
            "isSandbox": request.isSandbox,
            "settings": settings.model_dump(mode="json"),
        })

    async def _run_generation_job(self, job: Job, cancel_event: asyncio.Event, set_progress) -> Dict[str, Any]:
        data = job.data
        request = ModuleContentRequest(
            courseSlug=data["courseSlug"],
            moduleIndex=data["moduleIndex"],
            isSandbox=data.get("isSandbox", False),
        )
        settings = OrchestratorSettings.model_validate(data.get("settings") or {})
        await asyncio.to_thread(
            self.job_logger.start,
            job.job_id,
            f"{request.courseSlug}/module-{request.moduleIndex}",
            data.get("settings"),
        )

        try:
            result = await self.orchestrator.process_module(
                request,
                settings=settings,
                job_id=job.job_id,
                cancel_event=cancel_event,
                on_progress=set_progress,
            )
        except Exception as e:
            await asyncio.to_thread(self.job_logger.fail, job.job_id, getattr(e, "message", str(e)))
            raise

        payload = result.model_dump(mode="json")
        if result.status == RunStatus.FAILED:
            await asyncio.to_thread(self.job_logger.fail, job.job_id, result.error_message or "Generation failed")
            raise GenerationError(result.error_message or "Generation failed", context={"module_id": result.module_id})
        await asyncio.to_thread(self.job_logger.complete, job.job_id, payload)
        return payload

    async def enqueue_enrichment(
        self,
        content: ModuleContent,
        pending: List[Dict[str, str]],
        is_sandbox: bool = False,
    ) -> Optional[str]:
        request = parse_module_id(content.module_id, is_sandbox)
        # One enrichment per module at a time
        existing = self.jobs.find_active(
            TRANSCRIPTION_QUEUE,
            module_id=content.module_id,
            isSandbox=request.isSandbox,
        )
        if existing is not None:
            logger.info(f"Enrichment for {content.module_id} already queued as job {existing.job_id}")
            return existing.job_id
        job = await self.jobs.enqueue(TRANSCRIPTION_QUEUE, {
            "module_id": content.module_id,
            "courseSlug": request.courseSlug,
            "moduleIndex": request.moduleIndex,
            "isSandbox": request.isSandbox,
            "media": pending,
        })
        return job.job_id

    async def _run_transcription_job(self, job: Job, cancel_event: asyncio.Event, set_progress) -> Dict[str, Any]:
        data = job.data
        request = ModuleContentRequest(
            courseSlug=data["courseSlug"],
            moduleIndex=data["moduleIndex"],
            isSandbox=data.get("isSandbox", False),
        )
        set_progress(10)
        return await self.enricher.enrich_module(request, job_id=job.job_id)

    async def get_job_status(self, job_id: str, include_logs: bool = False) -> Dict[str, Any]:
        job = await self.jobs.require_job(job_id)
        return build_job_status(job, include_logs=include_logs)

    def get_job_logs(self, job_id: str) -> Dict[str, Any]:
        logs = self.job_logger.get(job_id)
        if logs is None:
            raise NotFoundError("Job logs not found", error_code="JOB_LOGS_NOT_FOUND")
        return logs

    def cancel_job(self, job_id: str) -> bool:
        return self.jobs.cancel(job_id)

    # Decks and cards

    def get_module_flashcards(self, module_id: str, include_unverified: bool = False, limit: Optional[int] = None) -> Dict[str, Any]:
        if not module_id or not module_id.strip():
            raise ValidationError("module_id is required", error_code="MISSING_MODULE_ID")
        deck = self.deck_store.require_deck(module_id)

        cards = deck.cards if include_unverified else [c for c in deck.cards if c.verified]
        if limit is not None:
            cards = cards[:limit]

        return {
            "success": True,
            "module_id": deck.module_id,
            "deck_id": deck.deck_id,
            "module_title": deck.module_title,
            "cards": [c.model_dump(mode="json") for c in cards],
            "card_count": len(cards),
            "total_count": len(deck.cards),
            "verification_rate": round(deck.verification_rate, 4),
            "generated_at": deck.generation_metadata.timestamp.isoformat(),
            "warnings": deck.warnings,
            "review_status": deck.review_status.value,
            "version": deck.version,
        }

    def get_card(self, card_id: str) -> Dict[str, Any]:
        if not card_id or not card_id.strip():
            raise ValidationError("card_id is required", error_code="MISSING_CARD_ID")
        deck, card = self.deck_store.find_card(card_id)
        payload = card.model_dump(mode="json")
        payload["module_id"] = deck.module_id
        payload["deck_id"] = deck.deck_id
        return payload

    def get_deck_history(self, module_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "deck_id": deck.deck_id,
                "version": deck.version,
                "review_status": deck.review_status.value,
                "card_count": len(deck.cards),
                "verification_rate": round(deck.verification_rate, 4),
                "created_at": deck.created_at.isoformat(),
            }
            for deck in self.deck_store.list_history(module_id)
        ]

    def review_queue(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.deck_store.review_queue(limit)

    async def approve_card(self, card_id: str, reviewer: str) -> Dict[str, Any]:
        card = await self.deck_store.approve_card(card_id, reviewer)
        return card.model_dump(mode="json")

    async def edit_card(self, card_id: str, question=None, answer=None, rationale=None) -> Dict[str, Any]:
        card = await self.deck_store.update_card(card_id, question=question, answer=answer, rationale=rationale)
        return card.model_dump(mode="json")

    async def review_deck(self, module_id: str, reviewer: str, status: ReviewStatus) -> Dict[str, Any]:
        deck = await self.deck_store.set_review_status(module_id, reviewer, status)
        return {
            "deck_id": deck.deck_id,
            "review_status": deck.review_status.value,
            "reviewed_by": deck.reviewed_by,
            "updated_at": deck.updated_at.isoformat(),
        }

    # Content

    async def ingest_chunks(self, module_id: str, chunks: List[Chunk]) -> int:
        return await self.upserter.upsert_chunks(module_id, chunks)

    def list_course_modules(self, course_slug: str, is_sandbox: bool = False) -> List[Dict[str, Any]]:
        return self.fetcher.list_course_modules(course_slug, is_sandbox)

    def list_courses(self, include_sandbox: bool = False) -> List[Dict[str, Any]]:
        return self.fetcher.list_all_courses(include_sandbox)


_pipeline: Optional[FlashcardService] = None


def get_pipeline() -> FlashcardService:
    """Lazily build the process-wide service from the environment."""
    global _pipeline
    if _pipeline is None:
        _pipeline = FlashcardService(PipelineConfig.from_env())
    return _pipeline


def configure_pipeline(service: Optional[FlashcardService]) -> None:
    """Install (or clear, with None) the process-wide service."""
    global _pipeline
    _pipeline = service


async def shutdown_pipeline() -> None:
    """Cancel in-flight jobs and wait for them to settle."""
    if _pipeline is not None:
        logger.info("Shutting down flashcard job queue")
        await _pipeline.jobs.shutdown()
