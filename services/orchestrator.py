"""
Flashcard orchestrator.

One module run: content fetch -> chunk retrieval -> Stage A -> Stage B
(with evidence matching) -> post-processing -> deck persistence.

Runs return a ModuleResult rather than raising, except for cancellation,
which propagates as GenerationCancelledError so the job layer can mark the
job failed with reason "Cancelled".
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from models.flashcard_models import (
    ModuleContent,
    ModuleContentRequest,
    ModuleResult,
    OrchestratorSettings,
    RunMetrics,
    RunStatus,
)
from services.chunk_retriever import ChunkRetriever, RetrievalResult, select_chunks
from services.content_fetcher import ContentFetcher, unprocessed_media
from services.deck_store import DeckStore, assemble_deck
from services.post_processing import post_process_cards
from services.stage_a import StageASummarizer
from services.stage_b import FlashcardGenerator
from utils.exceptions import FlashcardError, GenerationCancelledError, ValidationError
from utils.job_logger import JobLogger, logs_url_for
from utils.metrics import MODULE_RUNS

logger = logging.getLogger(__name__)

EnrichmentCallback = Callable[[ModuleContent, List[Dict[str, str]], bool], Awaitable[Optional[str]]]


def parse_module_id(module_id: str, is_sandbox: bool = False) -> ModuleContentRequest:
    """'{courseSlug}::{modules|mbaModules}::{index}' -> ModuleContentRequest"""
    parts = module_id.split("::")
    if len(parts) != 3 or parts[1] not in ("modules", "mbaModules") or not parts[2].isdigit():
        raise ValidationError(
            f"Invalid module_id {module_id!r}; expected courseSlug::modules::index",
            error_code="INVALID_MODULE_ID",
        )
    return ModuleContentRequest(courseSlug=parts[0], moduleIndex=int(parts[2]), isSandbox=is_sandbox)


def determine_status(generated: int, target: int, difficulty_imbalanced: bool, flagged: int) -> RunStatus:
    if generated == 0:
        return RunStatus.FAILED
    if difficulty_imbalanced or flagged > 0 or generated < target:
        return RunStatus.PARTIAL
    return RunStatus.SUCCESS


class FlashcardOrchestrator:
    """Coordinates one module-generation run end to end."""

    def __init__(
        self,
        fetcher: ContentFetcher,
        retriever: ChunkRetriever,
        stage_a: StageASummarizer,
        stage_b: FlashcardGenerator,
        deck_store: DeckStore,
        job_logger: Optional[JobLogger] = None,
        enqueue_enrichment: Optional[EnrichmentCallback] = None,
        default_model: str = "",
    ):
        self.fetcher = fetcher
        self.retriever = retriever
        self.stage_a = stage_a
        self.stage_b = stage_b
        self.deck_store = deck_store
        self.job_logger = job_logger
        self.enqueue_enrichment = enqueue_enrichment
        self.default_model = default_model

    async def process_module(
        self,
        request: ModuleContentRequest,
        settings: Optional[OrchestratorSettings] = None,
        job_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> ModuleResult:
        settings = settings or OrchestratorSettings()
        start = time.time()
        module_id = f"{request.courseSlug}/module-{request.moduleIndex}"
        state: Dict[str, Any] = {"api_calls": 0, "chunks_retrieved": 0}
        logs_url = logs_url_for(job_id) if job_id and self.job_logger else None

        def checkpoint(step: str) -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelledError(module_id, step)

        def progress(value: int) -> None:
            if on_progress:
                on_progress(value)

        # Job log writes are file I/O and run on worker threads
        async def log_step(step: str, message: str, level: str = "info", **details) -> None:
            if job_id and self.job_logger:
                await asyncio.to_thread(self.job_logger.log, job_id, step, message, level, **details)

        raw_outputs: Dict[str, str] = {}

        def store_raw(stage: str, raw_text: str) -> None:
            raw_outputs[stage] = raw_text

        async def flush_raw() -> None:
            while raw_outputs and job_id and self.job_logger:
                stage, raw_text = raw_outputs.popitem()
                await asyncio.to_thread(self.job_logger.store_raw_output, job_id, stage, raw_text)

        async def finish(status: RunStatus, **fields) -> ModuleResult:
            result = ModuleResult(
                module_id=module_id,
                status=status,
                logs_url=logs_url,
                completed_at=datetime.utcnow(),
                **fields,
            )
            result.metrics.time_ms = int((time.time() - start) * 1000)
            result.metrics.api_calls = state["api_calls"]
            result.metrics.chunks_retrieved = state["chunks_retrieved"]
            MODULE_RUNS.labels(status=status.value).inc()
            await flush_raw()
            await log_step("complete", f"Run finished with status {status.value}", warnings=result.warnings)
            logger.info(
                f"[Orchestrator] {module_id} finished {status.value} in {result.metrics.time_ms}ms: "
                f"{result.generated_count} cards, {result.verified_count} verified"
            )
            return result

        content: Optional[ModuleContent] = None
        try:
            # 1. Content descriptor
            checkpoint("content_fetch")
            content = await asyncio.to_thread(self.fetcher.fetch_module_content, request)
            module_id = content.module_id
            await log_step("content_fetch", f"Resolved {module_id}: {len(content.documents)} documents, "
                                            f"{content.media_count} media items")
            progress(10)

            # 2. Chunks: pre-extracted local file first, vector store otherwise
            checkpoint("retrieval")
            retrieval = await self._retrieve(module_id, settings.retrieval_K, checkpoint, state)
            state["chunks_retrieved"] = len(retrieval.chunks)
            await log_step("retrieval", f"Retrieved {len(retrieval.chunks)}/{retrieval.total_found} chunks "
                                        f"from {retrieval.provider}")
            progress(25)

            # 3. Never generate from too little grounding evidence
            if retrieval.insufficient:
                warnings = [
                    f"Only {retrieval.total_found} chunks available for {module_id}; "
                    f"at least 4 are needed to generate flashcards"
                ]
                enrichment_job = await self._request_enrichment(content, request.isSandbox)
                if enrichment_job:
                    warnings.append(f"Enrichment job {enrichment_job} enqueued for unprocessed media")
                return await finish(
                    RunStatus.NEED_MORE_CONTENT,
                    course_id=content.course_id,
                    module_title=content.module_title,
                    warnings=warnings,
                )

            chunks = retrieval.chunks
            force_mock = settings.mock_mode

            # 4. Stage A (tolerant)
            checkpoint("stage_a")
            state["api_calls"] += 1
            stage_a_output = await self.stage_a.run(
                module_id,
                content.module_title,
                content.course_id,
                chunks,
                outline_headings=content.headings,
                checkpoint=checkpoint,
                on_raw_output=store_raw,
                force_mock=force_mock,
            )
            await flush_raw()
            await log_step("stage_a", f"{len(stage_a_output.module_summary)} summary points, "
                                      f"{len(stage_a_output.key_topics)} topics", degraded=stage_a_output.degraded)
            progress(45)

            # Stage B (strict)
            checkpoint("stage_b")
            distribution = settings.difficulty_distribution.model_dump()
            model = settings.model or self.default_model
            state["api_calls"] += 1
            stage_b_output = await self.stage_b.run(
                module_id,
                content.module_title,
                chunks,
                stage_a_output,
                target_card_count=settings.target_card_count,
                difficulty_distribution=distribution,
                temperature=settings.temperature,
                model=settings.model,
                checkpoint=checkpoint,
                on_raw_output=store_raw,
                force_mock=force_mock,
            )
            await flush_raw()
            await log_step("stage_b", f"{stage_b_output.generated_count} draft cards",
                           warnings=stage_b_output.warnings)
            progress(75)

            processed = post_process_cards(
                stage_b_output.cards,
                distribution,
                dedupe_threshold=settings.dedupe_threshold,
                min_higher_order_bloom=settings.min_higher_order_bloom,
            )
            warnings = list(stage_b_output.warnings) + processed.warnings
            if stage_a_output.degraded:
                warnings.insert(0, "Stage A summary unavailable; generated from minimal fallback summary")
            if len(processed.cards) < settings.target_card_count:
                warnings.append(f"Generated {len(processed.cards)} cards, below target of {settings.target_card_count}")

            cards = processed.cards
            if not cards:
                return await finish(
                    RunStatus.FAILED,
                    course_id=content.course_id,
                    module_title=content.module_title,
                    warnings=warnings,
                    error_message="No flashcards were generated",
                )

            # 5. Persist
            checkpoint("persist")
            deck = assemble_deck(
                module_id,
                content.course_id,
                content.module_title,
                cards,
                stage_a_output,
                warnings,
                model=model or "mock",
                temperature=settings.temperature,
            )
            outcome = await self.deck_store.save_deck(deck)
            if not outcome.is_current:
                warnings.append(
                    f"Current deck for {module_id} is approved; new deck stored as pending version {outcome.deck.version}"
                )
            await log_step("persist", f"Saved deck {outcome.deck.deck_id} as {outcome.placement} v{outcome.deck.version}")
            progress(90)

            flagged = sum(1 for card in cards if card.review_required)
            verified = len(cards) - flagged
            status = determine_status(len(cards), settings.target_card_count, processed.difficulty_imbalanced, flagged)
            result = await finish(
                status,
                course_id=content.course_id,
                module_title=content.module_title,
                generated_count=len(cards),
                verified_count=verified,
                deck_id=outcome.deck.deck_id,
                warnings=warnings,
            )
            result.metrics.verification_rate = round(verified / len(cards), 4)
            progress(100)
            return result

        except GenerationCancelledError:
            MODULE_RUNS.labels(status="CANCELLED").inc()
            await flush_raw()
            await log_step("cancelled", "Run cancelled", level="warning")
            logger.warning(f"[Orchestrator] Run for {module_id} cancelled")
            raise
        except FlashcardError as e:
            logger.error(f"[Orchestrator] Run for {module_id} failed: {e.message}")
            await log_step("error", e.message, level="error", error_code=e.error_code)
            return await finish(
                RunStatus.FAILED,
                course_id=content.course_id if content else request.courseSlug,
                module_title=content.module_title if content else "",
                error_message=e.message,
            )
        except Exception as e:
            logger.exception(f"[Orchestrator] Unexpected error for {module_id}: {e}")
            await log_step("error", str(e), level="error")
            return await finish(
                RunStatus.FAILED,
                course_id=content.course_id if content else request.courseSlug,
                module_title=content.module_title if content else "",
                error_message=str(e) or e.__class__.__name__,
            )

    async def _retrieve(self, module_id, retrieval_k, checkpoint, state) -> RetrievalResult:
        prepared = await asyncio.to_thread(self.fetcher.load_prepared_chunks, module_id)
        if prepared is not None:
            return select_chunks(prepared, retrieval_k, "local")
        state["api_calls"] += 1
        return await self.retriever.retrieve(module_id, retrieval_k, checkpoint=checkpoint)

    async def _request_enrichment(self, content: ModuleContent, is_sandbox: bool = False) -> Optional[str]:
        if self.enqueue_enrichment is None:
            return None
        pending = unprocessed_media(content)
        try:
            return await self.enqueue_enrichment(content, pending, is_sandbox)
        except FlashcardError as e:
            logger.warning(f"[Orchestrator] Could not enqueue enrichment for {content.module_id}: {e.message}")
            return None
