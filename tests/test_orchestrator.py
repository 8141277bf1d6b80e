"""
End-to-end generation runs through the service and orchestrator.
Mock mode runs the full pipeline offline; fake chat clients cover failures.
"""

import asyncio
import json
import threading

import pytest

from clients.embeddings_client import MockEmbeddingProvider
from clients.vector_store import MemoryVectorStore
from models.flashcard_models import GenerateFromModuleRequest, ModuleContentRequest, RunStatus
from services.flashcard_service import FlashcardService
from services.job_queue import JobQueue, build_job_status
from services.orchestrator import determine_status, parse_module_id
from utils.config import PipelineConfig
from utils.exceptions import GenerationCancelledError, ValidationError
from utils.job_logger import JobLogger
from conftest import COURSE_SLUG, MODULE_ID, FakeChatClient, make_chunks


def _generate(service, settings=None):
    async def scenario():
        job = await service.enqueue_generation(
            GenerateFromModuleRequest(courseSlug=COURSE_SLUG, moduleIndex=0, settings=settings or {})
        )
        return await service.jobs.wait_for(job.job_id, timeout=10)

    return asyncio.run(scenario())


def _fake_llm_service(mock_config, llm):
    config = PipelineConfig(
        vector_db_provider="memory",
        embedding_provider="mock",
        data_dir=mock_config.data_dir,
        course_catalog_path=mock_config.course_catalog_path,
    )
    return FlashcardService(
        config,
        store=MemoryVectorStore(),
        embedder=MockEmbeddingProvider("mock-hash-embedding", 64),
        llm=llm,
        job_queue=JobQueue(mirror_to_redis=False),
        retry_delay_ms=0,
    )


def test_parse_module_id():
    request = parse_module_id("intro-pm::mbaModules::3")
    assert (request.courseSlug, request.moduleIndex) == ("intro-pm", 3)
    with pytest.raises(ValidationError):
        parse_module_id("intro-pm/module-3")


def test_determine_status():
    assert determine_status(0, 10, False, 0) == RunStatus.FAILED
    assert determine_status(10, 10, False, 0) == RunStatus.SUCCESS
    assert determine_status(10, 10, True, 0) == RunStatus.PARTIAL
    assert determine_status(10, 10, False, 1) == RunStatus.PARTIAL
    assert determine_status(7, 10, False, 0) == RunStatus.PARTIAL


def test_mock_run_end_to_end(service):
    asyncio.run(service.ingest_chunks(MODULE_ID, make_chunks(count=6)))

    job = _generate(service)

    assert job.state == "completed"
    status = build_job_status(job)
    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert status["result"]["status"] in ("SUCCESS", "PARTIAL")
    assert status["result"]["generated_count"] >= 1
    assert status["result"]["deck_id"].startswith(f"deck_{MODULE_ID}_")

    deck = service.deck_store.require_deck(MODULE_ID)
    assert deck.deck_id == status["result"]["deck_id"]
    assert len(deck.cards) == status["result"]["generated_count"]
    for card in deck.cards:
        assert card.card_id.startswith(f"{MODULE_ID}::C")
        assert card.evidence
        assert len(card.answer.split()) <= 40
        assert len(card.answer) <= 300

    logs = service.get_job_logs(job.job_id)
    assert logs["status"] == "completed"
    assert {"stage_a", "stage_b"} <= set(logs["raw_outputs"])
    assert [s["step"] for s in logs["steps"]][:2] == ["content_fetch", "retrieval"]


def test_too_few_chunks_needs_more_content(service):
    async def scenario():
        await service.ingest_chunks(MODULE_ID, make_chunks(count=3))
        job = await service.enqueue_generation(GenerateFromModuleRequest(courseSlug=COURSE_SLUG, moduleIndex=0))
        job = await service.jobs.wait_for(job.job_id, timeout=10)
        enrichment_id = job.result["warnings"][1].split()[2]
        return job, await service.jobs.wait_for(enrichment_id, timeout=10)

    job, enrichment = asyncio.run(scenario())

    assert job.state == "completed"
    assert job.result["status"] == "NEED_MORE_CONTENT"
    assert job.result["generated_count"] == 0
    assert service.deck_store.get_deck(MODULE_ID) is None
    assert "Only 3 chunks available" in job.result["warnings"][0]

    assert enrichment.state == "completed"
    # Only the kickoff video carries a transcript in the catalog
    assert enrichment.result["chunks_upserted"] == 1
    assert {item["type"] for item in enrichment.result["pending_sources"]} == {"document", "recording"}


def test_sandbox_enrichment_keeps_sandbox_catalog(service):
    draft_module = "draft-course::modules::0"

    async def scenario():
        await service.ingest_chunks(draft_module, make_chunks(module_id=draft_module, count=2))
        job = await service.enqueue_generation(
            GenerateFromModuleRequest(courseSlug="draft-course", moduleIndex=0, isSandbox=True)
        )
        job = await service.jobs.wait_for(job.job_id, timeout=10)
        enrichment_id = job.result["warnings"][1].split()[2]
        return job, await service.jobs.wait_for(enrichment_id, timeout=10)

    job, enrichment = asyncio.run(scenario())

    assert job.result["status"] == "NEED_MORE_CONTENT"
    assert enrichment.data["isSandbox"] is True
    assert enrichment.state == "completed"
    assert enrichment.result["module_id"] == draft_module


def test_enrichment_is_not_queued_twice_for_one_module(service):
    async def scenario():
        content = service.fetcher.fetch_module_content(ModuleContentRequest(courseSlug=COURSE_SLUG, moduleIndex=0))
        first = await service.enqueue_enrichment(content, [])
        second = await service.enqueue_enrichment(content, [])
        await service.jobs.wait_for(first, timeout=10)
        third = await service.enqueue_enrichment(content, [])
        await service.jobs.wait_for(third, timeout=10)
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert first == second
    assert third != first


def test_invalid_stage_b_json_fails_the_job(mock_config):
    stage_a = {
        "module_summary": [{"point": "Process groups structure a project", "supports": []}],
        "key_topics": [{"topic": "Process groups", "supports": []}],
    }
    llm = FakeChatClient([stage_a, "{this is not json"])
    service = _fake_llm_service(mock_config, llm)
    asyncio.run(service.ingest_chunks(MODULE_ID, make_chunks(count=6)))

    job = _generate(service)

    assert job.state == "failed"
    assert job.failed_reason.startswith("Stage B: invalid JSON response from LLM")
    assert service.deck_store.get_deck(MODULE_ID) is None
    logs = service.get_job_logs(job.job_id)
    assert logs["status"] == "failed"
    assert logs["raw_outputs"]["stage_b"] == "{this is not json"


def test_stage_a_garbage_still_produces_deck(mock_config):
    cards = [
        {
            "question": "What are the five project process groups?",
            "answer": "Initiating, planning, executing, monitoring and closing.",
            "evidence_quote": "The five process groups are initiating, planning, executing, monitoring and closing.",
            "bloom_level": "Remember",
            "difficulty": "easy",
        }
    ]
    llm = FakeChatClient(["not json", {"cards": cards}])
    service = _fake_llm_service(mock_config, llm)
    asyncio.run(service.ingest_chunks(MODULE_ID, make_chunks(count=6)))

    job = _generate(service, settings={"target_card_count": 1,
                                       "difficulty_distribution": {"easy": 1, "medium": 0, "hard": 0},
                                       "min_higher_order_bloom": 0})

    assert job.state == "completed"
    assert job.result["status"] == "SUCCESS"
    assert job.result["warnings"][0].startswith("Stage A summary unavailable")
    assert service.deck_store.require_deck(MODULE_ID).stage_a_output.degraded is True


def test_cancelled_run_raises(service):
    event = asyncio.Event()
    event.set()
    with pytest.raises(GenerationCancelledError) as exc:
        asyncio.run(service.orchestrator.process_module(
            ModuleContentRequest(courseSlug=COURSE_SLUG, moduleIndex=0),
            cancel_event=event,
        ))
    assert exc.value.step == "content_fetch"


def test_prepared_chunk_file_skips_vector_store(service, mock_config):
    chunks_dir = mock_config.data_dir / "chunks"
    chunks_dir.mkdir(parents=True)
    payload = {"chunks": [c.model_dump(mode="json") for c in make_chunks(count=6)]}
    (chunks_dir / "intro-pm__modules__0.json").write_text(json.dumps(payload))

    result = asyncio.run(service.orchestrator.process_module(
        ModuleContentRequest(courseSlug=COURSE_SLUG, moduleIndex=0)
    ))

    assert result.status in (RunStatus.SUCCESS, RunStatus.PARTIAL)
    assert result.metrics.chunks_retrieved == 6
    assert result.metrics.api_calls == 2
    assert result.module_id == MODULE_ID


def test_unknown_module_fails_run(service):
    result = asyncio.run(service.orchestrator.process_module(
        ModuleContentRequest(courseSlug=COURSE_SLUG, moduleIndex=9)
    ))
    assert result.status == RunStatus.FAILED
    assert "Module not found" in result.error_message


def test_missing_fields_rejected(service):
    with pytest.raises(ValidationError) as exc:
        asyncio.run(service.enqueue_generation(GenerateFromModuleRequest(courseSlug=COURSE_SLUG)))
    assert exc.value.context["missing"] == ["moduleIndex"]

    with pytest.raises(ValidationError) as exc:
        asyncio.run(service.enqueue_generation(
            GenerateFromModuleRequest(courseSlug=COURSE_SLUG, moduleIndex=0, settings={"target_card_count": 99})
        ))
    assert exc.value.error_code == "INVALID_SETTINGS"


class ThreadRecordingJobLogger(JobLogger):
    def __init__(self, data_dir):
        super().__init__(data_dir)
        self.threads = []

    def log(self, job_id, step, message, level="info", **details):
        self.threads.append(threading.get_ident())
        return super().log(job_id, step, message, level, **details)

    def store_raw_output(self, job_id, stage, raw_text):
        self.threads.append(threading.get_ident())
        return super().store_raw_output(job_id, stage, raw_text)


def test_job_log_writes_stay_off_the_event_loop(service, mock_config):
    recorder = ThreadRecordingJobLogger(mock_config.data_dir)
    recorder.start("job-threads", MODULE_ID)
    service.orchestrator.job_logger = recorder

    async def scenario():
        await service.ingest_chunks(MODULE_ID, make_chunks(count=6))
        result = await service.orchestrator.process_module(
            ModuleContentRequest(courseSlug=COURSE_SLUG, moduleIndex=0), job_id="job-threads",
        )
        return result, threading.get_ident()

    result, loop_thread = asyncio.run(scenario())

    assert result.status in (RunStatus.SUCCESS, RunStatus.PARTIAL)
    assert recorder.threads
    assert loop_thread not in recorder.threads
    assert {"stage_a", "stage_b"} <= set(recorder.get("job-threads")["raw_outputs"])
