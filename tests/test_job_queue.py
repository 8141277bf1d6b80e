"""Job queue lifecycle and the public status vocabulary."""

import asyncio

import pytest

from clients import redis_client
from services.job_queue import (
    ORCHESTRATOR_QUEUE,
    TRANSCRIPTION_QUEUE,
    Job,
    JobQueue,
    build_job_status,
    normalize_result,
    to_external_status,
)
from utils.exceptions import GenerationCancelledError, NotFoundError, ValidationError


def _queue(handler):
    queue = JobQueue(mirror_to_redis=False)
    queue.register(ORCHESTRATOR_QUEUE, handler)
    return queue


def test_internal_states_map_to_public_vocabulary():
    assert to_external_status("waiting") == "pending"
    assert to_external_status("delayed") == "pending"
    assert to_external_status("active") == "active"
    assert to_external_status("completed") == "completed"
    assert to_external_status("failed") == "failed"
    assert to_external_status("stuck") == "pending"
    assert to_external_status(None) == "pending"


def test_normalize_result_fills_defaults():
    assert normalize_result(None) == {"generated_count": 0, "verified_count": 0, "deck_id": "", "warnings": []}
    normalized = normalize_result({"generated_count": 7, "warnings": None, "metrics": {"verification_rate": 0.5}})
    assert normalized["generated_count"] == 7
    assert normalized["warnings"] == []
    assert normalized["verification_rate"] == 0.5


def test_status_payload_shapes():
    completed = Job(job_id="j1", queue=ORCHESTRATOR_QUEUE, state="completed", result=None, finished_on=1700000000000)
    payload = build_job_status(completed)
    assert payload["status"] == "completed"
    assert payload["result"]["deck_id"] == ""
    assert payload["completed_at"].endswith("Z")
    assert "logs_url" not in payload
    assert build_job_status(completed, include_logs=True)["logs_url"] == "/api/flashcards/orchestrator/jobs/j1/logs"

    failed = Job(job_id="j2", queue=ORCHESTRATOR_QUEUE, state="failed")
    assert build_job_status(failed)["error"] == "Unknown error"

    delayed = Job(job_id="j3", queue=ORCHESTRATOR_QUEUE, state="delayed")
    payload = build_job_status(delayed)
    assert payload["status"] == "pending"
    assert "result" not in payload and "error" not in payload and "completed_at" not in payload


def test_handler_result_and_progress():
    async def handler(job, cancel_event, set_progress):
        set_progress(50)
        return {"generated_count": job.data["n"], "deck_id": "deck_x"}

    async def scenario():
        queue = _queue(handler)
        job = await queue.enqueue(ORCHESTRATOR_QUEUE, {"n": 3})
        return await queue.wait_for(job.job_id, timeout=5)

    job = asyncio.run(scenario())
    assert job.state == "completed"
    assert job.progress == 100
    assert build_job_status(job)["result"]["generated_count"] == 3


def test_handler_error_becomes_failed_reason():
    async def handler(job, cancel_event, set_progress):
        raise RuntimeError("Stage B: invalid JSON response from LLM")

    async def scenario():
        queue = _queue(handler)
        job = await queue.enqueue(ORCHESTRATOR_QUEUE, {})
        return await queue.wait_for(job.job_id, timeout=5)

    job = asyncio.run(scenario())
    assert build_job_status(job)["error"] == "Stage B: invalid JSON response from LLM"


def test_cancel_before_start_skips_handler():
    calls = []

    async def handler(job, cancel_event, set_progress):
        calls.append(job.job_id)
        return {}

    async def scenario():
        queue = _queue(handler)
        job = await queue.enqueue(ORCHESTRATOR_QUEUE, {})
        assert queue.cancel(job.job_id) is True
        return await queue.wait_for(job.job_id, timeout=5)

    job = asyncio.run(scenario())
    assert calls == []
    assert job.state == "failed"
    assert job.failed_reason == "Cancelled"


def test_cancellation_observed_by_handler():
    async def handler(job, cancel_event, set_progress):
        await cancel_event.wait()
        raise GenerationCancelledError("m::modules::0", "stage_b")

    async def scenario():
        queue = _queue(handler)
        job = await queue.enqueue(ORCHESTRATOR_QUEUE, {})
        await asyncio.sleep(0)
        queue.cancel(job.job_id)
        finished = await queue.wait_for(job.job_id, timeout=5)
        return queue, finished

    queue, job = asyncio.run(scenario())
    assert job.failed_reason == "Cancelled"
    assert queue.cancel(job.job_id) is False


def test_delayed_job_reports_pending_until_it_runs():
    async def handler(job, cancel_event, set_progress):
        return {"deck_id": "d"}

    async def scenario():
        queue = _queue(handler)
        job = await queue.enqueue(ORCHESTRATOR_QUEUE, {}, delay_ms=50)
        before = build_job_status(await queue.require_job(job.job_id))["status"]
        after = await queue.wait_for(job.job_id, timeout=5)
        return before, after

    before, after = asyncio.run(scenario())
    assert before == "pending"
    assert after.state == "completed"


def test_lookup_errors():
    queue = JobQueue(mirror_to_redis=False)
    with pytest.raises(ValidationError):
        asyncio.run(queue.require_job("  "))
    with pytest.raises(NotFoundError) as exc:
        asyncio.run(queue.require_job("missing"))
    assert exc.value.message == "Job not found"


def test_unregistered_queue_rejected():
    queue = JobQueue(mirror_to_redis=False)
    with pytest.raises(ValidationError):
        asyncio.run(queue.enqueue(TRANSCRIPTION_QUEUE, {}))
    with pytest.raises(ValidationError):
        queue.register("unknown", lambda *a: None)


def test_finished_jobs_release_bookkeeping():
    async def handler(job, cancel_event, set_progress):
        return {"deck_id": job.data["n"]}

    async def scenario():
        queue = JobQueue(mirror_to_redis=False, retain_finished=5)
        queue.register(ORCHESTRATOR_QUEUE, handler)
        jobs = [await queue.enqueue(ORCHESTRATOR_QUEUE, {"n": str(n)}) for n in range(20)]
        await asyncio.gather(*list(queue._tasks.values()))
        return queue, jobs

    queue, jobs = asyncio.run(scenario())
    assert queue._tasks == {}
    assert queue._cancel_events == {}
    assert len(queue._jobs) == 5
    assert all(job.state == "completed" for job in jobs)


def test_find_active_ignores_finished_jobs():
    async def handler(job, cancel_event, set_progress):
        await cancel_event.wait()
        return {}

    async def scenario():
        queue = _queue(handler)
        queue.register(TRANSCRIPTION_QUEUE, handler)
        job = await queue.enqueue(TRANSCRIPTION_QUEUE, {"module_id": "m::modules::0"})
        found = queue.find_active(TRANSCRIPTION_QUEUE, module_id="m::modules::0")
        other = queue.find_active(TRANSCRIPTION_QUEUE, module_id="m::modules::1")
        queue.cancel(job.job_id)
        await queue.wait_for(job.job_id, timeout=5)
        after = queue.find_active(TRANSCRIPTION_QUEUE, module_id="m::modules::0")
        return job, found, other, after

    job, found, other, after = asyncio.run(scenario())
    assert found is job
    assert other is None
    assert after is None


def test_progress_updates_reach_redis(monkeypatch):
    saved = []

    async def save_job(record):
        saved.append((record["state"], record["progress"]))
        return True

    monkeypatch.setattr(redis_client, "save_job", save_job)

    async def handler(job, cancel_event, set_progress):
        set_progress(40)
        await asyncio.sleep(0.01)
        return {}

    async def scenario():
        queue = JobQueue(mirror_to_redis=True)
        queue.register(ORCHESTRATOR_QUEUE, handler)
        job = await queue.enqueue(ORCHESTRATOR_QUEUE, {})
        return await queue.wait_for(job.job_id, timeout=5)

    asyncio.run(scenario())
    assert ("active", 40) in saved
    assert saved[-1] == ("completed", 100)


def test_shutdown_cancels_unfinished_jobs():
    async def handler(job, cancel_event, set_progress):
        await cancel_event.wait()
        raise GenerationCancelledError("m::modules::0", "stage_a")

    async def scenario():
        queue = _queue(handler)
        job = await queue.enqueue(ORCHESTRATOR_QUEUE, {})
        await asyncio.sleep(0)
        await queue.shutdown()
        return queue, job

    queue, job = asyncio.run(scenario())
    assert job.failed_reason == "Cancelled"
    assert queue._tasks == {}
