"""
In-process job queue with Redis mirroring.

Two queues run work as asyncio tasks: `orchestrator` (module generation) and
`transcription` (enrichment). Job records live in memory and are mirrored to
Redis when REDIS_URL is reachable, so status polling survives on any worker
that shares the Redis instance.

Internal states (waiting/active/completed/failed/delayed) never leave this
module: callers get the external vocabulary via build_job_status().

Only the most recent `retain_finished` terminal jobs stay in memory; older
ones are answered from the Redis mirror.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from clients import redis_client
from models.flashcard_models import ExternalJobStatus, JobState
from utils.exceptions import GenerationCancelledError, NotFoundError, ValidationError
from utils.file_storage import generate_uuid
from utils.job_logger import logs_url_for
from utils.metrics import JOBS_ENQUEUED, JOBS_FINISHED

logger = logging.getLogger(__name__)

ORCHESTRATOR_QUEUE = "orchestrator"
TRANSCRIPTION_QUEUE = "transcription"
QUEUES = (ORCHESTRATOR_QUEUE, TRANSCRIPTION_QUEUE)

CANCELLED_REASON = "Cancelled"
UNKNOWN_ERROR = "Unknown error"

_EXTERNAL_STATUS = {
    JobState.WAITING.value: ExternalJobStatus.PENDING,
    JobState.DELAYED.value: ExternalJobStatus.PENDING,
    JobState.ACTIVE.value: ExternalJobStatus.ACTIVE,
    JobState.COMPLETED.value: ExternalJobStatus.COMPLETED,
    JobState.FAILED.value: ExternalJobStatus.FAILED,
}

# handler(job, cancel_event, set_progress) -> result dict
JobHandler = Callable[["Job", asyncio.Event, Callable[[int], None]], Awaitable[Dict[str, Any]]]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(epoch_ms: Optional[int]) -> Optional[str]:
    if epoch_ms is None:
        return None
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Job:
    job_id: str
    queue: str
    data: Dict[str, Any] = field(default_factory=dict)
    state: str = JobState.WAITING.value
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    timestamp: int = field(default_factory=_now_ms)
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    attempts_made: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED.value, JobState.FAILED.value)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def to_external_status(state: Optional[str]) -> str:
    """Map an internal queue state to the public vocabulary; unknown -> pending."""
    return _EXTERNAL_STATUS.get(state or "", ExternalJobStatus.PENDING).value


def normalize_result(result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Completed-job result with every public field populated."""
    result = result or {}
    warnings = result.get("warnings")
    normalized = {
        "generated_count": result.get("generated_count") or 0,
        "verified_count": result.get("verified_count") or 0,
        "deck_id": result.get("deck_id") or "",
        "warnings": list(warnings) if isinstance(warnings, list) else [],
    }
    if result.get("status") is not None:
        normalized["status"] = result["status"]
    verification_rate = result.get("verification_rate")
    if verification_rate is None and isinstance(result.get("metrics"), dict):
        verification_rate = result["metrics"].get("verification_rate")
    if verification_rate is not None:
        normalized["verification_rate"] = verification_rate
    return normalized


def build_job_status(job: Job, include_logs: bool = False) -> Dict[str, Any]:
    """Public status payload for a job. Never contains None/missing placeholders."""
    status = to_external_status(job.state)
    payload: Dict[str, Any] = {
        "jobId": job.job_id,
        "status": status,
        "progress": job.progress or 0,
        "created_at": _iso(job.timestamp),
    }
    if status == ExternalJobStatus.COMPLETED.value:
        payload["result"] = normalize_result(job.result)
    if status == ExternalJobStatus.FAILED.value:
        payload["error"] = job.failed_reason or UNKNOWN_ERROR
    if job.is_terminal:
        payload["completed_at"] = _iso(job.finished_on or _now_ms())
    if include_logs and job.queue == ORCHESTRATOR_QUEUE:
        payload["logs_url"] = logs_url_for(job.job_id)
    return payload


class JobQueue:
    """asyncio-task worker pool with per-queue handlers."""

    def __init__(self, concurrency: int = 2, mirror_to_redis: bool = True, retain_finished: int = 1000):
        self.concurrency = max(1, concurrency)
        self.mirror_to_redis = mirror_to_redis
        self.retain_finished = max(1, retain_finished)
        self._handlers: Dict[str, JobHandler] = {}
        self._jobs: Dict[str, Job] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._progress_writes: Dict[str, asyncio.Task] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop = None

    def register(self, queue: str, handler: JobHandler) -> None:
        if queue not in QUEUES:
            raise ValidationError(f"Unknown queue: {queue}")
        self._handlers[queue] = handler

    def _slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    async def _persist(self, job: Job) -> None:
        if self.mirror_to_redis:
            await redis_client.save_job(job.to_dict())

    async def _persist_after(self, previous: Optional[asyncio.Task], job: Job) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        await self._persist(job)

    def _mirror_progress(self, job: Job) -> None:
        # Writes for one job are chained so Redis never sees them out of order
        previous = self._progress_writes.get(job.job_id)
        self._progress_writes[job.job_id] = asyncio.create_task(self._persist_after(previous, job))

    async def enqueue(
        self,
        queue: str,
        data: Dict[str, Any],
        job_id: Optional[str] = None,
        delay_ms: int = 0,
    ) -> Job:
        if queue not in self._handlers:
            raise ValidationError(f"No handler registered for queue {queue}")
        job = Job(
            job_id=job_id or generate_uuid(),
            queue=queue,
            data=data,
            state=JobState.DELAYED.value if delay_ms > 0 else JobState.WAITING.value,
        )
        self._jobs[job.job_id] = job
        self._cancel_events[job.job_id] = asyncio.Event()
        await self._persist(job)

        self._tasks[job.job_id] = asyncio.create_task(self._run(job, delay_ms))
        JOBS_ENQUEUED.labels(queue=queue).inc()
        logger.info(f"Enqueued {queue} job {job.job_id}")
        return job

    async def _run(self, job: Job, delay_ms: int) -> None:
        try:
            await self._execute(job, delay_ms)
        finally:
            self._tasks.pop(job.job_id, None)
            self._cancel_events.pop(job.job_id, None)

    async def _execute(self, job: Job, delay_ms: int) -> None:
        cancel_event = self._cancel_events[job.job_id]
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)
            job.state = JobState.WAITING.value
            await self._persist(job)

        async with self._slots():
            if cancel_event.is_set():
                await self._finish(job, JobState.FAILED, failed_reason=CANCELLED_REASON)
                return

            job.state = JobState.ACTIVE.value
            job.processed_on = _now_ms()
            job.attempts_made += 1
            await self._persist(job)

            def set_progress(value: int) -> None:
                value = max(0, min(100, int(value)))
                if value == job.progress:
                    return
                job.progress = value
                if self.mirror_to_redis:
                    self._mirror_progress(job)

            try:
                result = await self._handlers[job.queue](job, cancel_event, set_progress)
            except GenerationCancelledError as e:
                logger.warning(f"Job {job.job_id} cancelled at {e.step}")
                await self._finish(job, JobState.FAILED, failed_reason=CANCELLED_REASON)
            except Exception as e:
                reason = getattr(e, "message", None) or str(e) or UNKNOWN_ERROR
                logger.error(f"Job {job.job_id} ({job.queue}) failed: {reason}")
                await self._finish(job, JobState.FAILED, failed_reason=reason)
            else:
                job.progress = 100
                await self._finish(job, JobState.COMPLETED, result=result)

    async def _finish(self, job: Job, state: JobState, result=None, failed_reason=None) -> None:
        job.state = state.value
        job.result = result
        job.failed_reason = failed_reason
        job.finished_on = _now_ms()
        pending_write = self._progress_writes.pop(job.job_id, None)
        if pending_write is not None:
            await asyncio.gather(pending_write, return_exceptions=True)
        await self._persist(job)
        self._retire(job.job_id)
        JOBS_FINISHED.labels(queue=job.queue, state=state.value).inc()
        logger.info(f"Job {job.job_id} finished: {state.value}")

    def _retire(self, job_id: str) -> None:
        self._finished[job_id] = None
        while len(self._finished) > self.retain_finished:
            evicted, _ = self._finished.popitem(last=False)
            self._jobs.pop(evicted, None)

    def find_active(self, queue: str, **match: Any) -> Optional[Job]:
        """First unfinished job on `queue` whose data has every `match` item."""
        for job in self._jobs.values():
            if job.queue != queue or job.is_terminal:
                continue
            if all(job.data.get(key) == value for key, value in match.items()):
                return job
        return None

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        if self.mirror_to_redis:
            data = await redis_client.get_job(job_id)
            if data:
                return Job.from_dict(data)
        return None

    async def require_job(self, job_id: str) -> Job:
        if not job_id or not job_id.strip():
            raise ValidationError("job_id is required", error_code="MISSING_JOB_ID")
        job = await self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found", error_code="JOB_NOT_FOUND")
        return job

    def cancel(self, job_id: str) -> bool:
        """Signal cancellation. Returns False for unknown or already finished jobs."""
        job = self._jobs.get(job_id)
        event = self._cancel_events.get(job_id)
        if job is None or event is None or job.is_terminal:
            return False
        event.set()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Job:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.require_job(job_id)

    async def shutdown(self) -> None:
        pending = [task for task in self._tasks.values() if not task.done()]
        for event in list(self._cancel_events.values()):
            event.set()
        if pending:
            logger.info(f"Waiting for {len(pending)} job(s) to stop")
            await asyncio.gather(*pending, return_exceptions=True)
