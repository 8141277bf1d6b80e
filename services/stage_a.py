"""
Stage A - module summarization.

One LLM call over the module's chunks producing module_summary, key_topics
and coverage_map. This stage is tolerant: parse/schema failures (and
exhausted network retries) degrade to a minimal summary built from the
module title so Stage B always has usable input.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from clients.llm_client import ChatClient
from models.flashcard_models import Chunk, KeyTopic, StageAOutput, SummaryPoint
from prompts.flashcard_prompts import STAGE_A_SYSTEM_PROMPT, build_stage_a_prompt
from services import mock_responses
from utils.exceptions import NetworkError, ParseError
from utils.llm_json import extract_json
from utils.metrics import STAGE_CALLS, STAGE_LATENCY, STAGE_TOKENS, estimate_tokens
from utils.retry import with_retry

logger = logging.getLogger(__name__)

STAGE = "A"
MAX_SUMMARY_POINTS = 10
MAX_KEY_TOPICS = 12


def fallback_stage_a(module_title: str, chunks: List[Chunk]) -> StageAOutput:
    """Minimal summary used whenever the LLM output cannot be used."""
    supports = [chunks[0].chunk_id] if chunks else []
    title = module_title or "this module"
    return StageAOutput(
        module_summary=[SummaryPoint(point=f"Overview of {title}", supports=supports)],
        key_topics=[KeyTopic(topic=title, supports=supports)],
        coverage_map=[],
        degraded=True,
    )


def parse_stage_a(raw_text: str, chunks: List[Chunk]) -> StageAOutput:
    """
    Parse and validate a Stage A response.

    Raises:
        ParseError: on unparseable JSON or a schema violation.
    """
    data = extract_json(raw_text)
    try:
        output = StageAOutput.model_validate({
            "module_summary": data.get("module_summary"),
            "key_topics": data.get("key_topics"),
            "coverage_map": data.get("coverage_map") or [],
        })
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first["loc"])
        raise ParseError(f"Stage A schema violation at {location}: {first['msg']}", error_code="SCHEMA_VALIDATION_FAILED")

    known_ids = {c.chunk_id for c in chunks}
    for item in output.module_summary + output.key_topics + output.coverage_map:
        item.supports = [s for s in item.supports if s in known_ids]

    output.module_summary = output.module_summary[:MAX_SUMMARY_POINTS]
    output.key_topics = output.key_topics[:MAX_KEY_TOPICS]
    return output


class StageASummarizer:
    """Runs Stage A against a chat backend (or canned output in mock mode)."""

    def __init__(
        self,
        llm: Optional[ChatClient] = None,
        max_chars: int = 24000,
        mock_mode: bool = False,
        temperature: float = 0.3,
        max_tokens: int = 2048,
        max_attempts: int = 3,
        initial_delay_ms: int = 1000,
    ):
        self.llm = llm
        self.max_chars = max_chars
        self.mock_mode = mock_mode
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms

    async def run(
        self,
        module_id: str,
        module_title: str,
        course_id: str,
        chunks: List[Chunk],
        outline_headings: Optional[List[str]] = None,
        checkpoint: Optional[Callable[[str], None]] = None,
        on_raw_output: Optional[Callable[[str, str], None]] = None,
        force_mock: bool = False,
    ) -> StageAOutput:
        start = time.time()
        logger.info(f"[StageA] Starting for module {module_id} with {len(chunks)} chunks")

        try:
            raw_text = await self._call(
                module_id, module_title, course_id, chunks, outline_headings, checkpoint,
                self.mock_mode or force_mock,
            )
        except NetworkError as e:
            logger.warning(f"[StageA] LLM unavailable for {module_id}, using fallback summary: {e.message[:200]}")
            STAGE_CALLS.labels(stage=STAGE, status="fallback").inc()
            return fallback_stage_a(module_title, chunks)
        finally:
            STAGE_LATENCY.labels(stage=STAGE).observe(time.time() - start)

        if on_raw_output:
            on_raw_output("stage_a", raw_text)

        try:
            output = parse_stage_a(raw_text, chunks)
        except ParseError as e:
            status = "validation_error" if e.error_code == "SCHEMA_VALIDATION_FAILED" else "parse_error"
            STAGE_CALLS.labels(stage=STAGE, status=status).inc()
            logger.warning(f"[StageA] {e.message}; degrading to minimal summary for {module_id}")
            return fallback_stage_a(module_title, chunks)

        STAGE_CALLS.labels(stage=STAGE, status="success").inc()
        logger.info(
            f"[StageA] Completed in {int((time.time() - start) * 1000)}ms: "
            f"{len(output.module_summary)} points, {len(output.key_topics)} topics"
        )
        return output

    async def _call(self, module_id, module_title, course_id, chunks, outline_headings, checkpoint, mock) -> str:
        if mock:
            if checkpoint:
                checkpoint("stage_a")
            return mock_responses.stage_a_response(module_title, chunks)

        if self.llm is None:
            raise NetworkError("No LLM client configured for Stage A", provider="none")

        user_prompt = build_stage_a_prompt(
            module_id, module_title, course_id, chunks, self.max_chars, outline_headings
        )
        STAGE_TOKENS.labels(stage=STAGE, type="input").inc(estimate_tokens(STAGE_A_SYSTEM_PROMPT + user_prompt))

        def _on_retry(attempt, error, delay_ms):
            STAGE_CALLS.labels(stage=STAGE, status="retry").inc()

        response = await with_retry(
            lambda: asyncio.to_thread(
                self.llm.complete,
                STAGE_A_SYSTEM_PROMPT,
                user_prompt,
                self.temperature,
                self.max_tokens,
            ),
            operation="stage_a",
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            on_retry=_on_retry,
            checkpoint=checkpoint,
        )
        STAGE_TOKENS.labels(stage=STAGE, type="output").inc(response.output_tokens)
        return response.text
