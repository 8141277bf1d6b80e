"""
Stage B - flashcard generation.

One LLM call over all chunks (so cards can draw on several chunks) plus the
Stage A summary. Unlike Stage A this stage is strict: its output is the
deliverable, so unparseable JSON or a schema violation fails the run.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from clients.llm_client import ChatClient
from models.flashcard_models import BloomLevel, Chunk, Difficulty, Flashcard, StageAOutput
from prompts.flashcard_prompts import STAGE_B_SYSTEM_PROMPT, build_stage_b_prompt
from services import mock_responses
from services.evidence_matcher import build_evidence, build_source, match_evidence
from utils.config import MAX_ANSWER_CHARS, MAX_ANSWER_WORDS
from utils.exceptions import ConfigurationError, ParseError, ValidationError
from utils.llm_json import extract_json
from utils.metrics import CARDS_FLAGGED, CARDS_GENERATED, STAGE_CALLS, STAGE_LATENCY, STAGE_TOKENS, estimate_tokens
from utils.retry import with_retry

logger = logging.getLogger(__name__)

STAGE = "B"
DEFAULT_CONFIDENCE = 0.8


class CardDraft(BaseModel):
    """One card as returned by the LLM, before evidence matching."""
    question: str = Field(..., min_length=10, max_length=500)
    answer: str = Field(..., min_length=1, max_length=2000)
    rationale: str = Field("", max_length=1000)
    evidence_quote: str = Field(..., min_length=1, max_length=2000)
    bloom_level: BloomLevel
    difficulty: Difficulty
    confidence: Optional[float] = None

    @field_validator("bloom_level", mode="before")
    @classmethod
    def _normalize_bloom(cls, value):
        return value.strip().capitalize() if isinstance(value, str) else value

    @field_validator("difficulty", mode="before")
    @classmethod
    def _normalize_difficulty(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("rationale", mode="before")
    @classmethod
    def _default_rationale(cls, value):
        return value or ""


class StageBResponse(BaseModel):
    cards: List[CardDraft] = Field(..., min_length=1, max_length=40)


@dataclass
class StageBOutput:
    module_id: str
    cards: List[Flashcard]
    warnings: List[str] = field(default_factory=list)
    processing_time_ms: int = 0

    @property
    def generated_count(self) -> int:
        return len(self.cards)


def clamp_confidence(value: Optional[float]) -> float:
    if value is None:
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


def make_card_id(module_id: str, ordinal: int) -> str:
    """Deterministic card id: same module + ordinal always gives the same id."""
    return f"{module_id}::C{ordinal}"


def parse_stage_b(raw_text: str) -> StageBResponse:
    """
    Parse and validate a Stage B response.

    Raises:
        ParseError: unparseable JSON, or the first schema validation error.
    """
    try:
        data = extract_json(raw_text)
    except ParseError as e:
        raise ParseError(f"Stage B: invalid JSON response from LLM ({e.message})", error_code="INVALID_JSON")
    try:
        return StageBResponse.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first["loc"])
        raise ParseError(
            f"Stage B: response validation failed - {location}: {first['msg']}",
            error_code="SCHEMA_VALIDATION_FAILED",
            context={"error_count": e.error_count()},
        )


def build_cards(module_id: str, drafts: List[CardDraft], chunks: List[Chunk]) -> StageBOutput:
    """Evidence-match drafts and turn them into Flashcards."""
    cards: List[Flashcard] = []
    warnings: List[str] = []

    for index, draft in enumerate(drafts):
        match = match_evidence(draft.evidence_quote, chunks)
        if not match.verified:
            warnings.append(f"Card {index + 1}: could not match evidence quote to chunks")
            CARDS_FLAGGED.inc()

        cards.append(Flashcard(
            card_id=make_card_id(module_id, index + 1),
            question=draft.question.strip(),
            answer=draft.answer.strip(),
            rationale=draft.rationale.strip(),
            evidence=[build_evidence(draft.evidence_quote, match)],
            bloom_level=draft.bloom_level,
            difficulty=draft.difficulty,
            confidence_score=clamp_confidence(draft.confidence),
            sources=[build_source(match)],
            review_required=not match.verified,
        ))
        CARDS_GENERATED.labels(bloom_level=draft.bloom_level.value, difficulty=draft.difficulty.value).inc()

    return StageBOutput(module_id=module_id, cards=cards, warnings=warnings)


class FlashcardGenerator:
    """Runs Stage B against a chat backend (or canned output in mock mode)."""

    def __init__(
        self,
        llm: Optional[ChatClient] = None,
        mock_mode: bool = False,
        max_tokens: int = 4096,
        max_attempts: int = 3,
        initial_delay_ms: int = 1000,
    ):
        self.llm = llm
        self.mock_mode = mock_mode
        self.max_tokens = max_tokens
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms

    async def run(
        self,
        module_id: str,
        module_title: str,
        chunks: List[Chunk],
        stage_a: StageAOutput,
        target_card_count: int = 10,
        difficulty_distribution: Optional[Dict[str, int]] = None,
        temperature: float = 0.1,
        model: Optional[str] = None,
        checkpoint: Optional[Callable[[str], None]] = None,
        on_raw_output: Optional[Callable[[str, str], None]] = None,
        force_mock: bool = False,
    ) -> StageBOutput:
        if not chunks:
            raise ValidationError("Stage B requires at least one chunk", error_code="NO_CHUNKS")

        distribution = difficulty_distribution or {"easy": 3, "medium": 4, "hard": 3}
        start = time.time()
        logger.info(f"[StageB] Starting for module {module_id}: {len(chunks)} chunks, target {target_card_count} cards")

        try:
            raw_text = await self._call(
                module_id, module_title, chunks, stage_a, target_card_count,
                distribution, temperature, model, checkpoint, self.mock_mode or force_mock,
            )
            if on_raw_output:
                on_raw_output("stage_b", raw_text)

            try:
                response = parse_stage_b(raw_text)
            except ParseError as e:
                status = "validation_error" if e.error_code == "SCHEMA_VALIDATION_FAILED" else "parse_error"
                STAGE_CALLS.labels(stage=STAGE, status=status).inc()
                logger.error(f"[StageB] {e.message}. Response head: {raw_text[:300]}")
                raise
        finally:
            STAGE_LATENCY.labels(stage=STAGE).observe(time.time() - start)

        output = build_cards(module_id, response.cards, chunks)
        output.processing_time_ms = int((time.time() - start) * 1000)
        STAGE_CALLS.labels(stage=STAGE, status="success").inc()
        logger.info(
            f"[StageB] Completed in {output.processing_time_ms}ms: "
            f"{output.generated_count} cards, {len(output.warnings)} warnings"
        )
        return output

    async def _call(self, module_id, module_title, chunks, stage_a, target_card_count,
                    distribution, temperature, model, checkpoint, mock) -> str:
        if mock:
            if checkpoint:
                checkpoint("stage_b")
            return mock_responses.stage_b_response(chunks, target_card_count, distribution)

        if self.llm is None:
            raise ConfigurationError("No LLM client configured for Stage B", config_key="LLM_PROVIDER")

        system_prompt = STAGE_B_SYSTEM_PROMPT.format(max_words=MAX_ANSWER_WORDS, max_chars=MAX_ANSWER_CHARS)
        user_prompt = build_stage_b_prompt(
            module_id, module_title, chunks, stage_a, target_card_count, distribution
        )
        STAGE_TOKENS.labels(stage=STAGE, type="input").inc(estimate_tokens(system_prompt + user_prompt))

        def _on_retry(attempt, error, delay_ms):
            STAGE_CALLS.labels(stage=STAGE, status="retry").inc()

        try:
            response = await with_retry(
                lambda: asyncio.to_thread(
                    self.llm.complete,
                    system_prompt,
                    user_prompt,
                    temperature,
                    self.max_tokens,
                    True,
                    model,
                ),
                operation="stage_b",
                max_attempts=self.max_attempts,
                initial_delay_ms=self.initial_delay_ms,
                on_retry=_on_retry,
                checkpoint=checkpoint,
            )
        except Exception:
            STAGE_CALLS.labels(stage=STAGE, status="error").inc()
            raise
        STAGE_TOKENS.labels(stage=STAGE, type="output").inc(response.output_tokens)
        return response.text
