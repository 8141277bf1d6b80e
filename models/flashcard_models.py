"""
Pydantic models for the flashcard generation pipeline.
Chunks, stage outputs, cards, decks, run results and API payloads.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any, Union
from datetime import datetime
from enum import Enum


# Enums for type safety and validation
class BloomLevel(str, Enum):
    REMEMBER = "Remember"
    UNDERSTAND = "Understand"
    APPLY = "Apply"
    ANALYZE = "Analyze"
    EVALUATE = "Evaluate"
    CREATE = "Create"


HIGHER_ORDER_BLOOM = (BloomLevel.APPLY, BloomLevel.ANALYZE, BloomLevel.EVALUATE, BloomLevel.CREATE)


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class CoverageStatus(str, Enum):
    COVERED = "Covered"
    NOT_COVERED = "Not Covered"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    NEED_MORE_CONTENT = "NEED_MORE_CONTENT"
    FAILED = "FAILED"


class JobState(str, Enum):
    """Internal queue states."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class ExternalJobStatus(str, Enum):
    """Job status vocabulary exposed to API callers."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class MatchKind(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    FALLBACK = "fallback"


# Content models
class Chunk(BaseModel):
    """A bounded span of module content used as grounding evidence."""
    model_config = ConfigDict(frozen=True)

    chunk_id: str
    text: str
    source_file: str = "unknown"
    provider: str = "local"
    slide_or_page: Optional[Union[str, int]] = None
    start_sec: Optional[float] = None
    end_sec: Optional[float] = None
    heading: Optional[str] = None
    tokens_est: int = 0
    embedding: Optional[List[float]] = None
    score: Optional[float] = None


class DocumentContent(BaseModel):
    id: str
    title: str
    url: str
    type: str = "link"
    provider: str = "other"
    file_type: Optional[str] = None
    public_id: Optional[str] = None
    text: Optional[str] = None  # extracted text, when the catalog already has it


class VideoContent(BaseModel):
    id: str
    title: str
    url: str
    duration: float = 0  # minutes
    provider: str = "other"
    transcript: Optional[str] = None


class RecordingContent(BaseModel):
    id: str
    title: str
    url: str
    date: Optional[str] = None
    description: Optional[str] = None
    transcript: Optional[str] = None


class ModuleContent(BaseModel):
    """Content descriptor for one course module."""
    module_id: str
    course_id: str
    module_title: str
    course_title: str = ""
    documents: List[DocumentContent] = []
    videos: List[VideoContent] = []
    recordings: List[RecordingContent] = []
    headings: List[str] = []

    @property
    def media_count(self) -> int:
        return len(self.videos) + len(self.recordings)


# Stage A models
class SummaryPoint(BaseModel):
    point: str = Field(..., min_length=1)
    supports: List[str] = []


class KeyTopic(BaseModel):
    topic: str = Field(..., min_length=1)
    supports: List[str] = []


class CoverageItem(BaseModel):
    heading: str
    status: CoverageStatus
    supports: List[str] = []


class StageAOutput(BaseModel):
    module_summary: List[SummaryPoint] = Field(..., min_length=1)
    key_topics: List[KeyTopic] = Field(..., min_length=1)
    coverage_map: List[CoverageItem] = []
    degraded: bool = False


# Flashcard models
class Evidence(BaseModel):
    chunk_id: str
    source_file: str = "unknown"
    loc: Optional[str] = None
    start_sec: Optional[float] = None
    end_sec: Optional[float] = None
    excerpt: str
    start_char: Optional[int] = None
    match: MatchKind = MatchKind.EXACT


class CardSource(BaseModel):
    type: str = "document"
    file: str
    loc: Optional[str] = None


class Flashcard(BaseModel):
    card_id: str
    question: str
    answer: str
    rationale: str = ""
    evidence: List[Evidence] = Field(..., min_length=1)
    bloom_level: BloomLevel
    difficulty: Difficulty
    confidence_score: float = Field(0.8, ge=0.0, le=1.0)
    sources: List[CardSource] = []
    review_required: bool = False

    @property
    def verified(self) -> bool:
        return not self.review_required


class GenerationMetadata(BaseModel):
    model: str
    temperature: float
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class StoredFlashcardDeck(BaseModel):
    deck_id: str
    module_id: str
    course_id: str
    module_title: str
    cards: List[Flashcard] = []
    stage_a_output: Optional[StageAOutput] = None
    warnings: List[str] = []
    generation_metadata: GenerationMetadata
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    reviewed_by: Optional[str] = None
    review_status: ReviewStatus = ReviewStatus.PENDING
    version: int = 1

    @property
    def verified_count(self) -> int:
        return sum(1 for card in self.cards if card.verified)

    @property
    def verification_rate(self) -> float:
        return self.verified_count / len(self.cards) if self.cards else 0.0


# Orchestrator settings and results
class DifficultyDistribution(BaseModel):
    easy: int = Field(3, ge=0)
    medium: int = Field(4, ge=0)
    hard: int = Field(3, ge=0)


class OrchestratorSettings(BaseModel):
    retrieval_K: int = 8
    target_card_count: int = Field(10, ge=1, le=20)
    model: Optional[str] = None
    temperature: float = Field(0.1, ge=0.0, le=2.0)
    difficulty_distribution: DifficultyDistribution = Field(default_factory=DifficultyDistribution)
    min_higher_order_bloom: int = 3
    dedupe_threshold: float = Field(0.85, ge=0.0, le=1.0)
    max_retries: int = Field(3, ge=1, le=10)
    mock_mode: bool = False


class RunMetrics(BaseModel):
    time_ms: int = 0
    api_calls: int = 0
    chunks_retrieved: int = 0
    verification_rate: float = 0.0


class ModuleResult(BaseModel):
    module_id: str
    course_id: str = ""
    module_title: str = ""
    status: RunStatus
    generated_count: int = 0
    verified_count: int = 0
    deck_id: str = ""
    warnings: List[str] = []
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    error_message: Optional[str] = None
    logs_url: Optional[str] = None
    completed_at: datetime = Field(default_factory=datetime.utcnow)


# Request models
class ModuleContentRequest(BaseModel):
    courseSlug: str
    moduleIndex: int = Field(..., ge=0)
    isSandbox: bool = False
    includeRecordings: bool = True


class GenerateFromModuleRequest(BaseModel):
    """Body of POST /flashcards/generate-from-module. Required fields checked by the route."""
    courseSlug: Optional[str] = None
    moduleIndex: Optional[int] = None
    isSandbox: bool = False
    settings: Dict[str, Any] = {}


class CardEditRequest(BaseModel):
    question: Optional[str] = None
    answer: Optional[str] = None
    rationale: Optional[str] = None
    editor: Optional[str] = None


class CardApproveRequest(BaseModel):
    reviewer: str = Field(..., min_length=1)


class DeckReviewRequest(BaseModel):
    reviewer: str = Field(..., min_length=1)
    status: ReviewStatus
