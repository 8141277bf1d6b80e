"""
Prometheus metrics for the flashcard pipeline.
All collectors live in the default registry and are exposed at GET /metrics.
"""

from prometheus_client import Counter, Histogram, CONTENT_TYPE_LATEST, generate_latest

# Stage A / Stage B LLM calls
STAGE_CALLS = Counter(
    "flashcard_stage_calls_total",
    "LLM calls per pipeline stage",
    ["stage", "status"],
)
STAGE_LATENCY = Histogram(
    "flashcard_stage_latency_seconds",
    "Pipeline stage latency",
    ["stage"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120),
)
STAGE_TOKENS = Counter(
    "flashcard_stage_tokens_total",
    "Estimated tokens used per stage",
    ["stage", "type"],
)

CARDS_GENERATED = Counter(
    "flashcard_cards_generated_total",
    "Cards generated by Stage B",
    ["bloom_level", "difficulty"],
)
CARDS_FLAGGED = Counter(
    "flashcard_cards_flagged_for_review_total",
    "Cards whose evidence could not be matched",
)

RETRIES = Counter(
    "flashcard_retries_total",
    "Retry attempts made by with_retry",
    ["operation"],
)

EMBEDDING_CALLS = Counter(
    "flashcard_embedding_calls_total",
    "Embedding backend calls",
    ["provider", "status"],
)
EMBEDDING_LATENCY = Histogram(
    "flashcard_embedding_latency_seconds",
    "Embedding backend latency",
    ["provider"],
)

RETRIEVALS = Counter(
    "flashcard_retrievals_total",
    "Chunk retrievals by outcome",
    ["provider", "outcome"],
)

JOBS_ENQUEUED = Counter(
    "flashcard_jobs_enqueued_total",
    "Jobs enqueued",
    ["queue"],
)
JOBS_FINISHED = Counter(
    "flashcard_jobs_finished_total",
    "Jobs that reached a terminal state",
    ["queue", "state"],
)

MODULE_RUNS = Counter(
    "flashcard_module_runs_total",
    "Orchestrator module runs by final status",
    ["status"],
)
DECKS_SAVED = Counter(
    "flashcard_decks_saved_total",
    "Decks written to the deck store",
    ["placement"],
)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 chars per token)."""
    return (len(text) + 3) // 4


def render_latest():
    """Return (body, content_type) for the /metrics endpoint."""
    return generate_latest(), CONTENT_TYPE_LATEST
