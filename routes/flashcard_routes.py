"""
FastAPI routes for flashcard generation, decks, review and job polling.
Domain errors are raised as FlashcardError subclasses and rendered by the
app-level exception handler in main.py.
"""

from fastapi import APIRouter, Header, Query
from fastapi.responses import JSONResponse
from typing import List, Optional
import logging

from models.flashcard_models import (
    CardApproveRequest,
    CardEditRequest,
    Chunk,
    DeckReviewRequest,
    GenerateFromModuleRequest,
)
from services.flashcard_service import get_pipeline
from utils.exceptions import PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["flashcards"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _is_admin(role: Optional[str]) -> bool:
    return (role or "").strip().lower() == "admin"


def _require_admin(role: Optional[str]) -> None:
    if not _is_admin(role):
        raise PermissionDeniedError()


# Module decks
@router.get("/modules/{module_id}/flashcards")
async def get_module_flashcards(
    module_id: str,
    include_unverified: bool = Query(False),
    limit: Optional[int] = Query(None, ge=1, le=500),
):
    """
    Flashcards for a module's current deck.

    By default only verified cards (evidence matched) are returned;
    include_unverified=true returns every card. card_count is what was
    returned, total_count is what the deck holds.
    """
    return get_pipeline().get_module_flashcards(module_id, include_unverified, limit)


@router.get("/modules/{module_id}/flashcards/history")
async def get_deck_history(module_id: str):
    """Previous and pending deck versions, newest first."""
    versions = get_pipeline().get_deck_history(module_id)
    return {"success": True, "module_id": module_id, "versions": versions}


@router.post("/modules/{module_id}/flashcards/review")
async def review_deck(module_id: str, request: DeckReviewRequest):
    """Mark a module's current deck approved or rejected."""
    deck = await get_pipeline().review_deck(module_id, request.reviewer, request.status)
    return {"success": True, "module_id": module_id, **deck}


@router.post("/modules/{module_id}/chunks", status_code=201)
async def ingest_module_chunks(module_id: str, chunks: List[Chunk]):
    """Embed (where needed) and upsert pre-extracted chunks for a module."""
    written = await get_pipeline().ingest_chunks(module_id, chunks)
    return {"success": True, "module_id": module_id, "upserted": written}


@router.get("/courses")
async def list_courses(include_sandbox: bool = Query(False)):
    courses = get_pipeline().list_courses(include_sandbox)
    return {"success": True, "courses": courses, "count": len(courses)}


@router.get("/courses/{course_slug}/modules")
async def list_course_modules(course_slug: str, is_sandbox: bool = Query(False)):
    """Modules available for generation in a course."""
    return {"success": True, "modules": get_pipeline().list_course_modules(course_slug, is_sandbox)}


# Generation jobs
@router.post("/flashcards/generate-from-module", status_code=202)
async def generate_from_module(request: GenerateFromModuleRequest):
    """
    Enqueue a generation run for one module.

    Fire-and-forget: returns a job handle immediately. Success or failure is
    only visible by polling status_url.
    """
    job = await get_pipeline().enqueue_generation(request)
    logger.info(f"Generation job {job.job_id} queued for {request.courseSlug}/module-{request.moduleIndex}")
    return {
        "success": True,
        "job_id": job.job_id,
        "status_url": f"/api/flashcards/orchestrator/jobs/{job.job_id}",
    }


@router.get("/flashcards/orchestrator/jobs")
async def get_job_status_without_id():
    raise ValidationError("job_id is required", error_code="MISSING_JOB_ID")


@router.get("/flashcards/orchestrator/jobs/{job_id}")
async def get_job_status(job_id: str, x_user_role: Optional[str] = Header(None)):
    """
    Poll a generation job. Never cached; logs_url is only attached for admins.
    """
    status = await get_pipeline().get_job_status(job_id, include_logs=_is_admin(x_user_role))
    return JSONResponse(content=status, headers=NO_CACHE_HEADERS)


@router.get("/flashcards/orchestrator/jobs/{job_id}/logs")
async def get_job_logs(job_id: str, x_user_role: Optional[str] = Header(None)):
    """Step log and redacted raw LLM outputs for a job (admin only)."""
    _require_admin(x_user_role)
    return get_pipeline().get_job_logs(job_id)


@router.post("/flashcards/orchestrator/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    cancelled = get_pipeline().cancel_job(job_id)
    return {"success": cancelled, "job_id": job_id}


# Review queue and cards
@router.get("/flashcards/review-queue")
async def get_review_queue(limit: int = Query(50, ge=1, le=500)):
    """Cards flagged review_required across all current decks."""
    items = get_pipeline().review_queue(limit)
    return {"success": True, "count": len(items), "items": items}


@router.get("/flashcards/{card_id}")
async def get_flashcard(card_id: str):
    """Full card payload including evidence locations and module_id."""
    return {"success": True, "card": get_pipeline().get_card(card_id)}


@router.patch("/flashcards/{card_id}")
async def edit_flashcard(card_id: str, request: CardEditRequest):
    card = await get_pipeline().edit_card(
        card_id,
        question=request.question,
        answer=request.answer,
        rationale=request.rationale,
    )
    if request.editor:
        logger.info(f"Card {card_id} edited by {request.editor}")
    return {"success": True, "card": card}


@router.post("/flashcards/{card_id}/approve")
async def approve_flashcard(card_id: str, request: CardApproveRequest):
    """Clear review_required on a card and record the reviewer on its deck."""
    card = await get_pipeline().approve_card(card_id, request.reviewer)
    return {"success": True, "card": card}
