"""
File-backed deck store.

Layout under the data dir:
    decks/{module}.json                 current deck per module
    decks/history/{module}-v{n}.json    every superseded or pending version

Writes for one module are serialized with an asyncio.Lock. Each save bumps
the deck version and moves the previous current deck into history, so
concurrent runs for the same module never lose a deck. When
preserve_approved is on, a new deck never replaces an approved one; it is
parked in history as a pending version instead.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from models.flashcard_models import (
    Flashcard,
    GenerationMetadata,
    ReviewStatus,
    StageAOutput,
    StoredFlashcardDeck,
)
from services.post_processing import enforce_answer_limits
from utils.exceptions import NotFoundError, StorageError, ValidationError
from utils.file_storage import list_json_files, read_json_file, sanitize_filename, write_json_file
from utils.metrics import DECKS_SAVED

logger = logging.getLogger(__name__)

PLACEMENT_CURRENT = "current"
PLACEMENT_PENDING = "pending"

_VERSION_PATTERN = re.compile(r"-v(\d+)\.json$")


def make_deck_id(module_id: str) -> str:
    return f"deck_{module_id}_{int(time.time() * 1000)}"


def module_id_from_card_id(card_id: str) -> Optional[str]:
    """'{module_id}::C{n}' -> module_id"""
    if "::C" not in card_id:
        return None
    module_id, _, ordinal = card_id.rpartition("::C")
    return module_id if ordinal.isdigit() and module_id else None


def assemble_deck(
    module_id: str,
    course_id: str,
    module_title: str,
    cards: List[Flashcard],
    stage_a_output: Optional[StageAOutput],
    warnings: List[str],
    model: str,
    temperature: float,
) -> StoredFlashcardDeck:
    now = datetime.utcnow()
    return StoredFlashcardDeck(
        deck_id=make_deck_id(module_id),
        module_id=module_id,
        course_id=course_id,
        module_title=module_title,
        cards=cards,
        stage_a_output=stage_a_output,
        warnings=warnings,
        generation_metadata=GenerationMetadata(model=model, temperature=temperature, timestamp=now),
        created_at=now,
        updated_at=now,
    )


@dataclass
class SaveOutcome:
    deck: StoredFlashcardDeck
    placement: str

    @property
    def is_current(self) -> bool:
        return self.placement == PLACEMENT_CURRENT


class DeckStore:
    """Persist, version and review flashcard decks."""

    def __init__(self, data_dir: Path, preserve_approved: bool = True):
        self.decks_dir = Path(data_dir) / "decks"
        self.history_dir = self.decks_dir / "history"
        self.preserve_approved = preserve_approved
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, module_id: str) -> asyncio.Lock:
        lock = self._locks.get(module_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[module_id] = lock
        return lock

    def _current_path(self, module_id: str) -> Path:
        return self.decks_dir / f"{sanitize_filename(module_id)}.json"

    def _history_path(self, module_id: str, version: int) -> Path:
        return self.history_dir / f"{sanitize_filename(module_id)}-v{version}.json"

    def _history_files(self, module_id: str) -> List[Tuple[int, Path]]:
        files = []
        for path in list_json_files(self.history_dir, f"{sanitize_filename(module_id)}-v*.json"):
            match = _VERSION_PATTERN.search(path.name)
            if match:
                files.append((int(match.group(1)), path))
        return sorted(files)

    @staticmethod
    def _load(path: Path) -> Optional[StoredFlashcardDeck]:
        data = read_json_file(path)
        if data is None:
            return None
        try:
            return StoredFlashcardDeck.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Corrupt deck file {path}: {e.error_count()} validation errors")
            return None

    def _write(self, path: Path, deck: StoredFlashcardDeck) -> None:
        if not write_json_file(path, deck.model_dump(mode="json")):
            raise StorageError(
                f"Failed to write deck {deck.deck_id}",
                context={"module_id": deck.module_id, "path": str(path)},
            )

    # Reads

    def get_deck(self, module_id: str) -> Optional[StoredFlashcardDeck]:
        return self._load(self._current_path(module_id))

    def require_deck(self, module_id: str) -> StoredFlashcardDeck:
        deck = self.get_deck(module_id)
        if deck is None:
            raise NotFoundError(f"No flashcard deck found for module {module_id}", error_code="DECK_NOT_FOUND")
        return deck

    def list_history(self, module_id: str) -> List[StoredFlashcardDeck]:
        """Previous and pending versions, newest first."""
        decks = []
        for _, path in reversed(self._history_files(module_id)):
            deck = self._load(path)
            if deck is not None:
                decks.append(deck)
        return decks

    def list_decks(self) -> List[StoredFlashcardDeck]:
        decks = []
        for path in list_json_files(self.decks_dir):
            deck = self._load(path)
            if deck is not None:
                decks.append(deck)
        return decks

    def find_card(self, card_id: str) -> Tuple[StoredFlashcardDeck, Flashcard]:
        module_id = module_id_from_card_id(card_id)
        candidates = [self.get_deck(module_id)] if module_id else []
        if not any(candidates):
            candidates = self.list_decks()
        for deck in candidates:
            if deck is None:
                continue
            for card in deck.cards:
                if card.card_id == card_id:
                    return deck, card
        raise NotFoundError(f"Flashcard {card_id} not found", error_code="CARD_NOT_FOUND")

    def review_queue(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Cards flagged review_required across all current decks."""
        items = []
        for deck in self.list_decks():
            for card in deck.cards:
                if card.review_required:
                    items.append({
                        "module_id": deck.module_id,
                        "deck_id": deck.deck_id,
                        "module_title": deck.module_title,
                        "card": card.model_dump(mode="json"),
                    })
                    if len(items) >= limit:
                        return items
        return items

    # Writes

    async def save_deck(self, deck: StoredFlashcardDeck) -> SaveOutcome:
        async with self._lock_for(deck.module_id):
            current = self.get_deck(deck.module_id)
            history = self._history_files(deck.module_id)
            latest_version = max([current.version if current else 0] + [v for v, _ in history])
            deck = deck.model_copy(update={"version": latest_version + 1})

            if current and self.preserve_approved and current.review_status == ReviewStatus.APPROVED:
                await asyncio.to_thread(self._write, self._history_path(deck.module_id, deck.version), deck)
                logger.info(
                    f"Deck {current.deck_id} for {deck.module_id} is approved; "
                    f"stored {deck.deck_id} as pending version {deck.version}"
                )
                DECKS_SAVED.labels(placement=PLACEMENT_PENDING).inc()
                return SaveOutcome(deck=deck, placement=PLACEMENT_PENDING)

            if current:
                await asyncio.to_thread(self._write, self._history_path(current.module_id, current.version), current)
            await asyncio.to_thread(self._write, self._current_path(deck.module_id), deck)
            logger.info(f"Saved deck {deck.deck_id} (v{deck.version}, {len(deck.cards)} cards) for {deck.module_id}")
            DECKS_SAVED.labels(placement=PLACEMENT_CURRENT).inc()
            return SaveOutcome(deck=deck, placement=PLACEMENT_CURRENT)

    async def update_card(
        self,
        card_id: str,
        question: Optional[str] = None,
        answer: Optional[str] = None,
        rationale: Optional[str] = None,
    ) -> Flashcard:
        """Edit a card in place. Answer limits are enforced again."""
        updates: Dict[str, Any] = {}
        if question is not None:
            if len(question.strip()) < 10:
                raise ValidationError("question must be at least 10 characters")
            updates["question"] = question.strip()
        if answer is not None:
            if not answer.strip():
                raise ValidationError("answer must not be empty")
            updates["answer"] = enforce_answer_limits(answer)
        if rationale is not None:
            updates["rationale"] = rationale.strip()
        if not updates:
            raise ValidationError("Nothing to update: provide question, answer or rationale")
        return await self._modify_card(card_id, updates)

    async def approve_card(self, card_id: str, reviewer: str) -> Flashcard:
        return await self._modify_card(card_id, {"review_required": False}, reviewer=reviewer)

    async def _modify_card(self, card_id: str, updates: Dict[str, Any], reviewer: Optional[str] = None) -> Flashcard:
        deck, _ = self.find_card(card_id)
        async with self._lock_for(deck.module_id):
            deck = self.require_deck(deck.module_id)
            cards = []
            updated = None
            for card in deck.cards:
                if card.card_id == card_id:
                    card = card.model_copy(update=updates)
                    updated = card
                cards.append(card)
            if updated is None:
                raise NotFoundError(f"Flashcard {card_id} not found", error_code="CARD_NOT_FOUND")

            deck_updates: Dict[str, Any] = {"cards": cards, "updated_at": datetime.utcnow()}
            if reviewer:
                deck_updates["reviewed_by"] = reviewer
            await asyncio.to_thread(self._write, self._current_path(deck.module_id), deck.model_copy(update=deck_updates))
            logger.info(f"Updated card {card_id} in deck {deck.deck_id}: {sorted(updates)}")
            return updated

    async def set_review_status(self, module_id: str, reviewer: str, status: ReviewStatus) -> StoredFlashcardDeck:
        if status == ReviewStatus.PENDING:
            raise ValidationError("Review status must be approved or rejected")
        async with self._lock_for(module_id):
            deck = self.require_deck(module_id)
            deck = deck.model_copy(update={
                "review_status": status,
                "reviewed_by": reviewer,
                "updated_at": datetime.utcnow(),
            })
            await asyncio.to_thread(self._write, self._current_path(module_id), deck)
            logger.info(f"Deck {deck.deck_id} marked {status.value} by {reviewer}")
            return deck
