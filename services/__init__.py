from services.deck_store import DeckStore
from services.job_queue import JobQueue
from services.orchestrator import FlashcardOrchestrator
from services.flashcard_service import FlashcardService

__all__ = [
    'DeckStore',
    'JobQueue',
    'FlashcardOrchestrator',
    'FlashcardService'
]
