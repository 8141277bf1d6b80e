"""
Evidence matching - binds a card's quoted excerpt to a real chunk.

Order: exact normalized substring, then a 50-character prefix, then the
first chunk as a fallback. Fallback evidence is flagged for review; the card
itself is always kept.
"""

import re
import logging
from dataclasses import dataclass
from typing import List, Optional

from models.flashcard_models import CardSource, Chunk, Evidence, MatchKind
from prompts.flashcard_prompts import chunk_location

logger = logging.getLogger(__name__)

PREFIX_LENGTH = 50

_MEDIA_EXTENSIONS = (".mp4", ".mov", ".webm", ".mkv", ".avi")
_AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".ogg")
_SLIDE_EXTENSIONS = (".ppt", ".pptx", ".key")


def normalize_text(text: str) -> str:
    """Lowercase and collapse whitespace."""
    return re.sub(r"\s+", " ", (text or "").lower()).strip()


@dataclass
class EvidenceMatch:
    chunk: Chunk
    kind: MatchKind
    start_char: Optional[int] = None

    @property
    def verified(self) -> bool:
        return self.kind != MatchKind.FALLBACK


def match_evidence(quote: str, chunks: List[Chunk]) -> Optional[EvidenceMatch]:
    """
    Find the chunk that contains `quote`.

    Returns None only when there are no chunks at all.
    """
    if not chunks:
        return None

    normalized_quote = normalize_text(quote)
    if normalized_quote:
        normalized_chunks = [(chunk, normalize_text(chunk.text)) for chunk in chunks]

        for chunk, text in normalized_chunks:
            index = text.find(normalized_quote)
            if index != -1:
                return EvidenceMatch(chunk=chunk, kind=MatchKind.EXACT, start_char=index)

        prefix = normalized_quote[:PREFIX_LENGTH]
        for chunk, text in normalized_chunks:
            index = text.find(prefix)
            if index != -1:
                return EvidenceMatch(chunk=chunk, kind=MatchKind.PREFIX, start_char=index)

    return EvidenceMatch(chunk=chunks[0], kind=MatchKind.FALLBACK)


def source_type(source_file: str, chunk: Chunk) -> str:
    name = (source_file or "").lower()
    if name.endswith(_MEDIA_EXTENSIONS):
        return "video"
    if name.endswith(_AUDIO_EXTENSIONS):
        return "audio"
    if name.endswith(_SLIDE_EXTENSIONS):
        return "slides"
    if name.endswith(".pdf"):
        return "pdf"
    if chunk.start_sec is not None:
        return "video"
    return "document"


def build_evidence(quote: str, match: EvidenceMatch) -> Evidence:
    chunk = match.chunk
    return Evidence(
        chunk_id=chunk.chunk_id,
        source_file=chunk.source_file,
        loc=chunk_location(chunk),
        start_sec=chunk.start_sec,
        end_sec=chunk.end_sec,
        excerpt=quote,
        start_char=match.start_char,
        match=match.kind,
    )


def build_source(match: EvidenceMatch) -> CardSource:
    chunk = match.chunk
    return CardSource(
        type=source_type(chunk.source_file, chunk),
        file=chunk.source_file,
        loc=chunk_location(chunk),
    )
