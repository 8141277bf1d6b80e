"""
Quality pass over Stage B cards: answer limits, near-duplicate removal and
difficulty / Bloom balance checks.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from models.flashcard_models import HIGHER_ORDER_BLOOM, Difficulty, Flashcard
from utils.config import MAX_ANSWER_CHARS, MAX_ANSWER_WORDS

logger = logging.getLogger(__name__)

IMBALANCE_TOLERANCE = 2


@dataclass
class PostProcessResult:
    cards: List[Flashcard]
    warnings: List[str] = field(default_factory=list)
    difficulty_imbalanced: bool = False
    duplicates_removed: int = 0


def enforce_answer_limits(answer: str) -> str:
    """Trim an answer to MAX_ANSWER_WORDS words and MAX_ANSWER_CHARS characters."""
    answer = (answer or "").strip()
    words = answer.split()
    if len(words) > MAX_ANSWER_WORDS:
        answer = " ".join(words[:MAX_ANSWER_WORDS]) + "..."
    if len(answer) > MAX_ANSWER_CHARS:
        answer = answer[:MAX_ANSWER_CHARS - 3] + "..."
    return answer


def _word_set(text: str) -> set:
    return set(re.findall(r"[a-z0-9']+", (text or "").lower()))


def jaccard_similarity(a: str, b: str) -> float:
    set_a, set_b = _word_set(a), _word_set(b)
    if not set_a and not set_b:
        return 1.0
    return len(set_a & set_b) / len(set_a | set_b)


def remove_duplicates(cards: List[Flashcard], threshold: float = 0.85) -> List[Flashcard]:
    """Drop cards whose question is near-identical to an earlier one. First card wins."""
    kept: List[Flashcard] = []
    for card in cards:
        if any(jaccard_similarity(card.question, other.question) >= threshold for other in kept):
            logger.debug(f"Dropping near-duplicate card {card.card_id}")
            continue
        kept.append(card)
    return kept


def difficulty_counts(cards: List[Flashcard]) -> Dict[str, int]:
    counts = {d.value: 0 for d in Difficulty}
    for card in cards:
        counts[card.difficulty.value] += 1
    return counts


def check_difficulty_balance(cards: List[Flashcard], target: Dict[str, int]) -> List[str]:
    """One warning per difficulty bucket that is off target by more than the tolerance."""
    counts = difficulty_counts(cards)
    warnings = []
    for level, expected in target.items():
        actual = counts.get(level, 0)
        if abs(actual - expected) > IMBALANCE_TOLERANCE:
            warnings.append(f"Difficulty imbalance: {actual} {level} cards (target {expected})")
    return warnings


def check_bloom_coverage(cards: List[Flashcard], minimum: int) -> Optional[str]:
    higher = sum(1 for card in cards if card.bloom_level in HIGHER_ORDER_BLOOM)
    if higher < minimum:
        return f"Only {higher} higher-order Bloom cards (Apply or above); minimum is {minimum}"
    return None


def post_process_cards(
    cards: List[Flashcard],
    difficulty_distribution: Dict[str, int],
    dedupe_threshold: float = 0.85,
    min_higher_order_bloom: int = 3,
) -> PostProcessResult:
    warnings: List[str] = []

    limited = []
    for card in cards:
        answer = enforce_answer_limits(card.answer)
        limited.append(card if answer == card.answer else card.model_copy(update={"answer": answer}))

    deduped = remove_duplicates(limited, dedupe_threshold)
    removed = len(limited) - len(deduped)
    if removed:
        warnings.append(f"Removed {removed} duplicate questions")

    imbalance = check_difficulty_balance(deduped, difficulty_distribution)
    warnings.extend(imbalance)

    bloom_warning = check_bloom_coverage(deduped, min_higher_order_bloom)
    if bloom_warning:
        warnings.append(bloom_warning)

    if warnings:
        logger.info(f"Post-processing produced {len(warnings)} warnings: {warnings}")

    return PostProcessResult(
        cards=deduped,
        warnings=warnings,
        difficulty_imbalanced=bool(imbalance),
        duplicates_removed=removed,
    )
