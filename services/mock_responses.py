"""
Deterministic Stage A / Stage B responses for mock (offline) mode.
They are raw JSON strings so they go through the same parsing and
validation path as real LLM output.
"""

import json
import re
from typing import Dict, List

from models.flashcard_models import Chunk

BLOOM_CYCLE = ["Remember", "Understand", "Apply", "Analyze", "Evaluate", "Create"]


def _sentences(text: str) -> List[str]:
    parts = [s.strip() for s in re.split(r'(?<=[.!?])\s+', text or "")]
    return [s for s in parts if len(s) > 20]


def _short(text: str, words: int) -> str:
    return " ".join(text.split()[:words])


def stage_a_response(module_title: str, chunks: List[Chunk]) -> str:
    points = []
    topics = []
    for chunk in chunks:
        sentences = _sentences(chunk.text) or [chunk.text.strip()]
        points.append({"point": _short(sentences[0], 25), "supports": [chunk.chunk_id]})
        topic = chunk.heading or _short(sentences[0], 5)
        topics.append({"topic": topic, "supports": [chunk.chunk_id]})

    if not points:
        points = [{"point": f"Overview of {module_title}", "supports": []}]
        topics = [{"topic": module_title, "supports": []}]

    return json.dumps({
        "module_summary": points[:10],
        "key_topics": topics[:12],
        "coverage_map": [],
    })


def stage_b_response(chunks: List[Chunk], target_card_count: int, difficulty_distribution: Dict[str, int]) -> str:
    difficulties = (
        ["easy"] * difficulty_distribution.get("easy", 0)
        + ["medium"] * difficulty_distribution.get("medium", 0)
        + ["hard"] * difficulty_distribution.get("hard", 0)
    ) or ["medium"]

    cards = []
    for i in range(target_card_count if chunks else 0):
        chunk = chunks[i % len(chunks)]
        sentences = _sentences(chunk.text) or [chunk.text.strip()[:200]]
        sentence = sentences[(i // len(chunks)) % len(sentences)]
        cards.append({
            "question": f"What does the material state about {_short(sentence, 8)}?",
            "answer": _short(sentence, 35),
            "rationale": f"Tests understanding of content from {chunk.source_file}",
            "evidence_quote": sentence,
            "bloom_level": BLOOM_CYCLE[i % len(BLOOM_CYCLE)],
            "difficulty": difficulties[i % len(difficulties)],
            "confidence": round(0.75 + 0.02 * (i % 10), 2),
        })
    return json.dumps({"cards": cards})
