"""
Prompt templates for flashcard generation.
Stage A summarizes a module; Stage B writes evidence-grounded cards.
Both stages demand strict JSON so the output can be validated.
"""

import json
from typing import Any, Dict, List, Optional

from models.flashcard_models import Chunk, StageAOutput

STAGE_A_SYSTEM_PROMPT = """You are an expert instructional designer and domain summarizer.

STRICT RULES:
- Use ONLY the provided ContextChunks
- Do NOT invent or assume any facts
- If information is missing, mark it "MISSING_INFO"
- Output MUST be valid JSON - no markdown, no explanatory prose
- Every claim must reference supporting chunk_ids

Your output must follow the exact JSON structure specified in the instructions."""

STAGE_B_SYSTEM_PROMPT = """You are an expert exam-writer and instructional designer for higher education.

For each flashcard, you must:
1. Create a clear, specific question
2. Provide a complete, accurate answer
3. Include an exact quote from the source as evidence
4. Classify the Bloom's taxonomy level
5. Rate the difficulty
6. Provide a confidence score (0-1) based on evidence strength

Bloom's Taxonomy Levels:
- Remember: Recall facts and basic concepts (define, list, name)
- Understand: Explain ideas or concepts (describe, explain, summarize)
- Apply: Use information in new situations (demonstrate, solve, use)
- Analyze: Draw connections among ideas (compare, contrast, examine)
- Evaluate: Justify a decision or course of action (argue, assess, critique)
- Create: Produce new or original work (design, construct, develop)

STRICT RULES:
- Use ONLY the provided content chunks and the module summary
- Evidence quotes MUST be exact excerpts copied from a chunk
- Each answer must be at most {max_words} words and at most {max_chars} characters
- Avoid yes/no questions and trivial facts
- Output MUST be valid JSON only - no markdown, no explanatory prose"""

STAGE_A_FEW_SHOT = """
### FEW-SHOT EXAMPLE ###

Example ContextChunks (abbreviated):
[
  {"chunk_id": "ex1", "text": "Project management is the application of knowledge, skills, tools, and techniques to project activities."},
  {"chunk_id": "ex2", "text": "The five process groups are: Initiating, Planning, Executing, Monitoring and Controlling, and Closing."}
]

Expected Output:
{
  "module_summary": [
    {"point": "Project management applies knowledge, skills, tools, and techniques to project activities", "supports": ["ex1"]},
    {"point": "Five process groups govern the project lifecycle", "supports": ["ex2"]}
  ],
  "key_topics": [
    {"topic": "Definition of Project Management", "supports": ["ex1"]},
    {"topic": "Five Process Groups", "supports": ["ex2"]}
  ],
  "coverage_map": []
}

### END EXAMPLE ###"""


def format_time(seconds: Optional[float]) -> str:
    """Format seconds as m:ss or h:mm:ss."""
    if seconds is None:
        return ""
    seconds = int(seconds)
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def chunk_location(chunk: Chunk) -> Optional[str]:
    """Human-readable location: page/slide, or a time range for media."""
    if chunk.slide_or_page not in (None, ""):
        return str(chunk.slide_or_page)
    if chunk.start_sec is not None:
        end = f"-{format_time(chunk.end_sec)}" if chunk.end_sec is not None else ""
        return f"{format_time(chunk.start_sec)}{end}"
    return None


def chunks_to_prompt_json(chunks: List[Chunk], max_chars: int) -> str:
    """
    Serialize chunks for the prompt, stopping at a character budget.

    Whole chunks are added while they fit; the first chunk that does not fit is
    cut to the remaining budget so at least some of its text is seen.
    """
    items: List[Dict[str, Any]] = []
    used = 2
    for chunk in chunks:
        item = {
            "chunk_id": chunk.chunk_id,
            "source_file": chunk.source_file,
            "slide_or_page": chunk.slide_or_page,
            "start_sec": chunk.start_sec,
            "end_sec": chunk.end_sec,
            "heading": chunk.heading,
            "text": chunk.text,
        }
        size = len(json.dumps(item)) + 2
        if used + size > max_chars:
            remaining = max_chars - used - (size - len(chunk.text))
            if remaining > 200:
                item["text"] = chunk.text[:remaining]
                items.append(item)
            break
        items.append(item)
        used += size
    return json.dumps(items, indent=2)


def build_stage_a_prompt(
    module_id: str,
    module_title: str,
    course_id: str,
    chunks: List[Chunk],
    max_chars: int,
    outline_headings: Optional[List[str]] = None,
) -> str:
    """Build the user prompt for module summarization."""
    outline_section = f"""
### Course Outline Headings (check coverage):
{json.dumps(outline_headings, indent=2)}
""" if outline_headings else ""

    return f"""## INPUT DATA

module_id: "{module_id}"
module_title: "{module_title}"
course_id: "{course_id}"

### ContextChunks:
```json
{chunks_to_prompt_json(chunks, max_chars)}
```
{outline_section}
{STAGE_A_FEW_SHOT}

## INSTRUCTIONS

Read all ContextChunks carefully. Produce EXACTLY this JSON structure:

1. **module_summary**: Array of 6-10 concise bullets
   - Each bullet: {{"point": "statement", "supports": ["chunk_id1", "chunk_id2"]}}
   - Every point MUST have at least one supporting chunk_id

2. **key_topics**: Array of 6-12 topics
   - Each topic: {{"topic": "topic name", "supports": ["chunk_id"]}}

3. **coverage_map**: Array showing outline coverage (if headings provided)
   - Each item: {{"heading": "Heading Title", "status": "Covered" | "Not Covered", "supports": ["chunk_id"]}}
   - If no outline headings provided, return empty array []

Return ONLY valid JSON, no other text."""


def build_stage_b_prompt(
    module_id: str,
    module_title: str,
    chunks: List[Chunk],
    stage_a: StageAOutput,
    target_card_count: int,
    difficulty_distribution: Dict[str, int],
) -> str:
    """Build the user prompt for flashcard generation (one call for all chunks)."""
    content_sections = []
    for chunk in chunks:
        location = chunk_location(chunk)
        label = f"{chunk.source_file}, {location}" if location else chunk.source_file
        content_sections.append(f"--- Chunk {chunk.chunk_id} [{label}] ---\n{chunk.text}")

    summary = "\n".join(f"- {p.point}" for p in stage_a.module_summary)
    topics = "\n".join(f"{i + 1}. {t.topic}" for i, t in enumerate(stage_a.key_topics))

    return f"""## INPUT DATA

module_id: "{module_id}"
module_title: "{module_title}"
target_card_count: {target_card_count}
difficulty_distribution: easy={difficulty_distribution['easy']}, medium={difficulty_distribution['medium']}, hard={difficulty_distribution['hard']}

### Module Summary:
{summary}

### Key Topics to cover:
{topics}

### Source Content:

{chr(10).join(content_sections) if content_sections else "(no content)"}

## INSTRUCTIONS

Generate {target_card_count} high-quality flashcards from this content. Ensure:
- Each card's evidence_quote is an EXACT excerpt (1-2 sentences) from one chunk
- Cover different key topics; avoid duplicate questions
- Difficulty: ~{difficulty_distribution['easy']} easy, ~{difficulty_distribution['medium']} medium, ~{difficulty_distribution['hard']} hard
- At least 3 cards should be Apply/Analyze/Evaluate/Create (higher-order)

## OUTPUT FORMAT

Return ONLY this JSON structure:

{{
  "cards": [
    {{
      "question": "What is...?",
      "answer": "The answer is...",
      "rationale": "This tests understanding of...",
      "evidence_quote": "Exact quote from source content",
      "bloom_level": "Understand",
      "difficulty": "medium",
      "confidence": 0.9
    }}
  ]
}}"""
