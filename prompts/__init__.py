# Prompts module initialization

# Flashcard Generation Prompts
from .flashcard_prompts import (
    STAGE_A_SYSTEM_PROMPT,
    STAGE_B_SYSTEM_PROMPT,
    build_stage_a_prompt,
    build_stage_b_prompt,
    chunk_location,
    format_time
)

__all__ = [
    'STAGE_A_SYSTEM_PROMPT',
    'STAGE_B_SYSTEM_PROMPT',
    'build_stage_a_prompt',
    'build_stage_b_prompt',
    'chunk_location',
    'format_time'
]
