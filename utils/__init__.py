# Flashcard pipeline utilities
from .file_storage import (
    generate_uuid,
    sanitize_filename,
    read_json_file,
    write_json_file,
    append_to_json_list,
    list_json_files
)

from .config import (
    PipelineConfig,
    clamp_retrieval_k,
    MIN_CHUNKS_FOR_GENERATION,
    MAX_ANSWER_WORDS,
    MAX_ANSWER_CHARS
)

from .retry import (
    with_retry,
    is_retryable_error
)

__all__ = [
    'generate_uuid',
    'sanitize_filename',
    'read_json_file',
    'write_json_file',
    'append_to_json_list',
    'list_json_files',
    'PipelineConfig',
    'clamp_retrieval_k',
    'MIN_CHUNKS_FOR_GENERATION',
    'MAX_ANSWER_WORDS',
    'MAX_ANSWER_CHARS',
    'with_retry',
    'is_retryable_error'
]
