"""
JSON extraction from raw LLM text.
"""

import json
import re
import logging
from typing import Any, Dict

from utils.exceptions import ParseError

logger = logging.getLogger(__name__)

_FENCE_PATTERNS = [
    r'```json\s*(.*?)\s*```',
    r'```\s*(.*?)\s*```',
]


def extract_json(text: str) -> Dict[str, Any]:
    """
    Return the first JSON object found in an LLM response.

    Tries a direct parse, then fenced code blocks, then scans for the first
    '{' that starts a decodable object.

    Raises:
        ParseError: if no JSON object can be recovered.
    """
    if not text or not text.strip():
        raise ParseError("Empty response from LLM", error_code="EMPTY_RESPONSE")

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    for pattern in _FENCE_PATTERNS:
        for match in re.findall(pattern, text, re.DOTALL):
            try:
                parsed = json.loads(match)
            except (json.JSONDecodeError, ValueError):
                continue
            if isinstance(parsed, dict):
                return parsed

    decoder = json.JSONDecoder()
    for match in re.finditer(r'\{', text):
        try:
            parsed, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.error(f"Could not extract JSON from: {text[:500]}")
    raise ParseError("Failed to parse JSON response", error_code="INVALID_JSON")
