"""
Local JSON storage helpers.
Decks, job logs and pre-extracted chunks are plain JSON files under the data dir.
"""

import json
import re
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def generate_uuid() -> str:
    """Generate unique ID for jobs and log entries"""
    return str(uuid.uuid4())


def sanitize_filename(value: str, max_length: int = 120) -> str:
    """
    Make an identifier safe to use as a file name.
    e.g. "intro-to-pm::modules::0" -> "intro-to-pm__modules__0"
    """
    safe = value.replace("::", "__")
    safe = re.sub(r'[^A-Za-z0-9_.-]+', '-', safe).strip('-.')
    return safe[:max_length] or "unnamed"


def read_json_file(filepath: Path) -> Optional[Any]:
    """Read JSON file, return None if not found or invalid"""
    try:
        if not filepath.exists():
            return None
        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in {filepath}: {e}")
        return None
    except OSError as e:
        logger.error(f"Error reading {filepath}: {e}")
        return None


def write_json_file(filepath: Path, data: Any) -> bool:
    """Write data to JSON file atomically"""
    try:
        filepath.parent.mkdir(parents=True, exist_ok=True)
        temp_file = filepath.with_suffix(filepath.suffix + '.tmp')
        with open(temp_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(filepath)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Error writing {filepath}: {e}")
        return False


def append_to_json_list(filepath: Path, item: Dict[str, Any], key: str = "items") -> bool:
    """Append item to JSON list file (creates if not exists)"""
    data = read_json_file(filepath) or {key: []}
    if key not in data:
        data[key] = []
    data[key].append(item)
    return write_json_file(filepath, data)


def list_json_files(directory: Path, pattern: str = "*.json") -> List[Path]:
    """List JSON files in a directory, newest name last."""
    if not directory.exists():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_file())
