"""
Per-job step log for generation runs.

Each job gets data_dir/job_logs/{job_id}.json holding its step entries and
the raw Stage A / Stage B outputs (PII-redacted), served to admins through
the job's logs_url.
"""

import re
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from utils.file_storage import append_to_json_list, read_json_file, sanitize_filename, write_json_file

logger = logging.getLogger(__name__)

RAW_OUTPUT_LIMIT = 20000

_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s().-]{8,}\d")


def redact_pii(text: str) -> str:
    text = _EMAIL_PATTERN.sub("[REDACTED_EMAIL]", text or "")
    return _PHONE_PATTERN.sub("[REDACTED_PHONE]", text)


def logs_url_for(job_id: str) -> str:
    return f"/api/flashcards/orchestrator/jobs/{job_id}/logs"


class JobLogger:
    """Log generation steps for debugging and audit"""

    def __init__(self, data_dir: Path):
        self.logs_dir = Path(data_dir) / "job_logs"

    def _path(self, job_id: str) -> Path:
        return self.logs_dir / f"{sanitize_filename(job_id)}.json"

    def start(self, job_id: str, module_id: str, settings: Optional[Dict[str, Any]] = None) -> str:
        write_json_file(self._path(job_id), {
            "job_id": job_id,
            "module_id": module_id,
            "settings": settings or {},
            "status": "running",
            "started_at": datetime.utcnow().isoformat(),
            "completed_at": None,
            "steps": [],
            "raw_outputs": {},
        })
        return logs_url_for(job_id)

    def log(self, job_id: str, step: str, message: str, level: str = "info", **details) -> bool:
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "step": step,
            "level": level,
            "message": message,
        }
        if details:
            entry["details"] = details
        return append_to_json_list(self._path(job_id), entry, key="steps")

    def store_raw_output(self, job_id: str, stage: str, raw_text: str) -> bool:
        data = read_json_file(self._path(job_id))
        if data is None:
            return False
        data.setdefault("raw_outputs", {})[stage] = redact_pii(raw_text)[:RAW_OUTPUT_LIMIT]
        return write_json_file(self._path(job_id), data)

    def _finish(self, job_id: str, status: str, **fields) -> bool:
        data = read_json_file(self._path(job_id))
        if data is None:
            logger.warning(f"No job log to finish for {job_id}")
            return False
        data.update(fields)
        data["status"] = status
        data["completed_at"] = datetime.utcnow().isoformat()
        return write_json_file(self._path(job_id), data)

    def complete(self, job_id: str, result: Dict[str, Any]) -> bool:
        return self._finish(job_id, "completed", result=result)

    def fail(self, job_id: str, error: str) -> bool:
        return self._finish(job_id, "failed", error=error)

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        return read_json_file(self._path(job_id))
