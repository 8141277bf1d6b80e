"""
Async Redis client for job records.
Each job is a Redis hash (one JSON-encoded value per field) with a TTL.
Provides save/get operations with graceful fallback on Redis failure;
callers keep an in-process copy and treat Redis as the shared store.
"""

import os
import json
import asyncio
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_redis_client = None
_redis_available = None
_redis_lock = asyncio.Lock()

JOB_KEY_PREFIX = "flashcard:job"
JOB_TTL_SECONDS = 7 * 86400  # 7 days


async def _get_redis():
    """Lazy-init async Redis connection singleton with lock to prevent race conditions."""
    global _redis_client, _redis_available
    if _redis_available is False:
        return None
    if _redis_client is not None:
        return _redis_client
    async with _redis_lock:
        # Double-check after acquiring lock
        if _redis_client is not None:
            return _redis_client
        if _redis_available is False:
            return None
        url = os.getenv("REDIS_URL")
        if not url:
            logger.info("REDIS_URL not set, job records stay in-process")
            _redis_available = False
            return None
        try:
            import redis.asyncio as aioredis
            _redis_client = aioredis.from_url(url, decode_responses=True)
            await _redis_client.ping()
            _redis_available = True
            logger.info(f"Redis connected: {url}")
            return _redis_client
        except Exception as e:
            logger.warning(f"Redis unavailable, job records stay in-process: {e}")
            _redis_available = False
            _redis_client = None
            return None


def _job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}:{job_id}"


async def save_job(job: Dict[str, Any]) -> bool:
    """Write a job record as a hash. Returns False when Redis is unavailable."""
    try:
        r = await _get_redis()
        if r is None:
            return False
        key = _job_key(job["job_id"])
        mapping = {field: json.dumps(value, default=str) for field, value in job.items()}
        await r.hset(key, mapping=mapping)
        await r.expire(key, JOB_TTL_SECONDS)
        return True
    except Exception as e:
        logger.warning(f"Redis save_job failed: {e}")
        return False


async def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    """Read a job record. Returns None on miss or Redis failure."""
    try:
        r = await _get_redis()
        if r is None:
            return None
        raw = await r.hgetall(_job_key(job_id))
        if not raw:
            return None
        return {field: json.loads(value) for field, value in raw.items()}
    except Exception as e:
        logger.warning(f"Redis get_job failed: {e}")
        return None
