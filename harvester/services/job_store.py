# harvester/services/job_store.py
import json
import logging
import re
from typing import Optional, Dict, Tuple
from datetime import datetime, timedelta

import redis.asyncio as redis

from harvester.config.settings import settings
from harvester.models.internal import ExtractionJob, SourceType

logger = logging.getLogger(__name__)

def idempotency_key(creator_name: str, source_type: SourceType) -> str:
    normalized = re.sub(r'[^\w\s]', '', creator_name.lower()).strip()
    normalized = re.sub(r'\s+', '-', normalized)
    return f"{normalized}:{source_type.value}"

class JobStore:
    """Persists ExtractionJobs so polling can resume after a restart.

    Redis when reachable, an in-process dict otherwise. Values are stored as
    JSON in both places, so every load returns a fresh copy.
    """

    def __init__(self, redis_url: Optional[str] = None, ttl: Optional[int] = None,
                 max_memory_entries: Optional[int] = None, use_redis: bool = True):
        self.redis_url = redis_url or settings.REDIS_URL
        self.ttl = ttl or settings.JOB_TTL
        self.max_memory_entries = max_memory_entries or settings.MEMORY_CACHE_SIZE
        self.redis_enabled = use_redis
        self.redis_client: Optional[redis.Redis] = None
        self.memory_store: Dict[str, Tuple[str, datetime]] = {}

    async def _get_redis_client(self) -> Optional[redis.Redis]:
        if not self.redis_enabled:
            return None

        if self.redis_client is None:
            try:
                if self.redis_url.startswith(("redis://", "rediss://")):
                    self.redis_client = redis.from_url(
                        self.redis_url,
                        encoding="utf-8",
                        decode_responses=True,
                        socket_timeout=5,
                        socket_connect_timeout=5
                    )
                    await self.redis_client.ping()
                    logger.info("✅ Redis job store connected")
                else:
                    logger.warning("⚠️ Invalid Redis URL, keeping jobs in memory only")
                    self.redis_enabled = False
                    return None
            except Exception as e:
                logger.warning(f"⚠️ Redis connection failed: {e}. Keeping jobs in memory only.")
                self.redis_enabled = False
                self.redis_client = None
                return None

        return self.redis_client

    async def _get_raw(self, key: str) -> Optional[str]:
        redis_client = await self._get_redis_client()
        if redis_client:
            try:
                value = await redis_client.get(key)
                if value:
                    return value
            except Exception as e:
                logger.warning(f"Redis get error: {e}")

        entry = self.memory_store.get(key)
        if entry:
            value, expires = entry
            if datetime.now() < expires:
                return value
            del self.memory_store[key]
        return None

    async def _set_raw(self, key: str, value: str):
        redis_client = await self._get_redis_client()
        if redis_client:
            try:
                await redis_client.setex(key, self.ttl, value)
            except Exception as e:
                logger.warning(f"Redis set error: {e}")

        if key not in self.memory_store and len(self.memory_store) >= self.max_memory_entries:
            self.memory_store.pop(next(iter(self.memory_store)))
        self.memory_store[key] = (value, datetime.now() + timedelta(seconds=self.ttl))

    async def _delete_raw(self, key: str):
        redis_client = await self._get_redis_client()
        if redis_client:
            try:
                await redis_client.delete(key)
            except Exception as e:
                logger.warning(f"Redis delete error: {e}")
        self.memory_store.pop(key, None)

    async def save(self, job: ExtractionJob):
        await self._set_raw(f"job:{job.job_id}", job.model_dump_json())

        active_key = f"active:{idempotency_key(job.creator_name, job.source_type)}"
        if job.status.is_terminal or job.abandoned:
            current = await self._get_raw(active_key)
            if current == job.job_id:
                await self._delete_raw(active_key)
        else:
            await self._set_raw(active_key, job.job_id)

    async def get(self, job_id: str) -> Optional[ExtractionJob]:
        raw = await self._get_raw(f"job:{job_id}")
        if not raw:
            return None
        try:
            return ExtractionJob.model_validate(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.error(f"Corrupt job record {job_id}: {e}")
            return None

    async def find_active(self, creator_name: str, source_type: SourceType) -> Optional[ExtractionJob]:
        """Non-terminal, non-abandoned job already submitted for this creator and source"""
        job_id = await self._get_raw(f"active:{idempotency_key(creator_name, source_type)}")
        if not job_id:
            return None
        job = await self.get(job_id)
        if job is None or job.status.is_terminal or job.abandoned:
            return None
        return job

    async def health_check(self) -> str:
        redis_client = await self._get_redis_client()
        if redis_client:
            return "healthy"
        return "degraded - memory only"

    async def close(self):
        if self.redis_client:
            try:
                await self.redis_client.aclose()
            except Exception as e:
                logger.debug(f"Error closing Redis client: {e}")
            self.redis_client = None
        self.memory_store.clear()
