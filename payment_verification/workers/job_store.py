"""
Job record stores.

The in-memory store keeps records for the life of the process. The Redis
store persists every record so unfinished jobs survive a worker restart:
each job is a JSON string under ``{prefix}:{queue}:job:{id}`` and unfinished
job ids are tracked in the set ``{prefix}:{queue}:unfinished``.
"""
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


UNFINISHED_STATES = frozenset({JobState.WAITING, JobState.DELAYED, JobState.ACTIVE})


@dataclass
class Job:
    """One unit of queued work and its bookkeeping."""

    id: str
    queue: str
    name: str
    payload: Dict[str, Any]
    max_attempts: int
    created_at: float
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    available_at: Optional[float] = None
    finished_at: Optional[float] = None
    last_error: Optional[str] = None
    result: Any = field(default=None)

    @property
    def is_finished(self) -> bool:
        return self.state not in UNFINISHED_STATES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(**{**data, "state": JobState(data["state"])})


class JobStore(Protocol):
    async def save(self, job: Job) -> None: ...

    async def delete(self, job: Job) -> None: ...

    async def load_unfinished(self, queue: str) -> List[Job]: ...

    async def close(self) -> None: ...


class InMemoryJobStore:
    """Process-local job records."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    async def save(self, job: Job) -> None:
        self._jobs[job.id] = job

    async def delete(self, job: Job) -> None:
        self._jobs.pop(job.id, None)

    async def load_unfinished(self, queue: str) -> List[Job]:
        return [j for j in self._jobs.values() if j.queue == queue and not j.is_finished]

    async def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def close(self) -> None:
        return None


class RedisJobStore:
    """Job records in Redis."""

    def __init__(
        self,
        redis_url: str,
        prefix: str = "payment-jobs",
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.redis_client = redis_client
        self._redis_initialized = redis_client is not None

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None or not self._redis_initialized:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    def _job_key(self, queue: str, job_id: str) -> str:
        return f"{self.prefix}:{queue}:job:{job_id}"

    def _unfinished_key(self, queue: str) -> str:
        return f"{self.prefix}:{queue}:unfinished"

    async def save(self, job: Job) -> None:
        redis = await self._ensure_redis()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.queue, job.id), json.dumps(job.to_dict(), default=str))
            if job.is_finished:
                pipe.srem(self._unfinished_key(job.queue), job.id)
            else:
                pipe.sadd(self._unfinished_key(job.queue), job.id)
            await pipe.execute()

    async def delete(self, job: Job) -> None:
        redis = await self._ensure_redis()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._job_key(job.queue, job.id))
            pipe.srem(self._unfinished_key(job.queue), job.id)
            await pipe.execute()

    async def load_unfinished(self, queue: str) -> List[Job]:
        redis = await self._ensure_redis()
        job_ids = sorted(await redis.smembers(self._unfinished_key(queue)))
        if not job_ids:
            return []

        raw = await redis.mget([self._job_key(queue, job_id) for job_id in job_ids])
        jobs = []
        for job_id, value in zip(job_ids, raw):
            if value is None:
                logger.warning("job_record_missing", queue=queue, job_id=job_id)
                await redis.srem(self._unfinished_key(queue), job_id)
                continue
            jobs.append(Job.from_dict(json.loads(value)))

        jobs.sort(key=lambda j: j.created_at)
        logger.info("unfinished_jobs_loaded", queue=queue, count=len(jobs))
        return jobs

    async def ping(self) -> bool:
        redis = await self._ensure_redis()
        return bool(await redis.ping())

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client and self._redis_initialized:
            await self.redis_client.aclose()
