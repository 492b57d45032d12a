"""
Job orchestrator.

A set of named queues, each with its own retry policy and retention limits,
running side-effecting work asynchronously:

    message-retry         3 attempts, exponential from 2s, keep 10 / 5
    payment-verification  5 attempts, exponential from 5s, keep 20 / 10
    receipt-generation    3 attempts, exponential from 1s, keep 50 / 10

Handlers are called as ``handler(payload, attempt)`` and never retry
themselves; the queue owns retries. A job that exhausts its attempts, or
raises a non-retryable PaymentEngineError, fails permanently and its queue's
failure hook runs exactly once.
"""
import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import structlog

from payment_verification.core.exceptions import PaymentEngineError
from payment_verification.monitoring.logging import job_log_context
from payment_verification.monitoring.metrics import metrics
from payment_verification.workers.job_store import (
    InMemoryJobStore,
    Job,
    JobState,
    JobStore,
)

logger = structlog.get_logger(__name__)

MESSAGE_RETRY = "message-retry"
PAYMENT_VERIFICATION = "payment-verification"
RECEIPT_GENERATION = "receipt-generation"

# Health thresholds per queue
MAX_HEALTHY_FAILED = 50
MAX_HEALTHY_ACTIVE = 100

# clean_all_queues(): completed older than 5 minutes, failed older than a day
COMPLETED_GRACE_SECONDS = 5 * 60
FAILED_GRACE_SECONDS = 24 * 60 * 60
CLEAN_LIMIT = 100

Handler = Callable[[Dict[str, Any], int], Awaitable[Any]]
CompletedHook = Callable[[Job, Any], Awaitable[None]]
FailedHook = Callable[[Job, BaseException], Awaitable[None]]


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    backoff: BackoffType = BackoffType.EXPONENTIAL
    delay_seconds: float = 1.0

    def delay_for(self, failures: int) -> float:
        """Delay before the next attempt after ``failures`` failed attempts."""
        if self.backoff is BackoffType.FIXED:
            return self.delay_seconds
        return self.delay_seconds * 2 ** (max(failures, 1) - 1)


@dataclass(frozen=True)
class QueueConfig:
    name: str
    job_name: str
    retry: RetryPolicy
    keep_completed: int
    keep_failed: int
    concurrency: int = 1


DEFAULT_QUEUE_CONFIGS: Dict[str, QueueConfig] = {
    MESSAGE_RETRY: QueueConfig(
        name=MESSAGE_RETRY,
        job_name="retry-message",
        retry=RetryPolicy(attempts=3, delay_seconds=2.0),
        keep_completed=10,
        keep_failed=5,
    ),
    PAYMENT_VERIFICATION: QueueConfig(
        name=PAYMENT_VERIFICATION,
        job_name="verify-payment",
        retry=RetryPolicy(attempts=5, delay_seconds=5.0),
        keep_completed=20,
        keep_failed=10,
    ),
    RECEIPT_GENERATION: QueueConfig(
        name=RECEIPT_GENERATION,
        job_name="generate-receipt",
        retry=RetryPolicy(attempts=3, delay_seconds=1.0),
        keep_completed=50,
        keep_failed=10,
    ),
}


def _is_permanent(error: BaseException) -> bool:
    return isinstance(error, PaymentEngineError) and not error.retryable


def _error_fields(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, PaymentEngineError):
        return error.to_dict()
    return {"error_type": type(error).__name__}


class JobQueue:
    """
    One named queue served by a pool of asyncio workers.

    A job sits in exactly one place at a time (waiting, delayed, active or a
    retention list), so attempts of one job never overlap.
    """

    def __init__(self, config: QueueConfig, store: Optional[JobStore] = None):
        self.config = config
        self.name = config.name
        self.store: JobStore = store or InMemoryJobStore()

        self._handler: Optional[Handler] = None
        self._on_completed: Optional[CompletedHook] = None
        self._on_failed: Optional[FailedHook] = None

        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._waiting: Dict[str, Job] = {}
        self._delayed: Dict[str, tuple] = {}
        self._active: Dict[str, Job] = {}
        self._completed: Deque[Job] = deque()
        self._failed: Deque[Job] = deque()

        self._not_paused = asyncio.Event()
        self._not_paused.set()
        self._workers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Wiring and lifecycle
    # ------------------------------------------------------------------

    def process(
        self,
        handler: Handler,
        on_completed: Optional[CompletedHook] = None,
        on_failed: Optional[FailedHook] = None,
    ) -> None:
        self._handler = handler
        self._on_completed = on_completed
        self._on_failed = on_failed

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._workers)

    @property
    def is_paused(self) -> bool:
        return not self._not_paused.is_set()

    async def start(self) -> None:
        """Re-enqueue unfinished jobs from the store and start workers."""
        if self._handler is None:
            raise RuntimeError(f"No handler registered for queue {self.name}")
        if self.is_running:
            return

        for job in await self.store.load_unfinished(self.name):
            if job.id in self._waiting or job.id in self._delayed or job.id in self._active:
                continue
            job.state = JobState.WAITING
            await self._enqueue(job)

        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"{self.name}-worker-{i}")
            for i in range(self.config.concurrency)
        ]
        logger.info("queue_started", queue=self.name, concurrency=self.config.concurrency)

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        for _, handle in self._delayed.values():
            handle.cancel()
        logger.info("queue_stopped", queue=self.name)

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    async def add(
        self,
        payload: Dict[str, Any],
        delay_seconds: float = 0,
        job_id: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> Job:
        """
        Queue a job.

        Raises:
            Exception: Whatever the job store raised; the job is not queued
        """
        job = Job(
            id=job_id or uuid.uuid4().hex,
            queue=self.name,
            name=self.config.job_name,
            payload=payload,
            max_attempts=attempts or self.config.retry.attempts,
            created_at=time.time(),
        )
        if delay_seconds > 0:
            await self._schedule(job, delay_seconds, strict=True)
        else:
            await self._enqueue(job, strict=True)
        return job

    async def _enqueue(self, job: Job, strict: bool = False) -> None:
        job.state = JobState.WAITING
        job.available_at = time.time()
        await self._checkpoint(job, strict)
        self._waiting[job.id] = job
        self._ready.put_nowait(job.id)

    async def _schedule(self, job: Job, delay_seconds: float, strict: bool = False) -> None:
        job.state = JobState.DELAYED
        job.available_at = time.time() + delay_seconds
        await self._checkpoint(job, strict)
        handle = asyncio.get_running_loop().call_later(delay_seconds, self._promote, job.id)
        self._delayed[job.id] = (job, handle)

    async def _checkpoint(self, job: Job, strict: bool = False) -> None:
        """Mirror a job into the store. In-memory state stays authoritative."""
        try:
            await self.store.save(job)
        except Exception as e:
            if strict:
                raise
            logger.error(
                "job_store_save_failed",
                queue=self.name,
                job_id=job.id,
                state=job.state.value,
                error=str(e),
            )

    def _promote(self, job_id: str) -> None:
        entry = self._delayed.pop(job_id, None)
        if entry is None:
            return
        job, _ = entry
        job.state = JobState.WAITING
        self._waiting[job.id] = job
        self._ready.put_nowait(job.id)

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            await self._not_paused.wait()
            job_id = await self._ready.get()
            try:
                job = self._waiting.pop(job_id, None)
                if job is None:
                    continue
                if self.is_paused:
                    self._waiting[job.id] = job
                    self._ready.put_nowait(job.id)
                    continue
                await self._run(job)
            except Exception as e:
                logger.error(
                    "queue_worker_error",
                    queue=self.name,
                    worker=worker_id,
                    job_id=job_id,
                    error=str(e),
                )
            finally:
                self._ready.task_done()

    async def _run(self, job: Job) -> None:
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        attempt = job.attempts_made
        # Stays active until hooks have run, so the queue never looks idle mid-chain
        self._active[job.id] = job
        try:
            with job_log_context(self.name, job.id, attempt):
                await self._attempt(job, attempt)
        finally:
            self._active.pop(job.id, None)

    async def _attempt(self, job: Job, attempt: int) -> None:
        await self._checkpoint(job)

        log = logger.bind(queue=self.name, job_id=job.id, attempt=attempt)
        log.info("job_started", job_name=job.name)

        started = time.perf_counter()
        try:
            result = await self._handler(job.payload, attempt)
        except Exception as e:
            duration = time.perf_counter() - started
            job.last_error = str(e)

            if _is_permanent(e) or attempt >= job.max_attempts:
                log.error(
                    "job_failed",
                    error=str(e),
                    permanent=_is_permanent(e),
                    **_error_fields(e),
                )
                await self._fail(job, e)
                return

            delay = self.config.retry.delay_for(attempt)
            metrics.record_job_retry(self.name, duration)
            log.warning("job_retry_scheduled", error=str(e), delay_seconds=delay)
            await self._schedule(job, delay)
            return

        metrics.record_job_completed(self.name, time.perf_counter() - started)
        log.info("job_completed")
        await self._complete(job, result)

    async def _complete(self, job: Job, result: Any) -> None:
        job.state = JobState.COMPLETED
        job.result = result
        job.finished_at = time.time()
        await self._checkpoint(job)
        await self._retain(self._completed, job, self.config.keep_completed)

        if self._on_completed is not None:
            try:
                await self._on_completed(job, result)
            except Exception as e:
                logger.error(
                    "job_completed_hook_error", queue=self.name, job_id=job.id, error=str(e)
                )

    async def _fail(self, job: Job, error: BaseException) -> None:
        job.state = JobState.FAILED
        job.finished_at = time.time()
        await self._checkpoint(job)
        await self._retain(self._failed, job, self.config.keep_failed)
        metrics.record_job_failed(self.name)

        if self._on_failed is not None:
            try:
                await self._on_failed(job, error)
            except Exception as e:
                logger.error(
                    "job_failed_hook_error", queue=self.name, job_id=job.id, error=str(e)
                )

    async def _retain(self, history: Deque[Job], job: Job, limit: int) -> None:
        history.append(job)
        while len(history) > limit:
            evicted = history.popleft()
            try:
                await self.store.delete(evicted)
            except Exception as e:
                logger.error(
                    "job_store_delete_failed", queue=self.name, job_id=evicted.id, error=str(e)
                )

    # ------------------------------------------------------------------
    # Control and introspection
    # ------------------------------------------------------------------

    def pause(self) -> None:
        self._not_paused.clear()
        logger.info("queue_paused", queue=self.name)

    def resume(self) -> None:
        self._not_paused.set()
        logger.info("queue_resumed", queue=self.name)

    async def clean(
        self,
        completed_grace_seconds: float = COMPLETED_GRACE_SECONDS,
        failed_grace_seconds: float = FAILED_GRACE_SECONDS,
        limit: int = CLEAN_LIMIT,
    ) -> int:
        """Drop finished jobs older than the grace periods, oldest first."""
        now = time.time()
        removed = 0
        for history, grace in (
            (self._completed, completed_grace_seconds),
            (self._failed, failed_grace_seconds),
        ):
            count = 0
            while history and count < limit and now - (history[0].finished_at or now) >= grace:
                await self.store.delete(history.popleft())
                count += 1
            removed += count
        logger.info("queue_cleaned", queue=self.name, removed=removed)
        return removed

    @property
    def completed_jobs(self) -> List[Job]:
        return list(self._completed)

    @property
    def failed_jobs(self) -> List[Job]:
        return list(self._failed)

    def stats(self) -> Dict[str, Any]:
        stats = {
            "name": self.name,
            "waiting": len(self._waiting),
            "active": len(self._active),
            "completed": len(self._completed),
            "failed": len(self._failed),
            "delayed": len(self._delayed),
        }
        metrics.set_queue_depth(self.name, stats["waiting"] + stats["delayed"])
        return stats

    def health(self) -> Dict[str, Any]:
        stats = self.stats()
        too_many_failed = stats["failed"] > MAX_HEALTHY_FAILED
        too_many_active = stats["active"] > MAX_HEALTHY_ACTIVE

        error = None
        if too_many_failed:
            error = f"Too many failed jobs: {stats['failed']}"
        elif too_many_active:
            error = f"Too many active jobs: {stats['active']}"
        elif self.is_paused:
            error = "Queue is paused"

        return {
            "name": self.name,
            "is_healthy": not too_many_failed and not too_many_active,
            "error": error,
            "details": {
                "is_active": self.is_running,
                "is_paused": self.is_paused,
                **{k: v for k, v in stats.items() if k != "name"},
            },
        }

    def is_idle(self) -> bool:
        return not (self._waiting or self._delayed or self._active)


class JobOrchestrator:
    """The three named queues and their enqueue entry points."""

    def __init__(
        self,
        configs: Optional[Dict[str, QueueConfig]] = None,
        store: Optional[JobStore] = None,
    ):
        self.store: JobStore = store or InMemoryJobStore()
        self.queues: Dict[str, JobQueue] = {
            name: JobQueue(config, self.store)
            for name, config in (configs or DEFAULT_QUEUE_CONFIGS).items()
        }

    def queue(self, name: str) -> JobQueue:
        return self.queues[name]

    def register(
        self,
        name: str,
        handler: Handler,
        on_completed: Optional[CompletedHook] = None,
        on_failed: Optional[FailedHook] = None,
    ) -> None:
        self.queues[name].process(handler, on_completed=on_completed, on_failed=on_failed)

    async def start(self) -> None:
        for queue in self.queues.values():
            await queue.start()
        logger.info("job_orchestrator_started", queues=list(self.queues))

    async def stop(self) -> None:
        for queue in self.queues.values():
            await queue.stop()
        await self.store.close()
        logger.info("job_orchestrator_stopped")

    async def add_message_to_queue(
        self, message: Dict[str, Any], delay_seconds: float = 0
    ) -> Job:
        job = await self.queues[MESSAGE_RETRY].add(message, delay_seconds=delay_seconds)
        logger.info(
            "message_queued_for_retry",
            job_id=job.id,
            to=message.get("to"),
            message_type=message.get("message_type", "text"),
            retry_count=message.get("retry_count", 0),
        )
        return job

    async def add_payment_verification_to_queue(
        self, data: Dict[str, Any], delay_seconds: float = 0
    ) -> Job:
        job = await self.queues[PAYMENT_VERIFICATION].add(data, delay_seconds=delay_seconds)
        logger.info(
            "payment_verification_queued",
            job_id=job.id,
            order_id=data.get("order_id"),
            payment_reference=data.get("payment_reference"),
            has_image="image_base64" in data,
        )
        return job

    async def add_receipt_generation_to_queue(
        self, data: Dict[str, Any], delay_seconds: float = 0
    ) -> Job:
        job = await self.queues[RECEIPT_GENERATION].add(data, delay_seconds=delay_seconds)
        logger.info(
            "receipt_generation_queued",
            job_id=job.id,
            payment_id=data.get("payment_id"),
            order_id=data.get("order_id"),
        )
        return job

    async def get_queue_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: queue.stats() for name, queue in self.queues.items()}

    async def pause_all_queues(self) -> None:
        for queue in self.queues.values():
            queue.pause()
        logger.info("all_queues_paused")

    async def resume_all_queues(self) -> None:
        for queue in self.queues.values():
            queue.resume()
        logger.info("all_queues_resumed")

    async def clean_all_queues(self) -> int:
        removed = 0
        for queue in self.queues.values():
            removed += await queue.clean()
        logger.info("all_queues_cleaned", removed=removed)
        return removed

    async def check_queue_health(self) -> Dict[str, Any]:
        statuses = [queue.health() for queue in self.queues.values()]
        healthy = sum(1 for s in statuses if s["is_healthy"])
        return {
            "is_healthy": healthy == len(statuses),
            "queues": statuses,
            "summary": {
                "total_queues": len(statuses),
                "healthy_queues": healthy,
                "unhealthy_queues": len(statuses) - healthy,
            },
        }

    async def drain(self, timeout: float = 10.0, poll_interval: float = 0.01) -> None:
        """Wait until every queue has no waiting, delayed or active jobs."""

        async def _wait() -> None:
            while not all(queue.is_idle() for queue in self.queues.values()):
                await asyncio.sleep(poll_interval)

        await asyncio.wait_for(_wait(), timeout=timeout)
