"""Background job queues and their handlers."""
from .job_store import InMemoryJobStore, Job, JobState, RedisJobStore
from .orchestrator import (
    DEFAULT_QUEUE_CONFIGS,
    MESSAGE_RETRY,
    PAYMENT_VERIFICATION,
    RECEIPT_GENERATION,
    BackoffType,
    JobOrchestrator,
    JobQueue,
    QueueConfig,
    RetryPolicy,
)

__all__ = [
    "DEFAULT_QUEUE_CONFIGS",
    "MESSAGE_RETRY",
    "PAYMENT_VERIFICATION",
    "RECEIPT_GENERATION",
    "BackoffType",
    "InMemoryJobStore",
    "Job",
    "JobOrchestrator",
    "JobQueue",
    "JobState",
    "QueueConfig",
    "RedisJobStore",
    "RetryPolicy",
]
