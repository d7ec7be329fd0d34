from .errors import (
    ExecutionError,
    ExecutorError,
    NotFoundError,
    ProducerError,
    ProviderBadRequestError,
    ProviderTransientError,
)
from .models import Job, JobHandle, JobKind, JobPriority, JobState
from .pool import JobEvent, WorkerPool
from .producer import JobProducer
from .store import RedisJobStore

__all__ = [
    "ExecutionError",
    "ExecutorError",
    "Job",
    "JobEvent",
    "JobHandle",
    "JobKind",
    "JobPriority",
    "JobProducer",
    "JobState",
    "NotFoundError",
    "ProducerError",
    "ProviderBadRequestError",
    "ProviderTransientError",
    "RedisJobStore",
    "WorkerPool",
]
