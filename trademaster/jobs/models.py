"""Job records as stored in Redis hashes."""
import json
from enum import Enum, IntEnum

from pydantic import BaseModel


class JobKind(str, Enum):
    TRADE_ANALYSIS = "trade_analysis"
    OVERALL_INSIGHT = "overall_insight"
    WEEKLY_INSIGHT = "weekly_insight"


class JobPriority(IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3

    @classmethod
    def parse(cls, value: "JobPriority | str | int") -> "JobPriority":
        if isinstance(value, JobPriority):
            return value
        if isinstance(value, str):
            return cls[value.upper()]
        return cls(value)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = (JobState.WAITING, JobState.ACTIVE)
TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)

# Sort key inside the waiting set: priority tier first, then enqueue sequence (FIFO)
_TIER_SPAN = 10**12


def default_job_id(kind: JobKind | str, subject_id: int | str) -> str:
    return f"{JobKind(kind).value}:{subject_id}"


class Job(BaseModel):
    id: str
    kind: JobKind
    subject_id: str
    priority: JobPriority = JobPriority.NORMAL
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 3
    seq: int = 0
    enqueued_at: int = 0  # epoch ms
    delay_until: int | None = None
    started_at: int | None = None
    finished_at: int | None = None
    last_error: str | None = None
    claim_token: str | None = None
    result: dict | None = None

    @property
    def rank(self) -> int:
        return (JobPriority.HIGH - self.priority) * _TIER_SPAN + self.seq

    def to_redis(self) -> dict[str, str]:
        data = self.model_dump(mode="json")
        out: dict[str, str] = {}
        for key, value in data.items():
            if value is None:
                continue
            out[key] = json.dumps(value) if isinstance(value, dict) else str(value)
        out["rank"] = str(self.rank)
        return out

    @classmethod
    def from_redis(cls, raw: dict[str, str]) -> "Job":
        data: dict = {k: v for k, v in raw.items() if k != "rank"}
        for key in ("attempts", "max_attempts", "seq", "enqueued_at", "delay_until", "started_at", "finished_at", "priority"):
            if key in data:
                data[key] = int(data[key])
        if "result" in data:
            data["result"] = json.loads(data["result"])
        return cls(**data)


class JobHandle(BaseModel):
    job_id: str
    state: JobState
    created: bool  # False when an existing pending job absorbed the request
