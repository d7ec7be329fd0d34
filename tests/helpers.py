"""Test doubles shared by the test modules."""
import time
from datetime import datetime, timedelta

from sqlmodel import Session

from trademaster.core.database import engine

ADMIN_HEADERS = {"X-Admin-Secret": "test-admin-secret"}

GOOD_ANALYSIS = """Here is the analysis:
{"summary": "Disciplined entry with a clear stop.", "score": 80, "confidence": 90,
 "strengths": ["Stop loss set"], "weaknesses": ["Late exit"], "recommendations": ["Trail the stop"],
 "riskAssessment": {"level": "low", "factors": ["Small size"]},
 "psychologyInsights": {"emotionalState": "patient", "biases": [], "suggestions": ["Keep journaling"]}}"""


class FakeClock:
    """Epoch seconds for the job store, naive UTC datetimes for the executor."""

    def __init__(self, start: float | None = None):
        # Whole seconds keep epoch-ms arithmetic exact
        self.now = start if start is not None else float(int(time.time()))

    def __call__(self) -> float:
        return self.now

    def utcnow(self) -> datetime:
        return datetime(1970, 1, 1) + timedelta(seconds=self.now)

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubGenerator:
    """LLM stand-in: returns (or raises) the given responses in order, repeating the last one."""

    def __init__(self, *responses, delay: float = 0.0):
        self.responses = list(responses) or [GOOD_ANALYSIS]
        self.delay = delay
        self.calls = []

    def __call__(self, payload):
        self.calls.append(payload)
        if self.delay:
            time.sleep(self.delay)
        response = self.responses[min(len(self.calls) - 1, len(self.responses) - 1)]
        if isinstance(response, BaseException):
            raise response
        return response


def load(model, id_):
    with Session(engine, expire_on_commit=False) as db:
        return db.get(model, id_)
