"""
Shared fixtures: a throwaway SQLite store, a controllable clock and
scripted processors for driving the job worker.
"""

import asyncio
from collections import defaultdict, deque

import pytest
import pytest_asyncio

from db import database
from models.candidate import Candidate
from models.outcome import Success


@pytest_asyncio.fixture
async def store(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "test.db"))
    await database.init_db()
    yield database


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class ScriptedProcessor:
    """
    Returns queued outcomes keyed by payload["name"]; Success({"name": ...})
    once a name's script runs out. Outcomes that are exceptions are raised.
    """

    def __init__(self, script: dict | None = None):
        self.script = defaultdict(deque, {k: deque(v) for k, v in (script or {}).items()})
        self.calls: list[str] = []

    async def process(self, payload: dict):
        name = payload["name"]
        self.calls.append(name)
        await asyncio.sleep(0)
        if self.script[name]:
            outcome = self.script[name].popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return Success({"name": name})


def make_candidate(**overrides) -> Candidate:
    data = {
        "email": "ada@example.com",
        "phone": "+1 555 0100",
        "name": "Ada Lovelace",
        "summary": "Analytical engine programmer",
        "experience": "Babbage & Co, 1842-1852",
        "skills": ["mathematics", "programming"],
        "total_experience_years": 10.0,
    }
    data.update(overrides)
    return Candidate(**data)
