"""Deterministic stand-ins shared by the test modules."""
from __future__ import annotations

from typing import Iterable

from .db import Database, InMemoryDatabase, Settings
from .game import GameController


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, millis: int) -> None:
        self.now += millis / 1000


class SequenceRng:
    """Hands out the given PIN digits in order, then repeats the last one."""

    def __init__(self, values: Iterable[int]):
        self._values = list(values)

    def randint(self, low: int, high: int) -> int:
        value = self._values.pop(0) if len(self._values) > 1 else self._values[0]
        assert low <= value <= high
        return value


def memory_database(retries: int = 0) -> Database:
    return Database(InMemoryDatabase(), retries=retries, backoff=0)


def make_controller(clock=None, rng=None, database: Database | None = None) -> GameController:
    return GameController(
        database or memory_database(),
        settings=Settings(PIN_TTL_SECONDS=3600, EVENT_LOG_LIMIT=200),
        clock=clock or ManualClock(),
        rng=rng,
    )


def quiz_payload(quiz_id: str = "quiz-1", correct: Iterable[int] = (1,)) -> dict:
    return {
        "quizId": quiz_id,
        "title": "General knowledge",
        "questions": [
            {
                "index": i,
                "question": f"Question {i + 1}?",
                "options": ["A", "B", "C", "D"],
                "correctAnswer": answer,
            }
            for i, answer in enumerate(correct)
        ],
    }
