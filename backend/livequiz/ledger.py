from __future__ import annotations

from typing import Dict, Iterable, List

from pymongo.errors import DuplicateKeyError

from .db import Collection, next_sequence
from .errors import AlreadyAnswered
from .models import OPTION_COUNT, AnswerRecord

TOP_POINTS = 1000
RANK_STEP = 100
MIN_POINTS = 100


def points_for_rank(rank: int) -> int:
    return max(TOP_POINTS - RANK_STEP * rank, MIN_POINTS)


def rank_correct(records: Iterable[AnswerRecord], correct_answer: int) -> List[AnswerRecord]:
    """Correct answers fastest first; equal times keep arrival order."""

    correct = [r for r in records if r.answer == correct_answer]
    return sorted(correct, key=lambda r: (r.elapsed_ms, r.seq))


def score_question(records: Iterable[AnswerRecord], correct_answer: int) -> Dict[str, int]:
    """Points earned on one question, keyed by player. Wrong answers earn nothing."""

    return {
        record.player_name: points_for_rank(rank)
        for rank, record in enumerate(rank_correct(records, correct_answer))
    }


def apply_awards(scores: Dict[str, int], awards: Dict[str, int]) -> Dict[str, int]:
    totals = dict(scores)
    for name, points in awards.items():
        totals[name] = totals.get(name, 0) + points
    return totals


class AnswerLedger:
    """Per-question answer records, at most one per player."""

    def __init__(self, answers: Collection, counters: Collection):
        self._answers = answers
        self._counters = counters

    async def record(self, question_index: int, player_name: str, answer: int, elapsed_ms: int) -> AnswerRecord:
        seq = await next_sequence(self._counters, "answers")
        record = AnswerRecord(
            question_index=question_index,
            player_name=player_name,
            answer=answer,
            elapsed_ms=elapsed_ms,
            seq=seq,
        )
        try:
            await self._answers.insert_one(
                {"_id": AnswerRecord.key(question_index, player_name), **record.model_dump()}
            )
        except DuplicateKeyError as exc:
            raise AlreadyAnswered() from exc
        return record

    async def for_question(self, question_index: int) -> List[AnswerRecord]:
        docs = await self._answers.find({"question_index": question_index}, sort=("seq", 1))
        return [AnswerRecord(**doc) for doc in docs]

    async def option_counts(self, question_index: int) -> List[int]:
        counts = [0] * OPTION_COUNT
        for record in await self.for_question(question_index):
            counts[record.answer] += 1
        return counts

    async def clear_question(self, question_index: int) -> None:
        await self._answers.delete_many({"question_index": question_index})

    async def clear(self) -> None:
        await self._answers.delete_many({})
