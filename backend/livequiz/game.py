from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable, Dict, List, Optional

from pymongo import ReturnDocument

from .catalog import QuizCatalog
from .db import Database, Settings, get_settings
from .errors import (
    AlreadyRevealed,
    ConflictError,
    GameFinished,
    IncorrectPin,
    InvalidOption,
    NoActiveQuestion,
    NoActiveSession,
    NoMoreQuestions,
    StorageUnavailable,
    ValidationError,
)
from .events import EventStore
from .ledger import AnswerLedger, apply_awards, score_question
from .models import OPTION_COUNT, GameStatus, Session
from .pin import PinGenerator
from .roster import Roster
from .schemas import GameStateOut, QuestionSummaryOut
from .utils import elapsed_millis, now_ts, sort_leaderboard

logger = logging.getLogger(__name__)

SESSION_ID = "current"


class GameController:
    """Owns the single live game: PIN, roster, answers and the session state machine.

    Every mutating call runs under one lock and ends in a single conditional
    write, so a failed call leaves the previous state untouched.
    """

    def __init__(
        self,
        database: Database,
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = now_ts,
        rng: Optional[random.Random] = None,
    ):
        settings = settings or get_settings()
        self.db = database
        self.clock = clock
        self.events = EventStore(database.session_events, database.counters, default_limit=settings.EVENT_LOG_LIMIT)
        self.pins = PinGenerator(database.meta, ttl_seconds=settings.PIN_TTL_SECONDS, clock=clock, rng=rng)
        self.roster = Roster(database.players, database.counters)
        self.ledger = AnswerLedger(database.answers, database.counters)
        self.catalog = QuizCatalog(database.quizzes)
        self._lock = asyncio.Lock()

    async def get_session(self) -> Session | None:
        doc = await self.db.sessions.find_one({"_id": SESSION_ID})
        return Session(**doc) if doc else None

    async def _require_session(self) -> Session:
        s = await self.get_session()
        if s is None:
            raise NoActiveSession()
        return s

    async def _transition(self, s: Session, changes: Dict) -> Session:
        """Apply ``changes`` only if the session is still where ``s`` saw it."""

        doc = await self.db.sessions.find_one_and_update(
            {
                "_id": SESSION_ID,
                "status": s.status.value,
                "current_question_index": s.current_question_index,
            },
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ConflictError("Game state changed, try again")
        return Session(**doc)

    async def get_pin(self) -> str:
        return await self.pins.generate()

    async def players(self) -> List[str]:
        return await self.roster.list()

    async def join(self, pin: str, name: str) -> None:
        async with self._lock:
            if not await self.pins.validate(pin):
                logger.warning("Invalid PIN attempt: %s", pin)
                raise IncorrectPin()
            await self.roster.join(name)
            await self.events.append({"type": "player_joined", "name": name})
            await self._publish_players()

    async def leave(self, name: str) -> bool:
        async with self._lock:
            removed = await self.roster.leave(name)
            if removed:
                await self.events.append({"type": "player_left", "name": name})
                await self._publish_players()
            return removed

    async def start_game(self, quiz_id: str) -> Session:
        quiz = await self.catalog.require(quiz_id)
        async with self._lock:
            pin = await self.pins.generate()
            s = Session(
                quiz_id=quiz.quiz_id,
                pin=pin,
                questions=quiz.questions,
                started_at=self.clock(),
            )

            # Drop answers from any previous game before the new one is visible.
            await self.ledger.clear()
            await self.db.sessions.update_one(
                {"_id": SESSION_ID},
                {"$set": s.model_dump(mode="json")},
                upsert=True,
            )
            logger.info("Game started with quiz %s (%d questions)", quiz.quiz_id, s.total_questions)

            await self.events.append({"type": "game_started", "gameState": self.snapshot(s), "pin": pin})
            return s

    async def next_question(self) -> Session:
        async with self._lock:
            s = await self._require_session()
            if s.status == GameStatus.FINISHED:
                raise GameFinished()

            index = s.current_question_index + 1
            if index >= s.total_questions:
                logger.warning("next_question rejected: already at question %d of %d", s.current_question_index, s.total_questions)
                raise NoMoreQuestions()

            await self.ledger.clear_question(index)
            s = await self._transition(
                s,
                {
                    "status": GameStatus.QUESTION.value,
                    "current_question_index": index,
                    "question_revealed_at": self.clock(),
                },
            )
            logger.info("Moving to question %d", index)

            await self.events.append({"type": "question_started", "gameState": self.snapshot(s)})
            return s

    async def submit_answer(self, player_name: str, answer: int) -> int:
        """Record ``player_name``'s answer and return the elapsed milliseconds."""

        if not 0 <= answer < OPTION_COUNT:
            raise InvalidOption()

        async with self._lock:
            s = await self._require_session()
            if s.status != GameStatus.QUESTION:
                raise NoActiveQuestion()

            elapsed = elapsed_millis(s.question_revealed_at or self.clock(), self.clock())
            await self.ledger.record(s.current_question_index, player_name, answer, elapsed)
            logger.info("Answer submitted by %s after %dms", player_name, elapsed)

            await self.events.append({"type": "answer_received", "playerName": player_name, "answerTime": elapsed})
            return elapsed

    async def reveal_answer(self) -> Session:
        async with self._lock:
            s = await self._require_session()
            if s.status == GameStatus.REVEALED:
                raise AlreadyRevealed()
            if s.status != GameStatus.QUESTION:
                raise NoActiveQuestion()

            question = s.current_question()
            assert question is not None
            records = await self.ledger.for_question(s.current_question_index)
            awards = score_question(records, question.correct_answer)

            # Status flip and new totals land in one write: only the caller
            # that moves QUESTION -> REVEALED ever applies these awards.
            doc = await self.db.sessions.find_one_and_update(
                {
                    "_id": SESSION_ID,
                    "status": GameStatus.QUESTION.value,
                    "current_question_index": s.current_question_index,
                },
                {
                    "$set": {
                        "status": GameStatus.REVEALED.value,
                        "scores": apply_awards(s.scores, awards),
                    }
                },
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                raise AlreadyRevealed()
            s = Session(**doc)
            logger.info(
                "Revealed question %d: %d answers, %d correct",
                s.current_question_index,
                len(records),
                len(awards),
            )

            await self.events.append(
                {
                    "type": "answer_revealed",
                    "gameState": self.snapshot(s),
                    "correctAnswer": question.correct_answer,
                    "awards": awards,
                }
            )
            return s

    async def finish_game(self) -> Session:
        async with self._lock:
            s = await self._require_session()
            if s.status == GameStatus.FINISHED:
                return s

            s = await self._transition(s, {"status": GameStatus.FINISHED.value})
            logger.info("Game finished")

            await self.events.append(
                {
                    "type": "game_ended",
                    "gameState": self.snapshot(s),
                    "leaderboard": sort_leaderboard(s.scores),
                }
            )
            return s

    async def reset_game(self) -> str:
        async with self._lock:
            await self.db.sessions.delete_many({})
            await self.roster.clear()
            await self.ledger.clear()
            pin = await self.pins.rotate()
            logger.info("Game reset with new PIN: %s", pin)

            # Reset the event log so clients drop derived state.
            await self.events.reset(pin)
            await self._publish_players([])
            return pin

    async def question_summary(self, index: int) -> QuestionSummaryOut:
        """Aggregated answers for a question; never who picked what."""

        s = await self._require_session()
        if not 0 <= index <= s.current_question_index:
            raise ValidationError("Question has not been asked yet")

        counts = await self.ledger.option_counts(index)
        closed = index < s.current_question_index or s.status != GameStatus.QUESTION
        summary = QuestionSummaryOut(question_index=index, answered=sum(counts), revealed=closed)
        # the split across options stays hidden while the question is open
        if closed:
            summary.option_counts = counts
            correct = s.questions[index].correct_answer
            summary.correct_answer = correct
            summary.correct_count = counts[correct]
        return summary

    async def healthy(self) -> bool:
        try:
            return await self.db.ping()
        except StorageUnavailable:
            return False

    @staticmethod
    def snapshot(s: Session) -> dict:
        return GameStateOut.from_session(s).wire()

    async def _publish_players(self, players: Optional[List[str]] = None):
        if players is None:
            players = await self.roster.list()
        await self.events.append({"type": "players_update", "players": players})
