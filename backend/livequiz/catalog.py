from __future__ import annotations

import logging
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from .db import Collection
from .errors import ConflictError, QuizNotFound
from .models import Quiz

logger = logging.getLogger(__name__)


class QuizCatalog:
    """Stores quiz definitions; questions always come back sorted by ``index``."""

    def __init__(self, quizzes: Collection):
        self._quizzes = quizzes

    @staticmethod
    def _load(doc: dict) -> Quiz:
        # Re-validating sorts the questions by index whatever order they were stored in.
        return Quiz.model_validate(doc)

    async def create(self, quiz: Quiz) -> Quiz:
        try:
            await self._quizzes.insert_one({"_id": quiz.quiz_id, **quiz.model_dump()})
        except DuplicateKeyError as exc:
            raise ConflictError(f"Quiz {quiz.quiz_id} already exists") from exc
        logger.info("Created quiz %s (%d questions)", quiz.quiz_id, len(quiz.questions))
        return quiz

    async def get(self, quiz_id: str) -> Optional[Quiz]:
        doc = await self._quizzes.find_one({"_id": quiz_id})
        if not doc:
            logger.warning("Quiz not found: %s", quiz_id)
            return None
        return self._load(doc)

    async def require(self, quiz_id: str) -> Quiz:
        quiz = await self.get(quiz_id)
        if quiz is None:
            raise QuizNotFound()
        return quiz

    async def list(self) -> List[Quiz]:
        docs = await self._quizzes.find({}, sort=("quiz_id", 1))
        return [self._load(doc) for doc in docs]

    async def update(self, quiz_id: str, quiz: Quiz) -> Quiz:
        quiz = quiz.model_copy(update={"quiz_id": quiz_id})
        updated = await self._quizzes.find_one_and_update(
            {"_id": quiz_id},
            {"$set": quiz.model_dump()},
        )
        if updated is None:
            raise QuizNotFound()
        logger.info("Updated quiz %s", quiz_id)
        return quiz

    async def delete(self, quiz_id: str) -> None:
        if not await self._quizzes.delete_one({"_id": quiz_id}):
            raise QuizNotFound()
        logger.info("Deleted quiz %s", quiz_id)
