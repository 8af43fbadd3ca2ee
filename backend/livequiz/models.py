from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .utils import now_ts

OPTION_COUNT = 4


class CamelModel(BaseModel):
    """Snake_case in Python and storage, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Question(CamelModel):
    index: Optional[int] = Field(default=None, ge=0)
    text: str = Field(min_length=1, validation_alias=AliasChoices("text", "question"))
    options: List[str]
    correct_answer: int = Field(
        ge=0,
        le=OPTION_COUNT - 1,
        validation_alias=AliasChoices("correctAnswer", "correctAnswerIndex", "correct_answer"),
    )

    @field_validator("options")
    @classmethod
    def _four_options(cls, options: List[str]) -> List[str]:
        if len(options) != OPTION_COUNT:
            raise ValueError(f"exactly {OPTION_COUNT} options are required")
        if any(not option.strip() for option in options):
            raise ValueError("options must not be empty")
        return options


class Quiz(CamelModel):
    quiz_id: str = Field(default_factory=lambda: uuid4().hex, min_length=1)
    title: str = Field(min_length=1)
    questions: List[Question] = Field(min_length=1)

    @model_validator(mode="after")
    def _order_questions(self) -> "Quiz":
        # ``index`` is authoritative; list position only fills in missing ones.
        for position, question in enumerate(self.questions):
            if question.index is None:
                question.index = position
        indexes = [q.index for q in self.questions]
        if len(set(indexes)) != len(indexes):
            raise ValueError("question indexes must be unique")
        self.questions = sorted(self.questions, key=lambda q: q.index)
        return self


class GameStatus(str, Enum):
    WAITING = "waiting"
    QUESTION = "question"
    REVEALED = "revealed"
    FINISHED = "finished"


# States: waiting -> question -> revealed -> question ... -> finished
class Session(CamelModel):
    quiz_id: str
    pin: Optional[str] = None
    status: GameStatus = GameStatus.WAITING
    current_question_index: int = -1
    question_revealed_at: Optional[float] = None
    scores: Dict[str, int] = Field(default_factory=dict)
    questions: List[Question] = Field(default_factory=list)
    started_at: float = Field(default_factory=now_ts)

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None


class AnswerRecord(CamelModel):
    question_index: int
    player_name: str
    answer: int
    elapsed_ms: int
    seq: int

    @staticmethod
    def key(question_index: int, player_name: str) -> str:
        return f"{question_index}:{player_name}"
