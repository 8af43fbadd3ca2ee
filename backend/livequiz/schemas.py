
from typing import Any, Dict, List, Optional

from pydantic import Field

from .models import CamelModel, GameStatus, Session

PIN_PATTERN = r"^\d{4,8}$"
MAX_NAME_LENGTH = 40


class JoinIn(CamelModel):
    pin: str = Field(pattern=PIN_PATTERN)
    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)


class StartGameIn(CamelModel):
    quiz_id: str = Field(min_length=1)


class AnswerIn(CamelModel):
    player_name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    answer: int


class DisconnectIn(CamelModel):
    player_name: str = Field(min_length=1)


class PinOut(CamelModel):
    pin: str


class PlayersOut(CamelModel):
    players: List[str]


class SuccessOut(CamelModel):
    success: bool = True


class ResetOut(SuccessOut):
    pin: str


class AnswerOut(CamelModel):
    answer_time: int


class GameStateOut(CamelModel):
    quiz_id: str
    status: GameStatus
    current_question_index: int
    scores: Dict[str, int]
    question_revealed_at: Optional[float] = None
    started_at: Optional[float] = None
    total_questions: int = 0

    @classmethod
    def from_session(cls, s: Session) -> "GameStateOut":
        return cls(
            quiz_id=s.quiz_id,
            status=s.status,
            current_question_index=s.current_question_index,
            scores=s.scores,
            question_revealed_at=s.question_revealed_at,
            started_at=s.started_at,
            total_questions=s.total_questions,
        )

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class QuestionSummaryOut(CamelModel):
    question_index: int
    answered: int
    option_counts: Optional[List[int]] = None
    revealed: bool
    correct_answer: Optional[int] = None
    correct_count: Optional[int] = None


class EventsOut(CamelModel):
    events: List[Dict[str, Any]]
    latest_seq: Optional[int] = None
