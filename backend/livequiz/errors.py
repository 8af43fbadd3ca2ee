from __future__ import annotations


class GameError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


class ValidationError(GameError):
    status_code = 400
    message = "Invalid request"


class ConflictError(GameError):
    # Conflicts share the 400 status the clients already handle for joins and answers.
    status_code = 400
    message = "Conflicting request"


class NotFoundError(GameError):
    status_code = 404
    message = "Not found"


class StorageUnavailable(GameError):
    status_code = 503
    message = "Storage unavailable"


class IncorrectPin(ValidationError):
    message = "Incorrect PIN"


class InvalidOption(ValidationError):
    message = "Answer must be an option index between 0 and 3"


class DuplicateName(ConflictError):
    message = "Name already taken"


class AlreadyAnswered(ConflictError):
    message = "Answer already submitted for this question"


class AlreadyRevealed(ConflictError):
    message = "Answer already revealed for this question"


class NoActiveQuestion(ConflictError):
    message = "No question is open for answers"


class NoMoreQuestions(ConflictError):
    message = "No more questions"


class GameFinished(ConflictError):
    message = "Game already finished"


class QuizNotFound(NotFoundError):
    message = "Quiz not found"


class NoActiveSession(NotFoundError):
    message = "No active game"


class PayloadTooLarge(GameError):
    status_code = 413
    message = "Request body too large"
