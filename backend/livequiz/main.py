import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import Settings, create_database, get_settings
from .errors import GameError, NoActiveSession, PayloadTooLarge
from .game import GameController
from .gamesocket import serve_game_socket
from .logging_config import configure_logging
from .models import Quiz
from .schemas import (
    AnswerIn,
    AnswerOut,
    DisconnectIn,
    EventsOut,
    GameStateOut,
    JoinIn,
    PinOut,
    PlayersOut,
    QuestionSummaryOut,
    ResetOut,
    StartGameIn,
    SuccessOut,
)

logger = logging.getLogger(__name__)


def get_controller(request: Request) -> GameController:
    return request.app.state.controller


def _validation_message(exc: RequestValidationError) -> str:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())[1:]) or "body"
        problems.append(f"{field}: {error.get('msg')}")
    return "; ".join(problems) or "Invalid request"


def create_app(controller: Optional[GameController] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    if controller is None:
        controller = GameController(create_database(settings), settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Live quiz API starting")
        try:
            yield
        finally:
            controller.db.close()
            logger.info("Live quiz API stopped")

    app = FastAPI(title="Live Quiz API", lifespan=lifespan)
    app.state.controller = controller

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > settings.MAX_BODY_BYTES:
            exc = PayloadTooLarge()
            logger.warning("%s %s rejected: %s bytes", request.method, request.url.path, length)
            return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    @app.exception_handler(GameError)
    async def game_error_handler(request: Request, exc: GameError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        logger.warning("Invalid request to %s: %s", request.url.path, message)
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    # Quiz catalog

    @app.post("/api/quiz", response_model=Quiz, status_code=201)
    async def create_quiz(payload: Quiz, game: GameController = Depends(get_controller)):
        return await game.catalog.create(payload)

    @app.get("/api/quiz/{quiz_id}", response_model=Quiz)
    async def get_quiz(quiz_id: str, game: GameController = Depends(get_controller)):
        return await game.catalog.require(quiz_id)

    @app.put("/api/quiz/{quiz_id}", response_model=Quiz)
    async def update_quiz(quiz_id: str, payload: Quiz, game: GameController = Depends(get_controller)):
        return await game.catalog.update(quiz_id, payload)

    @app.delete("/api/quiz/{quiz_id}", response_model=SuccessOut)
    async def delete_quiz(quiz_id: str, game: GameController = Depends(get_controller)):
        await game.catalog.delete(quiz_id)
        return SuccessOut()

    @app.get("/api/quizzes", response_model=List[Quiz])
    async def list_quizzes(game: GameController = Depends(get_controller)):
        return await game.catalog.list()

    # Teacher

    @app.get("/api/teacher/pin", response_model=PinOut)
    async def get_pin(game: GameController = Depends(get_controller)):
        return PinOut(pin=await game.get_pin())

    @app.get("/api/teacher/players", response_model=PlayersOut)
    async def list_players(game: GameController = Depends(get_controller)):
        return PlayersOut(players=await game.players())

    @app.post("/api/teacher/start-game", response_model=GameStateOut)
    async def start_game(payload: StartGameIn, game: GameController = Depends(get_controller)):
        return GameStateOut.from_session(await game.start_game(payload.quiz_id))

    @app.post("/api/teacher/next-question", response_model=GameStateOut)
    async def next_question(game: GameController = Depends(get_controller)):
        return GameStateOut.from_session(await game.next_question())

    @app.post("/api/teacher/show-answer", response_model=GameStateOut)
    async def show_answer(game: GameController = Depends(get_controller)):
        return GameStateOut.from_session(await game.reveal_answer())

    @app.post("/api/teacher/finish-game", response_model=GameStateOut)
    async def finish_game(game: GameController = Depends(get_controller)):
        return GameStateOut.from_session(await game.finish_game())

    @app.post("/api/teacher/reset", response_model=ResetOut)
    async def reset(game: GameController = Depends(get_controller)):
        return ResetOut(pin=await game.reset_game())

    @app.get("/api/teacher/question-answers/{question_index}", response_model=QuestionSummaryOut)
    async def question_answers(question_index: int, game: GameController = Depends(get_controller)):
        return await game.question_summary(question_index)

    # Players

    @app.post("/api/play/join", response_model=SuccessOut)
    async def join(payload: JoinIn, game: GameController = Depends(get_controller)):
        await game.join(payload.pin, payload.name)
        return SuccessOut()

    @app.post("/api/play/submit-answer", response_model=AnswerOut)
    async def submit_answer(payload: AnswerIn, game: GameController = Depends(get_controller)):
        return AnswerOut(answer_time=await game.submit_answer(payload.player_name, payload.answer))

    @app.post("/api/play/disconnect", response_model=SuccessOut)
    async def disconnect(payload: DisconnectIn, game: GameController = Depends(get_controller)):
        await game.leave(payload.player_name)
        return SuccessOut()

    # Polling and push

    @app.get("/api/game/state", response_model=GameStateOut)
    async def get_state(game: GameController = Depends(get_controller)):
        s = await game.get_session()
        if s is None:
            raise NoActiveSession()
        return GameStateOut.from_session(s)

    @app.get("/api/events", response_model=EventsOut)
    async def list_events(
        after: Optional[int] = Query(None, ge=0),
        limit: Optional[int] = Query(None, ge=1),
        game: GameController = Depends(get_controller),
    ):
        events = await game.events.list(after=after, limit=limit)
        latest_seq = events[-1]["seq"] if events else after
        return EventsOut(events=events, latest_seq=latest_seq)

    @app.websocket("/ws")
    async def game_socket(websocket: WebSocket):
        await serve_game_socket(websocket, websocket.app.state.controller)

    @app.get("/health")
    async def health(game: GameController = Depends(get_controller)):
        if not await game.healthy():
            logger.error("Health check failed")
            return JSONResponse(status_code=503, content={"status": "unhealthy"})
        return {"status": "healthy"}

    return app


app = create_app()
