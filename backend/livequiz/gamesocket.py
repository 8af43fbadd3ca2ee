"""WebSocket channel: pushes game events and accepts the same commands as the HTTP API.

Every event appended to the event log is forwarded to each connected socket
as ``{"seq": ..., "type": ..., ...payload}``. Replies addressed to a single
socket (``join_success``, ``answer_confirmed``, the ``*_error`` frames) go
through the same outbox so a socket sees frames in the order they happened.

Polling ``/api/game/state`` and ``/api/events`` stays authoritative; a client
that misses a frame recovers by polling.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaError

from .errors import GameError
from .game import GameController
from .schemas import JoinIn, StartGameIn

logger = logging.getLogger(__name__)

TEACHER_COMMANDS = ("start_game", "next_question", "show_answer", "end_game")


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        frame = await outbox.get()
        if "payload" in frame:
            frame = {"seq": frame["seq"], **frame["payload"]}
        await websocket.send_json(frame)


def _reply(outbox: asyncio.Queue, frame_type: str, **data: Any) -> None:
    outbox.put_nowait({"type": frame_type, **data})


async def _handle(
    game: GameController,
    message: dict,
    outbox: asyncio.Queue,
    player_name: Optional[str],
) -> Optional[str]:
    """Run one command; return the player name bound to this socket afterwards."""

    msg_type = message.get("type")

    if msg_type == "join_game":
        if player_name:
            _reply(outbox, "join_error", message="Already joined")
            return player_name
        try:
            payload = JoinIn.model_validate(message)
            await game.join(payload.pin, payload.name)
        except SchemaError:
            _reply(outbox, "join_error", message="PIN and name are required")
            return player_name
        except GameError as exc:
            _reply(outbox, "join_error", message=exc.detail)
            return player_name
        _reply(outbox, "join_success", name=payload.name)
        return payload.name

    if msg_type == "submit_answer":
        if not player_name:
            _reply(outbox, "answer_error", message="Player not properly connected")
            return player_name
        answer = message.get("answer")
        if not isinstance(answer, int) or isinstance(answer, bool):
            _reply(outbox, "answer_error", message="Answer is required")
            return player_name
        try:
            answer_time = await game.submit_answer(player_name, answer)
        except GameError as exc:
            _reply(outbox, "answer_error", message=exc.detail)
            return player_name
        _reply(outbox, "answer_confirmed", answerTime=answer_time)
        return player_name

    if msg_type in TEACHER_COMMANDS:
        try:
            if msg_type == "start_game":
                await game.start_game(StartGameIn.model_validate(message).quiz_id)
            elif msg_type == "next_question":
                await game.next_question()
            elif msg_type == "show_answer":
                await game.reveal_answer()
            else:
                await game.finish_game()
        except SchemaError:
            _reply(outbox, "game_error", message="Quiz ID is required")
        except GameError as exc:
            _reply(outbox, "game_error", message=exc.detail)
        return player_name

    _reply(outbox, "error", message=f"Unknown message: {msg_type}")
    return player_name


async def serve_game_socket(websocket: WebSocket, game: GameController) -> None:
    await websocket.accept()
    outbox = game.events.subscribe()
    pump = asyncio.create_task(_pump(websocket, outbox))
    player_name: Optional[str] = None
    logger.info("Client connected")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                _reply(outbox, "error", message="Invalid JSON")
                continue
            if not isinstance(message, dict):
                _reply(outbox, "error", message="Messages must be JSON objects")
                continue

            try:
                player_name = await _handle(game, message, outbox, player_name)
            except Exception:
                # One failed command must not take down the socket or the server.
                logger.exception("Socket command %r failed", message.get("type"))
                _reply(outbox, "error", message="Internal server error")
    except WebSocketDisconnect:
        pass
    finally:
        game.events.unsubscribe(outbox)
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        if player_name:
            await game.leave(player_name)
        logger.info("Client disconnected%s", f" ({player_name})" if player_name else "")
