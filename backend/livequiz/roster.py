from __future__ import annotations

import logging
from typing import List

from pymongo.errors import DuplicateKeyError

from .db import Collection, next_sequence
from .errors import DuplicateName

logger = logging.getLogger(__name__)


class Roster:
    """Unique player names for the current PIN, kept in join order."""

    def __init__(self, players: Collection, counters: Collection):
        self._players = players
        self._counters = counters

    async def join(self, name: str) -> None:
        seq = await next_sequence(self._counters, "players")
        try:
            await self._players.insert_one({"_id": name, "name": name, "seq": seq})
        except DuplicateKeyError as exc:
            raise DuplicateName() from exc
        logger.info("Player joined: %s", name)

    async def list(self) -> List[str]:
        docs = await self._players.find({}, sort=("seq", 1))
        return [doc["name"] for doc in docs]

    async def leave(self, name: str) -> bool:
        removed = await self._players.delete_one({"_id": name})
        if removed:
            logger.info("Player left: %s", name)
        return bool(removed)

    async def clear(self) -> None:
        await self._players.delete_many({})
