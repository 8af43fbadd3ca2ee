from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Set

from .db import Collection, next_sequence
from .utils import now_ts

logger = logging.getLogger(__name__)

EVENT_COUNTER = "session_events"


class EventStore:
    """Persist game events so clients can poll via HTTP, and push them to live sockets."""

    def __init__(self, events: Collection, counters: Collection, *, default_limit: int = 200):
        self.events_collection = events
        self.counters_collection = counters
        self.default_limit = default_limit
        self._subscribers: Set[asyncio.Queue] = set()

    async def append(self, payload: dict[str, Any]) -> int:
        """Store a new event and return its sequence number."""

        seq = await next_sequence(self.counters_collection, EVENT_COUNTER)
        event = {"seq": seq, "timestamp": now_ts(), "payload": payload}
        await self.events_collection.insert_one({"_id": seq, **event})
        logger.debug("event %d: %s", seq, payload.get("type"))
        self._publish(event)
        return seq

    async def list(self, after: int | None = None, limit: int | None = None) -> List[dict[str, Any]]:
        """Return events that occur after the given sequence."""

        query: dict[str, Any] = {}
        if after is not None:
            query["seq"] = {"$gt": after}

        docs = await self.events_collection.find(query, sort=("seq", 1), limit=limit or self.default_limit)
        return [
            {
                "seq": doc["seq"],
                "timestamp": doc.get("timestamp"),
                "payload": doc.get("payload", {}),
            }
            for doc in docs
        ]

    async def reset(self, pin: str | None = None) -> None:
        """Clear stored events and emit a reset marker."""

        await self.events_collection.delete_many({})

        # Sequence numbers keep increasing across resets so pollers holding an
        # old ``after`` still see the reset marker.
        await self.append({"type": "session_reset", "pin": pin})

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def _publish(self, event: dict[str, Any]) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)
