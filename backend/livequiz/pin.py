from __future__ import annotations

import logging
import random
from typing import Callable, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .db import Collection
from .utils import now_ts

logger = logging.getLogger(__name__)

PIN_DOC_ID = "pin"


class PinGenerator:
    """Mints the 4-digit join code and tracks its idle expiry."""

    def __init__(
        self,
        meta: Collection,
        *,
        ttl_seconds: int = 60 * 60,
        clock: Callable[[], float] = now_ts,
        rng: Optional[random.Random] = None,
    ):
        self._meta = meta
        self._ttl = ttl_seconds
        self._clock = clock
        self._rng = rng or random.SystemRandom()

    def _mint(self, exclude: str | None = None) -> str:
        while True:
            pin = str(self._rng.randint(1000, 9999))
            if pin != exclude:
                return pin

    async def _live_doc(self) -> dict | None:
        doc = await self._meta.find_one({"_id": PIN_DOC_ID})
        if doc and doc.get("expires_at", 0) > self._clock():
            return doc
        return None

    async def current(self) -> str | None:
        doc = await self._live_doc()
        return doc["pin"] if doc else None

    async def generate(self) -> str:
        """Return the live PIN, minting a new one if none is live."""

        doc = await self._meta.find_one({"_id": PIN_DOC_ID})
        now = self._clock()
        if doc and doc.get("expires_at", 0) > now:
            return doc["pin"]

        candidate = self._mint(exclude=doc["pin"] if doc else None)
        fields = {"pin": candidate, "expires_at": now + self._ttl}

        if doc is None:
            try:
                await self._meta.insert_one({"_id": PIN_DOC_ID, **fields})
            except DuplicateKeyError:
                # another worker minted first
                return await self._existing_pin()
            logger.info("New PIN generated: %s", candidate)
            return candidate

        # Replace the expired PIN only if nobody replaced it in the meantime.
        replaced = await self._meta.find_one_and_update(
            {"_id": PIN_DOC_ID, "pin": doc["pin"], "expires_at": doc.get("expires_at", 0)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if replaced is None:
            return await self._existing_pin()
        logger.info("PIN %s expired, new PIN generated: %s", doc["pin"], candidate)
        return candidate

    async def _existing_pin(self) -> str:
        doc = await self._meta.find_one({"_id": PIN_DOC_ID})
        if doc is None:
            return await self.generate()
        return doc["pin"]

    async def validate(self, pin: str) -> bool:
        doc = await self._live_doc()
        if not doc or doc["pin"] != pin:
            return False
        await self._meta.update_one(
            {"_id": PIN_DOC_ID, "pin": pin},
            {"$set": {"expires_at": self._clock() + self._ttl}},
        )
        return True

    async def rotate(self) -> str:
        """Mint a PIN different from the previous one and make it live."""

        doc = await self._meta.find_one({"_id": PIN_DOC_ID})
        pin = self._mint(exclude=doc["pin"] if doc else None)
        await self._meta.update_one(
            {"_id": PIN_DOC_ID},
            {"$set": {"pin": pin, "expires_at": self._clock() + self._ttl}},
            upsert=True,
        )
        logger.info("PIN rotated: %s", pin)
        return pin
