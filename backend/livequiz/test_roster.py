from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from backend.livequiz.errors import DuplicateName
from backend.livequiz.pin import PinGenerator
from backend.livequiz.roster import Roster
from backend.livequiz.testing import ManualClock, SequenceRng, memory_database


class PinGeneratorTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = memory_database()
        self.clock = ManualClock()

    def _pins(self, *values: int) -> PinGenerator:
        return PinGenerator(self.db.meta, ttl_seconds=3600, clock=self.clock, rng=SequenceRng(values))

    async def test_generate_is_idempotent(self):
        pins = PinGenerator(self.db.meta, clock=self.clock)

        first = await pins.generate()
        second = await pins.generate()

        self.assertEqual(first, second)
        self.assertRegex(first, r"^\d{4}$")
        self.assertTrue(1000 <= int(first) <= 9999)

    async def test_expired_pin_is_replaced(self):
        pins = self._pins(1234, 5678)
        self.assertEqual(await pins.generate(), "1234")

        self.clock.now += 3601

        self.assertIsNone(await pins.current())
        self.assertEqual(await pins.generate(), "5678")

    async def test_validate_accepts_only_live_pin(self):
        pins = self._pins(1234)
        await pins.generate()

        self.assertTrue(await pins.validate("1234"))
        self.assertFalse(await pins.validate("4321"))

        self.clock.now += 3601
        self.assertFalse(await pins.validate("1234"))

    async def test_validate_extends_expiry(self):
        pins = self._pins(1234)
        await pins.generate()

        self.clock.now += 3000
        self.assertTrue(await pins.validate("1234"))
        self.clock.now += 3000

        self.assertEqual(await pins.current(), "1234")

    async def test_rotate_never_repeats_previous_pin(self):
        pins = self._pins(1234, 1234, 1234, 4321)
        await pins.generate()

        self.assertEqual(await pins.rotate(), "4321")
        self.assertEqual(await pins.generate(), "4321")


class RosterTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        db = memory_database()
        self.roster = Roster(db.players, db.counters)

    async def test_duplicate_name_is_rejected(self):
        await self.roster.join("sam")

        with self.assertRaises(DuplicateName):
            await self.roster.join("sam")

        self.assertEqual(await self.roster.list(), ["sam"])

    async def test_names_are_case_sensitive(self):
        await self.roster.join("sam")
        await self.roster.join("Sam")

        self.assertEqual(await self.roster.list(), ["sam", "Sam"])

    async def test_list_keeps_join_order(self):
        for name in ("zoe", "adam", "mia"):
            await self.roster.join(name)

        self.assertEqual(await self.roster.list(), ["zoe", "adam", "mia"])

    async def test_leave_is_idempotent(self):
        await self.roster.join("sam")

        self.assertTrue(await self.roster.leave("sam"))
        self.assertFalse(await self.roster.leave("sam"))
        self.assertEqual(await self.roster.list(), [])

    async def test_clear_empties_roster(self):
        await self.roster.join("sam")
        await self.roster.join("kim")

        await self.roster.clear()

        self.assertEqual(await self.roster.list(), [])
        await self.roster.join("sam")
