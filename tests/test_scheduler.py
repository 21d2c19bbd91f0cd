import unittest
from datetime import timedelta

from gachabot.models import Board
from gachabot.scheduler import MaintenanceScheduler

from gacha_fixtures import START, char


class _StubEngine:
    def __init__(self) -> None:
        self.board = Board((char("a"),), START)
        self.board_error = None
        self.mythic_error = None
        self.mythic_calls = 0

    async def ensure_board(self) -> Board:
        if self.board_error:
            raise self.board_error
        return self.board

    async def ensure_mythic_catalog(self):
        self.mythic_calls += 1
        if self.mythic_error:
            raise self.mythic_error
        return []


class MaintenanceSchedulerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.engine = _StubEngine()
        self.changes = []

        async def on_changed(board: Board) -> None:
            self.changes.append(board.updated_at)

        self.scheduler = MaintenanceScheduler(self.engine, 60, on_board_changed=on_changed)

    async def asyncTearDown(self) -> None:
        await self.scheduler.stop()

    async def test_tick_reports_board_changes_once(self) -> None:
        self.scheduler.start()
        self.assertFalse(await self.scheduler.tick())

        self.engine.board = Board((char("b"),), START + timedelta(hours=1))
        self.assertTrue(await self.scheduler.tick())
        self.assertFalse(await self.scheduler.tick())
        self.assertEqual(self.changes, [START + timedelta(hours=1)])
        self.assertEqual(self.engine.mythic_calls, 3)

    async def test_failures_are_logged_not_raised(self) -> None:
        self.engine.board_error = RuntimeError("catalog down")
        self.engine.mythic_error = RuntimeError("still down")
        with self.assertLogs("gachabot.scheduler", level="ERROR") as captured:
            self.assertFalse(await self.scheduler.tick())
        self.assertEqual(len(captured.records), 2)
        self.assertEqual(self.engine.mythic_calls, 1)

    async def test_start_and_stop(self) -> None:
        self.scheduler.start()
        self.assertTrue(self.scheduler.running)
        await self.scheduler.stop()
        self.assertFalse(self.scheduler.running)
        await self.scheduler.stop()


if __name__ == "__main__":
    unittest.main()
