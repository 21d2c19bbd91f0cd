"""Periodic board and mythic catalog upkeep."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .engine import GachaEngine
from .models import Board

logger = logging.getLogger("gachabot.scheduler")

BoardChangedCallback = Callable[[Board], Awaitable[None]]


class MaintenanceScheduler:
    """Runs ``ensure_board`` and ``ensure_mythic_catalog`` on a fixed interval.

    A failing tick is logged and the loop keeps going. When the board's
    ``updated_at`` moves between ticks, ``on_board_changed`` is awaited with
    the new board.
    """

    def __init__(
        self,
        engine: GachaEngine,
        interval_seconds: float,
        on_board_changed: Optional[BoardChangedCallback] = None,
    ) -> None:
        self.engine = engine
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.on_board_changed = on_board_changed
        self._task: Optional[asyncio.Task] = None
        self._last_board_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._last_board_at = self.engine.board.updated_at
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Gacha maintenance every %.0fs", self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def tick(self) -> bool:
        """Run one maintenance pass; returns True when the board changed."""
        changed = False
        try:
            board = await self.engine.ensure_board()
            if board.updated_at != self._last_board_at:
                self._last_board_at = board.updated_at
                changed = True
                if self.on_board_changed is not None:
                    await self.on_board_changed(board)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Board maintenance failed: %s", exc)

        try:
            await self.engine.ensure_mythic_catalog()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Mythic catalog maintenance failed: %s", exc)
        return changed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.tick()


__all__ = ["BoardChangedCallback", "MaintenanceScheduler"]
