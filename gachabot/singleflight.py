"""Join concurrent callers onto one in-flight coroutine per key."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger("gachabot.singleflight")


class SingleFlight:
    def __init__(self) -> None:
        self._inflight: Dict[str, asyncio.Future] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``factory()`` unless a call for ``key`` is already running, then share its result.

        Exceptions propagate to every joined caller.
        """
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight %s refresh", key)
            return await asyncio.shield(existing)

        future = asyncio.ensure_future(factory())
        self._inflight[key] = future
        try:
            return await asyncio.shield(future)
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]


__all__ = ["SingleFlight"]
