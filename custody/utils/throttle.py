from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DispatchThrottle:
    """Bounded-concurrency, minimum-interval scheduler for backend calls.

    - at most ``max_concurrent`` units run at the same time;
    - at least ``min_interval`` seconds pass between two consecutive starts,
      whichever units they were;
    - waiting units start in submission order;
    - each ``submit`` returns (or raises) exactly what the unit produced.

    Excess work waits; nothing is rejected and nothing is retried.
    """

    def __init__(self, max_concurrent: int = 3, min_interval: float = 0.2) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.max_concurrent = max_concurrent
        self.min_interval = float(min_interval)
        self._slots = asyncio.Semaphore(max_concurrent)
        # FIFO admission: only the head of the queue competes for a slot
        self._gate = asyncio.Lock()
        self._last_dispatch: float | None = None
        self._in_flight = 0
        self._waiting = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return self._waiting

    async def _admit(self) -> None:
        async with self._gate:
            await self._slots.acquire()
            try:
                if self._last_dispatch is not None:
                    delay = self._last_dispatch + self.min_interval - time.monotonic()
                    if delay > 0:
                        await asyncio.sleep(delay)
            except BaseException:
                self._slots.release()
                raise
            self._last_dispatch = time.monotonic()

    async def submit(
        self,
        fn: Callable[..., Union[Awaitable[T], T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        self._waiting += 1
        try:
            await self._admit()
        finally:
            self._waiting -= 1
        self._in_flight += 1
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result  # type: ignore[return-value]
        finally:
            self._in_flight -= 1
            self._slots.release()
            logger.debug(
                "throttle unit finished",
                extra={"extra": {"in_flight": self._in_flight, "waiting": self._waiting}},
            )
