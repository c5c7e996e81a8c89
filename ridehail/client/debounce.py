"""
Latest-wins scheduling for async work.

``SupersedingRunner`` keeps at most one operation in flight.  Starting a new
one cancels the old task *and* bumps a generation counter; a result is only
delivered if its generation is still current, so an operation that
finishes in the gap between ``cancel()`` and the task noticing can never
write a stale value.

``Debouncer`` is the same runner with a quiet period in front: a burst of
calls collapses to the last one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SupersedingRunner:
    def __init__(
        self,
        name: str = "runner",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def run(
        self,
        factory: Callable[[], Awaitable[T]],
        on_result: Callable[[T], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        delay: float = 0.0,
    ) -> asyncio.Task:
        self.cancel()
        self._generation += 1
        generation = self._generation
        self._task = asyncio.create_task(
            self._execute(generation, factory, on_result, on_error, delay)
        )
        return self._task

    def cancel(self) -> None:
        """Drop whatever is in flight.  Safe to call repeatedly."""
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        """Wait for the current operation, if any, to settle."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _execute(
        self,
        generation: int,
        factory: Callable[[], Awaitable[T]],
        on_result: Callable[[T], None],
        on_error: Optional[Callable[[Exception], None]],
        delay: float,
    ) -> None:
        if delay > 0:
            await self._sleep(delay)
        if generation != self._generation:
            return
        try:
            result = await factory()
        except Exception as exc:
            if generation != self._generation:
                return
            if on_error is None:
                logger.warning("%s failed: %s", self.name, exc)
                return
            on_error(exc)
            return
        if generation != self._generation:
            logger.debug("%s: dropping superseded result", self.name)
            return
        on_result(result)


class Debouncer(SupersedingRunner):
    def __init__(
        self,
        delay: float,
        name: str = "debouncer",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        super().__init__(name=name, sleep=sleep)
        self.delay = delay

    def call(
        self,
        factory: Callable[[], Awaitable[T]],
        on_result: Callable[[T], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> asyncio.Task:
        return self.run(factory, on_result, on_error, delay=self.delay)
