from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    t: asyncio.Task[T] = asyncio.create_task(coro)
    if name:
        with contextlib.suppress(Exception):
            t.set_name(name)
    return t


class Debouncer:
    """
    One owned, re-armable timer around an async callback.

    - `trigger()` clears any pending run and starts the delay again, so a burst
      of triggers results in a single callback once the burst quiesces.
    - `flush()` runs a pending callback immediately.
    - `cancel()` drops a pending run without calling back.

    A callback that is already executing is never cancelled by a new trigger;
    the new trigger simply schedules another run.
    """

    def __init__(
        self, delay_s: float, callback: Callable[[], Awaitable[None]], *, name: str = "debounce"
    ) -> None:
        self.delay_s = delay_s
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = ensure_task(self._run(), name=f"hyperwa.{self._name}")

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = None

    async def flush(self) -> None:
        if not self.pending:
            return
        self.cancel()
        await self._callback()

    async def _run(self) -> None:
        await asyncio.sleep(self.delay_s)
        # Detach before calling back so a trigger during the callback re-arms
        # instead of cancelling the in-flight write.
        self._task = None
        await self._callback()


class PeriodicTask:
    """Runs an async callback every `interval_s` seconds until stopped."""

    def __init__(
        self, interval_s: float, callback: Callable[[], Awaitable[None]], *, name: str = "periodic"
    ) -> None:
        self.interval_s = interval_s
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = ensure_task(self._loop(), name=f"hyperwa.{self._name}")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self._callback()
            except Exception:
                logger.exception("periodic task %s failed", self._name)
