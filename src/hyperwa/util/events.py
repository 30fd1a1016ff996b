from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

Listener = Callable[..., Awaitable[None]] | Callable[..., None]


class AsyncEventEmitter:
    """
    Named-event emitter shared by the socket adapter, the connection manager
    and the store.

    `emit(event, *args)` calls listeners in registration order and awaits async
    ones before moving on, so a single named stream is never reordered.
    Listener exceptions propagate to the emitter's caller; components that must
    survive bad payloads wrap their own handlers.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners[event].append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        with contextlib.suppress(ValueError):
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    async def emit(self, event: str, *args: Any) -> bool:
        """Returns True when at least one listener ran."""

        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            res = listener(*args)
            if asyncio.iscoroutine(res):
                await res
        return bool(listeners)
