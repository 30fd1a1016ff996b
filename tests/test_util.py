from __future__ import annotations

import asyncio
import json

import pytest

from hyperwa.util import json as bufferjson
from hyperwa.util.asyncio import Debouncer, PeriodicTask
from hyperwa.util.events import AsyncEventEmitter


def test_bytes_use_buffer_shape() -> None:
    text = bufferjson.dumps({"k": b"\x00\x01"})

    assert json.loads(text) == {"k": {"type": "Buffer", "data": "AAE="}}
    assert bufferjson.loads(text) == {"k": b"\x00\x01"}


def test_document_conversion_keeps_buffers_until_revived() -> None:
    doc = bufferjson.to_document({"a": [b"\xff"], "b": {"c": 1}})

    assert doc == {"a": [{"type": "Buffer", "data": "/w=="}], "b": {"c": 1}}
    assert bufferjson.from_document(doc) == {"a": [b"\xff"], "b": {"c": 1}}


def test_clone_is_detached() -> None:
    src = {"nested": {"list": [1, 2]}}
    copy = bufferjson.clone(src)
    copy["nested"]["list"].append(3)

    assert src == {"nested": {"list": [1, 2]}}


@pytest.mark.asyncio
async def test_debouncer_coalesces_triggers() -> None:
    calls: list[int] = []

    async def cb() -> None:
        calls.append(1)

    d = Debouncer(0.03, cb)
    for _ in range(4):
        d.trigger()
        await asyncio.sleep(0.005)
    assert d.pending

    await asyncio.sleep(0.08)
    assert calls == [1]
    assert not d.pending


@pytest.mark.asyncio
async def test_debouncer_flush_and_cancel() -> None:
    calls: list[int] = []

    async def cb() -> None:
        calls.append(1)

    d = Debouncer(10, cb)
    d.trigger()
    await d.flush()
    assert calls == [1]

    d.trigger()
    d.cancel()
    await d.flush()
    assert calls == [1]


@pytest.mark.asyncio
async def test_periodic_task_survives_callback_errors() -> None:
    calls: list[int] = []

    async def cb() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")

    task = PeriodicTask(0.01, cb)
    task.start()
    await asyncio.sleep(0.06)
    task.stop()

    assert len(calls) >= 2
    assert not task.running


@pytest.mark.asyncio
async def test_emitter_keeps_registration_order() -> None:
    ev = AsyncEventEmitter()
    seen: list[str] = []

    async def first(x: str) -> None:
        await asyncio.sleep(0)
        seen.append("a" + x)

    ev.on("e", first)
    ev.on("e", lambda x: seen.append("b" + x))

    await ev.emit("e", "1")
    await ev.emit("e", "2")
    assert seen == ["a1", "b1", "a2", "b2"]

    ev.off("e", first)
    assert ev.listener_count("e") == 1
    ev.remove_all_listeners()
    assert await ev.emit("e", "3") is False


@pytest.mark.asyncio
async def test_emitter_propagates_listener_errors() -> None:
    ev = AsyncEventEmitter()

    def bad(_: object) -> None:
        raise RuntimeError("listener failed")

    ev.on("e", bad)
    with pytest.raises(RuntimeError):
        await ev.emit("e", 1)
