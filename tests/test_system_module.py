from __future__ import annotations

import time
from types import SimpleNamespace
from typing import Any

import pytest

from hyperwa.config import Config
from hyperwa.dispatch import CommandContext, CommandRegistry
from hyperwa.modules.system import EXPORT_MAX_CHARS, SystemModule, format_uptime
from hyperwa.store import InMemoryStore

CHAT = "c@g.us"


def _bot(tmp_path) -> SimpleNamespace:
    bot = SimpleNamespace(
        config=Config(),
        store=InMemoryStore(tmp_path / "store.json"),
        registry=CommandRegistry(),
        started_at=time.monotonic() - 3725,
    )
    bot.registry.register_module(SystemModule(bot))
    return bot


async def _run(bot: SimpleNamespace, name: str, *args: str) -> list[str]:
    replies: list[str] = []

    async def send(jid: str, content: Any) -> str:
        replies.append(content["text"])
        return "ID"

    cmd = bot.registry.get(name)
    ctx = CommandContext(
        command=cmd, args=list(args), message={}, chat_id=CHAT, sender="u", send=send
    )
    await cmd.handler(ctx)
    return replies


def _add(store: InMemoryStore, mid: str, text: str, ts: int) -> None:
    store.upsert_message(
        {
            "key": {"remoteJid": CHAT, "id": mid, "participant": "p@s.whatsapp.net"},
            "messageTimestamp": ts,
            "message": {"conversation": text},
        }
    )


def test_format_uptime() -> None:
    assert format_uptime(59) == "0m 59s"
    assert format_uptime(3725) == "1h 2m 5s"
    assert format_uptime(90061) == "1d 1h 1m 1s"


@pytest.mark.asyncio
async def test_ping(tmp_path) -> None:
    replies = await _run(_bot(tmp_path), "ping")
    assert replies[0] == "🏓 Pong!"


@pytest.mark.asyncio
async def test_stats_reports_counts_and_uptime(tmp_path) -> None:
    bot = _bot(tmp_path)
    bot.store.upsert_chat({"id": CHAT})
    _add(bot.store, "M1", "hi", 1)

    (reply,) = await _run(bot, "stats")

    assert "Chats: 1" in reply
    assert "Messages: 1" in reply
    assert "Uptime: 1h 2m" in reply


@pytest.mark.asyncio
async def test_search(tmp_path) -> None:
    bot = _bot(tmp_path)
    for i in range(12):
        _add(bot.store, f"M{i}", f"lunch at {i}", i)

    (reply,) = await _run(bot, "search", "LUNCH")
    assert reply.startswith("Found 12 message(s)")
    assert "and 2 more" in reply

    (reply,) = await _run(bot, "search", "dinner")
    assert reply.startswith("No messages found")

    (reply,) = await _run(bot, "search")
    assert reply.startswith("Usage: .search")


@pytest.mark.asyncio
async def test_export_current_chat(tmp_path) -> None:
    bot = _bot(tmp_path)
    (reply,) = await _run(bot, "export")
    assert reply == "No stored messages for this chat."

    _add(bot.store, "M1", "older", 1000)
    _add(bot.store, "M2", "newer", 2000)
    (reply,) = await _run(bot, "export", "1")

    assert "newer" in reply
    assert "older" not in reply
    assert len(reply) <= EXPORT_MAX_CHARS


@pytest.mark.asyncio
async def test_help_lists_commands(tmp_path) -> None:
    (reply,) = await _run(_bot(tmp_path), "help")

    assert ".ping - Check that the bot is alive" in reply
    assert ".search <text>" in reply
