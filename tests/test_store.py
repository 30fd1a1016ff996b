from __future__ import annotations

import json

import pytest

from hyperwa.store import InMemoryStore
from hyperwa.util.events import AsyncEventEmitter


def _msg(chat: str, mid: str, text: str, ts: int = 1_700_000_000, **key: object) -> dict:
    return {
        "key": {"remoteJid": chat, "id": mid, "fromMe": False, **key},
        "messageTimestamp": ts,
        "message": {"conversation": text},
    }


@pytest.mark.asyncio
async def test_upsert_merges_fields_and_persists(tmp_path) -> None:
    path = tmp_path / "store.json"
    store = InMemoryStore(path)
    events = AsyncEventEmitter()
    store.bind(events)

    await events.emit("contacts.upsert", [{"id": "a@s.whatsapp.net", "name": "Alice"}])
    await events.emit("contacts.update", [{"id": "a@s.whatsapp.net", "notify": "Al"}])

    assert store.get_contact("a@s.whatsapp.net") == {
        "id": "a@s.whatsapp.net",
        "name": "Alice",
        "notify": "Al",
    }

    assert store.save_to_file()
    data = json.loads(path.read_text("utf-8"))
    assert data["contacts"]["a@s.whatsapp.net"]["name"] == "Alice"
    assert isinstance(data["timestamp"], int)

    restored = InMemoryStore(path)
    assert restored.load_from_file()
    assert restored.get_contact("a@s.whatsapp.net") == store.get_contact("a@s.whatsapp.net")


@pytest.mark.asyncio
async def test_messages_upsert_is_idempotent_and_searchable(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    events = AsyncEventEmitter()
    store.bind(events)

    payload = {"messages": [_msg("c@g.us", "M1", "hello world")], "type": "notify"}
    await events.emit("messages.upsert", payload)
    await events.emit("messages.upsert", payload)

    assert store.stats()["messages"] == 1
    hits = store.search_messages("HELLO")
    assert len(hits) == 1
    assert hits[0]["chatId"] == "c@g.us"
    assert hits[0]["text"] == "hello world"

    loaded = store.load_message("c@g.us", "M1")
    assert loaded is not None
    loaded["message"]["conversation"] = "mutated"
    assert store.load_message("c@g.us", "M1")["message"]["conversation"] == "hello world"


def test_update_never_creates_records(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")

    assert store.update_contacts([{"id": "ghost@s.whatsapp.net", "name": "x"}]) == []
    assert store.update_chats([{"id": "ghost@s.whatsapp.net", "unreadCount": 1}]) == []
    assert store.update_messages([{"key": {"remoteJid": "c", "id": "nope"}, "update": {}}]) == []
    assert store.contacts == {}
    assert store.chats == {}
    assert store.messages == {}


def test_message_update_merges_nested_update(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    store.upsert_message(_msg("c@g.us", "M1", "hi"))

    applied = store.update_messages(
        [{"key": {"remoteJid": "c@g.us", "id": "M1"}, "update": {"status": 3}}]
    )

    assert len(applied) == 1
    msg = store.load_message("c@g.us", "M1")
    assert msg["status"] == 3
    assert msg["message"] == {"conversation": "hi"}


def test_delete_unknown_ids_is_noop(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    store.upsert_contact({"id": "a@s.whatsapp.net"})

    assert store.delete("contacts", ["missing@s.whatsapp.net"]) == []
    assert store.delete("messages", [{"remoteJid": "x", "id": "y"}]) == []
    assert list(store.contacts) == ["a@s.whatsapp.net"]


def test_delete_chat_purges_its_messages(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    store.upsert_chat({"id": "c@g.us"})
    store.upsert_message(_msg("c@g.us", "M1", "hi"))

    assert store.delete_chats(["c@g.us"]) == ["c@g.us"]
    assert store.get_messages("c@g.us") == []


def test_search_is_capped(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    for i in range(150):
        store.upsert_message(_msg("c@g.us", f"M{i}", f"needle {i}"))

    assert len(store.search_messages("needle", limit=500)) == 100
    assert len(store.search_messages("needle", limit=5)) == 5
    assert store.search_messages("") == []



def test_group_info_combines_metadata_and_chat(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    store.upsert_chat({"id": "g@g.us", "name": "Team"})
    store.set_group_metadata(
        "g@g.us", {"subject": "Team", "participants": [{"id": "a@s.whatsapp.net"}]}
    )
    store.update_group_metadata([{"id": "g@g.us", "subject": "Team 2"}])

    info = store.get_group_info("g@g.us")
    assert info["metadata"]["subject"] == "Team 2"
    assert info["chat"] == {"id": "g@g.us", "name": "Team"}
    assert info["participants"] == [{"id": "a@s.whatsapp.net"}]
    assert store.get_group_info("missing@g.us")["participants"] == []


@pytest.mark.asyncio
async def test_malformed_event_does_not_stop_later_events(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    events = AsyncEventEmitter()
    store.bind(events)

    await events.emit("presence.update", {"presences": "garbage"})
    await events.emit("chats.update", "not-a-list")
    await events.emit("contacts.upsert", [{"name": "no id"}])
    await events.emit("chats.upsert", [{"id": "c@g.us", "name": "Group"}])

    assert store.get_chat("c@g.us") == {"id": "c@g.us", "name": "Group"}
    assert store.contacts == {}


@pytest.mark.asyncio
async def test_derived_events_are_reemitted(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    events = AsyncEventEmitter()
    store.bind(events)

    seen: list[object] = []
    store.events.on("messages.upsert", seen.append)

    await events.emit("messages.upsert", {"messages": [_msg("c", "M1", "x")], "type": "notify"})
    await events.emit("messages.upsert", {"messages": [{"key": {}}], "type": "notify"})

    assert len(seen) == 1
    assert seen[0]["type"] == "notify"


@pytest.mark.asyncio
async def test_unbind_stops_updates(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    events = AsyncEventEmitter()
    store.bind(events)
    store.unbind()

    await events.emit("chats.upsert", [{"id": "c@g.us"}])
    assert store.chats == {}
    assert events.listener_count("chats.upsert") == 0


@pytest.mark.asyncio
async def test_presence_and_call_offers(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    events = AsyncEventEmitter()
    store.bind(events)

    await events.emit(
        "presence.update",
        {"id": "c@g.us", "presences": {"p@s.whatsapp.net": {"lastKnownPresence": "composing"}}},
    )
    assert store.get_presence("c@g.us", "p@s.whatsapp.net")["lastKnownPresence"] == "composing"

    await events.emit("call", [{"from": "p@s.whatsapp.net", "id": "call1", "offer": True}])
    assert "p@s.whatsapp.net" in store.call_offers
    await events.emit("call", [{"from": "p@s.whatsapp.net", "id": "call1", "status": "reject"}])
    assert store.call_offers == {}


def test_snapshot_keeps_bytes(tmp_path) -> None:
    path = tmp_path / "store.json"
    store = InMemoryStore(path)
    store.upsert_message(
        {
            "key": {"remoteJid": "c", "id": "M1"},
            "message": {"imageMessage": {"jpegThumbnail": b"\x00\x01\xff", "caption": "pic"}},
        }
    )
    store.mark_history_synced("c")
    store.save_to_file()

    restored = InMemoryStore(path)
    restored.load_from_file()
    msg = restored.load_message("c", "M1")
    assert msg["message"]["imageMessage"]["jpegThumbnail"] == b"\x00\x01\xff"
    assert restored.is_history_synced("c")



def test_save_then_load_reproduces_every_section(tmp_path) -> None:
    path = tmp_path / "store.json"
    store = InMemoryStore(path)
    store.upsert("contacts", {"id": "a@s.whatsapp.net", "name": "Ann"})
    store.upsert("contacts", {"id": "b@s.whatsapp.net", "name": "Bob"})
    store.update("contacts", [{"id": "a@s.whatsapp.net", "notify": "ann"}])
    store.delete("contacts", ["b@s.whatsapp.net"])
    store.upsert("chats", {"id": "g@g.us", "name": "Team", "unreadCount": 1})
    store.upsert("chats", {"id": "old@g.us"})
    store.update("chats", [{"id": "g@g.us", "unreadCount": 0}])
    store.upsert_message(_msg("old@g.us", "M0", "gone"))
    store.delete("chats", ["old@g.us"])
    store.upsert_message(_msg("g@g.us", "M1", "hello", participant="a@s.whatsapp.net"))
    store.upsert_message(_msg("g@g.us", "M2", "bye"))
    store.update_messages([{"key": {"remoteJid": "g@g.us", "id": "M1"}, "update": {"status": 4}}])
    store.delete_messages([{"remoteJid": "g@g.us", "id": "M2"}])
    store.set_presence("g@g.us", {"participant": "a@s.whatsapp.net", "lastKnownPresence": "x"})
    store.update_presence(
        "g@g.us", {"participant": "a@s.whatsapp.net", "lastKnownPresence": "available"}
    )
    store.set_group_metadata("g@g.us", {"subject": "Team", "participants": []})
    store.update_group_metadata([{"id": "g@g.us", "subject": "Team 2"}])
    store.set_call_offer("a@s.whatsapp.net", {"id": "call1", "offer": True})
    store.upsert_sticker_pack({"id": "pack1", "name": "cats", "thumb": b"\x89PNG"})
    store.mark_history_synced("g@g.us")
    store.set_auth_state({"me": "111@s.whatsapp.net", "backend": "file"})
    assert store.save_to_file()

    restored = InMemoryStore(path)
    assert restored.load_from_file()

    before = store.snapshot()
    after = restored.snapshot()
    for section in (
        "contacts",
        "chats",
        "messages",
        "presences",
        "groupMetadata",
        "callOffer",
        "stickerPacks",
        "syncedHistory",
        "authState",
    ):
        assert after[section] == before[section], section
    assert after["contacts"] == {
        "a@s.whatsapp.net": {"id": "a@s.whatsapp.net", "name": "Ann", "notify": "ann"}
    }
    assert list(after["chats"]) == ["g@g.us"]
    assert list(after["messages"]["g@g.us"]) == ["M1"]
    assert after["messages"]["g@g.us"]["M1"]["status"] == 4
    assert after["stickerPacks"]["pack1"]["thumb"] == b"\x89PNG"


def test_queries_return_detached_copies(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    payload = {"id": "a@s.whatsapp.net", "profile": {"status": "hi"}}
    store.upsert_contact(payload)
    payload["profile"]["status"] = "changed by caller"
    store.upsert_chat({"id": "c@g.us", "meta": {"pinned": True}})
    store.upsert_message(_msg("c@g.us", "M1", "needle"))

    store.get_contact("a@s.whatsapp.net")["profile"]["status"] = "x"
    store.get_chat("c@g.us")["meta"]["pinned"] = False
    store.get_messages("c@g.us")[0]["message"]["conversation"] = "x"
    store.search_messages("needle")[0]["message"]["key"]["id"] = "x"

    assert store.contacts["a@s.whatsapp.net"]["profile"] == {"status": "hi"}
    assert store.chats["c@g.us"]["meta"] == {"pinned": True}
    msg = store.load_message("c@g.us", "M1")
    assert msg["message"] == {"conversation": "needle"}
    assert msg["key"]["id"] == "M1"

def test_load_corrupt_snapshot_starts_empty(tmp_path) -> None:
    path = tmp_path / "store.json"
    path.write_text("{not json", "utf-8")
    store = InMemoryStore(path)
    store.upsert_chat({"id": "stale"})

    assert store.load_from_file() is False
    assert store.chats == {}


def test_user_stats_and_export(tmp_path) -> None:
    store = InMemoryStore(tmp_path / "store.json")
    jid = "u@s.whatsapp.net"
    store.upsert_contact({"id": jid, "name": "Uma"})
    store.upsert_message(_msg(jid, "M1", "first", ts=1000))
    store.upsert_message(_msg(jid, "M2", "second", ts=2000))

    stats = store.get_user_stats(jid, now_s=2000 + 60)
    assert stats["messageCount"] == 2
    assert stats["isActive"] is True
    assert store.get_user_stats(jid, now_s=2000 + 8 * 86400)["isActive"] is False

    exported = store.export_chat(jid)
    assert exported["totalMessages"] == 2
    assert [m["key"]["id"] for m in exported["messages"]] == ["M2", "M1"]

    text = store.export_chat(jid, fmt="txt")
    assert "Chat Export for Uma" in text
    assert text.index("second") < text.index("first")

    with pytest.raises(ValueError):
        store.export_chat(jid, fmt="csv")
