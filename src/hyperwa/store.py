from __future__ import annotations

import asyncio
import copy
import datetime as dt
import logging
import os
import time
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from .util import json as bufferjson
from .util.asyncio import PeriodicTask
from .util.events import AsyncEventEmitter, Listener

logger = logging.getLogger(__name__)

Record = dict[str, Any]

SEARCH_LIMIT = 100
ACTIVE_WINDOW_S = 7 * 24 * 60 * 60


class EntityKind(str, Enum):
    CONTACT = "contacts"
    CHAT = "chats"
    MESSAGE = "messages"
    GROUP = "groups"
    STICKER_PACK = "sticker-packs"


def _merge(existing: Record | None, patch: Mapping[str, Any]) -> Record:
    # Per-field last-write-wins; fields absent from the patch are kept.
    out = dict(existing or {})
    out.update(copy.deepcopy(dict(patch)))
    return out


def _detached(record: Record | None) -> Record | None:
    return copy.deepcopy(record) if record is not None else None


def _message_key(msg: Any) -> tuple[str, str] | None:
    if not isinstance(msg, Mapping):
        return None
    key = msg.get("key")
    if not isinstance(key, Mapping):
        return None
    chat_id = key.get("remoteJid")
    msg_id = key.get("id")
    if not chat_id or not msg_id:
        return None
    return str(chat_id), str(msg_id)


def _as_list(payload: Any) -> list[Any]:
    if not isinstance(payload, (list, tuple)):
        raise TypeError(f"expected a list payload, got {type(payload).__name__}")
    return list(payload)


def message_text(msg: Mapping[str, Any]) -> str:
    """Best-effort text of a Baileys-shaped message (body or media caption)."""

    content = msg.get("message")
    if not isinstance(content, Mapping):
        return ""
    text = content.get("conversation")
    if isinstance(text, str) and text:
        return text
    for field in ("extendedTextMessage", "imageMessage", "videoMessage", "documentMessage"):
        inner = content.get(field)
        if isinstance(inner, Mapping):
            value = inner.get("text") or inner.get("caption")
            if isinstance(value, str) and value:
                return value
    return ""


def message_timestamp(msg: Mapping[str, Any]) -> int:
    raw = msg.get("messageTimestamp")
    if isinstance(raw, Mapping):
        # protobuf Long as emitted by JS tooling: {"low": ..., "high": ...}
        raw = raw.get("low")
    try:
        return int(raw or 0)
    except (TypeError, ValueError):
        return 0


class InMemoryStore:
    """
    Event-synchronized cache of chats, contacts, messages, presences, group
    metadata and call offers, checkpointed to a JSON file.

    All writes are merges: applying the same event twice yields the same state,
    and a record is only ever patched field by field. The file snapshot is a
    periodic checkpoint, so it may lag behind memory between flushes.
    """

    def __init__(self, file_path: str | Path, *, auto_save_interval_s: float = 30.0) -> None:
        self.file_path = Path(file_path).expanduser()
        self.auto_save_interval_s = auto_save_interval_s
        # Derived events, re-emitted after the store applied an upstream event.
        self.events = AsyncEventEmitter()

        self.contacts: dict[str, Record] = {}
        self.chats: dict[str, Record] = {}
        self.messages: dict[str, dict[str, Record]] = {}
        self.presences: dict[str, dict[str, Record]] = {}
        self.group_metadata: dict[str, Record] = {}
        self.call_offers: dict[str, Record] = {}
        self.sticker_packs: dict[str, Record] = {}
        self.synced_history: dict[str, bool] = {}
        self.auth_state: Record = {}

        self._auto_save: PeriodicTask | None = None
        self._bound: list[tuple[AsyncEventEmitter, str, Listener]] = []

    # -- generic entity operations -------------------------------------------------

    def upsert(self, kind: EntityKind | str, record: Mapping[str, Any]) -> bool:
        kind = EntityKind(kind)
        if kind is EntityKind.MESSAGE:
            return self.upsert_message(record)
        if kind is EntityKind.CONTACT:
            return self.upsert_contact(record)
        if kind is EntityKind.CHAT:
            return self.upsert_chat(record)
        if kind is EntityKind.GROUP:
            return self.upsert_group_metadata(record)
        return self.upsert_sticker_pack(record)

    def update(self, kind: EntityKind | str, patches: Iterable[Mapping[str, Any]]) -> list[Record]:
        kind = EntityKind(kind)
        if kind is EntityKind.MESSAGE:
            return self.update_messages(patches)
        if kind is EntityKind.CONTACT:
            return self.update_contacts(patches)
        if kind is EntityKind.CHAT:
            return self.update_chats(patches)
        if kind is EntityKind.GROUP:
            return self.update_group_metadata(patches)
        return self._update_by_id(self.sticker_packs, patches)

    def delete(self, kind: EntityKind | str, ids: Iterable[Any]) -> list[Any]:
        """
        Remove records. Message ids are message keys (`{"remoteJid", "id"}`);
        deleting a chat also purges its messages. Unknown ids are ignored.
        """

        kind = EntityKind(kind)
        if kind is EntityKind.MESSAGE:
            return self.delete_messages(ids)
        if kind is EntityKind.CONTACT:
            return self.delete_contacts(ids)
        if kind is EntityKind.CHAT:
            return self.delete_chats(ids)
        if kind is EntityKind.GROUP:
            return self._delete_by_id(self.group_metadata, ids)
        return self._delete_by_id(self.sticker_packs, ids)

    def _upsert_by_id(self, table: dict[str, Record], record: Mapping[str, Any], what: str) -> bool:
        if not isinstance(record, Mapping) or not record.get("id"):
            logger.warning("dropping %s without id: %r", what, record)
            return False
        rid = str(record["id"])
        table[rid] = _merge(table.get(rid), record)
        return True

    def _update_by_id(
        self, table: dict[str, Record], patches: Iterable[Mapping[str, Any]]
    ) -> list[Record]:
        applied: list[Record] = []
        for patch in patches:
            if not isinstance(patch, Mapping):
                continue
            rid = patch.get("id")
            if rid is None or str(rid) not in table:
                continue
            table[str(rid)] = _merge(table[str(rid)], patch)
            applied.append(dict(patch))
        return applied

    @staticmethod
    def _delete_by_id(table: dict[str, Record], ids: Iterable[Any]) -> list[Any]:
        removed: list[Any] = []
        for rid in ids:
            if table.pop(str(rid), None) is not None:
                removed.append(rid)
        return removed

    # -- contacts ------------------------------------------------------------------

    def set_contacts(self, contacts: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> int:
        records = contacts.values() if isinstance(contacts, Mapping) else contacts
        return sum(1 for c in records if self.upsert_contact(c))

    def upsert_contact(self, contact: Mapping[str, Any]) -> bool:
        return self._upsert_by_id(self.contacts, contact, "contact")

    def update_contacts(self, patches: Iterable[Mapping[str, Any]]) -> list[Record]:
        return self._update_by_id(self.contacts, patches)

    def delete_contacts(self, ids: Iterable[str]) -> list[Any]:
        return self._delete_by_id(self.contacts, ids)

    def get_contact(self, jid: str) -> Record | None:
        return _detached(self.contacts.get(jid))

    # -- chats ---------------------------------------------------------------------

    def set_chats(self, chats: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> int:
        records = chats.values() if isinstance(chats, Mapping) else chats
        return sum(1 for c in records if self.upsert_chat(c))

    def upsert_chat(self, chat: Mapping[str, Any]) -> bool:
        return self._upsert_by_id(self.chats, chat, "chat")

    def update_chats(self, patches: Iterable[Mapping[str, Any]]) -> list[Record]:
        return self._update_by_id(self.chats, patches)

    def delete_chats(self, ids: Iterable[str]) -> list[Any]:
        removed: list[Any] = []
        for rid in ids:
            chat = self.chats.pop(str(rid), None)
            msgs = self.messages.pop(str(rid), None)
            if chat is not None or msgs is not None:
                removed.append(rid)
        return removed

    def get_chat(self, jid: str) -> Record | None:
        return _detached(self.chats.get(jid))

    # -- messages ------------------------------------------------------------------

    def set_messages(self, chat_id: str, messages: Iterable[Mapping[str, Any]]) -> int:
        """Replace the cached history of `chat_id` with `messages`."""

        if not chat_id:
            return 0
        table: dict[str, Record] = {}
        for msg in messages:
            mk = _message_key(msg)
            if mk is None or mk[0] != chat_id:
                continue
            table[mk[1]] = bufferjson.clone(msg)
        self.messages[chat_id] = table
        return len(table)

    def upsert_message(self, message: Mapping[str, Any]) -> bool:
        mk = _message_key(message)
        if mk is None:
            logger.warning("dropping message without key.remoteJid/key.id")
            return False
        chat_id, msg_id = mk
        table = self.messages.setdefault(chat_id, {})
        table[msg_id] = _merge(table.get(msg_id), bufferjson.clone(message))
        return True

    def update_messages(self, patches: Iterable[Mapping[str, Any]]) -> list[Record]:
        applied: list[Record] = []
        for patch in patches:
            mk = _message_key(patch)
            if mk is None:
                continue
            chat_id, msg_id = mk
            existing = self.messages.get(chat_id, {}).get(msg_id)
            if existing is None:
                continue
            # Baileys shape: {"key": ..., "update": {...}}; otherwise a flat patch.
            inner = patch.get("update")
            fields = inner if isinstance(inner, Mapping) else {
                k: v for k, v in patch.items() if k != "key"
            }
            self.messages[chat_id][msg_id] = _merge(existing, bufferjson.clone(fields))
            applied.append(dict(patch))
        return applied

    def delete_messages(self, keys: Iterable[Mapping[str, Any]]) -> list[Any]:
        removed: list[Any] = []
        for key in keys:
            if not isinstance(key, Mapping):
                continue
            mk = _message_key({"key": key})
            if mk is None:
                continue
            table = self.messages.get(mk[0])
            if table is not None and table.pop(mk[1], None) is not None:
                removed.append(dict(key))
        return removed

    def clear_chat_messages(self, chat_id: str) -> int:
        return len(self.messages.pop(chat_id, {}) or {})

    def load_message(self, chat_id: str, msg_id: str) -> Record | None:
        """Return a detached copy of a cached message."""

        if not chat_id or not msg_id:
            return None
        msg = self.messages.get(chat_id, {}).get(msg_id)
        return bufferjson.clone(msg) if msg is not None else None

    def get_messages(self, chat_id: str) -> list[Record]:
        """Messages of a chat in the order they were first observed."""

        return [copy.deepcopy(m) for m in self.messages.get(chat_id, {}).values()]

    def search_messages(
        self, query: str, chat_id: str | None = None, *, limit: int = SEARCH_LIMIT
    ) -> list[Record]:
        """
        Case-insensitive substring search over message text.

        Returns `{"chatId", "message", "text"}` entries, at most `limit`
        (capped at 100).
        """

        needle = query.lower()
        limit = min(limit, SEARCH_LIMIT)
        if not needle or limit <= 0:
            return []
        chat_ids = [chat_id] if chat_id else list(self.messages)
        results: list[Record] = []
        for cid in chat_ids:
            for msg in self.messages.get(cid, {}).values():
                text = message_text(msg)
                if text and needle in text.lower():
                    results.append({"chatId": cid, "message": copy.deepcopy(msg), "text": text})
                    if len(results) >= limit:
                        return results
        return results

    # -- presence / groups / calls / stickers --------------------------------------

    def set_presence(self, chat_id: str, presence: Mapping[str, Any]) -> bool:
        participant = presence.get("participant") if isinstance(presence, Mapping) else None
        if not chat_id or not participant:
            logger.warning("presence without chat id or participant: %r", presence)
            return False
        self.presences.setdefault(chat_id, {})[str(participant)] = copy.deepcopy(dict(presence))
        return True

    def update_presence(self, chat_id: str, presence: Mapping[str, Any]) -> bool:
        participant = presence.get("participant") if isinstance(presence, Mapping) else None
        if not chat_id or not participant:
            logger.warning("presence without chat id or participant: %r", presence)
            return False
        per_chat = self.presences.setdefault(chat_id, {})
        per_chat[str(participant)] = _merge(per_chat.get(str(participant)), presence)
        return True

    def get_presence(self, chat_id: str, participant: str) -> Record | None:
        return _detached(self.presences.get(chat_id, {}).get(participant))

    def set_group_metadata(self, group_id: str, metadata: Mapping[str, Any]) -> bool:
        if not group_id:
            return False
        self.group_metadata[group_id] = {**copy.deepcopy(dict(metadata)), "id": group_id}
        return True

    def upsert_group_metadata(self, metadata: Mapping[str, Any]) -> bool:
        return self._upsert_by_id(self.group_metadata, metadata, "group")

    def update_group_metadata(self, patches: Iterable[Mapping[str, Any]]) -> list[Record]:
        return self._update_by_id(self.group_metadata, patches)

    def get_group_metadata(self, group_id: str) -> Record | None:
        return _detached(self.group_metadata.get(group_id))

    def set_call_offer(self, peer_jid: str, offer: Mapping[str, Any]) -> bool:
        if not peer_jid:
            return False
        self.call_offers[peer_jid] = copy.deepcopy(dict(offer))
        return True

    def clear_call_offer(self, peer_jid: str) -> bool:
        if not peer_jid:
            return False
        return self.call_offers.pop(peer_jid, None) is not None

    def set_sticker_packs(self, packs: Iterable[Mapping[str, Any]]) -> int:
        self.sticker_packs = {}
        return sum(1 for p in packs if self.upsert_sticker_pack(p))

    def upsert_sticker_pack(self, pack: Mapping[str, Any]) -> bool:
        return self._upsert_by_id(self.sticker_packs, pack, "sticker pack")

    def mark_history_synced(self, jid: str) -> None:
        if jid:
            self.synced_history[jid] = True

    def is_history_synced(self, jid: str) -> bool:
        return bool(jid) and self.synced_history.get(jid, False)

    def set_auth_state(self, state: Mapping[str, Any]) -> None:
        # Descriptive metadata only (account id, backend); key material lives
        # with the auth provider.
        self.auth_state = copy.deepcopy(dict(state))

    def get_auth_state(self) -> Record:
        return copy.deepcopy(self.auth_state)

    # -- derived views ---------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        return {
            "chats": len(self.chats),
            "contacts": len(self.contacts),
            "messages": sum(len(m) for m in self.messages.values()),
        }

    def get_group_info(self, jid: str) -> Record:
        metadata = self.get_group_metadata(jid)
        return {
            "metadata": metadata,
            "chat": self.get_chat(jid),
            "participants": list((metadata or {}).get("participants") or []),
        }

    def get_user_stats(self, jid: str, *, now_s: float | None = None) -> Record:
        count = 0
        last_ts = 0
        for table in self.messages.values():
            for msg in table.values():
                key = msg.get("key") or {}
                if key.get("participant") == jid or key.get("remoteJid") == jid:
                    count += 1
                    last_ts = max(last_ts, message_timestamp(msg))
        now = time.time() if now_s is None else now_s
        return {
            "messageCount": count,
            "lastMessageTime": (
                dt.datetime.fromtimestamp(last_ts, dt.UTC) if last_ts else None
            ),
            "isActive": bool(last_ts) and (now - last_ts) < ACTIVE_WINDOW_S,
        }

    def export_chat(self, jid: str, *, fmt: str = "json", limit: int = 1000) -> Record | str:
        """Export the newest `limit` messages of a chat as a dict or plain text."""

        chat = self.chats.get(jid)
        contact = self.contacts.get(jid)
        messages = self.get_messages(jid)[-limit:][::-1]
        exported_at = dt.datetime.now(dt.UTC).isoformat()

        if fmt == "json":
            return {
                "chat": chat,
                "contact": contact,
                "messages": messages,
                "exportedAt": exported_at,
                "totalMessages": len(messages),
            }
        if fmt != "txt":
            raise ValueError(f"unsupported export format: {fmt!r}")

        title = (contact or {}).get("name") or jid
        lines = [
            f"Chat Export for {title}",
            f"Exported on: {exported_at}",
            f"Total Messages: {len(messages)}",
            "",
            "=" * 50,
            "",
        ]
        for msg in messages:
            key = msg.get("key") or {}
            ts = dt.datetime.fromtimestamp(message_timestamp(msg), dt.UTC)
            if key.get("fromMe"):
                sender = "You"
            else:
                sender = (contact or {}).get("name") or key.get("participant") or "Unknown"
            text = message_text(msg) or "[Media/Other]"
            lines.append(f"[{ts:%Y-%m-%d %H:%M:%S}] {sender}: {text}")
        return "\n".join(lines) + "\n"

    # -- event binding -------------------------------------------------------------

    def bind(self, events: AsyncEventEmitter) -> None:
        """
        Subscribe to the upstream event source.

        Every handler runs behind the same error boundary: a malformed payload
        is logged and dropped, and later events keep flowing.
        """

        table: dict[str, Callable[[Any], Any]] = {
            "contacts.set": self._on_contacts_set,
            "contacts.upsert": self._on_contacts_upsert,
            "contacts.update": lambda p: self.update_contacts(_as_list(p)),
            "contacts.delete": lambda p: self.delete_contacts(_as_list(p)),
            "chats.set": self._on_chats_set,
            "chats.upsert": self._on_chats_upsert,
            "chats.update": lambda p: self.update_chats(_as_list(p)),
            "chats.delete": lambda p: self.delete_chats(_as_list(p)),
            "messages.set": self._on_messages_set,
            "messages.upsert": self._on_messages_upsert,
            "messages.update": lambda p: self.update_messages(_as_list(p)),
            "messages.delete": self._on_messages_delete,
            "presence.update": self._on_presence_update,
            "groups.update": lambda p: self.update_group_metadata(_as_list(p)),
            "groups.upsert": self._on_groups_upsert,
            "call": self._on_call,
        }
        for event, handler in table.items():
            listener = self._guard(event, handler)
            events.on(event, listener)
            self._bound.append((events, event, listener))
        logger.debug("store bound to %d events", len(table))

    def unbind(self) -> None:
        for events, event, listener in self._bound:
            events.off(event, listener)
        self._bound.clear()

    def _guard(self, event: str, handler: Callable[[Any], Any]) -> Listener:
        async def _listener(payload: Any = None) -> None:
            try:
                derived = handler(payload)
                if derived:
                    await self.events.emit(event, derived)
            except Exception:
                logger.exception("store failed to apply %s event", event)

        return _listener

    def _on_contacts_set(self, payload: Any) -> Any:
        contacts = payload.get("contacts", payload) if isinstance(payload, Mapping) else payload
        return self.set_contacts(contacts)

    def _on_contacts_upsert(self, payload: list[Mapping[str, Any]]) -> list[Record]:
        return [dict(c) for c in payload if self.upsert_contact(c)]

    def _on_chats_set(self, payload: Any) -> Any:
        chats = payload.get("chats", payload) if isinstance(payload, Mapping) else payload
        return self.set_chats(chats)

    def _on_chats_upsert(self, payload: list[Mapping[str, Any]]) -> list[Record]:
        return [dict(c) for c in payload if self.upsert_chat(c)]

    def _on_messages_set(self, payload: Mapping[str, Any]) -> int:
        messages = list(payload.get("messages") or [])
        chat_id = payload.get("jid") or payload.get("chatId")
        if chat_id:
            return self.set_messages(str(chat_id), messages)
        # History sync batches span chats and carry no jid: merge them in.
        return sum(1 for msg in messages if self.upsert_message(msg))

    def _on_messages_upsert(self, payload: Mapping[str, Any]) -> Record | None:
        applied = [dict(m) for m in payload.get("messages") or [] if self.upsert_message(m)]
        if not applied:
            return None
        return {"messages": applied, "type": payload.get("type", "append")}

    def _on_messages_delete(self, payload: Any) -> list[Any]:
        if isinstance(payload, Mapping):
            if payload.get("all") and payload.get("jid"):
                n = self.clear_chat_messages(str(payload["jid"]))
                return [{"remoteJid": payload["jid"], "all": True}] if n else []
            payload = payload.get("keys") or []
        return self.delete_messages(payload)

    def _on_presence_update(self, payload: Mapping[str, Any]) -> Record | None:
        chat_id = payload.get("id")
        presences = payload.get("presences")
        if not chat_id or not isinstance(presences, Mapping):
            raise ValueError(f"malformed presence update: {payload!r}")
        applied = {
            participant: p
            for participant, p in presences.items()
            if self.set_presence(str(chat_id), {**p, "participant": participant})
        }
        return {"id": chat_id, "presences": applied} if applied else None

    def _on_groups_upsert(self, payload: list[Mapping[str, Any]]) -> list[Record]:
        return [dict(g) for g in payload if self.set_group_metadata(str(g.get("id") or ""), g)]

    def _on_call(self, payload: list[Mapping[str, Any]]) -> list[Record]:
        applied: list[Record] = []
        for call in payload:
            peer = str(call.get("from") or "")
            if call.get("offer"):
                if self.set_call_offer(peer, call):
                    applied.append(dict(call))
            elif call.get("status") in ("timeout", "reject") and self.clear_call_offer(peer):
                applied.append({"from": peer, "status": call.get("status")})
        return applied

    # -- persistence -----------------------------------------------------------------

    def snapshot(self) -> Record:
        return {
            "contacts": self.contacts,
            "chats": self.chats,
            "messages": self.messages,
            "presences": self.presences,
            "groupMetadata": self.group_metadata,
            "callOffer": self.call_offers,
            "stickerPacks": self.sticker_packs,
            "syncedHistory": self.synced_history,
            "authState": self.auth_state,
            "timestamp": int(time.time() * 1000),
        }

    def restore(self, state: Mapping[str, Any]) -> None:
        def section(name: str) -> dict[str, Any]:
            value = state.get(name)
            return dict(value) if isinstance(value, Mapping) else {}

        self.contacts = section("contacts")
        self.chats = section("chats")
        self.messages = {k: dict(v) for k, v in section("messages").items() if isinstance(v, dict)}
        self.presences = {
            k: dict(v) for k, v in section("presences").items() if isinstance(v, dict)
        }
        self.group_metadata = section("groupMetadata")
        self.call_offers = section("callOffer")
        self.sticker_packs = section("stickerPacks")
        self.synced_history = section("syncedHistory")
        self.auth_state = section("authState")

    def clear(self) -> None:
        self.restore({})

    def load_from_file(self) -> bool:
        """
        Restore the last snapshot. Any failure leaves the store empty; startup
        never fails because of a bad snapshot.
        """

        if not self.file_path.exists():
            logger.info("no store snapshot at %s, starting fresh", self.file_path)
            return False
        try:
            state = bufferjson.loads(self.file_path.read_text("utf-8"))
            if not isinstance(state, dict):
                raise TypeError("snapshot is not a JSON object")
            self.restore(state)
        except Exception as e:
            logger.error("failed to load store from %s: %s", self.file_path, e)
            self.clear()
            return False
        logger.info("store loaded from %s (%s)", self.file_path, self.stats())
        return True

    def _write(self, data: str) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.file_path.with_name(self.file_path.name + ".tmp")
        tmp.write_text(data, "utf-8")
        os.replace(tmp, self.file_path)

    def save_to_file(self) -> bool:
        try:
            self._write(bufferjson.dumps(self.snapshot(), indent=2))
        except Exception as e:
            logger.error("failed to save store to %s: %s", self.file_path, e)
            return False
        logger.debug("store saved to %s", self.file_path)
        return True

    async def save_to_file_async(self) -> bool:
        # Serialize on the loop thread so the snapshot is consistent, write off it.
        try:
            data = bufferjson.dumps(self.snapshot(), indent=2)
            await asyncio.to_thread(self._write, data)
        except Exception as e:
            logger.error("failed to save store to %s: %s", self.file_path, e)
            return False
        logger.debug("store saved to %s", self.file_path)
        return True

    def start_auto_save(self) -> None:
        if self.auto_save_interval_s <= 0:
            return
        if self._auto_save is None:
            self._auto_save = PeriodicTask(
                self.auto_save_interval_s, self.save_to_file_async, name="store.autosave"
            )
        self._auto_save.start()

    def stop_auto_save(self) -> None:
        if self._auto_save is not None:
            self._auto_save.stop()

    def cleanup(self) -> None:
        """Stop the autosave timer and flush one final snapshot."""

        self.stop_auto_save()
        self.save_to_file()
        logger.info("store cleanup completed")
