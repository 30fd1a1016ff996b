from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Any

from ..util import json as bufferjson
from .keys import KeyStore, key_name
from .state import DEFAULT_SAVE_DEBOUNCE_S, AuthStateProvider

if TYPE_CHECKING:
    from motor.motor_asyncio import AsyncIOMotorCollection

logger = logging.getLogger(__name__)


def escape_field(name: str) -> str:
    """
    Make a key name safe as a single MongoDB field name.

    JIDs contain `.`, which would otherwise be read as a path separator.
    """

    return name.replace("%", "%25").replace(".", "%2E").replace("$", "%24")


class MongoKeyStore(KeyStore):
    """Keys live in the session document's `keys` sub-document, written per key."""

    def __init__(self, collection: AsyncIOMotorCollection, session_id: str) -> None:
        super().__init__()
        self._coll = collection
        self._session_id = session_id

    async def _read(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        fields = {key_id: f"keys.{escape_field(key_name(key_type, key_id))}" for key_id in ids}
        doc = await self._coll.find_one(
            {"_id": self._session_id}, projection={path: 1 for path in fields.values()}
        )
        stored = (doc or {}).get("keys") or {}
        out: dict[str, Any] = {}
        for key_id in ids:
            value = stored.get(escape_field(key_name(key_type, key_id)))
            if value is not None:
                out[key_id] = bufferjson.from_document(value)
        return out

    async def _write(self, writes: dict[str, Any], deletes: list[str]) -> None:
        update: dict[str, Any] = {}
        if writes:
            update["$set"] = {
                f"keys.{escape_field(n)}": bufferjson.to_document(v) for n, v in writes.items()
            }
        if deletes:
            update["$unset"] = {f"keys.{escape_field(n)}": "" for n in deletes}
        await self._coll.update_one({"_id": self._session_id}, update, upsert=True)

    async def _clear(self) -> None:
        await self._coll.update_one({"_id": self._session_id}, {"$set": {"keys": {}}})


class MongoAuthState(AuthStateProvider):
    """
    Auth state in a single MongoDB document:

        {_id: <session_id>, creds: {...}, keys: {<type>-<id>: ...}, timestamp}

    Bytes are stored in Buffer form so the document is interchangeable with
    the JSON files written by the file backend.
    """

    backend = "mongo"

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        *,
        session_id: str = "session",
        save_debounce_s: float = DEFAULT_SAVE_DEBOUNCE_S,
    ) -> None:
        super().__init__(save_debounce_s=save_debounce_s)
        self.collection = collection
        self.session_id = session_id

    def _make_keys(self) -> MongoKeyStore:
        return MongoKeyStore(self.collection, self.session_id)

    async def _read_creds(self) -> Any | None:
        doc = await self.collection.find_one({"_id": self.session_id})
        if doc is None:
            return None
        creds = doc.get("creds")
        if not creds:
            raise ValueError("session document has no credentials")
        if not isinstance(doc.get("keys", {}), dict):
            raise ValueError("session document has no key mapping")
        return bufferjson.from_document(creds)

    async def _write_creds(self, data: dict[str, Any]) -> None:
        await self.collection.update_one(
            {"_id": self.session_id},
            {
                "$set": {
                    "creds": bufferjson.to_document(data),
                    "timestamp": dt.datetime.now(dt.UTC),
                },
                "$setOnInsert": {"keys": {}},
            },
            upsert=True,
        )

    async def _delete_all(self) -> None:
        await self.collection.delete_one({"_id": self.session_id})
