from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

KeyData = Mapping[str, Mapping[str, Any | None]]


def key_name(key_type: str, key_id: str) -> str:
    return f"{key_type}-{key_id}"


class KeyStore(ABC):
    """
    Session-key access object: explicit `get` / `set` / `delete` / `clear`.

    Reads go through an in-memory cache; every mutation updates the cache and
    then persists through the backend. Backend failures are logged, so the
    connection keeps working on cached keys. Compatible with the `pyaileys`
    `SignalKeyStore` protocol.
    """

    def __init__(self) -> None:
        self._cache: dict[str, Any] = {}

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        missing: list[str] = []
        for key_id in ids:
            name = key_name(key_type, key_id)
            if name in self._cache:
                out[key_id] = self._cache[name]
            else:
                missing.append(key_id)

        if missing:
            try:
                loaded = await self._read(key_type, missing)
            except Exception:
                logger.exception("failed to read %d %s keys", len(missing), key_type)
                loaded = {}
            for key_id in missing:
                value = loaded.get(key_id)
                if value is not None:
                    self._cache[key_name(key_type, key_id)] = value
                out[key_id] = value
        return out

    async def set(self, data: KeyData) -> None:
        """Write `{type: {id: value}}`; a `None` value deletes that key."""

        writes: dict[str, Any] = {}
        deletes: list[str] = []
        for key_type, items in data.items():
            for key_id, value in items.items():
                name = key_name(key_type, key_id)
                if value is None:
                    self._cache.pop(name, None)
                    deletes.append(name)
                else:
                    self._cache[name] = value
                    writes[name] = value
        if not writes and not deletes:
            return
        try:
            await self._write(writes, deletes)
        except Exception:
            logger.exception(
                "failed to persist %d key writes / %d deletes", len(writes), len(deletes)
            )

    async def delete(self, key_type: str, ids: Iterable[str]) -> None:
        await self.set({key_type: {key_id: None for key_id in ids}})

    async def clear(self) -> None:
        self._cache.clear()
        try:
            await self._clear()
        except Exception:
            logger.exception("failed to clear persisted keys")

    def forget(self) -> None:
        """Drop the cache without touching the backend."""

        self._cache.clear()

    @abstractmethod
    async def _read(self, key_type: str, ids: list[str]) -> dict[str, Any]: ...

    @abstractmethod
    async def _write(self, writes: dict[str, Any], deletes: list[str]) -> None: ...

    @abstractmethod
    async def _clear(self) -> None: ...
