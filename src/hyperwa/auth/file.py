from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from ..util import json as bufferjson
from .keys import KeyStore, key_name
from .state import DEFAULT_SAVE_DEBOUNCE_S, AuthStateProvider

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"

# Characters a JID-derived key name may carry that are unsafe in file names.
_UNSAFE = str.maketrans({"/": "__", ":": "-"})


class AuthFolder:
    """JSON files of one auth folder, with one lock per file for this folder only."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._locks: dict[str, asyncio.Lock] = {}

    def file(self, name: str) -> Path:
        return self.path / f"{name}.json".translate(_UNSAFE)

    def _lock(self, p: Path) -> asyncio.Lock:
        return self._locks.setdefault(p.name, asyncio.Lock())

    async def read(self, p: Path) -> str:
        async with self._lock(p):
            return await asyncio.to_thread(p.read_text, "utf-8")

    async def write(self, p: Path, data: str) -> None:
        async with self._lock(p):
            await asyncio.to_thread(self.path.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(p.write_text, data, "utf-8")

    async def unlink(self, p: Path) -> None:
        async with self._lock(p):
            await asyncio.to_thread(p.unlink, missing_ok=True)

    def json_files(self) -> list[Path]:
        if not self.path.exists():
            return []
        return sorted(self.path.glob("*.json"))


class FileKeyStore(KeyStore):
    """One `{type}-{id}.json` file per key inside the auth folder."""

    def __init__(self, folder: str | Path | AuthFolder) -> None:
        super().__init__()
        self._dir = folder if isinstance(folder, AuthFolder) else AuthFolder(folder)

    async def _read(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key_id in ids:
            try:
                raw = await self._dir.read(self._dir.file(key_name(key_type, key_id)))
            except FileNotFoundError:
                continue
            try:
                out[key_id] = bufferjson.loads(raw)
            except ValueError:
                logger.warning("ignoring unreadable key file for %s-%s", key_type, key_id)
        return out

    async def _write(self, writes: dict[str, Any], deletes: list[str]) -> None:
        tasks = [
            self._dir.write(self._dir.file(n), bufferjson.dumps(v)) for n, v in writes.items()
        ]
        tasks += [self._dir.unlink(self._dir.file(n)) for n in deletes]
        await asyncio.gather(*tasks)

    async def _clear(self) -> None:
        for p in self._dir.json_files():
            if p.name != CREDS_FILE:
                await self._dir.unlink(p)


class FileAuthState(AuthStateProvider):
    """
    Session kept in a local folder: `creds.json` for the credentials and a
    `{type}-{id}.json` file per signal key, the layout Baileys uses, so an
    existing Baileys auth folder can be reused.
    """

    backend = "file"

    def __init__(
        self, folder: str | Path, *, save_debounce_s: float = DEFAULT_SAVE_DEBOUNCE_S
    ) -> None:
        super().__init__(save_debounce_s=save_debounce_s)
        self._dir = AuthFolder(folder)
        self.folder = self._dir.path

    @property
    def creds_path(self) -> Path:
        return self.folder / CREDS_FILE

    def _make_keys(self) -> FileKeyStore:
        return FileKeyStore(self._dir)

    async def _read_creds(self) -> Any | None:
        try:
            raw = await self._dir.read(self.creds_path)
        except FileNotFoundError:
            return None
        return bufferjson.loads(raw)

    async def _write_creds(self, data: dict[str, Any]) -> None:
        await self._dir.write(self.creds_path, bufferjson.dumps(data, indent=2))

    async def _delete_all(self) -> None:
        for p in self._dir.json_files():
            await self._dir.unlink(p)
