from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pyaileys.auth import AuthenticationCreds, init_auth_creds
from pyaileys.auth.serde import creds_from_dict

from ..exceptions import AuthError
from ..util.asyncio import Debouncer
from .keys import KeyStore

logger = logging.getLogger(__name__)

DEFAULT_SAVE_DEBOUNCE_S = 2.0


@dataclass(slots=True)
class AuthState:
    creds: AuthenticationCreds
    keys: KeyStore


def parse_creds(raw: Any) -> AuthenticationCreds:
    """
    Structural check + decode of a stored credential blob.

    Raises `ValueError` for anything that is not a complete credential set.
    """

    if not isinstance(raw, Mapping):
        raise ValueError(f"credentials must be an object, got {type(raw).__name__}")
    try:
        return creds_from_dict(dict(raw))
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"invalid credentials: {e!r}") from e


class AuthStateProvider(ABC):
    """
    Supplies credentials and session keys to the connection and persists them.

    Credential saves are debounced: a burst of `save_creds()` calls produces a
    single write carrying the latest state. `flush()` forces a pending write
    out. Write failures are logged and swallowed; the in-memory state stays
    authoritative until the next successful write.
    """

    backend = "unknown"

    def __init__(self, *, save_debounce_s: float = DEFAULT_SAVE_DEBOUNCE_S) -> None:
        self._creds: AuthenticationCreds | None = None
        self._keys: KeyStore | None = None
        self._saver = Debouncer(save_debounce_s, self._write_pending, name="auth.save_creds")

    @property
    def creds(self) -> AuthenticationCreds:
        if self._creds is None:
            raise AuthError("auth state not loaded")
        return self._creds

    @property
    def keys(self) -> KeyStore:
        if self._keys is None:
            raise AuthError("auth state not loaded")
        return self._keys

    async def load(self) -> AuthState:
        """
        Return the persisted state, or synthesize and persist a fresh one.

        A stored record that fails the structural check is discarded (together
        with its now useless keys) rather than surfaced as an error, so first
        run and corruption recovery share the same path.

        Once loaded, later calls (reconnects) return the held state: it may
        carry changes whose writes failed and must not be replaced by a re-read.
        """

        if self._creds is not None and self._keys is not None:
            return AuthState(creds=self._creds, keys=self._keys)

        keys = self._make_keys()
        creds: AuthenticationCreds | None = None
        try:
            raw = await self._read_creds()
            if raw is not None:
                creds = parse_creds(raw)
        except ValueError as e:
            logger.warning("discarding corrupt %s credentials: %s", self.backend, e)
            await keys.clear()

        if creds is None:
            logger.info("no usable %s session, generating fresh credentials", self.backend)
            creds = init_auth_creds()
            self._creds = creds
            await self._persist(creds)
        else:
            logger.info("loaded %s session (registered=%s)", self.backend, creds.registered)
            self._creds = creds

        self._keys = keys
        return AuthState(creds=creds, keys=keys)

    async def save_creds(self, creds: AuthenticationCreds | None = None) -> None:
        """Schedule a debounced write, optionally replacing the held credentials."""

        if creds is not None:
            self._creds = creds
        if self._creds is None:
            raise AuthError("auth state not loaded")
        self._saver.trigger()

    async def flush(self) -> None:
        await self._saver.flush()

    async def clear(self) -> None:
        """Delete every persisted credential and key. Safe without a session."""

        self._saver.cancel()
        try:
            await self._delete_all()
        except Exception:
            logger.exception("failed to clear %s auth state", self.backend)
        if self._keys is not None:
            self._keys.forget()
        self._creds = None
        self._keys = None
        logger.info("%s auth state cleared", self.backend)

    async def close(self) -> None:
        await self.flush()

    async def _write_pending(self) -> None:
        if self._creds is not None:
            await self._persist(self._creds)

    async def _persist(self, creds: AuthenticationCreds) -> None:
        try:
            await self._write_creds(dataclasses.asdict(creds))
        except Exception:
            logger.exception("failed to persist %s credentials", self.backend)

    @abstractmethod
    def _make_keys(self) -> KeyStore: ...

    @abstractmethod
    async def _read_creds(self) -> Any | None:
        """
        Return the stored credential blob, or None when nothing is stored.

        Raise `ValueError` for unreadable (corrupt) data.
        """

    @abstractmethod
    async def _write_creds(self, data: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _delete_all(self) -> None: ...
