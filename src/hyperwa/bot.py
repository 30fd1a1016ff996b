from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pyaileys.wabinary.jid import jid_normalized_user

from .auth import AuthStateProvider, FileAuthState, MongoAuthState
from .config import Config
from .connection import ConnectionManager, SocketFactory
from .db import connect_db
from .dispatch import CommandRegistry, Dispatcher, load_modules
from .exceptions import NotConnectedError
from .socket import make_socket_factory
from .store import InMemoryStore
from .util.asyncio import PeriodicTask
from .util.events import Listener

logger = logging.getLogger(__name__)


class HyperWaBot:
    """
    Wires the store, the auth provider, the connection manager and the command
    dispatcher into one process.

    Nothing is opened in the constructor; `start()` loads persisted state and
    connects, `run()` additionally blocks until the connection stops for good.
    """

    def __init__(
        self,
        config: Config,
        *,
        socket_factory: SocketFactory | None = None,
        auth: AuthStateProvider | None = None,
    ) -> None:
        self.config = config
        self.store = InMemoryStore(
            config.store.file_path, auto_save_interval_s=config.store.auto_save_interval_s
        )
        self.registry = CommandRegistry()
        self.dispatcher = Dispatcher(
            self.registry, self.send_message, bot=config.bot, features=config.features
        )
        self.auth = auth
        self.connection: ConnectionManager | None = None
        self.started_at = time.monotonic()

        self._socket_factory = socket_factory or make_socket_factory()
        self._listeners: list[tuple[str, Listener]] = []
        self._mongo: AsyncIOMotorClient | None = None
        self._stats = PeriodicTask(
            config.store.stats_interval_s, self._log_stats, name="store_stats"
        )
        self._startup_sent = False
        self._stopped = False

    @property
    def owner(self) -> str:
        return self.dispatcher.owner

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe to socket events (e.g. `connection.update` for QR codes)."""

        self._listeners.append((event, listener))
        if self.connection is not None:
            self.connection.on(event, listener)

    async def open_auth(self) -> AuthStateProvider:
        """Create the one auth provider this deployment is configured for."""

        settings = self.config.auth
        if settings.backend == "mongo":
            if self._mongo is None:
                self._mongo, db = await connect_db(self.config.mongo)
            else:
                db = self._mongo[self.config.mongo.db_name]
            return MongoAuthState(
                db[settings.collection],
                session_id=settings.session_id,
                save_debounce_s=settings.save_debounce_s,
            )
        return FileAuthState(settings.folder, save_debounce_s=settings.save_debounce_s)

    async def start(self) -> None:
        if self.connection is not None or self._stopped:
            return
        self.started_at = time.monotonic()
        self.store.load_from_file()
        self.store.start_auto_save()

        if self.auth is None:
            self.auth = await self.open_auth()
        if self.config.auth.clear_on_start:
            logger.warning("clearing stored session before start")
            await self.auth.clear()
        if self._stopped:
            return

        load_modules(self.registry, self.config.features.modules, self)

        self.connection = ConnectionManager(
            self.config.connection,
            auth=self.auth,
            store=self.store,
            socket_factory=self._socket_factory,
        )
        self.connection.on("messages.upsert", self.dispatcher.handle_upsert)
        for event, listener in self._listeners:
            self.connection.on(event, listener)
        self.connection.on_open(self._on_open)

        self._stats.start()
        logger.info(
            "%s v%s starting (auth: %s, mode: %s)",
            self.config.bot.name,
            self.config.bot.version,
            self.auth.backend,
            self.config.bot.mode,
        )
        await self.connection.start()

    async def run(self) -> None:
        """Start and block until shutdown or logout; a logout re-raises."""

        try:
            await self.start()
            if self.connection is not None:
                await self.connection.wait_closed()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stats.stop()
        if self.connection is not None:
            await self.connection.shutdown()
        else:
            self.store.cleanup()
            if self.auth is not None:
                await self.auth.close()
        if self._mongo is not None:
            self._mongo.close()
            self._mongo = None
        logger.info("%s stopped", self.config.bot.name)

    async def logout(self) -> None:
        """Delete the persisted session without connecting."""

        auth = self.auth or await self.open_auth()
        try:
            await auth.clear()
        finally:
            if self._mongo is not None:
                self._mongo.close()
                self._mongo = None
        logger.info("cleared %s auth session", auth.backend)

    async def send_message(self, jid: str, content: Mapping[str, Any]) -> str:
        if self.connection is None:
            raise NotConnectedError("bot has not been started")
        return await self.connection.send_message(jid, content)

    def get_message(self, key: Mapping[str, Any]) -> dict[str, Any] | None:
        """Look up a stored message by its key (`remoteJid` and `id`)."""

        chat_id = key.get("remoteJid")
        msg_id = key.get("id")
        if not chat_id or not msg_id:
            return None
        return self.store.load_message(chat_id, msg_id)

    async def _on_open(self) -> None:
        assert self.connection is not None
        jid = self.connection.user_jid
        if not jid:
            return
        me = jid_normalized_user(jid)
        backend = self.auth.backend if self.auth else ""
        self.store.set_auth_state({"me": {"id": jid}, "backend": backend})

        if not self.dispatcher.owner:
            self.dispatcher.owner = me
            logger.info("owner set to the logged-in account %s", me)

        if self.config.bot.startup_message and not self._startup_sent:
            self._startup_sent = True
            bot = self.config.bot
            text = (
                f"*{bot.name} v{bot.version}* is online\n"
                f"Mode: {bot.mode}\n"
                f"Prefix: {bot.prefix}\n"
                f"Modules: {len(self.registry.modules)}\n"
                f"Commands: {len(self.registry.list())}"
            )
            owner = self.dispatcher.owner
            if "@" not in owner:
                owner = f"{owner}@s.whatsapp.net"
            await self.connection.enqueue_message(owner, {"text": text})

    async def _log_stats(self) -> None:
        counts = self.store.stats()
        logger.info(
            "store: %d chats, %d contacts, %d messages",
            counts["chats"],
            counts["contacts"],
            counts["messages"],
        )
