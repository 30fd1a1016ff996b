from __future__ import annotations

import importlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from .config import BotSettings, Features
from .store import message_text

logger = logging.getLogger(__name__)

Permission = Literal["public", "owner"]
SendFn = Callable[[str, Mapping[str, Any]], Awaitable[Any]]
Handler = Callable[["CommandContext"], Awaitable[None]]

ERROR_TEXT = "Something went wrong. Please try again later."
PERMISSION_TEXT = "You don't have permission to use this command."


@dataclass(slots=True)
class Command:
    name: str
    handler: Handler
    description: str = ""
    usage: str = ""
    aliases: tuple[str, ...] = ()
    permission: Permission = "public"
    module: str = ""


@dataclass(slots=True)
class CommandContext:
    command: Command
    args: list[str]
    message: dict[str, Any]
    chat_id: str
    sender: str
    send: SendFn = field(repr=False)

    @property
    def text(self) -> str:
        return " ".join(self.args)

    async def reply(self, text: str) -> Any:
        return await self.send(self.chat_id, {"text": text})


def command(
    name: str,
    *,
    description: str = "",
    usage: str = "",
    aliases: Iterable[str] = (),
    permission: Permission = "public",
) -> Callable[[Callable[..., Awaitable[None]]], Callable[..., Awaitable[None]]]:
    """Mark a `Module` method as a command handler."""

    def deco(fn: Callable[..., Awaitable[None]]) -> Callable[..., Awaitable[None]]:
        fn._command = {  # type: ignore[attr-defined]
            "name": name,
            "description": description,
            "usage": usage,
            "aliases": tuple(aliases),
            "permission": permission,
        }
        return fn

    return deco


class Module:
    """
    Base class for command modules.

    Subclasses decorate coroutine methods with `@command(...)`; a module file
    exposes its class under the name `module`.
    """

    name = ""
    description = ""

    def __init__(self, bot: Any) -> None:
        self.bot = bot

    def commands(self) -> list[Command]:
        out: list[Command] = []
        for _, member in inspect.getmembers(self, inspect.ismethod):
            meta = getattr(member, "_command", None)
            if meta:
                out.append(Command(handler=member, module=self.name, **meta))
        return out


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: dict[str, Command] = {}
        self._aliases: dict[str, str] = {}
        self.modules: dict[str, Module] = {}

    def register(self, cmd: Command) -> None:
        name = cmd.name.lower()
        if name in self._commands or name in self._aliases:
            raise ValueError(f"command already registered: {name}")
        self._commands[name] = cmd
        for alias in cmd.aliases:
            self._aliases[alias.lower()] = name

    def register_module(self, module: Module) -> None:
        if not module.name:
            raise ValueError(f"{type(module).__name__} has no name")
        for cmd in module.commands():
            self.register(cmd)
        self.modules[module.name] = module

    def get(self, name: str) -> Command | None:
        name = name.lower()
        return self._commands.get(name) or self._commands.get(self._aliases.get(name, ""))

    def list(self) -> list[Command]:
        return sorted(self._commands.values(), key=lambda c: (c.module, c.name))


def load_modules(registry: CommandRegistry, paths: Iterable[str], bot: Any) -> list[str]:
    """
    Import each dotted module path and register its `module` class.

    A module that fails to import or register is logged and skipped.
    """

    loaded: list[str] = []
    for path in paths:
        try:
            mod = importlib.import_module(path)
            cls = getattr(mod, "module")
            registry.register_module(cls(bot))
        except Exception:
            logger.exception("failed to load module %s", path)
            continue
        loaded.append(path)
        logger.info("loaded module %s", path)
    return loaded


def _user_part(jid: str) -> str:
    return jid.split("@", 1)[0].split(":", 1)[0]


class Dispatcher:
    """Routes incoming `messages.upsert` notifications to registered commands."""

    def __init__(
        self,
        registry: CommandRegistry,
        send: SendFn,
        *,
        bot: BotSettings,
        features: Features,
    ) -> None:
        self.registry = registry
        self._send = send
        self.settings = bot
        self.features = features
        self.owner = bot.owner

    def is_privileged(self, sender: str, msg: Mapping[str, Any]) -> bool:
        if (msg.get("key") or {}).get("fromMe"):
            return True
        user = _user_part(sender)
        if self.owner and user == _user_part(self.owner):
            return True
        return user in {_user_part(a) for a in self.settings.admins}

    def is_allowed(self, cmd: Command, sender: str, msg: Mapping[str, Any]) -> bool:
        if self.is_privileged(sender, msg):
            return True
        if cmd.permission == "owner":
            return False
        return self.settings.mode == "public"

    async def handle_upsert(self, payload: Mapping[str, Any]) -> None:
        if payload.get("type") != "notify":
            return
        for msg in payload.get("messages") or []:
            try:
                await self.handle_message(msg)
            except Exception:
                logger.exception("failed to handle message")

    async def handle_message(self, msg: dict[str, Any]) -> bool:
        """Run the command in `msg`, if any. Returns True when a command ran."""

        text = message_text(msg).strip()
        prefix = self.settings.prefix
        if not text.startswith(prefix):
            return False
        parts = text[len(prefix) :].split()
        if not parts:
            return False

        key = msg.get("key") or {}
        chat_id = str(key.get("remoteJid") or "")
        sender = str(key.get("participant") or chat_id)
        name = parts[0].lower()

        cmd = self.registry.get(name)
        if cmd is None:
            if self.features.respond_to_unknown_commands:
                await self._send(chat_id, {"text": f"Unknown command: {prefix}{name}"})
            return False

        if not self.is_allowed(cmd, sender, msg):
            logger.info("denied %s%s for %s", prefix, cmd.name, sender)
            if self.features.send_permission_error:
                await self._send(chat_id, {"text": PERMISSION_TEXT})
            return False

        ctx = CommandContext(
            command=cmd,
            args=parts[1:],
            message=msg,
            chat_id=chat_id,
            sender=sender,
            send=self._send,
        )
        logger.info("running %s%s for %s in %s", prefix, cmd.name, sender, chat_id)
        try:
            await cmd.handler(ctx)
        except Exception:
            logger.exception("command %s failed", cmd.name)
            try:
                await ctx.reply(ERROR_TEXT)
            except Exception as e:
                logger.warning("failed to report command error: %s", e)
        return True
