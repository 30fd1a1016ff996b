from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from .exceptions import ConfigError
from .util import json as bufferjson

AuthBackend = Literal["file", "mongo"]
BotMode = Literal["private", "public"]

ENV_PREFIX = "HYPERWA_"


@dataclass(frozen=True, slots=True)
class BotSettings:
    name: str = "HyperWa"
    version: str = "3.0.0"
    prefix: str = "."
    # Owner JID; when empty the bot adopts its own account after the first login.
    owner: str = ""
    admins: tuple[str, ...] = ()
    mode: BotMode = "private"
    startup_message: bool = True


@dataclass(frozen=True, slots=True)
class AuthSettings:
    backend: AuthBackend = "file"
    folder: str = "./auth_info"
    session_id: str = "session"
    collection: str = "auth"
    save_debounce_s: float = 2.0
    clear_on_start: bool = False


@dataclass(frozen=True, slots=True)
class MongoSettings:
    uri: str = ""
    db_name: str = "hyperwa"
    connect_timeout_s: float = 10.0


@dataclass(frozen=True, slots=True)
class StoreSettings:
    file_path: str = "./whatsapp-store.json"
    auto_save_interval_s: float = 30.0
    stats_interval_s: float = 300.0


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    reconnect_delay_s: float = 5.0
    connect_timeout_s: float = 30.0
    mark_online_on_connect: bool = True


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str = "INFO"
    file: str | None = "logs/bot.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5


@dataclass(frozen=True, slots=True)
class Features:
    respond_to_unknown_commands: bool = False
    send_permission_error: bool = False
    modules: tuple[str, ...] = ("hyperwa.modules.system",)


@dataclass(frozen=True, slots=True)
class Config:
    """
    Process configuration, built once by `load_config` and passed to each
    component's constructor.
    """

    bot: BotSettings = field(default_factory=BotSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    mongo: MongoSettings = field(default_factory=MongoSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    features: Features = field(default_factory=Features)


# Environment variables that map onto nested settings. Secrets belong here or
# in the config file, never in source.
_ENV_KEYS: dict[str, tuple[str, str]] = {
    "BOT_NAME": ("bot", "name"),
    "PREFIX": ("bot", "prefix"),
    "OWNER": ("bot", "owner"),
    "ADMINS": ("bot", "admins"),
    "MODE": ("bot", "mode"),
    "AUTH_BACKEND": ("auth", "backend"),
    "AUTH_FOLDER": ("auth", "folder"),
    "SESSION_ID": ("auth", "session_id"),
    "MONGO_URI": ("mongo", "uri"),
    "MONGO_DB": ("mongo", "db_name"),
    "STORE_FILE": ("store", "file_path"),
    "STORE_AUTOSAVE_S": ("store", "auto_save_interval_s"),
    "RECONNECT_DELAY_S": ("connection", "reconnect_delay_s"),
    "CONNECT_TIMEOUT_S": ("connection", "connect_timeout_s"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "file"),
    "MODULES": ("features", "modules"),
}


def _coerce(value: Any, current: Any, *, key: str) -> Any:
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("1", "true", "yes", "on"):
            return True
        if isinstance(value, str) and value.lower() in ("0", "false", "no", "off", ""):
            return False
        raise ConfigError(f"{key}: expected a boolean, got {value!r}")
    if isinstance(current, tuple):
        if isinstance(value, str):
            return tuple(v.strip() for v in value.split(",") if v.strip())
        if isinstance(value, list):
            return tuple(str(v) for v in value)
        raise ConfigError(f"{key}: expected a list, got {value!r}")
    if isinstance(current, (int, float)):
        try:
            return type(current)(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key}: expected a number, got {value!r}") from e
    if value is None or isinstance(value, str):
        return value
    raise ConfigError(f"{key}: expected a string, got {value!r}")


def _apply(section: Any, values: Mapping[str, Any], *, name: str) -> Any:
    known = {f.name for f in dataclasses.fields(section)}
    changes: dict[str, Any] = {}
    for k, v in values.items():
        if k not in known:
            raise ConfigError(f"unknown config key: {name}.{k}")
        changes[k] = _coerce(v, getattr(section, k), key=f"{name}.{k}")
    return dataclasses.replace(section, **changes)


def _validate(cfg: Config) -> None:
    if cfg.auth.backend not in ("file", "mongo"):
        raise ConfigError(f"auth.backend must be 'file' or 'mongo', got {cfg.auth.backend!r}")
    if cfg.bot.mode not in ("private", "public"):
        raise ConfigError(f"bot.mode must be 'private' or 'public', got {cfg.bot.mode!r}")
    if cfg.auth.backend == "mongo" and not cfg.mongo.uri:
        raise ConfigError("auth.backend 'mongo' requires mongo.uri (or HYPERWA_MONGO_URI)")
    if not cfg.bot.prefix:
        raise ConfigError("bot.prefix must not be empty")


def load_config(
    path: str | Path | None = None, *, environ: Mapping[str, str] | None = None
) -> Config:
    """
    Build the configuration: defaults, then an optional JSON file, then
    `HYPERWA_*` environment variables.
    """

    sections: dict[str, dict[str, Any]] = {}

    if path is not None:
        p = Path(path).expanduser()
        try:
            data = bufferjson.loads(p.read_text("utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(f"failed to read config {p}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config {p} must contain a JSON object")
        for name, values in data.items():
            if not isinstance(values, dict):
                raise ConfigError(f"config section {name!r} must be an object")
            sections.setdefault(name, {}).update(values)

    env = os.environ if environ is None else environ
    for suffix, (section, key) in _ENV_KEYS.items():
        value = env.get(ENV_PREFIX + suffix)
        if value is not None:
            sections.setdefault(section, {})[key] = value

    cfg = Config()
    changes: dict[str, Any] = {}
    for name, values in sections.items():
        if not hasattr(cfg, name):
            raise ConfigError(f"unknown config section: {name}")
        changes[name] = _apply(getattr(cfg, name), values, name=name)
    cfg = dataclasses.replace(cfg, **changes)
    _validate(cfg)
    return cfg
