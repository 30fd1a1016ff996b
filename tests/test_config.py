from __future__ import annotations

import json

import pytest

from hyperwa.config import Config, load_config
from hyperwa.exceptions import ConfigError


def test_defaults() -> None:
    cfg = load_config(environ={})

    assert cfg == Config()
    assert cfg.bot.prefix == "."
    assert cfg.bot.mode == "private"
    assert cfg.auth.backend == "file"
    assert cfg.connection.reconnect_delay_s == 5.0
    assert cfg.connection.connect_timeout_s == 30.0
    assert cfg.store.auto_save_interval_s == 30.0
    assert cfg.features.modules == ("hyperwa.modules.system",)


def test_file_then_env_override(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "bot": {"prefix": "!", "admins": ["1", "2"], "mode": "public"},
                "store": {"auto_save_interval_s": 10},
                "features": {"respond_to_unknown_commands": True},
            }
        ),
        "utf-8",
    )

    cfg = load_config(path, environ={"HYPERWA_PREFIX": "/", "HYPERWA_RECONNECT_DELAY_S": "2.5"})

    assert cfg.bot.prefix == "/"
    assert cfg.bot.admins == ("1", "2")
    assert cfg.bot.mode == "public"
    assert cfg.store.auto_save_interval_s == 10.0
    assert cfg.connection.reconnect_delay_s == 2.5
    assert cfg.features.respond_to_unknown_commands is True


def test_env_lists_and_mongo_backend() -> None:
    cfg = load_config(
        environ={
            "HYPERWA_AUTH_BACKEND": "mongo",
            "HYPERWA_MONGO_URI": "mongodb://localhost:27017",
            "HYPERWA_ADMINS": "111, 222,",
            "HYPERWA_MODULES": "hyperwa.modules.system,my.module",
        }
    )

    assert cfg.auth.backend == "mongo"
    assert cfg.mongo.uri == "mongodb://localhost:27017"
    assert cfg.bot.admins == ("111", "222")
    assert cfg.features.modules == ("hyperwa.modules.system", "my.module")


@pytest.mark.parametrize(
    "environ",
    [
        {"HYPERWA_AUTH_BACKEND": "tar"},
        {"HYPERWA_AUTH_BACKEND": "mongo"},
        {"HYPERWA_MODE": "everyone"},
        {"HYPERWA_PREFIX": ""},
        {"HYPERWA_CONNECT_TIMEOUT_S": "soon"},
    ],
)
def test_invalid_values(environ: dict[str, str]) -> None:
    with pytest.raises(ConfigError):
        load_config(environ=environ)


def test_unknown_keys_and_bad_files(tmp_path) -> None:
    bad_key = tmp_path / "bad_key.json"
    bad_key.write_text(json.dumps({"bot": {"prefx": "!"}}), "utf-8")
    with pytest.raises(ConfigError):
        load_config(bad_key, environ={})

    bad_section = tmp_path / "bad_section.json"
    bad_section.write_text(json.dumps({"telegram": {}}), "utf-8")
    with pytest.raises(ConfigError):
        load_config(bad_section, environ={})

    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.json", environ={})

    broken = tmp_path / "broken.json"
    broken.write_text("[1, 2", "utf-8")
    with pytest.raises(ConfigError):
        load_config(broken, environ={})
