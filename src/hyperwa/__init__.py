"""
hyperwa: an asyncio WhatsApp userbot core built on pyaileys.

It keeps an event-synced in-memory store of chats, contacts and messages,
persists the linked-device session to files or MongoDB, reconnects on its own,
and routes prefixed text commands to pluggable modules.
"""

from __future__ import annotations

from .bot import HyperWaBot
from .config import Config, load_config
from .exceptions import HyperwaError
from .store import InMemoryStore

__all__ = [
    "Config",
    "HyperWaBot",
    "HyperwaError",
    "InMemoryStore",
    "load_config",
]

__version__ = "3.0.0"
