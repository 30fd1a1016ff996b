from __future__ import annotations

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from .config import MongoSettings
from .exceptions import StartupError

logger = logging.getLogger(__name__)


async def connect_db(settings: MongoSettings) -> tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    """
    Open the MongoDB client and verify the server answers.

    Failure here is fatal by contract: the bot must not start without its
    persistence backend.
    """

    if not settings.uri:
        raise StartupError("no MongoDB URI configured")

    timeout_ms = int(settings.connect_timeout_s * 1000)
    client: AsyncIOMotorClient = AsyncIOMotorClient(
        settings.uri, serverSelectionTimeoutMS=timeout_ms, connectTimeoutMS=timeout_ms
    )
    try:
        await client.admin.command("ping")
    except Exception as e:
        client.close()
        raise StartupError(f"failed to connect to MongoDB: {e}") from e

    logger.info("connected to MongoDB database %s", settings.db_name)
    return client, client[settings.db_name]
