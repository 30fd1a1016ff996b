from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from google.protobuf.json_format import MessageToDict
from google.protobuf.message import Message as ProtoMessage
from pyaileys import WhatsAppClient
from pyaileys.auth import AuthenticationState
from pyaileys.client import ClientConfig
from pyaileys.exceptions import PyaileysError
from pyaileys.socket import ConnectionUpdate as WAConnectionUpdate
from pyaileys.socket_config import SocketConfig
from pyaileys.wabinary.jid import jid_normalized_user
from pyaileys.wabinary.types import BinaryNode

from .auth.state import AuthState
from .connection import ConnectionUpdate, DisconnectReason, SocketFactory
from .exceptions import ConnectionClosedError
from .util.events import AsyncEventEmitter

logger = logging.getLogger(__name__)


def _children(node: BinaryNode) -> list[BinaryNode]:
    if isinstance(node.content, list):
        return [c for c in node.content if isinstance(c, BinaryNode)]
    return []


def stream_error_status(node: BinaryNode) -> int:
    """Map a `<stream:error>` stanza to a disconnect status code."""

    code = node.attrs.get("code")
    if code and str(code).isdigit():
        return int(code)
    for child in _children(node):
        if child.tag == "conflict":
            if child.attrs.get("type") == "device_removed":
                return int(DisconnectReason.LOGGED_OUT)
            return int(DisconnectReason.CONNECTION_REPLACED)
    return int(DisconnectReason.BAD_SESSION)


def failure_status(node: BinaryNode) -> int:
    reason = node.attrs.get("reason")
    if reason and str(reason).isdigit():
        return int(reason)
    return int(DisconnectReason.BAD_SESSION)


def message_content(message: Any, text: str | None) -> dict[str, Any]:
    """Baileys-shaped (camelCase) content dict for a decrypted proto message."""

    if isinstance(message, ProtoMessage):
        content = MessageToDict(message)
        if content:
            return content
    return {"conversation": text} if text else {}


class PyaileysSocket:
    """
    Adapter from `pyaileys.WhatsAppClient` to the event names and payload
    shapes the store and the dispatcher consume.

    Re-emitted events: `connection.update` (`ConnectionUpdate` with a status
    code), `creds.update`, `messages.upsert`, and `chats.upsert` /
    `contacts.upsert` after each history sync batch.
    """

    def __init__(self, auth_state: AuthState, *, socket_config: SocketConfig | None = None) -> None:
        self.events = AsyncEventEmitter()
        self.client = WhatsAppClient(
            auth=AuthenticationState(creds=auth_state.creds, keys=auth_state.keys),
            config=ClientConfig(socket=socket_config or SocketConfig()),
        )
        self._status: int | None = None

        self.client.on("connection.update", self._on_connection_update)
        self.client.on("creds.update", self._on_creds_update)
        self.client.on("message.decrypted", self._on_message)
        self.client.on("history.sync", self._on_history_sync)
        self.client.on("stanza.stream:error", self._on_stream_error)
        self.client.on("stanza.failure", self._on_failure)

    @property
    def user_jid(self) -> str | None:
        me = self.client.socket.auth.creds.me
        return me.id if me else None

    async def connect(self) -> None:
        self._status = None
        try:
            await self.client.connect()
        except PyaileysError as e:
            status = self._status or int(DisconnectReason.CONNECTION_CLOSED)
            raise ConnectionClosedError(f"connect failed: {e}", status_code=status) from e

    async def close(self) -> None:
        await self.client.disconnect()

    async def send_presence(self, available: bool = True) -> None:
        await self.client.set_presence(available)

    async def send_message(self, jid: str, content: Mapping[str, Any]) -> str:
        if "text" in content:
            return await self.client.send_text(jid, str(content["text"]))
        if "image" in content:
            return await self.client.send_image_file(
                jid, content["image"], caption=content.get("caption")
            )
        if "document" in content:
            return await self.client.send_document_file(
                jid,
                content["document"],
                caption=content.get("caption"),
                filename=content.get("fileName"),
                mimetype=content.get("mimetype"),
            )
        if "location" in content:
            loc = content["location"]
            return await self.client.send_location(
                jid,
                latitude=float(loc["degreesLatitude"]),
                longitude=float(loc["degreesLongitude"]),
                name=loc.get("name"),
                address=loc.get("address"),
            )
        raise ValueError(f"unsupported message content: {sorted(content)}")

    async def _on_stream_error(self, node: BinaryNode) -> None:
        self._status = stream_error_status(node)
        logger.debug("stream error, status %s", self._status)

    async def _on_failure(self, node: BinaryNode) -> None:
        self._status = failure_status(node)
        logger.debug("connection failure, status %s", self._status)

    async def _on_connection_update(self, update: WAConnectionUpdate) -> None:
        status: int | None = None
        if update.connection == "close":
            status = self._status or getattr(update.last_disconnect, "status_code", None)
            if status is None:
                status = int(
                    DisconnectReason.CONNECTION_LOST
                    if update.last_disconnect
                    else DisconnectReason.CONNECTION_CLOSED
                )
            if status == DisconnectReason.RESTART_REQUIRED:
                # The client restarts itself after pairing; its own
                # "connecting" and "open" updates follow.
                logger.info("restart required after pairing, client is reconnecting")
                self._status = None
                return
        elif update.connection == "open":
            self._status = None
        await self.events.emit(
            "connection.update",
            ConnectionUpdate(
                connection=update.connection,
                qr=update.qr,
                status_code=status,
                error=update.last_disconnect,
                is_new_login=update.is_new_login,
            ),
        )

    async def _on_creds_update(self, creds: Any) -> None:
        await self.events.emit("creds.update", creds)

    async def _on_message(self, ev: dict[str, Any]) -> None:
        chat = ev.get("chat_jid")
        mid = ev.get("id")
        if not chat or not mid:
            return
        sender = ev.get("sender_jid")
        me = self.user_jid
        from_me = bool(me and sender and jid_normalized_user(sender) == jid_normalized_user(me))

        key: dict[str, Any] = {"remoteJid": chat, "id": mid, "fromMe": from_me}
        if sender and jid_normalized_user(sender) != jid_normalized_user(chat):
            key["participant"] = sender
        msg = {
            "key": key,
            "messageTimestamp": int(ev.get("timestamp_s") or 0),
            "message": message_content(ev.get("message"), ev.get("text")),
        }
        contact = self.client.get_contact(sender) if sender else None
        if contact is not None and contact.notify:
            msg["pushName"] = contact.notify
        await self.events.emit("messages.upsert", {"messages": [msg], "type": "notify"})

    async def _on_history_sync(self, ev: dict[str, Any]) -> None:
        chats = [
            {k: v for k, v in {"id": c.jid, "name": c.name}.items() if v is not None}
            for c in self.client.store.list_chats()
        ]
        contacts = [
            {
                k: v
                for k, v in {
                    "id": c.jid,
                    "name": c.name,
                    "notify": c.notify,
                    "verifiedName": c.verified_name,
                    "imgUrl": c.img_url,
                    "status": c.status,
                }.items()
                if v is not None
            }
            for c in self.client.store.list_contacts()
        ]
        logger.info(
            "history sync: %d chats, %d contacts (progress %s%%)",
            len(chats),
            len(contacts),
            ev.get("progress"),
        )
        if chats:
            await self.events.emit("chats.upsert", chats)
        if contacts:
            await self.events.emit("contacts.upsert", contacts)


def make_socket_factory(socket_config: SocketConfig | None = None) -> SocketFactory:
    def factory(auth_state: AuthState) -> PyaileysSocket:
        return PyaileysSocket(auth_state, socket_config=socket_config)

    return factory
