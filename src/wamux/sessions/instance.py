"""Per-account connection state machine.

Lifecycle::

    created -> initializing -> (awaiting_pairing | connected)
            -> reconnecting -> (initializing | logged_out)
    initializing -> failed          (unrecoverable setup error)

Transitions are driven by events from the connection library. Every event
kind is routed through one table in ``_register_handlers``.

Security: NEVER log JIDs, phone numbers, QR values or message text.
"""

from __future__ import annotations

import asyncio
import shutil
from enum import StrEnum
from pathlib import Path
from typing import Any, Awaitable, Callable

from wamux.config import FALLBACK_PROTOCOL_VERSION, Settings
from wamux.domain.chat_cache import ConversationCache
from wamux.domain.content import MessageContent, ReactionContent
from wamux.domain.dedup import Deduplicator
from wamux.domain.identity import (
    is_broadcast_jid,
    is_group_jid,
    message_alternate,
    phone_digits,
    to_user_jid,
)
from wamux.infra.message_writer import MessageStoreWriter
from wamux.media.store import MediaStore
from wamux.observability.correlation import bind_session_id
from wamux.observability.logging import get_logger
from wamux.observability.redaction import hash_identifier
from wamux.sessions.connector import (
    AuthState,
    Connection,
    ConnectionEvent,
    ConnectionUpdate,
    Connector,
    DisconnectInfo,
    HistorySync,
    MessagesUpsert,
    ProtocolVersion,
)
from wamux.webhooks.dispatcher import WebhookDispatcher, format_message

logger = get_logger(__name__)


class SessionState(StrEnum):
    CREATED = "created"
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    LOGGED_OUT = "logged_out"
    FAILED = "failed"


class SessionNotConnectedError(Exception):
    """Raised when an operation needs an open connection."""

    pass


class SessionLoggedOutError(Exception):
    """Raised when a logged-out session is asked to initialize again."""

    pass


class SessionClosedError(Exception):
    """Raised when a shut-down session is asked to initialize again."""

    pass


class Session:
    """One managed WhatsApp account.

    Owns its connection, conversation cache and dedup window. Credential
    saves are serialized per session; nothing here is shared with other
    sessions except the injected writer, media store and webhook dispatcher.
    """

    def __init__(
        self,
        session_id: str,
        *,
        settings: Settings,
        connector: Connector,
        webhooks: WebhookDispatcher,
        writer: MessageStoreWriter,
        media: MediaStore,
    ) -> None:
        self.session_id = session_id
        self._settings = settings
        self._connector = connector
        self._webhooks = webhooks
        self._writer = writer
        self._media = media

        self.state = SessionState.CREATED
        self.last_error: str | None = None
        self.pairing_challenge: str | None = None
        self.connection: Connection | None = None
        self.reconnect_task: asyncio.Task[None] | None = None

        self.cache = ConversationCache(settings.max_cached_messages_per_chat)
        self.dedup = Deduplicator(settings.dedup_ttl_seconds)

        self._auth: AuthState | None = None
        self._save_lock = asyncio.Lock()
        self._stopping = False

    @property
    def auth_path(self) -> Path:
        return self._settings.session_path(self.session_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        if new_state is self.state:
            return
        logger.info(
            "session state change",
            extra={"extra_fields": {"from": self.state.value, "to": new_state.value}},
        )
        self.state = new_state

    async def init(self) -> Connection:
        """Load credentials, open the connection and register handlers.

        Errors are kept in ``last_error`` and re-raised. There is no automatic
        retry here; retries only happen through the connection-close path.

        A logout or shutdown that lands while this is suspended wins: no
        connection is opened and the in-flight init raises.

        Raises:
            SessionLoggedOutError: If the session is (or gets) logged out.
            SessionClosedError: If the session is (or gets) shut down.
        """
        with bind_session_id(self.session_id):
            self._ensure_active()

            self._transition(SessionState.INITIALIZING)
            try:
                await asyncio.to_thread(self.auth_path.mkdir, parents=True, exist_ok=True)
                self._auth = await self._connector.load_auth_state(self.auth_path)
                self._ensure_active()
                logger.info("auth state loaded")

                version = await self._fetch_version()
                self._ensure_active()

                # No suspension point from here until the connection is owned
                connection = self._connector.create_connection(self._auth, version)
                self._register_handlers(connection)
                self.connection = connection
            except Exception as e:
                if self._is_shut_down():
                    await self._abandon_init()
                    raise

                self.last_error = f"Initialization failed: {e}"
                self._transition(SessionState.FAILED)
                logger.error(
                    "session initialization failed",
                    extra={"extra_fields": {"error_type": type(e).__name__}},
                )
                raise

            logger.info(
                "connection created",
                extra={"extra_fields": {"version": ".".join(str(v) for v in version)}},
            )
            return connection

    async def _fetch_version(self) -> ProtocolVersion:
        try:
            return await asyncio.wait_for(
                self._connector.fetch_latest_version(),
                timeout=self._settings.version_fetch_timeout,
            )
        except Exception as e:
            logger.warning(
                "version fetch failed or timed out, using fallback",
                extra={"extra_fields": {"error_type": type(e).__name__}},
            )
            return FALLBACK_PROTOCOL_VERSION

    def _is_shut_down(self) -> bool:
        return self._stopping or self.state is SessionState.LOGGED_OUT

    def _ensure_active(self) -> None:
        if self.state is SessionState.LOGGED_OUT:
            raise SessionLoggedOutError(f"session {self.session_id} is logged out")
        if self._stopping:
            raise SessionClosedError(f"session {self.session_id} is shut down")

    async def _abandon_init(self) -> None:
        logger.info("initialization abandoned", extra={"extra_fields": {"state": self.state.value}})
        if self.state is SessionState.LOGGED_OUT:
            # load_auth_state may have written files after logout removed the directory
            await self._discard_credentials()

    def _cancel_reconnect(self) -> None:
        task = self.reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def logout(self) -> None:
        """Unlink the account and discard its credential directory.

        The local side always completes: a failing unlink call is logged and
        the credentials are discarded anyway.
        """
        with bind_session_id(self.session_id):
            self._cancel_reconnect()
            connection = self.connection
            self.connection = None
            self.pairing_challenge = None
            self._transition(SessionState.LOGGED_OUT)
            if connection is not None:
                try:
                    await connection.logout()
                except Exception as e:
                    logger.warning(
                        "connection logout failed, discarding credentials anyway",
                        extra={"extra_fields": {"error_type": type(e).__name__}},
                    )
            await self._discard_credentials()

    async def close(self) -> None:
        """Close the connection for process shutdown, keeping credentials."""
        self._stopping = True
        self._cancel_reconnect()
        connection = self.connection
        self.connection = None
        if connection is not None:
            await connection.close()

    async def _discard_credentials(self) -> None:
        path = self.auth_path
        if await asyncio.to_thread(path.exists):
            await asyncio.to_thread(shutil.rmtree, path)
            logger.info("credential directory removed")

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    def _register_handlers(self, connection: Connection) -> None:
        routes: dict[ConnectionEvent, Callable[[Any], Awaitable[None]]] = {
            ConnectionEvent.CREDS_UPDATE: self._on_creds_update,
            ConnectionEvent.CONNECTION_UPDATE: self._on_connection_update,
            ConnectionEvent.HISTORY_SET: self._on_history_set,
            ConnectionEvent.CHATS_UPSERT: self._on_chats_upsert,
            ConnectionEvent.CHATS_UPDATE: self._on_chats_update,
            ConnectionEvent.CHATS_DELETE: self._on_chats_delete,
            ConnectionEvent.MESSAGES_UPSERT: self._on_messages_upsert,
        }
        for event, handler in routes.items():
            connection.on(event.value, self._bound(handler))

    def _bound(self, handler: Callable[[Any], Awaitable[None]]) -> Callable[[Any], Awaitable[None]]:
        async def run(payload: Any) -> None:
            with bind_session_id(self.session_id):
                await handler(payload)

        return run

    async def _on_creds_update(self, _payload: Any) -> None:
        await self.save_credentials()

    async def save_credentials(self) -> None:
        """Persist credential material; one write at a time per session.

        Overlapping writes corrupt the session-cipher state (seen as MAC or
        integrity failures on the next reconnect).
        """
        if self._auth is None:
            return
        async with self._save_lock:
            await self._auth.save_creds()

    async def _on_connection_update(self, update: ConnectionUpdate) -> None:
        if self._stopping or self.state is SessionState.LOGGED_OUT:
            return

        if update.qr:
            self.pairing_challenge = update.qr
            self._transition(SessionState.AWAITING_PAIRING)
            logger.info("pairing challenge received")
            self._webhooks.dispatch(self.session_id, "qr", {"qr": update.qr})

        if update.connection == "close":
            await self._handle_close(update.last_disconnect or DisconnectInfo())
        elif update.connection == "open":
            self.pairing_challenge = None
            self.last_error = None
            self._transition(SessionState.CONNECTED)
            logger.info("connection open")
            self._webhooks.dispatch(self.session_id, "connection", {"status": "open"})

    async def _handle_close(self, reason: DisconnectInfo) -> None:
        reconnect = not reason.is_logged_out
        self.last_error = f"Connection closed: {reason.message} ({reason.status_code})"
        logger.warning(
            "connection closed",
            extra={"extra_fields": {"status_code": reason.status_code, "reconnect": reconnect}},
        )
        self._webhooks.dispatch(
            self.session_id,
            "connection",
            {"status": "close", "statusCode": reason.status_code, "reconnect": reconnect},
        )

        if not reconnect:
            self.connection = None
            self.pairing_challenge = None
            self._transition(SessionState.LOGGED_OUT)
            await self._discard_credentials()
            return

        self._transition(SessionState.RECONNECTING)
        self.reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect(), name=f"reconnect:{self.session_id}"
        )

    async def _reconnect(self) -> None:
        with bind_session_id(self.session_id):
            try:
                await self.init()
            except Exception:
                # init() records last_error unless the session was shut down meanwhile
                logger.warning("reconnect attempt failed")

    async def _on_history_set(self, history: HistorySync) -> None:
        for chat in history.chats:
            self.cache.upsert_chat(chat)
        for msg in history.messages:
            if msg.get("message"):
                self.cache.cache_raw_message(msg)
        logger.info(
            "history sync applied",
            extra={
                "extra_fields": {
                    "chats": len(history.chats),
                    "messages": len(history.messages),
                    "is_latest": history.is_latest,
                }
            },
        )

    async def _on_chats_upsert(self, chats: list[dict[str, Any]]) -> None:
        for chat in chats:
            self.cache.upsert_chat(chat)

    async def _on_chats_update(self, updates: list[dict[str, Any]]) -> None:
        for update in updates:
            self.cache.update_chat(update)

    async def _on_chats_delete(self, jids: list[str]) -> None:
        for jid in jids:
            self.cache.delete_chat(jid)

    async def _on_messages_upsert(self, batch: MessagesUpsert) -> None:
        for msg in batch.messages:
            if batch.type == "notify":
                await self._process_inbound(msg)
            elif msg.get("message"):
                self.cache.cache_raw_message(msg)

    # ------------------------------------------------------------------
    # Inbound intake
    # ------------------------------------------------------------------

    async def _process_inbound(self, msg: dict[str, Any]) -> None:
        key = msg.get("key") or {}
        message_id = key.get("id")
        remote_jid = key.get("remoteJid")
        if not message_id or not remote_jid or not msg.get("message"):
            return

        if key.get("fromMe"):
            # Our own sends still belong in the chat history
            self.cache.cache_raw_message(msg)
            return

        if is_group_jid(remote_jid) or is_broadcast_jid(remote_jid):
            return

        if self.dedup.should_ignore(message_id):
            logger.info(
                "duplicate message ignored",
                extra={"extra_fields": {"message_id_prefix": message_id[:8]}},
            )
            return

        chat_key = self.cache.resolve(remote_jid, message_alternate(key))
        logger.info(
            "inbound message",
            extra={
                "extra_fields": {
                    "message_id_prefix": message_id[:8],
                    "contact_hash": hash_identifier(chat_key),
                }
            },
        )

        media_url = await self._media.capture(msg, self.connection)
        self.cache.cache_raw_message(msg, media_url)
        await self._writer.store_inbound(self.session_id, msg, chat_key, media_url)
        self._webhooks.dispatch(self.session_id, "message", format_message(msg, chat_key, media_url))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _require_connection(self) -> Connection:
        if self.connection is None or self.state is not SessionState.CONNECTED:
            raise SessionNotConnectedError(f"session {self.session_id} is not connected")
        return self.connection

    async def send(
        self,
        to: str,
        content: MessageContent,
        reply_to: str | None = None,
    ) -> dict[str, Any]:
        """Send content to a phone number or JID.

        Raises:
            SessionNotConnectedError: If the connection is not open.
            ValueError: If the destination is malformed.
        """
        connection = self._require_connection()
        jid = to_user_jid(to)

        if isinstance(content, ReactionContent):
            wire = content.to_wire(remote_jid=jid)
        elif hasattr(content, "to_wire"):
            wire = content.to_wire()
        else:
            raise ValueError(f"cannot send {content.kind} content")

        quoted = None
        if reply_to:
            quoted = {"key": {"id": reply_to, "remoteJid": jid, "fromMe": False}}

        with bind_session_id(self.session_id):
            result = await connection.send_message(jid, wire, quoted=quoted)
            logger.info(
                "outbound message sent",
                extra={"extra_fields": {"kind": content.kind, "to_hash": hash_identifier(jid)}},
            )
            if isinstance(result, dict):
                await self._writer.store_outbound(self.session_id, result, self.cache.resolve(jid))
        return result

    async def check_number(self, phone: str) -> dict[str, Any]:
        """Ask the platform whether a phone number has an account.

        Raises:
            SessionNotConnectedError: If the connection is not open.
            ValueError: If the phone number has no digits.
        """
        connection = self._require_connection()
        digits = phone_digits(phone)
        if not digits:
            raise ValueError("phone number has no digits")
        result = await connection.on_whatsapp(digits)
        if not result:
            return {"exists": False, "jid": None}
        return {"exists": bool(result.get("exists")), "jid": result.get("jid")}

    def status(self) -> dict[str, Any]:
        """Point-in-time status for the HTTP layer."""
        if self.pairing_challenge:
            message = "Scan code"
        elif self.state is SessionState.CONNECTED:
            message = "Connected"
        elif self.last_error:
            message = "Error occurred"
        else:
            message = "Waiting for connection update"

        return {
            "sessionId": self.session_id,
            "status": self.state.value,
            "qr": self.pairing_challenge,
            "error": self.last_error,
            "message": message,
        }
