"""Idempotent, tenant-aware persistence of WhatsApp messages.

Store-writer problems (no DATABASE_URL, unknown session, unknown lead,
query failure) are logged and the write is skipped; they never fail the
message pipeline that called in.

Security: NEVER log JIDs or text. Only log hashes, ids prefixes and types.
"""

from __future__ import annotations

import asyncio
from typing import Any

from wamux.domain.content import content_type_name, extract_text, parse_content
from wamux.domain.identity import is_lid_jid, phone_digits
from wamux.infra.db import txn
from wamux.infra.repositories.messages_repository import (
    ChannelSession,
    Direction,
    find_channel_session,
    find_lead_by_phone,
    upsert_message,
)
from wamux.observability.logging import get_logger
from wamux.observability.redaction import hash_identifier

logger = get_logger(__name__)


def _id_prefix(message_id: str) -> str:
    return message_id[:8] if len(message_id) >= 8 else message_id


class MessageStoreWriter:
    """Writes inbound and outbound messages into et_messages.

    The session -> tenant mapping is immutable for the process lifetime, so
    successful lookups are cached. Misses are retried on the next message.
    """

    def __init__(self, dsn: str | None) -> None:
        self._dsn = dsn
        self._sessions: dict[str, ChannelSession] = {}
        self._warned_disabled = False

    @property
    def enabled(self) -> bool:
        return bool(self._dsn)

    async def store_inbound(
        self,
        session_id: str,
        msg: dict[str, Any],
        chat_key: str,
        media_url: str | None = None,
    ) -> bool:
        """Persist an inbound message. Returns True if a row was written."""
        return await self._store(session_id, msg, chat_key, media_url, "inbound", "received")

    async def store_outbound(
        self,
        session_id: str,
        msg: dict[str, Any],
        chat_key: str,
    ) -> bool:
        """Persist a message this service sent. Returns True if a row was written."""
        return await self._store(session_id, msg, chat_key, None, "outbound", "sent")

    async def _store(
        self,
        session_id: str,
        msg: dict[str, Any],
        chat_key: str,
        media_url: str | None,
        direction: Direction,
        delivery_status: str,
    ) -> bool:
        if not self._dsn:
            if not self._warned_disabled:
                self._warned_disabled = True
                logger.warning("DATABASE_URL is not set - message persistence disabled")
            return False

        message_id = (msg.get("key") or {}).get("id")
        if not message_id or not chat_key:
            return False

        try:
            return await asyncio.to_thread(
                self._store_sync,
                session_id,
                msg,
                message_id,
                chat_key,
                media_url,
                direction,
                delivery_status,
            )
        except Exception as e:
            logger.error(
                "failed to store message",
                extra={
                    "extra_fields": {
                        "message_id_prefix": _id_prefix(message_id),
                        "direction": direction,
                        "error_type": type(e).__name__,
                    }
                },
            )
            return False

    def _resolve_session(self, cur: Any, session_id: str) -> ChannelSession | None:
        cached = self._sessions.get(session_id)
        if cached is not None:
            return cached
        found = find_channel_session(cur, session_id)
        if found is not None:
            self._sessions[session_id] = found
        return found

    def _store_sync(
        self,
        session_id: str,
        msg: dict[str, Any],
        message_id: str,
        chat_key: str,
        media_url: str | None,
        direction: Direction,
        delivery_status: str,
    ) -> bool:
        content = parse_content(msg.get("message"))
        message_type = content.kind
        if message_type == "unknown":
            message_type = content_type_name(msg.get("message"))

        with txn(dsn=self._dsn) as cur:
            session = self._resolve_session(cur, session_id)
            if session is None:
                logger.error(
                    "session not found in et_channel_sessions",
                    extra={"extra_fields": {"message_id_prefix": _id_prefix(message_id)}},
                )
                return False

            # LIDs carry no phone number to match on
            digits = "" if is_lid_jid(chat_key) else phone_digits(chat_key)
            lead_id = find_lead_by_phone(cur, session.tenant_id, digits)
            if lead_id is None:
                logger.warning(
                    "lead not found in et_leads",
                    extra={
                        "extra_fields": {
                            "tenant_id": session.tenant_id,
                            "contact_hash": hash_identifier(chat_key),
                            "message_id_prefix": _id_prefix(message_id),
                        }
                    },
                )
                return False

            upsert_message(
                cur,
                tenant_id=session.tenant_id,
                lead_id=lead_id,
                channel_session_id=session.channel_session_id,
                external_message_id=message_id,
                direction=direction,
                message_type=message_type,
                text_content=extract_text(content),
                media_url=media_url,
                raw_payload=msg,
                delivery_status=delivery_status,
            )

        logger.info(
            "stored message",
            extra={
                "extra_fields": {
                    "message_id_prefix": _id_prefix(message_id),
                    "direction": direction,
                    "tenant_id": session.tenant_id,
                    "lead_id": lead_id,
                    "channel_session_id": session.channel_session_id,
                }
            },
        )
        return True
