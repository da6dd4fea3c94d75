"""Shared test helpers for wamux tests.

This module contains fakes and builders that can be imported by both
conftest.py and individual test files. These are NOT fixtures - they are
regular classes and functions.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from wamux.config import Settings
from wamux.sessions.connector import AuthState

PN_JID = "5511999999999@s.whatsapp.net"
LID_JID = "98765432109876@lid"


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    """Settings rooted in a temp dir, with no stagger and a short version timeout."""
    values: dict[str, Any] = {
        "sessions_base_dir": tmp_path / "sessions",
        "media_dir": tmp_path / "media",
        "startup_stagger_ms": 0,
        "version_fetch_timeout": 0.5,
    }
    values.update(overrides)
    return Settings(**values)


def inbound(
    message_id: str = "3EB0C767D26A1D8E",
    remote_jid: str = PN_JID,
    *,
    text: str | None = "hello",
    message: dict[str, Any] | None = None,
    from_me: bool = False,
    timestamp: Any = 1700000000,
    push_name: str | None = "Ana",
    **key_extra: Any,
) -> dict[str, Any]:
    """Raw message payload as delivered by the connection library."""
    if message is None and text is not None:
        message = {"conversation": text}
    return {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me, **key_extra},
        "message": message,
        "messageTimestamp": timestamp,
        "pushName": push_name,
    }


class FakeConnection:
    """In-memory connection: records handlers and calls, emits events on demand."""

    def __init__(self, version: tuple[int, int, int] | None = None) -> None:
        self.version = version
        self.handlers: dict[str, Any] = {}
        self.sent: list[tuple[str, dict[str, Any], dict[str, Any] | None]] = []
        self.media: dict[str, Any] = {}
        self.downloads: list[str] = []
        self.numbers: dict[str, dict[str, Any]] = {}
        self.logged_out = False
        self.closed = False
        self.logout_error: Exception | None = None

    def on(self, event: str, handler: Any) -> None:
        self.handlers[event] = handler

    async def emit(self, event: str, payload: Any) -> None:
        await self.handlers[event](payload)

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        quoted: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.sent.append((jid, content, quoted))
        message = {"conversation": content["text"]} if "text" in content else {}
        return {
            "key": {"id": f"OUT{len(self.sent):04d}", "remoteJid": jid, "fromMe": True},
            "message": message,
            "messageTimestamp": 1700000100,
        }

    async def download_media(self, message: dict[str, Any]) -> bytes:
        message_id = message["key"]["id"]
        self.downloads.append(message_id)
        data = self.media.get(message_id)
        if isinstance(data, Exception):
            raise data
        if data is None:
            raise RuntimeError("media not available")
        return data

    async def on_whatsapp(self, phone: str) -> dict[str, Any] | None:
        return self.numbers.get(phone)

    async def logout(self) -> None:
        if self.logout_error is not None:
            raise self.logout_error
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Connector that writes a creds file and hands out FakeConnections."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings
        self.version: tuple[int, int, int] = (2, 3000, 1)
        self.version_delay = 0.0
        self.load_error: Exception | None = None
        self.save_delay = 0.0
        self.loaded_paths: list[Path] = []
        self.connections: list[FakeConnection] = []
        self.saves = 0
        self.active_saves = 0
        self.max_concurrent_saves = 0

    async def load_auth_state(self, path: Path) -> AuthState:
        if self.load_error is not None:
            raise self.load_error
        self.loaded_paths.append(path)
        (path / "creds.json").write_text("{}")
        return AuthState(creds={}, save_creds=self._save_creds)

    async def _save_creds(self) -> None:
        self.active_saves += 1
        self.max_concurrent_saves = max(self.max_concurrent_saves, self.active_saves)
        await asyncio.sleep(self.save_delay)
        self.active_saves -= 1
        self.saves += 1

    async def fetch_latest_version(self) -> tuple[int, int, int]:
        if self.version_delay:
            await asyncio.sleep(self.version_delay)
        return self.version

    def create_connection(self, auth_state: AuthState, version: tuple[int, int, int]) -> FakeConnection:
        connection = FakeConnection(version)
        self.connections.append(connection)
        return connection


def make_connector(settings: Settings) -> FakeConnector:
    """Factory target for connector path resolution."""
    return FakeConnector(settings)


def not_a_connector(settings: Settings) -> object:
    return object()


class RecordingWebhooks:
    """Webhook dispatcher stand-in that records events instead of POSTing."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def dispatch(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        self.events.append((session_id, event, data))

    def of(self, event: str) -> list[dict[str, Any]]:
        return [data for _, name, data in self.events if name == event]

    async def aclose(self) -> None:
        pass


class RecordingWriter:
    """Message writer stand-in that records store calls."""

    def __init__(self) -> None:
        self.inbound: list[tuple[str, dict[str, Any], str, str | None]] = []
        self.outbound: list[tuple[str, dict[str, Any], str]] = []

    async def store_inbound(
        self,
        session_id: str,
        msg: dict[str, Any],
        chat_key: str,
        media_url: str | None = None,
    ) -> bool:
        self.inbound.append((session_id, msg, chat_key, media_url))
        return True

    async def store_outbound(self, session_id: str, msg: dict[str, Any], chat_key: str) -> bool:
        self.outbound.append((session_id, msg, chat_key))
        return True


class FakeDb:
    """Tables the message writer reads and writes, held in memory."""

    def __init__(self) -> None:
        self.channel_sessions: dict[str, tuple[int, int]] = {}
        self.leads: list[tuple[int, int, str]] = []
        self.messages: dict[tuple[int, str, str], dict[str, Any]] = {}
        self.session_lookups = 0
        self.commits = 0

    def add_session(self, identifier: str, channel_session_id: int, tenant_id: int) -> None:
        self.channel_sessions[identifier] = (channel_session_id, tenant_id)

    def add_lead(self, lead_id: int, tenant_id: int, external_id: str) -> None:
        self.leads.append((lead_id, tenant_id, external_id))


class FakeCursor:
    """Cursor that understands the three statements the repository issues."""

    def __init__(self, db: FakeDb) -> None:
        self.db = db
        self._row: tuple[Any, ...] | None = None

    def execute(self, query: str, params: Any = None) -> None:
        sql = " ".join(query.split())
        if "FROM et_channel_sessions" in sql:
            self.db.session_lookups += 1
            _channel, identifier = params
            self._row = self.db.channel_sessions.get(identifier)
        elif "FROM et_leads" in sql:
            tenant_id, digits = params
            matches = sorted(
                lead_id
                for lead_id, lead_tenant, external_id in self.db.leads
                if lead_tenant == tenant_id and re.sub(r"\D", "", external_id) == digits
            )
            self._row = (matches[0],) if matches else None
        elif sql.startswith("INSERT INTO et_messages"):
            (
                tenant_id,
                lead_id,
                channel_session_id,
                channel,
                external_message_id,
                direction,
                message_type,
                text_content,
                media_url,
                raw_payload,
                delivery_status,
            ) = params
            key = (tenant_id, channel, external_message_id)
            if key in self.db.messages:
                self.db.messages[key]["raw_payload"] = raw_payload
            else:
                self.db.messages[key] = {
                    "tenant_id": tenant_id,
                    "lead_id": lead_id,
                    "thread_id": None,
                    "channel_session_id": channel_session_id,
                    "direction": direction,
                    "message_type": message_type,
                    "text_content": text_content,
                    "media_url": media_url,
                    "raw_payload": raw_payload,
                    "delivery_status": delivery_status,
                }
            self._row = None
        else:
            raise AssertionError(f"unexpected query: {sql}")

    def fetchone(self) -> tuple[Any, ...] | None:
        return self._row


def fake_txn(db: FakeDb):
    """Drop-in for wamux.infra.db.txn backed by a FakeDb."""

    @contextmanager
    def _txn(conn=None, *, dsn=None):
        yield FakeCursor(db)
        db.commits += 1

    return _txn
