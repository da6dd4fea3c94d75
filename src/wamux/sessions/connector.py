"""Contract with the external WhatsApp connection library.

The library owns the wire protocol, key exchange and session-cipher state.
This module pins down what the session layer needs from it: a ``Connector``
that loads credential material and opens connections, and a ``Connection``
that emits events to registered handlers and exposes a few operations.

Handlers are coroutine functions. A connection may invoke a handler again
before a previous invocation has finished, so handlers that touch shared
state must serialize themselves.
"""

from __future__ import annotations

import importlib
import inspect
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Protocol, runtime_checkable

ProtocolVersion = tuple[int, int, int]
EventHandler = Callable[[Any], Awaitable[None]]


class ConnectionEvent(StrEnum):
    CREDS_UPDATE = "creds.update"
    CONNECTION_UPDATE = "connection.update"
    HISTORY_SET = "messaging-history.set"
    CHATS_UPSERT = "chats.upsert"
    CHATS_UPDATE = "chats.update"
    CHATS_DELETE = "chats.delete"
    MESSAGES_UPSERT = "messages.upsert"


class DisconnectReason(IntEnum):
    """Close status codes reported by the connection library."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


@dataclass(frozen=True)
class DisconnectInfo:
    status_code: int | None = None
    message: str = "Unknown error"

    @property
    def is_logged_out(self) -> bool:
        return self.status_code == DisconnectReason.LOGGED_OUT


@dataclass(frozen=True)
class ConnectionUpdate:
    """Payload of ``connection.update``. Every field is optional."""

    connection: Literal["connecting", "open", "close"] | None = None
    qr: str | None = None
    last_disconnect: DisconnectInfo | None = None


@dataclass(frozen=True)
class MessagesUpsert:
    """Payload of ``messages.upsert``.

    ``type`` is "notify" for new live messages and "append" for messages
    synced from another device or the history.
    """

    messages: list[dict[str, Any]] = field(default_factory=list)
    type: Literal["notify", "append"] = "notify"


@dataclass(frozen=True)
class HistorySync:
    """Payload of ``messaging-history.set``."""

    chats: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    is_latest: bool = False


@dataclass
class AuthState:
    """Credential material loaded from a session directory.

    ``save_creds`` writes the current material back to disk. It must never
    run concurrently with itself for the same session.
    """

    creds: Any
    save_creds: Callable[[], Awaitable[None]]


@runtime_checkable
class Connection(Protocol):
    def on(self, event: str, handler: EventHandler) -> None:
        """Register a handler for an event name."""
        ...

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        quoted: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send content to a JID. Returns the sent message payload."""
        ...

    async def download_media(self, message: dict[str, Any]) -> bytes:
        """Download and decrypt a message attachment."""
        ...

    async def on_whatsapp(self, phone: str) -> dict[str, Any] | None:
        """Check whether a phone number has a WhatsApp account."""
        ...

    async def logout(self) -> None:
        """Unlink this device from the account."""
        ...

    async def close(self) -> None:
        """Close the connection without unlinking."""
        ...


@runtime_checkable
class Connector(Protocol):
    async def load_auth_state(self, path: Path) -> AuthState:
        """Load (or create) credential material stored under ``path``."""
        ...

    async def fetch_latest_version(self) -> ProtocolVersion:
        """Latest protocol version advertised by the platform."""
        ...

    def create_connection(self, auth_state: AuthState, version: ProtocolVersion) -> Connection:
        """Open a connection.

        Events are delivered only once control returns to the event loop,
        so handlers registered right after this call see every event.
        """
        ...


def load_connector(path: str, *args: Any) -> Connector:
    """Resolve a "module:attribute" connector path.

    The attribute may be a connector instance or a factory; factories are
    called with ``args``.

    Raises:
        ValueError: If the path is malformed.
        TypeError: If the resolved object does not satisfy ``Connector``.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"connector path must look like 'module:attribute', got {path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    if inspect.isclass(target) or not isinstance(target, Connector):
        connector = target(*args)
    else:
        connector = target
    if not isinstance(connector, Connector):
        raise TypeError(f"{path} did not produce a Connector")
    return connector
