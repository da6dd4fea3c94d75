"""Registry of live sessions - the only entry point the HTTP layer uses."""

from __future__ import annotations

import asyncio
import re

from wamux.config import Settings
from wamux.infra.message_writer import MessageStoreWriter
from wamux.media.store import MediaStore
from wamux.observability.logging import get_logger
from wamux.sessions.connector import Connector
from wamux.sessions.instance import Session, SessionClosedError, SessionLoggedOutError
from wamux.sessions.pacer import StartupPacer
from wamux.webhooks.dispatcher import WebhookDispatcher

logger = get_logger(__name__)

# Session ids double as directory names under the sessions base dir
_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class InvalidSessionIdError(ValueError):
    """Raised when a session id is not usable as a directory name."""

    pass


def validate_session_id(session_id: str) -> str:
    """Return the id unchanged, or raise InvalidSessionIdError."""
    if not _SESSION_ID_PATTERN.match(session_id) or ".." in session_id:
        raise InvalidSessionIdError(f"invalid session id: {session_id!r}")
    return session_id


class SessionRegistry:
    """Owns every live Session, at most one per id.

    Collaborators shared by all sessions (connector, webhook dispatcher,
    message writer, media store) are built once and injected into each
    Session. All methods must be called from the event loop.
    """

    def __init__(
        self,
        settings: Settings,
        connector: Connector,
        *,
        pacer: StartupPacer | None = None,
        webhooks: WebhookDispatcher | None = None,
        writer: MessageStoreWriter | None = None,
        media: MediaStore | None = None,
    ) -> None:
        self._settings = settings
        self._connector = connector
        self._pacer = pacer or StartupPacer(settings.startup_stagger_ms)
        self._webhooks = webhooks or WebhookDispatcher(settings.webhook_url, settings.webhook_timeout)
        self._writer = writer or MessageStoreWriter(settings.database_url)
        self._media = media or MediaStore(settings.media_dir, settings.public_base_url)
        self._sessions: dict[str, Session] = {}
        self._init_handles: dict[str, asyncio.Future[None]] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    def get_or_create(self, session_id: str) -> Session:
        """Return the live Session for an id, creating and scheduling it if needed.

        The lookup and the insert run with no suspension point in between, so
        callers racing on the event loop all get the same Session and exactly
        one initialization is scheduled.

        Raises:
            InvalidSessionIdError: If the id is not a safe directory name.
        """
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing

        validate_session_id(session_id)
        session = Session(
            session_id,
            settings=self._settings,
            connector=self._connector,
            webhooks=self._webhooks,
            writer=self._writer,
            media=self._media,
        )
        self._sessions[session_id] = session
        logger.info("creating session", extra={"extra_fields": {"session": session_id}})

        self._init_handles[session_id] = self._pacer.schedule(lambda: self._initialize(session))
        return session

    async def _initialize(self, session: Session) -> None:
        try:
            await session.init()
        except (SessionLoggedOutError, SessionClosedError):
            logger.info(
                "session initialization abandoned",
                extra={"extra_fields": {"session": session.session_id}},
            )
        except Exception:
            # Kept on the session as last_error; visible through status queries
            logger.exception(
                "failed to initialize session",
                extra={"extra_fields": {"session": session.session_id}},
            )

    def initialization(self, session_id: str) -> asyncio.Future[None] | None:
        """Handle that completes once the paced initialization of a session settled."""
        return self._init_handles.get(session_id)

    def get_if_exists(self, session_id: str) -> Session | None:
        """Non-creating lookup for read-only callers."""
        return self._sessions.get(session_id)

    def list_ids(self) -> list[str]:
        return list(self._sessions)

    async def remove(self, session_id: str) -> None:
        """Log out and forget a session. Removing an unknown id is a no-op."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        try:
            await session.logout()
        finally:
            self._sessions.pop(session_id, None)
            self._init_handles.pop(session_id, None)
        logger.info("session removed", extra={"extra_fields": {"session": session_id}})

    async def restore_all(self) -> list[str]:
        """Re-create a session for every persisted credential directory.

        Bring-up is staggered by the pacer. A failure on one id is logged and
        does not stop the others.

        Returns:
            Ids that were registered.
        """
        base = self._settings.sessions_base_dir
        if not await asyncio.to_thread(base.is_dir):
            logger.info("no sessions directory to restore from")
            return []

        entries = await asyncio.to_thread(lambda: sorted(base.iterdir()))
        candidates = [p.name for p in entries if p.is_dir() and not p.name.startswith(".")]
        logger.info("restoring sessions", extra={"extra_fields": {"count": len(candidates)}})

        restored: list[str] = []
        for session_id in candidates:
            try:
                self.get_or_create(session_id)
            except Exception:
                logger.exception(
                    "failed to restore session",
                    extra={"extra_fields": {"session": session_id}},
                )
                continue
            restored.append(session_id)
        return restored

    async def shutdown(self) -> None:
        """Stop pacing, close every connection (without logout) and flush webhooks."""
        await self._pacer.close()
        for session in list(self._sessions.values()):
            try:
                await session.close()
            except Exception:
                logger.exception(
                    "failed to close session",
                    extra={"extra_fields": {"session": session.session_id}},
                )
        await self._webhooks.aclose()
