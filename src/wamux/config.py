"""Service configuration loaded from the environment.

All settings are read once into an immutable ``Settings`` object, which the
app factory hands to the session registry and its collaborators.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_SESSIONS_BASE_DIR = "/app/sessions"
DEFAULT_MEDIA_DIR = "media"

# Protocol version used when the latest version cannot be fetched in time
FALLBACK_PROTOCOL_VERSION: tuple[int, int, int] = (2, 3100, 1015901307)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e


def _env_str(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    """Runtime settings.

    Attributes:
        sessions_base_dir: One credential directory per session lives here.
        media_dir: Root directory for captured media files.
        public_base_url: Prefix for media URLs; relative URLs when None.
        webhook_url: Event sink; dispatch is disabled when None.
        webhook_timeout: Seconds before a webhook POST is abandoned.
        database_url: Postgres DSN; message persistence is disabled when None.
        startup_stagger_ms: Delay between paced connection bring-ups.
        dedup_ttl_seconds: Replay suppression window.
        max_cached_messages_per_chat: Per-chat message cache bound.
        version_fetch_timeout: Seconds to wait for the latest protocol version.
        connector: "module:attribute" path of the connection collaborator.
        port: HTTP listen port.
    """

    sessions_base_dir: Path = Path(DEFAULT_SESSIONS_BASE_DIR)
    media_dir: Path = Path(DEFAULT_MEDIA_DIR)
    public_base_url: str | None = None
    webhook_url: str | None = None
    webhook_timeout: float = 5.0
    database_url: str | None = None
    startup_stagger_ms: int = 3000
    dedup_ttl_seconds: float = 60.0
    max_cached_messages_per_chat: int = 500
    version_fetch_timeout: float = 5.0
    connector: str | None = None
    port: int = 3000

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from environment variables.

        Raises:
            RuntimeError: If a numeric variable cannot be parsed.
        """
        sessions_dir = (
            _env_str("SESSIONS_BASE_DIR")
            or _env_str("SESSIONS_DIR")
            or DEFAULT_SESSIONS_BASE_DIR
        )
        public_base_url = _env_str("PUBLIC_BASE_URL")

        return cls(
            sessions_base_dir=Path(sessions_dir),
            media_dir=Path(_env_str("MEDIA_DIR") or DEFAULT_MEDIA_DIR),
            public_base_url=public_base_url.rstrip("/") if public_base_url else None,
            webhook_url=_env_str("WEBHOOK_URL"),
            webhook_timeout=_env_float("WEBHOOK_TIMEOUT", 5.0),
            database_url=_env_str("DATABASE_URL"),
            startup_stagger_ms=_env_int("STARTUP_STAGGER_MS", 3000),
            dedup_ttl_seconds=_env_float("DEDUP_TTL_SECONDS", 60.0),
            max_cached_messages_per_chat=_env_int("MAX_CACHED_MESSAGES_PER_CHAT", 500),
            version_fetch_timeout=_env_float("VERSION_FETCH_TIMEOUT", 5.0),
            connector=_env_str("WA_CONNECTOR"),
            port=_env_int("PORT", 3000),
        )

    def session_path(self, session_id: str) -> Path:
        """Credential directory for one session."""
        return self.sessions_base_dir / session_id
