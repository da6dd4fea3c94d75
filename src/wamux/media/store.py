"""Capture of decrypted inbound media to addressable files.

Best-effort: anything unsupported or failing yields None and the message
pipeline carries on without a media URL.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any

from wamux.domain.content import AudioContent, DocumentContent, ImageContent, parse_content
from wamux.observability.logging import get_logger
from wamux.sessions.connector import Connection

logger = get_logger(__name__)

MEDIA_URL_PREFIX = "/media"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

_IMAGE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


def safe_name(value: str, max_length: int = 120) -> str:
    """Filesystem-safe rendition of an identifier or filename."""
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned[:max_length] or "file"


def _media_target(message_id: str, raw_message: dict[str, Any] | None) -> tuple[str, str] | None:
    """(subdirectory, filename) for a supported attachment, or None."""
    content = parse_content(raw_message)
    base = safe_name(message_id)

    if isinstance(content, AudioContent) and content.voice:
        return "audio", f"{base}.ogg"

    if isinstance(content, ImageContent):
        mimetype = (content.mimetype or "").split(";")[0].strip().lower()
        return "images", base + _IMAGE_EXTENSIONS.get(mimetype, ".jpg")

    if isinstance(content, DocumentContent) and content.is_pdf:
        if content.file_name:
            original = safe_name(content.file_name)
            if not original.lower().endswith(".pdf"):
                original += ".pdf"
            return "documents", f"{base}_{original}"
        return "documents", f"{base}.pdf"

    return None


class MediaStore:
    """Writes voice notes, images and PDFs under ``media_dir`` by kind."""

    def __init__(self, media_dir: Path, public_base_url: str | None = None) -> None:
        self._media_dir = Path(media_dir)
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None

    @property
    def media_dir(self) -> Path:
        return self._media_dir

    def url_for(self, subdir: str, filename: str) -> str:
        path = f"{MEDIA_URL_PREFIX}/{subdir}/{filename}"
        if self._public_base_url:
            return f"{self._public_base_url}{path}"
        return path

    async def capture(self, msg: dict[str, Any], connection: Connection | None) -> str | None:
        """Download and store a message attachment.

        Returns:
            Public URL of the stored file, or None when the message has no
            supported attachment or the capture failed.
        """
        message_id = (msg.get("key") or {}).get("id")
        if not message_id or connection is None:
            return None

        target = _media_target(message_id, msg.get("message"))
        if target is None:
            return None
        subdir, filename = target

        try:
            data = await connection.download_media(msg)
            path = self._media_dir / subdir / filename
            await asyncio.to_thread(self._write, path, data)
        except Exception as e:
            logger.warning(
                "media capture failed",
                extra={"extra_fields": {"kind": subdir, "error_type": type(e).__name__}},
            )
            return None

        logger.info(
            "media stored",
            extra={"extra_fields": {"kind": subdir, "size": len(data)}},
        )
        return self.url_for(subdir, filename)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
