"""Message content models.

Inbound payloads arrive as nested dicts keyed by content type
(``conversation``, ``imageMessage``, ...), possibly wrapped in view-once,
ephemeral or caption layers. ``parse_content`` turns them into one of the
variants below; outbound variants render back with ``to_wire``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Union

ContentKind = Literal["text", "image", "video", "audio", "document", "reaction", "unknown"]

# Layers that carry the real content one level down under "message"
_WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
)

# Protocol noise that may sit next to the real content key
_METADATA_KEYS = ("messageContextInfo", "senderKeyDistributionMessage")


@dataclass(frozen=True)
class TextContent:
    text: str
    kind: ContentKind = "text"

    def to_wire(self) -> dict[str, Any]:
        return {"text": self.text}


@dataclass(frozen=True)
class ImageContent:
    caption: str | None = None
    mimetype: str | None = None
    url: str | None = None
    kind: ContentKind = "image"

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"image": {"url": self.url}}
        if self.caption:
            wire["caption"] = self.caption
        if self.mimetype:
            wire["mimetype"] = self.mimetype
        return wire


@dataclass(frozen=True)
class VideoContent:
    caption: str | None = None
    mimetype: str | None = None
    url: str | None = None
    kind: ContentKind = "video"

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"video": {"url": self.url}}
        if self.caption:
            wire["caption"] = self.caption
        if self.mimetype:
            wire["mimetype"] = self.mimetype
        return wire


@dataclass(frozen=True)
class AudioContent:
    voice: bool = False
    seconds: int | None = None
    mimetype: str | None = None
    url: str | None = None
    kind: ContentKind = "audio"

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"audio": {"url": self.url}, "ptt": self.voice}
        if self.mimetype:
            wire["mimetype"] = self.mimetype
        return wire


@dataclass(frozen=True)
class DocumentContent:
    file_name: str | None = None
    mimetype: str | None = None
    caption: str | None = None
    url: str | None = None
    kind: ContentKind = "document"

    @property
    def is_pdf(self) -> bool:
        if self.mimetype and self.mimetype.split(";")[0].strip().lower() == "application/pdf":
            return True
        return bool(self.file_name) and self.file_name.lower().endswith(".pdf")

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "document": {"url": self.url},
            "mimetype": self.mimetype or "application/octet-stream",
        }
        if self.file_name:
            wire["fileName"] = self.file_name
        if self.caption:
            wire["caption"] = self.caption
        return wire


@dataclass(frozen=True)
class ReactionContent:
    target_id: str
    emoji: str
    kind: ContentKind = "reaction"

    def to_wire(self, remote_jid: str | None = None, from_me: bool = False) -> dict[str, Any]:
        # Empty emoji removes a previous reaction
        return {
            "react": {
                "text": self.emoji,
                "key": {"id": self.target_id, "remoteJid": remote_jid, "fromMe": from_me},
            }
        }


@dataclass(frozen=True)
class UnknownContent:
    type_name: str = "unknown"
    kind: ContentKind = "unknown"


MessageContent = Union[
    TextContent,
    ImageContent,
    VideoContent,
    AudioContent,
    DocumentContent,
    ReactionContent,
    UnknownContent,
]


def unwrap_message(message: dict[str, Any] | None) -> dict[str, Any] | None:
    """Strip wrapper layers and return the innermost content dict."""
    current = message
    while isinstance(current, dict):
        for wrapper in _WRAPPER_KEYS:
            inner = current.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                current = inner["message"]
                break
        else:
            return current
    return None


def content_type_name(message: dict[str, Any] | None) -> str:
    """First real content key of a (wrapped or unwrapped) message dict."""
    inner = unwrap_message(message)
    if not inner:
        return "unknown"
    for key, value in inner.items():
        if key in _METADATA_KEYS or value is None:
            continue
        return key
    return "unknown"


def _seconds(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_content(message: dict[str, Any] | None) -> MessageContent:
    """Parse a raw message dict into a content variant."""
    inner = unwrap_message(message)
    if not inner:
        return UnknownContent()

    if inner.get("conversation"):
        return TextContent(text=inner["conversation"])

    extended = inner.get("extendedTextMessage")
    if isinstance(extended, dict):
        return TextContent(text=extended.get("text") or "")

    image = inner.get("imageMessage")
    if isinstance(image, dict):
        return ImageContent(
            caption=image.get("caption"),
            mimetype=image.get("mimetype"),
            url=image.get("url"),
        )

    video = inner.get("videoMessage")
    if isinstance(video, dict):
        return VideoContent(
            caption=video.get("caption"),
            mimetype=video.get("mimetype"),
            url=video.get("url"),
        )

    audio = inner.get("audioMessage")
    if isinstance(audio, dict):
        return AudioContent(
            voice=bool(audio.get("ptt")),
            seconds=_seconds(audio.get("seconds")),
            mimetype=audio.get("mimetype"),
            url=audio.get("url"),
        )

    document = inner.get("documentMessage")
    if isinstance(document, dict):
        return DocumentContent(
            file_name=document.get("fileName"),
            mimetype=document.get("mimetype"),
            caption=document.get("caption"),
            url=document.get("url"),
        )

    reaction = inner.get("reactionMessage")
    if isinstance(reaction, dict):
        target = reaction.get("key") or {}
        return ReactionContent(target_id=target.get("id") or "", emoji=reaction.get("text") or "")

    return UnknownContent(type_name=content_type_name(inner))


def extract_text(content: MessageContent) -> str | None:
    """Human-readable text of a content variant (body or caption)."""
    if isinstance(content, TextContent):
        return content.text or None
    if isinstance(content, (ImageContent, VideoContent, DocumentContent)):
        return content.caption or None
    if isinstance(content, ReactionContent):
        return content.emoji or None
    return None
