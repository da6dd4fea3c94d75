"""Outbound messaging endpoint."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, model_validator

from wamux.api.deps import get_registry
from wamux.domain.content import (
    AudioContent,
    DocumentContent,
    ImageContent,
    MessageContent,
    ReactionContent,
    TextContent,
    VideoContent,
)
from wamux.observability.logging import get_logger
from wamux.sessions.instance import SessionNotConnectedError
from wamux.sessions.registry import SessionRegistry

router = APIRouter(prefix="/messages", tags=["messages"])

logger = get_logger(__name__)


class MediaPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["image", "video", "audio", "document"]
    url: str
    caption: str | None = None
    mimetype: str | None = None
    file_name: str | None = Field(default=None, alias="fileName")
    voice: bool = False

    def to_content(self) -> MessageContent:
        if self.kind == "image":
            return ImageContent(caption=self.caption, mimetype=self.mimetype, url=self.url)
        if self.kind == "video":
            return VideoContent(caption=self.caption, mimetype=self.mimetype, url=self.url)
        if self.kind == "audio":
            return AudioContent(voice=self.voice, mimetype=self.mimetype, url=self.url)
        return DocumentContent(
            file_name=self.file_name,
            mimetype=self.mimetype,
            caption=self.caption,
            url=self.url,
        )


class ReactionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    emoji: str


class SendMessageRequest(BaseModel):
    """Exactly one of text, media or reaction."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    to: str = Field(min_length=1)
    text: str | None = None
    media: MediaPayload | None = None
    reaction: ReactionPayload | None = None
    reply_to: str | None = Field(default=None, alias="replyTo")

    @model_validator(mode="after")
    def _one_content(self) -> SendMessageRequest:
        given = [x for x in (self.text, self.media, self.reaction) if x]
        if len(given) != 1:
            raise ValueError("provide exactly one of text, media or reaction")
        return self

    def to_content(self) -> MessageContent:
        if self.text:
            return TextContent(text=self.text)
        if self.reaction is not None:
            return ReactionContent(target_id=self.reaction.message_id, emoji=self.reaction.emoji)
        if self.media is not None:
            return self.media.to_content()
        raise ValueError("provide exactly one of text, media or reaction")


@router.post("/send")
async def send_message(
    req: SendMessageRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Send a message through a session.

    Returns:
        {"status": "sent", "result": <sent message payload>}

    Errors:
        409 if the session is not connected, 400 if the destination is invalid.
    """
    session = registry.get_or_create(req.session_id)
    try:
        result = await session.send(req.to, req.to_content(), reply_to=req.reply_to)
    except SessionNotConnectedError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception("send failed")
        raise HTTPException(status_code=500, detail=str(e)) from e

    return {"status": "sent", "result": result}
