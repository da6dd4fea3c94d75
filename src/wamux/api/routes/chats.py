"""Read endpoints over a session's in-memory chat cache.

These never create sessions: an unknown session id is a 404.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from wamux.api.deps import get_registry, require_session
from wamux.sessions.registry import SessionRegistry

router = APIRouter(prefix="/chats", tags=["chats"])

MAX_LIMIT = 500


@router.get("")
async def list_chats(
    session_id: str = Query(..., alias="sessionId", min_length=1),
    limit: int = Query(100, ge=1),
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Chats ordered by last activity, newest first."""
    session = require_session(registry, session_id)
    chats = [c.to_dict() for c in session.cache.list_chats(min(limit, MAX_LIMIT))]
    return {"sessionId": session_id, "count": len(chats), "chats": chats}


@router.get("/{jid}/messages")
async def list_messages(
    jid: str,
    session_id: str = Query(..., alias="sessionId", min_length=1),
    limit: int = Query(50, ge=1),
    before_timestamp: int | None = Query(None, alias="beforeTimestamp"),
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Most recent messages of a chat in chronological order."""
    session = require_session(registry, session_id)
    messages = [
        m.to_dict()
        for m in session.cache.list_messages(jid, min(limit, MAX_LIMIT), before_timestamp)
    ]
    return {"sessionId": session_id, "jid": jid, "count": len(messages), "messages": messages}
