"""Session lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from wamux.api.deps import get_registry, require_session
from wamux.observability.logging import get_logger
from wamux.sessions.instance import SessionNotConnectedError
from wamux.sessions.registry import SessionRegistry

router = APIRouter(prefix="/sessions", tags=["sessions"])

logger = get_logger(__name__)


@router.post("/{session_id}")
async def create_or_status(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Create the session if needed (initialization is paced) and report its status."""
    session = registry.get_or_create(session_id)
    return session.status()


@router.get("")
async def list_sessions(registry: SessionRegistry = Depends(get_registry)) -> dict:
    """All registered session ids, whatever their state."""
    return {"sessions": registry.list_ids()}


@router.get("/{session_id}/qr")
async def get_pairing_challenge(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Current pairing challenge of an existing session."""
    session = require_session(registry, session_id)
    if not session.pairing_challenge:
        raise HTTPException(status_code=404, detail="QR not ready or already connected")
    return {"sessionId": session_id, "qr": session.pairing_challenge}


@router.get("/{session_id}/numbers/{phone}")
async def check_number(
    session_id: str,
    phone: str,
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Whether a phone number has a WhatsApp account."""
    session = require_session(registry, session_id)
    try:
        result = await session.check_number(phone)
    except SessionNotConnectedError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"sessionId": session_id, **result}


@router.delete("/{session_id}")
async def remove_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Log out and forget a session. Unknown ids succeed as a no-op."""
    try:
        await registry.remove(session_id)
    except Exception as e:
        logger.exception("session removal failed")
        raise HTTPException(status_code=500, detail=str(e)) from e
    return {"status": "deleted"}
