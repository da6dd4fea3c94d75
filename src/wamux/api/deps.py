"""Shared route dependencies."""

from fastapi import HTTPException, Request

from wamux.sessions.instance import Session
from wamux.sessions.registry import SessionRegistry


def get_registry(request: Request) -> SessionRegistry:
    """Registry owned by the running app."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return registry


def require_session(registry: SessionRegistry, session_id: str) -> Session:
    """Existing session or 404. Never creates one."""
    session = registry.get_if_exists(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session
