"""Public service-info routes."""

from fastapi import APIRouter

router = APIRouter()

ENDPOINTS = [
    "POST /sessions/:id",
    "GET /sessions",
    "GET /sessions/:id/qr",
    "GET /sessions/:id/numbers/:phone",
    "DELETE /sessions/:id",
    "POST /messages/send",
    "GET /chats?sessionId=...&limit=100",
    "GET /chats/:jid/messages?sessionId=...&limit=50&beforeTimestamp=...",
]


@router.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/api")
def api_info() -> dict:
    """Service info and endpoint list."""
    return {"status": "ok", "service": "wamux", "endpoints": ENDPOINTS}
