"""Correlation and session context for log tracing."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

# Context variables - accessible across async calls and tasks spawned from them
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
session_id_var: ContextVar[str] = ContextVar("session_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


def get_session_id() -> str:
    """Get the session bound to the current context, if any."""
    return session_id_var.get()


@contextmanager
def bind_session_id(session_id: str) -> Iterator[None]:
    """Bind a session ID to every log record emitted inside the block."""
    token = session_id_var.set(session_id)
    try:
        yield
    finally:
        session_id_var.reset(token)
