"""Best-effort forwarding of session events to an external webhook.

Security: NEVER log payload data (JIDs, text). Only log event names and
error types.
"""

from __future__ import annotations

import asyncio
from typing import Any, Literal

import requests

from wamux.domain.content import content_type_name, extract_text, parse_content
from wamux.domain.identity import is_group_jid
from wamux.infra.time import to_millis
from wamux.observability.logging import get_logger
from wamux.observability.redaction import safe_log_context

logger = get_logger(__name__)

WebhookEvent = Literal["qr", "connection", "message"]

# Timeout for HTTP requests (seconds)
DEFAULT_TIMEOUT = 5.0


class WebhookDispatcher:
    """Fire-and-forget POST of ``{sessionId, event, data}`` envelopes.

    No retries, no queue, no ordering across events. When no URL is
    configured every dispatch is a no-op.
    """

    def __init__(self, url: str | None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._url = url
        self._timeout = timeout
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def dispatch(
        self,
        session_id: str,
        event: WebhookEvent,
        data: dict[str, Any],
    ) -> asyncio.Task[bool] | None:
        """Schedule delivery in the background and return immediately."""
        if not self._url:
            return None

        envelope = {"sessionId": session_id, "event": event, "data": data}
        task = asyncio.get_running_loop().create_task(self.deliver(envelope))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, envelope: dict[str, Any]) -> bool:
        """POST one envelope. Returns True on 2xx; failures are logged, never raised."""
        if not self._url:
            return False

        log_ctx = safe_log_context(event=envelope.get("event"))
        try:
            response = await asyncio.to_thread(
                requests.post,
                self._url,
                json=envelope,
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(
                "webhook delivery failed",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            return False
        except Exception as e:
            # e.g. a payload requests cannot encode
            logger.warning(
                "webhook delivery failed unexpectedly",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            return False

        logger.info("webhook dispatched", extra={"extra_fields": log_ctx})
        return True

    async def aclose(self) -> None:
        """Wait for in-flight deliveries (each bounded by the timeout)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def format_message(
    msg: dict[str, Any],
    chat_key: str | None = None,
    media_url: str | None = None,
) -> dict[str, Any]:
    """Build the ``message`` event data for an inbound message."""
    key = msg.get("key") or {}
    remote_jid = key.get("remoteJid")
    content = parse_content(msg.get("message"))

    return {
        "id": key.get("id"),
        "remoteJid": remote_jid,
        "chatJid": chat_key or remote_jid,
        "pushName": msg.get("pushName"),
        "fromMe": bool(key.get("fromMe")),
        "timestamp": to_millis(msg.get("messageTimestamp")),
        "content": extract_text(content) or "",
        "type": content.kind if content.kind != "unknown" else content_type_name(msg.get("message")),
        "isGroup": is_group_jid(remote_jid),
        "mediaUrl": media_url,
    }
