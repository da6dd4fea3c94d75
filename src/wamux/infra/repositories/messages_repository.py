"""Messages repository - tenant/lead resolution and idempotent message rows.

Uses raw SQL with psycopg2 (no ORM). The schema itself (et_channel_sessions,
et_leads, et_messages) is owned downstream; this module only reads the first
two and upserts into the third.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

from psycopg2.extensions import cursor as PgCursor

from wamux.infra.db import fetchone

CHANNEL = "whatsapp"

Direction = Literal["inbound", "outbound"]


@dataclass(frozen=True)
class ChannelSession:
    """Storage-side identity of a session."""

    channel_session_id: int
    tenant_id: int


def find_channel_session(cur: PgCursor, session_identifier: str) -> ChannelSession | None:
    """Resolve tenant and channel session for a session identifier.

    Args:
        cur: Database cursor.
        session_identifier: Session id as used by this service.

    Returns:
        ChannelSession if registered, None otherwise.
    """
    row = fetchone(
        cur,
        """
        SELECT id, tenant_id
        FROM et_channel_sessions
        WHERE channel_type = %s
          AND session_identifier = %s
        LIMIT 1
        """,
        (CHANNEL, session_identifier),
    )
    if row is None:
        return None
    return ChannelSession(channel_session_id=row[0], tenant_id=row[1])


def find_lead_by_phone(cur: PgCursor, tenant_id: int, digits: str) -> int | None:
    """Find the tenant's lead whose external_id has the given phone digits.

    Args:
        cur: Database cursor.
        tenant_id: Tenant to search within.
        digits: Normalized phone digits (no "+", no JID suffix).

    Returns:
        Lead ID (lowest match) or None.
    """
    if not digits:
        return None
    row = fetchone(
        cur,
        """
        SELECT id
        FROM et_leads
        WHERE tenant_id = %s
          AND regexp_replace(external_id, '\\D', '', 'g') = %s
        ORDER BY id ASC
        LIMIT 1
        """,
        (tenant_id, digits),
    )
    return row[0] if row else None


def upsert_message(
    cur: PgCursor,
    *,
    tenant_id: int,
    lead_id: int,
    channel_session_id: int,
    external_message_id: str,
    direction: Direction,
    message_type: str,
    text_content: str | None,
    media_url: str | None,
    raw_payload: dict[str, Any],
    delivery_status: str,
) -> None:
    """Insert a message row, idempotent on (tenant_id, channel, external_message_id).

    A repeated delivery only refreshes raw_payload and updated_at; it never
    creates a second row. thread_id is left for downstream assignment.

    Args:
        cur: Database cursor (within transaction).
        tenant_id: Owning tenant.
        lead_id: Counterpart lead.
        channel_session_id: Storage-side session row.
        external_message_id: WhatsApp message id.
        direction: "inbound" or "outbound".
        message_type: Content kind (text, image, ...).
        text_content: Body or caption. PII - NEVER logged.
        media_url: Captured media URL, if any.
        raw_payload: Original message payload (stored as JSONB).
        delivery_status: "received" for inbound, "sent" for outbound.
    """
    cur.execute(
        """
        INSERT INTO et_messages (
            tenant_id, lead_id, thread_id, channel_session_id,
            channel, external_message_id, direction, message_type,
            text_content, media_url, raw_payload, delivery_status,
            created_at, updated_at
        ) VALUES (
            %s, %s, NULL, %s,
            %s, %s, %s, %s,
            %s, %s, %s::jsonb, %s,
            NOW(), NOW()
        )
        ON CONFLICT (tenant_id, channel, external_message_id)
        DO UPDATE SET
            raw_payload = EXCLUDED.raw_payload,
            updated_at = NOW()
        """,
        (
            tenant_id,
            lead_id,
            channel_session_id,
            CHANNEL,
            external_message_id,
            direction,
            message_type,
            text_content,
            media_url,
            json.dumps(raw_payload, default=str),
            delivery_status,
        ),
    )
