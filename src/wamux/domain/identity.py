"""JID helpers and conversation-key resolution.

WhatsApp may address the same counterpart either by a phone-number JID
(``5511999999999@s.whatsapp.net``) or by an anonymized LID (``1234@lid``),
and either form can show up as the primary address of a given event with the
other one carried alongside. Everything that keys chats or messages goes
through ``resolve_conversation_key`` so one counterpart maps to one key.
"""

from __future__ import annotations

import re
from typing import Any

PN_SERVER = "s.whatsapp.net"
LID_SERVER = "lid"
GROUP_SERVER = "g.us"
BROADCAST_SERVER = "broadcast"
NEWSLETTER_SERVER = "newsletter"
STATUS_BROADCAST_JID = "status@broadcast"

_NON_DIGITS = re.compile(r"\D")


def _server(jid: str) -> str:
    _, sep, server = jid.partition("@")
    return server if sep else ""


def is_pn_jid(jid: str | None) -> bool:
    return bool(jid) and _server(jid) == PN_SERVER


def is_lid_jid(jid: str | None) -> bool:
    return bool(jid) and _server(jid) == LID_SERVER


def is_group_jid(jid: str | None) -> bool:
    return bool(jid) and _server(jid) == GROUP_SERVER


def is_broadcast_jid(jid: str | None) -> bool:
    """True for status updates, broadcast lists and newsletters."""
    if not jid:
        return False
    return jid == STATUS_BROADCAST_JID or _server(jid) in (BROADCAST_SERVER, NEWSLETTER_SERVER)


def resolve_conversation_key(primary: str, alternate: str | None = None) -> str:
    """Return the canonical conversation key for a counterpart.

    If the primary address is a LID and a phone-number alternate is known,
    the phone-number form wins. Otherwise the primary is returned unchanged.
    """
    if is_lid_jid(primary) and is_pn_jid(alternate):
        return alternate  # type: ignore[return-value]
    return primary


def message_alternate(key: dict[str, Any]) -> str | None:
    """Alternate address carried on a message key, if any."""
    return key.get("remoteJidAlt") or key.get("senderPn") or None


def chat_alternate(chat: dict[str, Any]) -> str | None:
    """Alternate address carried on a chat record, if any."""
    return chat.get("pnJid") or None


def phone_digits(jid: str) -> str:
    """Digits of the user part of a JID, without the :device suffix."""
    user = jid.split("@", 1)[0]
    user = user.split(":", 1)[0]
    return _NON_DIGITS.sub("", user)


def to_user_jid(to: str) -> str:
    """Normalize an outbound destination to a JID.

    Full JIDs are kept as-is; bare phone numbers (with or without "+",
    spaces or dashes) become phone-number JIDs.

    Raises:
        ValueError: If a bare destination contains no digits.
    """
    to = to.strip()
    if "@" in to:
        return to
    digits = _NON_DIGITS.sub("", to)
    if not digits:
        raise ValueError("destination has no digits")
    return f"{digits}@{PN_SERVER}"
