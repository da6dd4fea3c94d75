"""Per-session in-memory chat and message views.

Feeds the read endpoints (chat list, chat history). Everything is keyed by
conversation key (see ``wamux.domain.identity``); LID aliases learned from
events let readers address a chat by either form.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from wamux.domain.content import extract_text, parse_content
from wamux.domain.identity import (
    chat_alternate,
    is_group_jid,
    is_lid_jid,
    is_pn_jid,
    message_alternate,
    resolve_conversation_key,
)
from wamux.infra.time import to_millis

DEFAULT_MAX_MESSAGES_PER_CHAT = 500


@dataclass(frozen=True)
class ChatSummary:
    key: str
    name: str | None = None
    unread_count: int = 0
    archived: bool = False
    mute_until: int | None = None
    is_group: bool = False
    last_activity: int = 0  # epoch ms, never decreases

    def to_dict(self) -> dict[str, Any]:
        return {
            "jid": self.key,
            "name": self.name,
            "unreadCount": self.unread_count,
            "archived": self.archived,
            "muteEndTime": self.mute_until,
            "isGroup": self.is_group,
            "lastMessageTimestamp": self.last_activity,
        }


@dataclass(frozen=True)
class CachedMessage:
    id: str
    from_me: bool
    timestamp: int  # epoch ms
    kind: str
    text: str | None = None
    media_url: str | None = None
    push_name: str | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any], media_url: str | None = None) -> CachedMessage:
        key = raw.get("key") or {}
        content = parse_content(raw.get("message"))
        return cls(
            id=key.get("id") or "",
            from_me=bool(key.get("fromMe")),
            timestamp=to_millis(raw.get("messageTimestamp")),
            kind=content.kind,
            text=extract_text(content),
            media_url=media_url,
            push_name=raw.get("pushName"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fromMe": self.from_me,
            "timestamp": self.timestamp,
            "type": self.kind,
            "text": self.text,
            "mediaUrl": self.media_url,
            "pushName": self.push_name,
        }


class ConversationCache:
    """Bounded chat/message cache for one session.

    Not thread-safe: it is only touched from the session's event handlers
    and from request handlers on the same event loop.
    """

    def __init__(self, max_messages_per_chat: int = DEFAULT_MAX_MESSAGES_PER_CHAT) -> None:
        if max_messages_per_chat < 1:
            raise ValueError("max_messages_per_chat must be >= 1")
        self._max_messages = max_messages_per_chat
        self._chats: dict[str, ChatSummary] = {}
        self._messages: dict[str, dict[str, CachedMessage]] = {}
        self._aliases: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def resolve(self, jid: str, alternate: str | None = None) -> str:
        """Canonical key for a JID, learning the LID alias when both forms are known.

        The pair is learned whichever side is primary, so a later LID-only
        message lands in the chat already keyed by the phone number.
        """
        if alternate is not None:
            if is_lid_jid(jid) and is_pn_jid(alternate):
                self._learn(jid, alternate)
            elif is_pn_jid(jid) and is_lid_jid(alternate):
                self._learn(alternate, jid)
        key = resolve_conversation_key(jid, alternate)
        return self._aliases.get(key, key)

    def _learn(self, lid: str, pn: str) -> None:
        if self._aliases.get(lid) == pn:
            return
        self._aliases[lid] = pn
        self._adopt(lid, pn)

    def _adopt(self, lid: str, pn: str) -> None:
        # Fold anything cached under the LID before the alias was known
        orphan_messages = self._messages.pop(lid, None)
        orphan_chat = self._chats.pop(lid, None)
        if orphan_chat is not None:
            current = self._chats.get(pn)
            if current is None:
                self._chats[pn] = replace(orphan_chat, key=pn)
            else:
                self._chats[pn] = replace(
                    current,
                    name=current.name or orphan_chat.name,
                    last_activity=max(current.last_activity, orphan_chat.last_activity),
                )
        for message in (orphan_messages or {}).values():
            self.cache_message(pn, message)

    def key_for_message(self, raw: dict[str, Any]) -> str | None:
        key = raw.get("key") or {}
        remote_jid = key.get("remoteJid")
        if not remote_jid:
            return None
        return self.resolve(remote_jid, message_alternate(key))

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def upsert_chat(self, raw: dict[str, Any]) -> ChatSummary | None:
        """Insert or merge a full chat record."""
        return self._merge_chat(raw)

    def update_chat(self, raw: dict[str, Any]) -> ChatSummary | None:
        """Merge a partial chat record; absent fields keep their cached values."""
        return self._merge_chat(raw)

    def delete_chat(self, jid: str) -> bool:
        """Drop a chat and its messages. Returns True if anything was cached."""
        key = self.resolve(jid)
        existed = self._chats.pop(key, None) is not None
        existed = self._messages.pop(key, None) is not None or existed
        for alias in [a for a, target in self._aliases.items() if target == key or a == jid]:
            del self._aliases[alias]
        return existed

    def _merge_chat(self, raw: dict[str, Any]) -> ChatSummary | None:
        jid = raw.get("id")
        if not jid:
            return None
        key = self.resolve(jid, chat_alternate(raw))
        current = self._chats.get(key) or ChatSummary(key=key, is_group=is_group_jid(key))

        changes: dict[str, Any] = {}
        if raw.get("name"):
            changes["name"] = raw["name"]
        if raw.get("unreadCount") is not None:
            changes["unread_count"] = int(raw["unreadCount"])
        if raw.get("archived") is not None:
            changes["archived"] = bool(raw["archived"])
        if raw.get("muteEndTime") is not None:
            changes["mute_until"] = to_millis(raw["muteEndTime"]) or None

        activity = max(
            to_millis(raw.get("conversationTimestamp")),
            to_millis(raw.get("lastMessageRecvTimestamp")),
        )
        if activity > current.last_activity:
            changes["last_activity"] = activity

        summary = replace(current, **changes) if changes else current
        self._chats[key] = summary
        return summary

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def cache_message(self, key: str, message: CachedMessage) -> None:
        """Insert a message, evicting the oldest once the per-chat cap is exceeded."""
        bucket = self._messages.setdefault(key, {})
        bucket[message.id] = message
        while len(bucket) > self._max_messages:
            oldest = min(bucket.values(), key=lambda m: m.timestamp)
            del bucket[oldest.id]

        current = self._chats.get(key) or ChatSummary(key=key, is_group=is_group_jid(key))
        changes: dict[str, Any] = {}
        if message.timestamp > current.last_activity:
            changes["last_activity"] = message.timestamp
        if not current.name and not message.from_me and message.push_name and not current.is_group:
            changes["name"] = message.push_name
        self._chats[key] = replace(current, **changes) if changes else current

    def cache_raw_message(self, raw: dict[str, Any], media_url: str | None = None) -> str | None:
        """Cache a raw message payload. Returns its conversation key, or None if unkeyable."""
        key = self.key_for_message(raw)
        if key is None or not (raw.get("key") or {}).get("id"):
            return None
        self.cache_message(key, CachedMessage.from_raw(raw, media_url))
        return key

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_chats(self, limit: int) -> list[ChatSummary]:
        """Chats ordered by last activity, newest first."""
        if limit <= 0:
            return []
        chats = sorted(self._chats.values(), key=lambda c: c.last_activity, reverse=True)
        return chats[:limit]

    def list_messages(
        self,
        jid: str,
        limit: int,
        before_timestamp: int | None = None,
    ) -> list[CachedMessage]:
        """Most recent ``limit`` messages of a chat, oldest first.

        When ``before_timestamp`` is given only messages strictly older than
        it are considered.
        """
        if limit <= 0:
            return []
        bucket = self._messages.get(self.resolve(jid))
        if not bucket:
            return []
        messages = sorted(bucket.values(), key=lambda m: m.timestamp)
        if before_timestamp is not None:
            messages = [m for m in messages if m.timestamp < before_timestamp]
        return messages[-limit:]

    def message_count(self, jid: str) -> int:
        return len(self._messages.get(self.resolve(jid), {}))
