"""Time-windowed replay suppression for inbound message ids."""

from __future__ import annotations

import time
from typing import Callable


class Deduplicator:
    """Accept each message id at most once per TTL window.

    The window starts when an id is first seen; later hits do not extend it.
    Once the entry expires the id counts as new again.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = ttl_seconds
        self._clock = clock
        self._expires_at: dict[str, float] = {}
        self._next_sweep = clock() + ttl_seconds

    def should_ignore(self, message_id: str) -> bool:
        """Test-and-mark a message id.

        Returns:
            True if the id was already seen within its window (duplicate),
            False if it is new (and it is now marked).
        """
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)

        expires_at = self._expires_at.get(message_id)
        if expires_at is not None and expires_at > now:
            return True

        self._expires_at[message_id] = now + self._ttl
        return False

    def _sweep(self, now: float) -> None:
        expired = [mid for mid, exp in self._expires_at.items() if exp <= now]
        for mid in expired:
            del self._expires_at[mid]
        self._next_sweep = now + self._ttl

    def __len__(self) -> int:
        return len(self._expires_at)
