"""Time utilities for consistent timestamp handling."""

from typing import Any

# Anything below this is a seconds-resolution epoch (ms epochs passed 1e12 in 2001)
_MS_THRESHOLD = 1_000_000_000_000


def to_millis(value: Any) -> int:
    """Normalize a wire timestamp to epoch milliseconds.

    Accepts ints, floats, numeric strings, and protobuf Long-style dicts
    ({"low": ..., "high": ...}). Seconds-resolution values are scaled up.
    Unparseable or missing values map to 0.
    """
    if value is None or isinstance(value, bool):
        return 0

    if isinstance(value, dict):
        low = value.get("low") or 0
        high = value.get("high") or 0
        try:
            value = (int(high) << 32) | (int(low) & 0xFFFFFFFF)
        except (TypeError, ValueError):
            return 0

    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0

    if not isinstance(value, (int, float)) or value <= 0:
        return 0

    if value < _MS_THRESHOLD:
        return int(value * 1000)
    return int(value)
