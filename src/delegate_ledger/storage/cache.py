import time
from typing import Any, Callable, Dict, Optional, Tuple


class TtlCache:
    """
    Read cache placed in front of the key-value store.

    Each entry carries its own TTL. Writers are expected to call ``set`` or
    ``invalidate`` right after persisting; expiry alone is not relied on for
    consistency.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        cached = self._entries.get(key)
        if cached is None:
            return None
        value, expires_at = cached
        if self._clock() > expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
