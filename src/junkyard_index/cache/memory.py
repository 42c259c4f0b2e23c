import time
from typing import Any, Callable, Protocol


class ResultCache(Protocol):
    """Key -> value store with per-entry expiry."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...


class MemoryCache:
    """In-process TTL cache. Expired entries are dropped on read."""

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl is None else ttl
        now = self._clock()
        self.prune(now)
        self._entries[key] = (now + ttl, value)

    def prune(self, now: float | None = None) -> None:
        """Drop every expired entry."""
        now = self._clock() if now is None else now
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class NullCache:
    """Cache that never hits. Used by tests and --no-cache."""

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        return None
