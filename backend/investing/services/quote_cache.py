import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass
class CacheEntry:
    key: str
    payload: Any
    created_at: float
    expires_at: float


class _TTLCache:
    """Entry storage shared by the quote and historical caches.

    Entries past ``expires_at`` are treated as absent and dropped on access.
    Every ``MAINTENANCE_EVERY`` inserts the cache purges expired entries and,
    if still above ``max_size``, trims the oldest entries by insertion time.
    """

    MAINTENANCE_EVERY = 50
    EVICT_FRACTION = 0.2

    def __init__(self, ttl: int, max_size: int, clock: Callable[[], float] = time.time):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inserts = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def _set_entry(self, key: str, payload: Any, ttl: Optional[int]) -> None:
        ttl = self.ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = self._clock()
        self._entries[key] = CacheEntry(key=key, payload=payload, created_at=now, expires_at=now + ttl)
        self._inserts += 1
        if self._inserts % self.MAINTENANCE_EVERY == 0:
            self._clean_expired()
            self._evict_by_size()

    def _clean_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if now >= e.expires_at]:
            del self._entries[key]

    def _evict_by_size(self) -> None:
        size = len(self._entries)
        if size <= self.max_size:
            return
        to_remove = max(math.ceil(size * self.EVICT_FRACTION), size - self.max_size)
        oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:to_remove]
        for entry in oldest:
            del self._entries[entry.key]

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict:
        now = self._clock()
        expired = sum(1 for e in self._entries.values() if now >= e.expires_at)
        valid = len(self._entries) - expired
        total = valid + expired
        return {
            "total": len(self._entries),
            "valid": valid,
            "expired": expired,
            "max_size": self.max_size,
            "hit_ratio": valid / total if total else 0,
        }


class QuoteCache(_TTLCache):
    """In-process TTL cache for provider quotes."""

    def __init__(self, ttl: int = 300, max_size: int = 1000, clock: Callable[[], float] = time.time):
        super().__init__(ttl=ttl, max_size=max_size, clock=clock)

    def _key(self, ticker: str) -> str:
        return f"quote:{ticker.upper()}"

    def get(self, ticker: str) -> Any:
        entry = self._get_entry(self._key(ticker))
        return entry.payload if entry else None

    def set(self, ticker: str, payload: Any, ttl: Optional[int] = None) -> None:
        self._set_entry(self._key(ticker), payload, ttl)

    def invalidate(self, ticker: str) -> bool:
        return self._entries.pop(self._key(ticker), None) is not None

    def has(self, ticker: str) -> bool:
        return self.get(ticker) is not None

    def get_multiple(self, tickers: list[str]) -> dict[str, Any]:
        result = {}
        for ticker in tickers:
            payload = self.get(ticker)
            if payload is not None:
                result[ticker] = payload
        return result

    def has_recent_data(self, max_age_minutes: int = 30) -> bool:
        """True if anything was inserted within the window (market-open hint)."""
        cutoff = self._clock() - max_age_minutes * 60
        return any(e.created_at > cutoff for e in self._entries.values())


class HistoricalCache(_TTLCache):
    """Historical series keyed on (ticker, range in days)."""

    def __init__(self, ttl: int = 3600, max_size: int = 500, clock: Callable[[], float] = time.time):
        super().__init__(ttl=ttl, max_size=max_size, clock=clock)

    def _range_key(self, ticker: str, days: int) -> str:
        return f"hist:{ticker.upper()}:{days}d"

    def get(self, ticker: str, days: int) -> Any:
        entry = self._get_entry(self._range_key(ticker, days))
        return entry.payload if entry else None

    def set(self, ticker: str, days: int, bars: Any) -> None:
        self._set_entry(self._range_key(ticker, days), bars, None)

    def has(self, ticker: str, days: int) -> bool:
        return self.get(ticker, days) is not None

    def invalidate(self, ticker: str) -> int:
        marker = f":{ticker.upper()}:"
        keys = [k for k in self._entries if marker in k]
        for key in keys:
            del self._entries[key]
        return len(keys)
