# In-memory TTL cache with three bounded namespaces.

from collections import OrderedDict
from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

log = logging.getLogger("sppo_cache")

GENERAL = "general"
LINE = "line"
POSITION = "position"

DEFAULT_TTLS: Dict[str, int] = {GENERAL: 300, LINE: 180, POSITION: 120}
DEFAULT_MAX_KEYS = 1000


@dataclass
class CacheEntry:
    data: Any
    inserted_at: float
    ttl_sec: float

    @property
    def expires_at(self) -> float:
        return self.inserted_at + self.ttl_sec

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache:
    """Bounded key/value store with per-entry expiry.

    When full, expired entries are swept first and then the oldest insertion
    is evicted. Re-setting a key moves it to the newest position.
    """

    def __init__(
        self,
        name: str,
        default_ttl: float,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.default_ttl = default_ttl
        self.max_keys = max(1, max_keys)
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                entry = None
            if entry is None:
                self.misses += 1
                log.debug("Cache miss %s: %s", self.name, key)
                return None
            self.hits += 1
            log.debug("Cache hit %s: %s", self.name, key)
            return entry.data

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        ttl_sec = self.default_ttl if ttl is None else ttl
        now = self._clock()
        entry = CacheEntry(data=data, inserted_at=now, ttl_sec=ttl_sec)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_keys:
                self._make_room(now)
            self._entries[key] = entry
        log.debug("Cache %s: key %s set (ttl=%ss)", self.name, key, ttl_sec)

    def _make_room(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        while len(self._entries) >= self.max_keys:
            oldest, _ = self._entries.popitem(last=False)
            self.evictions += 1
            log.info("Cache %s full, evicted %s", self.name, oldest)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for e in self._entries.values() if not e.is_expired(now))

    def stats(self) -> Dict[str, int]:
        return {
            "keys": len(self),
            "maxKeys": self.max_keys,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }


class CacheStore:
    def __init__(
        self,
        ttls: Optional[Dict[str, float]] = None,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        merged: Dict[str, float] = dict(DEFAULT_TTLS)
        merged.update(ttls or {})
        self._namespaces: Dict[str, TTLCache] = {
            name: TTLCache(name, merged[name], max_keys, clock)
            for name in (GENERAL, LINE, POSITION)
        }

    def namespace(self, name: str) -> TTLCache:
        try:
            return self._namespaces[name]
        except KeyError:
            raise KeyError(f"unknown cache namespace: {name}") from None

    def get(self, namespace: str, key: str) -> Optional[Any]:
        return self.namespace(namespace).get(key)

    def set(self, namespace: str, key: str, data: Any, ttl: Optional[float] = None) -> None:
        self.namespace(namespace).set(key, data, ttl)

    def delete(self, namespace: str, key: str) -> bool:
        return self.namespace(namespace).delete(key)

    def clear(self, namespace: Optional[str] = None) -> None:
        if namespace is not None:
            self.namespace(namespace).clear()
            return
        for cache in self._namespaces.values():
            cache.clear()
        log.info("All caches cleared")

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {name: cache.stats() for name, cache in self._namespaces.items()}
