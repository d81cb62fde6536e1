"""
TTL Cache -- bounded LRU memoization for expensive remote calls

Every research, keyword and reference lookup the pipeline makes costs money
or rate-limit budget.  TTLCache keeps the most recently used results for a
fixed time so repeated work items do not repeat the same calls.

Storage is a ``cachetools.TLRUCache``: its time-to-use callback gives every
entry its own expiry and it evicts least-recently-used entries at capacity.

Guarantees:
    - Memory is bounded: at capacity the least-recently-used entry is evicted.
    - An entry is never returned after its TTL elapses, even if never pruned.
    - A hit refreshes LRU position but never extends the expiry.

Usage:
    from seo_autopilot.cache import CacheRegistry, get_cached

    caches = CacheRegistry()
    results = await get_cached(
        caches.cache("serp"), f"serp:{title}", lambda: research.search(title)
    )
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple

from cachetools import TLRUCache

logger = logging.getLogger("cache")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MAX_SIZE = 500
DEFAULT_TTL = 3600.0  # seconds

# name -> (max_size, ttl_seconds)
CACHE_PRESETS: Dict[str, Tuple[int, float]] = {
    "semantic_keywords": (200, 24 * 3600.0),
    "neuron_terms": (100, 3600.0),
    "youtube": (200, 3600.0),
    "reference": (300, 24 * 3600.0),
    "validated_url": (1000, 24 * 3600.0),
    "content": (50, 30 * 60.0),
    "serp": (200, 3600.0),
}

_MISSING = object()


class CacheEntry(NamedTuple):
    """A cached value and the lifetime it was stored with."""

    data: Any
    ttl: float


def _entry_expiry(key: str, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl


class _EntryStore(TLRUCache):
    """TLRUCache that reports LRU evictions back to its owner."""

    def __init__(self, owner: "TTLCache", maxsize: int) -> None:
        super().__init__(maxsize=maxsize, ttu=_entry_expiry)
        self._owner = owner

    def popitem(self):
        key, entry = super().popitem()
        self._owner._forget(key)
        logger.debug("Cache '%s' full (%d): evicted %s", self._owner.name, self.maxsize, key)
        return key, entry


# ===================================================================
# TTL CACHE
# ===================================================================


class TTLCache:
    """Least-recently-used map with per-entry expiry."""

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: float = DEFAULT_TTL,
        name: str = "cache",
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.name = name
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._entries = _EntryStore(self, max_size)
        self._hit_counts: Dict[str, int] = {}
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def _forget(self, key: str) -> None:
        self._hit_counts.pop(key, None)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for *key*, or *default*.

        A hit moves the entry to the most-recently-used end.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default
        self._hit_counts[key] = self._hit_counts.get(key, 0) + 1
        self._hits += 1
        return entry.data

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Insert or replace *key*.  Evicts the LRU entry when full."""
        lifetime = self.default_ttl if ttl is None else ttl
        self._forget(key)
        if lifetime <= 0:
            self._entries.pop(key, None)
            return
        self._entries[key] = CacheEntry(value, lifetime)

    def has(self, key: str) -> bool:
        """True only for a live entry.  Does not touch LRU order."""
        return key in self._entries

    def delete(self, key: str) -> bool:
        self._forget(key)
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries = _EntryStore(self, self.max_size)
        self._hit_counts.clear()
        self._hits = 0
        self._misses = 0

    def prune(self) -> int:
        """Remove every expired entry.  Returns the number removed."""
        expired = self._entries.expire()
        live = set(self._entries)
        self._hit_counts = {k: n for k, n in self._hit_counts.items() if k in live}
        if expired:
            logger.debug("Cache '%s' pruned %d expired entries", self.name, len(expired))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Size and hit statistics over live entries."""
        self.prune()
        keys = list(self._entries)
        hit_rate = 0.0
        if keys:
            hit_rate = round(sum(self._hit_counts.get(k, 0) for k in keys) / len(keys), 2)
        return {
            "name": self.name,
            "size": len(keys),
            "max_size": self.max_size,
            "hit_rate": hit_rate,
            "hits": self._hits,
            "misses": self._misses,
            "entries": keys,
        }


# ===================================================================
# NAMED CACHES
# ===================================================================


class CacheRegistry:
    """One TTLCache per preset name, owned by a pipeline or scheduler."""

    def __init__(self, presets: Optional[Dict[str, Tuple[int, float]]] = None) -> None:
        self._presets = dict(CACHE_PRESETS if presets is None else presets)
        self._caches: Dict[str, TTLCache] = {
            name: TTLCache(max_size=size, default_ttl=ttl, name=name)
            for name, (size, ttl) in self._presets.items()
        }

    def cache(self, name: str) -> TTLCache:
        """Return the named cache, creating one with defaults for unknown names."""
        if name not in self._caches:
            self._caches[name] = TTLCache(name=name)
        return self._caches[name]

    def names(self) -> List[str]:
        return sorted(self._caches.keys())

    def prune_all(self) -> int:
        total = sum(c.prune() for c in self._caches.values())
        if total:
            logger.info("Pruned %d expired cache entries", total)
        return total

    def clear_all(self) -> None:
        for c in self._caches.values():
            c.clear()

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: c.stats() for name, c in sorted(self._caches.items())}


async def get_cached(
    cache: TTLCache,
    key: str,
    fetcher: Callable[[], Awaitable[Any]],
    ttl: Optional[float] = None,
) -> Any:
    """Return ``cache[key]`` or await *fetcher* and memoize its result.

    Exceptions from *fetcher* propagate and nothing is stored.
    """
    cached = cache.get(key, _MISSING)
    if cached is not _MISSING:
        logger.debug("Cache '%s' hit: %s", cache.name, key)
        return cached
    value = await fetcher()
    cache.set(key, value, ttl)
    return value
