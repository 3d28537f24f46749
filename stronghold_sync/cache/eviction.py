"""Pick the cache entry to drop when the cache is full."""

from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional, Tuple

from stronghold_sync.cache.models import CacheEntry, EvictionStrategy

Ranker = Callable[[CacheEntry], Tuple]

# Lowest rank loses. ``min`` returns the first of equal ranks, so ties fall to
# the oldest insertion because the entry map keeps insertion order.
_RANKERS: Dict[EvictionStrategy, Optional[Ranker]] = {
    EvictionStrategy.LRU: lambda entry: (entry.last_access, entry.access_seq),
    EvictionStrategy.LFU: lambda entry: (entry.hits,),
    EvictionStrategy.FIFO: None,
}


def choose_victim(entries: Mapping[str, CacheEntry], strategy: EvictionStrategy | str) -> Optional[str]:
    if not entries:
        return None
    ranker = _RANKERS[EvictionStrategy(strategy)]
    if ranker is None:
        return next(iter(entries))
    return min(entries.values(), key=ranker).key


__all__ = ["choose_victim"]
