"""
In-memory result cache for rule evaluations.
"""

import copy
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Dict, Any, Optional, Callable, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.models import RuleContext, RuleEvaluationResult


def context_fingerprint(context: RuleContext) -> str:
    """Hash of the context with the timestamp floored to the minute.

    Identical requests within the same minute share a fingerprint.
    """
    minute = context.timestamp.replace(second=0, microsecond=0)
    snapshot = {
        "resource_id": context.resource.id,
        "state": context.resource.state,
        "data": context.resource.data,
        "workflow_id": (context.workflow or {}).get("id"),
        "activity_id": (context.activity or {}).get("id"),
        "metadata": context.metadata,
        "minute": minute.isoformat(),
    }
    context_str = json.dumps(snapshot, sort_keys=True, default=str)
    return hashlib.md5(context_str.encode()).hexdigest()


@dataclass
class _CacheEntry:
    result: RuleEvaluationResult
    expires_at: float


class ResultCache:
    """TTL and size bounded cache of ``(rule name, context)`` -> result.

    Eviction is by insertion order (``fifo``) unless ``eviction="lru"``, in
    which case a hit moves the entry to the back of the queue. Expired
    entries are dropped when they are read or when :meth:`purge_expired`
    runs.

    Mutations happen between await points on a single event loop and are
    not locked; callers sharing a cache across threads must add a lock.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 1000, eviction: str = "fifo",
                 clock: Callable[[], float] = time.monotonic, metrics: Optional[MetricsCollector] = None):
        if eviction not in ("fifo", "lru"):
            raise ValueError(f"Unknown eviction policy: {eviction}")
        self.logger = get_logger("rules.cache")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.eviction = eviction
        self.metrics = metrics
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], _CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _key(self, rule_name: str, context: RuleContext) -> Tuple[str, str]:
        return rule_name, context_fingerprint(context)

    def get(self, rule_name: str, context: RuleContext) -> Optional[RuleEvaluationResult]:
        """Get a cached result, marked as a cache hit."""
        key = self._key(rule_name, context)
        entry = self._entries.get(key)

        if entry is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            entry = None

        if entry is None:
            self._misses += 1
            self._record("cache_misses_total")
            return None

        if self.eviction == "lru":
            self._entries.move_to_end(key)
        self._hits += 1
        self._record("cache_hits_total")
        self.logger.debug("Result cache hit", rule=rule_name)
        return replace(copy.deepcopy(entry.result), cache_hit=True)

    def set(self, rule_name: str, context: RuleContext, result: RuleEvaluationResult,
            ttl_seconds: Optional[float] = None):
        """Cache a result."""
        key = self._key(rule_name, context)
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        # Re-inserting moves the key to the back so it is evicted last
        self._entries.pop(key, None)
        self._entries[key] = _CacheEntry(result=replace(copy.deepcopy(result), cache_hit=False),
                                         expires_at=self._clock() + ttl)

        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1
        self._update_size()

    def invalidate(self, rule_name: str) -> int:
        """Drop every cached result for a rule."""
        keys = [key for key in self._entries if key[0] == rule_name]
        for key in keys:
            del self._entries[key]
        if keys:
            self.logger.debug("Result cache invalidated", rule=rule_name, entries=len(keys))
        self._update_size()
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._update_size()
        return len(expired)

    def clear(self):
        """Clear all cached results."""
        self._entries.clear()
        self._update_size()

    def reset_stats(self):
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "eviction": self.eviction,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def _record(self, metric_name: str):
        if self.metrics:
            self.metrics.increment_counter(metric_name, cache_type="result")

    def _update_size(self):
        if self.metrics:
            self.metrics.set_gauge("cached_results", len(self._entries))
