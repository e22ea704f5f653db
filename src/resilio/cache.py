"""Bounded, TTL'd memoization of error classifications.

Repeated failures usually carry identical shapes (same provider code, same
message), so the classification result is cached under a cheap signature of
``name:code:status:message[:100]``.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from resilio.classification import ErrorClassifier, ErrorKind, ErrorShape
from resilio.logging import get_logger
from resilio.metrics import get_metrics_collector

logger = get_logger(__name__, component="cache")

MESSAGE_KEY_LENGTH = 100


class CacheConfig(BaseModel):
    """Configuration for the classification cache."""

    model_config = {"extra": "forbid"}

    max_size: int = Field(default=1000, ge=1, description="Maximum cached signatures")
    ttl_ms: int = Field(default=60_000, ge=1, description="Entry time to live in milliseconds")


@dataclass
class CacheMetrics:
    """Cache performance metrics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": self.hit_rate,
            "total_requests": self.total_requests,
        }


@dataclass
class ClassificationCacheEntry:
    """Cached classification with its insertion time."""

    kind: ErrorKind
    inserted_at: float

    def is_expired(self, now_ms: float, ttl_ms: float) -> bool:
        return now_ms - self.inserted_at >= ttl_ms


def _default_clock() -> float:
    return time.time() * 1000


class ClassificationCache:
    """Insertion-ordered cache evicting the oldest signature on overflow.

    Expired entries are treated as absent and removed lazily on lookup.

    Args:
        config: Capacity and TTL.
        clock: Millisecond clock; engines pass their scheduler's ``now_ms``.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or CacheConfig()
        self._clock = clock or _default_clock
        self._entries: OrderedDict[str, ClassificationCacheEntry] = OrderedDict()
        self.metrics = CacheMetrics()
        self._prometheus = get_metrics_collector()

    @staticmethod
    def key_for(error: Any) -> str:
        """Stable signature for logically identical errors."""
        shape = ErrorShape.from_error(error)
        status = "" if shape.status is None else str(shape.status)
        return f"{shape.name}:{shape.code}:{status}:{shape.message[:MESSAGE_KEY_LENGTH]}"

    def get(self, error: Any) -> Optional[ErrorKind]:
        """Cached kind for ``error``, or ``None`` when absent or expired."""
        key = self.key_for(error)
        entry = self._entries.get(key)
        if entry is not None and entry.is_expired(self._clock(), self.config.ttl_ms):
            del self._entries[key]
            self.metrics.expirations += 1
            entry = None

        if entry is None:
            self.metrics.misses += 1
            self._prometheus.increment_cache_miss()
            return None

        self.metrics.hits += 1
        self._prometheus.increment_cache_hit()
        return entry.kind

    def put(self, error: Any, kind: ErrorKind) -> None:
        key = self.key_for(error)
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.config.max_size:
            oldest_key, _ = self._entries.popitem(last=False)
            self.metrics.evictions += 1
            logger.debug(
                "cache_eviction",
                key=oldest_key,
                total_evictions=self.metrics.evictions,
            )
        self._entries[key] = ClassificationCacheEntry(kind=kind, inserted_at=self._clock())
        self.metrics.sets += 1

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.is_expired(now, self.config.ttl_ms)
        ]
        for key in expired:
            del self._entries[key]
        self.metrics.expirations += len(expired)
        if expired:
            logger.debug("cache_expired_purged", count=len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("cache_cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        return {
            **self.metrics.to_dict(),
            "size": len(self._entries),
            "max_size": self.config.max_size,
            "ttl_ms": self.config.ttl_ms,
        }


class CachedClassifier:
    """Classifier front-end that consults a :class:`ClassificationCache` first."""

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        cache: Optional[ClassificationCache] = None,
    ):
        self.classifier = classifier or ErrorClassifier()
        self.cache = cache or ClassificationCache()

    def classify(self, error: Any) -> ErrorKind:
        kind = self.cache.get(error)
        if kind is None:
            kind = self.classifier.classify(error)
            self.cache.put(error, kind)
        return kind
