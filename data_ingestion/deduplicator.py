"""
Data Ingestion - Deduplication Gate.

============================================================
RESPONSIBILITY
============================================================
Decides whether a freshly normalized PriceRecord is worth publishing.

Per pair the gate is either Unseen (no cache entry) or Tracked
(last accepted price and the time it was accepted).

- Unseen: always accept, start tracking
- Tracked: reject if less than min_update_interval_ms has passed
- Tracked: otherwise reject if |relative change| < threshold
- Accepting overwrites the cache entry

============================================================
DESIGN PRINCIPLES
============================================================
- Pure in-memory bookkeeping, never blocks or raises
- Time comes from the injected clock
- A cached price of zero counts as a 100% change

============================================================
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from core.clock import ClockProtocol, SystemClock
from data_ingestion.types import GateMetrics, PriceRecord


logger = logging.getLogger("ingestion.dedup")


def relative_change(old_price: int, new_price: int) -> float:
    """(new - old) / old, or 1.0 when old is zero."""
    if old_price == 0:
        return 1.0
    return (new_price - old_price) / old_price


@dataclass(frozen=True)
class CacheEntry:
    """Last accepted price for a pair."""
    price_usd: int
    cached_at_ms: float


class DeduplicationGate:
    """
    Time and magnitude filter in front of the publisher.

    Example:
        gate = DeduplicationGate(min_update_interval_ms=1000, price_change_threshold=0.001)
        if gate.should_accept(pair.key, record):
            publisher.enqueue(pair, record)
    """

    def __init__(
        self,
        min_update_interval_ms: float = 1000,
        price_change_threshold: float = 0.001,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._min_update_interval_ms = min_update_interval_ms
        self._price_change_threshold = price_change_threshold
        self._clock = clock or SystemClock()
        self._cache: Dict[str, CacheEntry] = {}
        self._metrics = GateMetrics()

    @property
    def metrics(self) -> GateMetrics:
        return self._metrics

    def should_accept(self, key: str, record: PriceRecord) -> bool:
        """Decide for one record; accepted records update the cache."""
        now_ms = self._clock.timestamp_ms()
        cached = self._cache.get(key)

        if cached is None:
            self._accept(key, record, now_ms)
            logger.debug(f"First price for {key}, accepted")
            return True

        elapsed_ms = now_ms - cached.cached_at_ms
        if elapsed_ms < self._min_update_interval_ms:
            self._metrics.rejected_interval += 1
            logger.debug(f"Rejected {key}: {elapsed_ms:.0f}ms since last accepted")
            return False

        change = relative_change(cached.price_usd, record.price_usd)
        if abs(change) < self._price_change_threshold:
            self._metrics.rejected_threshold += 1
            logger.debug(f"Rejected {key}: change {change:.6f} below threshold")
            return False

        self._accept(key, record, now_ms)
        logger.debug(f"Accepted {key}: change {change:.6f}")
        return True

    def reset(self, key: str) -> None:
        """Forget one pair; its next record is accepted unconditionally."""
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()

    def size(self) -> int:
        return len(self._cache)

    def cached_price(self, key: str) -> Optional[int]:
        entry = self._cache.get(key)
        return entry.price_usd if entry else None

    def cache_entry(self, key: str) -> Optional[CacheEntry]:
        return self._cache.get(key)

    def revert(self, key: str, previous: Optional[CacheEntry]) -> None:
        """Undo the last acceptance for a pair that could not be published."""
        if previous is None:
            self._cache.pop(key, None)
        else:
            self._cache[key] = previous
        self._metrics.accepted = max(0, self._metrics.accepted - 1)

    def _accept(self, key: str, record: PriceRecord, now_ms: float) -> None:
        self._cache[key] = CacheEntry(price_usd=record.price_usd, cached_at_ms=now_ms)
        self._metrics.accepted += 1
