"""
Monitoring - Digest Sink.

Receives every record the deduplication gate accepts, as
(pair_label, chain, price_usd, change_24h, observed_at). How a digest
is formatted and delivered is left to the sink implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.clock import ClockProtocol, SystemClock, to_iso8601
from data_ingestion.types import PriceRecord
from data_sources.models import MonitoredPair


@dataclass(frozen=True)
class PriceSnapshot:
    """Latest accepted price for a pair, in display units."""
    pair_label: str
    chain: str
    price_usd: float
    change_24h: float
    observed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_label": self.pair_label,
            "chain": self.chain,
            "price_usd": self.price_usd,
            "change_24h": self.change_24h,
            "observed_at": to_iso8601(self.observed_at),
        }


class DigestSink(ABC):
    """Consumer of accepted price records."""

    @abstractmethod
    def record(self, pair: MonitoredPair, record: PriceRecord) -> None:
        pass


class LatestPriceBook(DigestSink):
    """Keeps the most recent snapshot per pair."""

    def __init__(self, clock: Optional[ClockProtocol] = None) -> None:
        self._clock = clock or SystemClock()
        self._snapshots: Dict[str, PriceSnapshot] = {}

    def record(self, pair: MonitoredPair, record: PriceRecord) -> None:
        self._snapshots[pair.key] = PriceSnapshot(
            pair_label=record.pair_label,
            chain=record.chain,
            price_usd=record.price_usd_float,
            change_24h=record.change_24h_percent,
            observed_at=self._clock.now(),
        )

    def get(self, key: str) -> Optional[PriceSnapshot]:
        return self._snapshots.get(key)

    def snapshots(self) -> List[PriceSnapshot]:
        return list(self._snapshots.values())

    def clear(self) -> None:
        self._snapshots.clear()
