"""
Data Ingestion - Market Normalizer.

============================================================
RESPONSIBILITY
============================================================
Normalizes a raw provider payload into a PriceRecord.

- Selects one entry from the provider result list
- Converts USD amounts to 18-decimal fixed point
- Converts percentage changes to hundredths of a percent
- Stamps the record with the normalization time

============================================================
DESIGN PRINCIPLES
============================================================
- Input: ProviderPayload for one configured pair
- Output: PriceRecord, or None when there is no usable price
- The provider's own timestamps are never used
- No I/O, never raises on bad provider data

============================================================
PROVIDER ENTRY FIELDS
============================================================
priceUsd            string  -> price_usd (required)
liquidity.usd       number  -> liquidity_usd      (default 0)
volume.h24          number  -> volume_24h_usd     (default 0)
priceChange.h1      number  -> price_change_1h    (default 0)
priceChange.h24     number  -> price_change_24h   (default 0)
baseToken.symbol / quoteToken.symbol -> pair_label
chainId                     -> chain

============================================================
"""

import logging
import math
from typing import Any, Dict, Optional, Sequence

from core.clock import ClockProtocol, SystemClock
from data_ingestion.types import (
    NormalizerMetrics,
    PriceRecord,
    ResultSelection,
    percentage_to_int,
    price_to_fixed_point,
)
from data_sources.models import MonitoredPair, ProviderPayload


logger = logging.getLogger("ingestion.normalizer")


def _parse_number(value: Any) -> Optional[float]:
    """Parse a provider number (JSON number or numeric string)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _nested(entry: Dict[str, Any], section: str, name: str) -> Any:
    block = entry.get(section)
    if isinstance(block, dict):
        return block.get(name)
    return None


def _optional_amount(entry: Dict[str, Any], section: str, name: str) -> float:
    number = _parse_number(_nested(entry, section, name))
    return number if number is not None else 0.0


class MarketNormalizer:
    """
    Turns provider payloads into PriceRecords.

    Stateless apart from counters; safe to share across pairs.
    """

    def __init__(
        self,
        selection: ResultSelection = ResultSelection.FIRST,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._selection = ResultSelection(selection)
        self._clock = clock or SystemClock()
        self._metrics = NormalizerMetrics()

    @property
    def selection(self) -> ResultSelection:
        return self._selection

    @property
    def metrics(self) -> NormalizerMetrics:
        return self._metrics

    def normalize(self, pair: MonitoredPair, payload: ProviderPayload) -> Optional[PriceRecord]:
        """Normalize a payload for a pair, or None if it has no usable price."""
        self._metrics.last_pair = pair.key

        entry = self.select_entry(pair, payload.results)
        if entry is None:
            self._metrics.no_result += 1
            logger.debug(f"No usable result entry for {pair.key}")
            return None

        price = _parse_number(entry.get("priceUsd"))
        if price is None:
            self._metrics.no_price += 1
            logger.debug(f"Result for {pair.key} has no usable priceUsd")
            return None

        record = PriceRecord(
            timestamp=self._clock.unix_seconds(),
            pair_label=self._label_for(pair, entry),
            chain=self._chain_for(pair, entry),
            price_usd=price_to_fixed_point(price),
            liquidity_usd=price_to_fixed_point(_optional_amount(entry, "liquidity", "usd")),
            volume_24h_usd=price_to_fixed_point(_optional_amount(entry, "volume", "h24")),
            price_change_1h=percentage_to_int(_optional_amount(entry, "priceChange", "h1")),
            price_change_24h=percentage_to_int(_optional_amount(entry, "priceChange", "h24")),
        )
        self._metrics.normalized += 1
        return record

    def select_entry(
        self,
        pair: MonitoredPair,
        results: Sequence[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """Apply the configured selection rule to the provider result list."""
        if not results:
            return None

        if len(results) > 1:
            logger.debug(
                f"Provider returned {len(results)} results for {pair.key}, "
                f"selecting by {self._selection.value}"
            )

        if self._selection is ResultSelection.HIGHEST_LIQUIDITY:
            # max() keeps the earliest entry on ties
            return max(results, key=lambda e: _optional_amount(e, "liquidity", "usd"))

        if self._selection is ResultSelection.MATCH_ADDRESS:
            wanted = pair.address.lower()
            for entry in results:
                address = entry.get("pairAddress")
                if isinstance(address, str) and address.lower() == wanted:
                    return entry
            return None

        return results[0]

    @staticmethod
    def _label_for(pair: MonitoredPair, entry: Dict[str, Any]) -> str:
        base = _nested(entry, "baseToken", "symbol")
        quote = _nested(entry, "quoteToken", "symbol")
        if isinstance(base, str) and isinstance(quote, str) and base and quote:
            return f"{base}/{quote}"
        return pair.label

    @staticmethod
    def _chain_for(pair: MonitoredPair, entry: Dict[str, Any]) -> str:
        chain = entry.get("chainId")
        if isinstance(chain, str) and chain:
            return chain
        return pair.chain
