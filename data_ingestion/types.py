"""
Data Ingestion - Type Definitions.

============================================================
PURPOSE
============================================================
Shared types for the normalization and deduplication layer.

- The canonical PriceRecord
- Result selection rules
- Fixed-point conversion helpers
- Gate metric types

============================================================
DESIGN PRINCIPLES
============================================================
- Immutable data structures where possible
- Integer fixed-point values, never floats, once normalized
- No I/O
- Serializable for monitoring

============================================================
"""

import math
from dataclasses import asdict, dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional


FIXED_POINT_DECIMALS = 18
FIXED_POINT_SCALE = 10 ** FIXED_POINT_DECIMALS

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


# =============================================================
# ENUMS
# =============================================================

class ResultSelection(str, Enum):
    """How to pick one entry when the provider returns several."""
    FIRST = "first"
    HIGHEST_LIQUIDITY = "highest_liquidity"
    MATCH_ADDRESS = "match_address"


# =============================================================
# FIXED-POINT CONVERSION
# =============================================================

def _floor_scaled(value: float, scale: int) -> int:
    # str() round-trips the float so 0.1 scales to exactly 10**17
    try:
        scaled = Decimal(str(value)) * scale
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to fixed point")
    if not scaled.is_finite():
        raise ValueError(f"Cannot convert non-finite value {value!r}")
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def price_to_fixed_point(value: float) -> int:
    """floor(value * 10^18)."""
    return _floor_scaled(value, FIXED_POINT_SCALE)


def percentage_to_int(value: float) -> int:
    """floor(percentage * 100), clamped to the int32 range."""
    return max(INT32_MIN, min(INT32_MAX, _floor_scaled(value, 100)))


def fixed_point_to_float(value: int) -> float:
    """Inverse of price_to_fixed_point, for display only."""
    return value / FIXED_POINT_SCALE


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


# =============================================================
# PRICE RECORD
# =============================================================

@dataclass(frozen=True)
class PriceRecord:
    """
    Canonical normalized price observation for one pair.

    timestamp is unix seconds at normalization time. USD amounts are
    18-decimal fixed point; price changes are hundredths of a percent.
    """
    timestamp: int
    pair_label: str
    chain: str
    price_usd: int
    liquidity_usd: int
    volume_24h_usd: int
    price_change_1h: int
    price_change_24h: int

    @property
    def price_usd_float(self) -> float:
        return fixed_point_to_float(self.price_usd)

    @property
    def change_24h_percent(self) -> float:
        return self.price_change_24h / 100

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging (large ints kept as strings)."""
        data = asdict(self)
        for name in ("price_usd", "liquidity_usd", "volume_24h_usd"):
            data[name] = str(data[name])
        return data


# =============================================================
# METRICS
# =============================================================

@dataclass
class GateMetrics:
    """Deduplication gate counters."""
    accepted: int = 0
    rejected_interval: int = 0
    rejected_threshold: int = 0

    @property
    def rejected(self) -> int:
        return self.rejected_interval + self.rejected_threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "rejected_interval": self.rejected_interval,
            "rejected_threshold": self.rejected_threshold,
        }


@dataclass
class NormalizerMetrics:
    """Normalizer counters."""
    normalized: int = 0
    no_result: int = 0
    no_price: int = 0
    last_pair: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "normalized": self.normalized,
            "no_result": self.no_result,
            "no_price": self.no_price,
            "last_pair": self.last_pair,
        }
