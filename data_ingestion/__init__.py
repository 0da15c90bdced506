"""
Data Ingestion Module.

============================================================
PURPOSE
============================================================
Turns raw provider payloads into publishable price records.

- MarketNormalizer: payload -> PriceRecord (or None)
- DeduplicationGate: drops records that are too soon or too small

============================================================
DATA FLOW
============================================================
FeedUpdate -> MarketNormalizer -> DeduplicationGate -> BatchPublisher

============================================================
"""

from data_ingestion.deduplicator import DeduplicationGate, relative_change
from data_ingestion.normalizers import MarketNormalizer
from data_ingestion.types import (
    FIXED_POINT_SCALE,
    GateMetrics,
    NormalizerMetrics,
    PriceRecord,
    ResultSelection,
    fixed_point_to_float,
    percentage_to_int,
    price_to_fixed_point,
)


__all__ = [
    "MarketNormalizer",
    "DeduplicationGate",
    "relative_change",
    "PriceRecord",
    "ResultSelection",
    "GateMetrics",
    "NormalizerMetrics",
    "FIXED_POINT_SCALE",
    "price_to_fixed_point",
    "percentage_to_int",
    "fixed_point_to_float",
]
