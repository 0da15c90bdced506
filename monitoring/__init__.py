"""
Monitoring Package.

============================================================
PURPOSE
============================================================
Strictly observational monitoring for the price pipeline.

PRINCIPLES:
1. READ-ONLY - No state mutation
2. OBSERVATIONAL - Mirror, not brain
3. RESILIENT - A failing sink never blocks publishing

============================================================
"""

from .digest import DigestSink, LatestPriceBook, PriceSnapshot
from .status_reporter import StatusReporter


__all__ = [
    "StatusReporter",
    "DigestSink",
    "LatestPriceBook",
    "PriceSnapshot",
]
