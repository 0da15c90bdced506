"""
Data Ingestion - Normalizers.
"""

from data_ingestion.normalizers.market_normalizer import MarketNormalizer


__all__ = ["MarketNormalizer"]
