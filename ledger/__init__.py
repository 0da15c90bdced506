"""
Ledger Package - Encoding and batched publishing of price records.

Components:
- encoder: PriceRecord <-> ABI wire format
- client: ledger service clients (HTTP, dry run)
- retry: retry schedule for failed writes
- batch_publisher: per-key batching with a single in-flight write
"""

from ledger.batch_publisher import BatchPublisher, PendingBatchEntry, PublisherMetrics
from ledger.client import DryRunLedgerClient, HttpLedgerClient, LedgerClient, LedgerRecord
from ledger.encoder import (
    PRICE_RECORD_SCHEMA,
    PRICE_RECORD_TYPES,
    decode_price_record,
    encode_price_record,
)
from ledger.exceptions import EncodingError, LedgerError, LedgerWriteError
from ledger.retry import RetryPolicy


__all__ = [
    "BatchPublisher",
    "PendingBatchEntry",
    "PublisherMetrics",
    "LedgerClient",
    "HttpLedgerClient",
    "DryRunLedgerClient",
    "LedgerRecord",
    "PRICE_RECORD_SCHEMA",
    "PRICE_RECORD_TYPES",
    "encode_price_record",
    "decode_price_record",
    "RetryPolicy",
    "LedgerError",
    "LedgerWriteError",
    "EncodingError",
]
