"""
Ledger Encoder - PriceRecord <-> ledger wire format.

============================================================
WIRE SCHEMA
============================================================
The ledger stores each record as an ABI-encoded tuple:

    uint64  timestamp
    string  pair
    string  chain
    uint256 priceUsd
    uint256 liquidity
    uint256 volume24h
    int32   priceChange1h
    int32   priceChange24h

Field order and types are shared with every reader of the ledger and
must not change.

============================================================
"""

from typing import Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError as AbiEncodingError

from data_ingestion.types import PriceRecord
from ledger.exceptions import EncodingError


PRICE_RECORD_SCHEMA = (
    "uint64 timestamp, string pair, string chain, uint256 priceUsd, "
    "uint256 liquidity, uint256 volume24h, int32 priceChange1h, int32 priceChange24h"
)

PRICE_RECORD_TYPES = [
    "uint64",
    "string",
    "string",
    "uint256",
    "uint256",
    "uint256",
    "int32",
    "int32",
]


def encode_price_record(record: PriceRecord, pair_key: Optional[str] = None) -> bytes:
    """
    Encode a record for the ledger.

    Raises:
        EncodingError: If a field is out of range for its wire type
    """
    values = (
        record.timestamp,
        record.pair_label,
        record.chain,
        record.price_usd,
        record.liquidity_usd,
        record.volume_24h_usd,
        record.price_change_1h,
        record.price_change_24h,
    )
    try:
        return encode(PRICE_RECORD_TYPES, values)
    except (AbiEncodingError, TypeError, ValueError) as e:
        raise EncodingError(
            message=f"Cannot encode price record: {e}",
            pair_key=pair_key,
            original_error=e,
        )


def decode_price_record(data: bytes) -> PriceRecord:
    """
    Decode ledger bytes back into a PriceRecord.

    Raises:
        EncodingError: If the bytes are not a valid encoded record
    """
    try:
        values = decode(PRICE_RECORD_TYPES, data)
    except (DecodingError, TypeError, ValueError) as e:
        raise EncodingError(message=f"Cannot decode price record: {e}", original_error=e)

    (
        timestamp,
        pair_label,
        chain,
        price_usd,
        liquidity_usd,
        volume_24h_usd,
        price_change_1h,
        price_change_24h,
    ) = values
    return PriceRecord(
        timestamp=timestamp,
        pair_label=pair_label,
        chain=chain,
        price_usd=price_usd,
        liquidity_usd=liquidity_usd,
        volume_24h_usd=volume_24h_usd,
        price_change_1h=price_change_1h,
        price_change_24h=price_change_24h,
    )
