"""
Data Sources Package - Per-pair market feed connectors.

Provides isolated, fail-safe feed connectors for DEX pair prices.

Features:
- Polling (REST) and push (SSE) transports behind one interface
- One task per pair; a failing pair never affects another
- Reconnect with exponential backoff for push connections
- Every outcome delivered as an event on a queue

Quick Start:
    from data_sources import create_connector, MonitoredPair, FeedUpdate

    async def run():
        events = asyncio.Queue()
        connector = create_connector("poll", events)
        await connector.start_pair(MonitoredPair("solana", "So1...", "SOL/USDC"))

        event = await events.get()
        if isinstance(event, FeedUpdate):
            print(event.pair, len(event.payload.results))

Adding New Transports:
    1. Create class extending BaseFeedConnector
    2. Implement: name, transport, _run_pair()
    3. Report results with _emit_payload() / _emit_failure()
"""

from data_sources.base import BaseFeedConnector, PairState
from data_sources.exceptions import (
    DataSourceError,
    MalformedPayloadError,
    ReconnectLimitExceeded,
    TransientFetchError,
)
from data_sources.models import (
    ConnectorCrashed,
    ConnectorMetrics,
    FeedEvent,
    FeedFailure,
    FeedTransport,
    FeedUpdate,
    MonitoredPair,
    PairIdentity,
    PairStatus,
    ProviderPayload,
    pair_key,
)
from data_sources.providers import (
    PollingFeedConnector,
    StreamingFeedConnector,
    compute_backoff_ms,
    create_connector,
)


__all__ = [
    # Base
    "BaseFeedConnector",
    "PairState",
    # Providers
    "PollingFeedConnector",
    "StreamingFeedConnector",
    "compute_backoff_ms",
    "create_connector",
    # Models
    "FeedTransport",
    "PairIdentity",
    "MonitoredPair",
    "pair_key",
    "ProviderPayload",
    "FeedUpdate",
    "FeedFailure",
    "ConnectorCrashed",
    "FeedEvent",
    "PairStatus",
    "ConnectorMetrics",
    # Exceptions
    "DataSourceError",
    "TransientFetchError",
    "MalformedPayloadError",
    "ReconnectLimitExceeded",
]
