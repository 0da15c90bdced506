"""
Providers package - Feed connector implementations.
"""

import asyncio
from typing import Optional, Union

import aiohttp

from core.clock import ClockProtocol
from core.exceptions import InvalidConfigError
from data_sources.base import BaseFeedConnector
from data_sources.models import FeedEvent, FeedTransport
from data_sources.providers.dexscreener_poll import PollingFeedConnector
from data_sources.providers.dexscreener_sse import (
    StreamingFeedConnector,
    compute_backoff_ms,
)


def create_connector(
    transport: Union[FeedTransport, str],
    events: "asyncio.Queue[FeedEvent]",
    poll_interval_ms: int = PollingFeedConnector.DEFAULT_POLL_INTERVAL_MS,
    base_url: Optional[str] = None,
    stream_url: Optional[str] = None,
    timeout: float = BaseFeedConnector.DEFAULT_TIMEOUT,
    idle_timeout: float = StreamingFeedConnector.DEFAULT_IDLE_TIMEOUT,
    reconnect_interval_ms: int = StreamingFeedConnector.DEFAULT_RECONNECT_INTERVAL_MS,
    max_reconnect_attempts: int = StreamingFeedConnector.DEFAULT_MAX_RECONNECT_ATTEMPTS,
    max_reconnect_delay_ms: Optional[int] = StreamingFeedConnector.DEFAULT_MAX_RECONNECT_DELAY_MS,
    session: Optional[aiohttp.ClientSession] = None,
    clock: Optional[ClockProtocol] = None,
) -> BaseFeedConnector:
    """
    Build the connector for a transport strategy.

    Options that do not apply to the chosen transport are ignored.
    """
    try:
        transport = FeedTransport(transport)
    except ValueError:
        raise InvalidConfigError(
            "FEED_TRANSPORT",
            transport,
            f"must be one of {[t.value for t in FeedTransport]}",
        )

    if transport is FeedTransport.POLL:
        return PollingFeedConnector(
            events,
            poll_interval_ms=poll_interval_ms,
            base_url=base_url or PollingFeedConnector.BASE_URL,
            timeout=timeout,
            session=session,
            clock=clock,
        )

    return StreamingFeedConnector(
        events,
        stream_url=stream_url or StreamingFeedConnector.STREAM_URL,
        reconnect_interval_ms=reconnect_interval_ms,
        max_reconnect_attempts=max_reconnect_attempts,
        max_reconnect_delay_ms=max_reconnect_delay_ms,
        timeout=timeout,
        idle_timeout=idle_timeout,
        session=session,
        clock=clock,
    )


__all__ = [
    "PollingFeedConnector",
    "StreamingFeedConnector",
    "compute_backoff_ms",
    "create_connector",
]
