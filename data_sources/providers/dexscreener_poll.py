"""
DexScreener Polling Source - Public REST adapter.

Fetches the latest pair snapshot from the DexScreener public API on a
fixed interval. No authentication required.
"""

import asyncio
from typing import Optional

import aiohttp

from core.clock import ClockProtocol
from data_sources.base import BaseFeedConnector, PairState
from data_sources.exceptions import (
    DataSourceError,
    MalformedPayloadError,
    TransientFetchError,
)
from data_sources.models import FeedEvent, FeedTransport, MonitoredPair, ProviderPayload


class PollingFeedConnector(BaseFeedConnector):
    """
    DexScreener REST polling connector.

    Endpoint used:
    - GET /latest/dex/pairs/{chain}/{address}

    The first fetch happens as soon as the pair is started; later
    fetches are spaced by poll_interval_ms measured from the start of
    the previous fetch. A failed fetch is reported and the next tick
    simply tries again.
    """

    BASE_URL = "https://api.dexscreener.com/latest/dex/pairs"
    DEFAULT_POLL_INTERVAL_MS = 10_000

    def __init__(
        self,
        events: "asyncio.Queue[FeedEvent]",
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        base_url: str = BASE_URL,
        timeout: float = BaseFeedConnector.DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        super().__init__(events, timeout, session, clock)
        self._poll_interval = poll_interval_ms / 1000.0
        self._base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return "dexscreener_poll"

    @property
    def transport(self) -> str:
        return FeedTransport.POLL.value

    def url_for(self, pair: MonitoredPair) -> str:
        return f"{self._base_url}/{pair.chain}/{pair.address}"

    async def _run_pair(self, state: PairState) -> None:
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            await self.poll_once(state)
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self._poll_interval - elapsed))

    async def poll_once(self, state: PairState) -> None:
        """Run a single fetch for a pair and emit the outcome."""
        try:
            payload = await self.fetch_payload(state.pair)
        except DataSourceError as e:
            state.connected = False
            state.reconnect_attempts += 1
            await self._emit_failure(state, e)
            return

        state.connected = True
        state.reconnect_attempts = 0
        await self._emit_payload(state, payload)

    async def fetch_payload(self, pair: MonitoredPair) -> ProviderPayload:
        """
        GET the pair endpoint and parse the body.

        Raises:
            TransientFetchError: On HTTP or connection errors
            MalformedPayloadError: If the body is not the expected JSON
        """
        url = self.url_for(pair)
        session = await self._get_session()

        try:
            async with session.get(url) as response:
                if response.status != 200:
                    body = await response.text()
                    raise TransientFetchError(
                        message=f"HTTP {response.status}: {body[:200]}",
                        source_name=self.name,
                        pair_key=pair.key,
                        status_code=response.status,
                        request_url=url,
                    )

                try:
                    data = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError) as e:
                    raise MalformedPayloadError(
                        message="Response body is not valid JSON",
                        source_name=self.name,
                        pair_key=pair.key,
                        original_error=e,
                    )

        except aiohttp.ClientError as e:
            raise TransientFetchError(
                message="Connection error",
                source_name=self.name,
                pair_key=pair.key,
                request_url=url,
                original_error=e,
            )
        except asyncio.TimeoutError as e:
            raise TransientFetchError(
                message=f"Request timed out after {self._timeout}s",
                source_name=self.name,
                pair_key=pair.key,
                request_url=url,
                original_error=e,
            )

        return ProviderPayload.from_json(data, source_name=self.name, pair_key=pair.key)
