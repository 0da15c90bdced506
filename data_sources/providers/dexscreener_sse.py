"""
DexScreener Streaming Source - Server-sent events adapter.

============================================================
RESPONSIBILITY
============================================================
Holds one long-lived SSE connection per pair and forwards every
event's payload downstream.

- Parses the event stream line by line
- Reconnects with exponential backoff
- Gives up on a pair after the configured number of attempts

============================================================
RECONNECT POLICY
============================================================
delay(n) = reconnect_interval_ms * 2^n, capped at max_reconnect_delay_ms
n is the number of reconnect attempts already made and resets to 0
whenever a connection opens. Once n reaches max_reconnect_attempts the
next failure is fatal for that pair.

============================================================
"""

import asyncio
import json
from typing import AsyncIterable, Optional

import aiohttp
from aiohttp.http_exceptions import HttpProcessingError

from core.clock import ClockProtocol
from data_sources.base import BaseFeedConnector, PairState
from data_sources.exceptions import (
    DataSourceError,
    MalformedPayloadError,
    ReconnectLimitExceeded,
    TransientFetchError,
)
from data_sources.models import FeedEvent, FeedTransport, MonitoredPair, ProviderPayload


def compute_backoff_ms(
    base_ms: float,
    attempt: int,
    max_ms: Optional[float] = None,
) -> float:
    """Reconnect delay before attempt number `attempt` (0-based)."""
    delay = base_ms * (2 ** attempt)
    if max_ms:
        delay = min(delay, max_ms)
    return delay


class StreamingFeedConnector(BaseFeedConnector):
    """
    DexScreener SSE push connector.

    Endpoint used:
    - GET /dex/sse/{chain}/{address} (text/event-stream)
    """

    STREAM_URL = "https://io.dexscreener.com/dex/sse"
    DEFAULT_RECONNECT_INTERVAL_MS = 5_000
    DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
    DEFAULT_MAX_RECONNECT_DELAY_MS = 300_000
    DEFAULT_IDLE_TIMEOUT = 60.0
    DEFAULT_MAX_EVENT_BYTES = 1024 * 1024
    READ_CHUNK_BYTES = 16 * 1024

    def __init__(
        self,
        events: "asyncio.Queue[FeedEvent]",
        stream_url: str = STREAM_URL,
        reconnect_interval_ms: int = DEFAULT_RECONNECT_INTERVAL_MS,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        max_reconnect_delay_ms: Optional[int] = DEFAULT_MAX_RECONNECT_DELAY_MS,
        timeout: float = BaseFeedConnector.DEFAULT_TIMEOUT,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        max_event_bytes: int = DEFAULT_MAX_EVENT_BYTES,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        super().__init__(events, timeout, session, clock)
        self._stream_url = stream_url.rstrip("/")
        self._reconnect_interval_ms = reconnect_interval_ms
        self._max_reconnect_attempts = max_reconnect_attempts
        self._max_reconnect_delay_ms = max_reconnect_delay_ms
        self._max_event_bytes = max_event_bytes
        # total=None: the stream is expected to stay open indefinitely
        self._stream_timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=timeout,
            sock_read=idle_timeout,
        )

    @property
    def name(self) -> str:
        return "dexscreener_sse"

    @property
    def transport(self) -> str:
        return FeedTransport.SSE.value

    def url_for(self, pair: MonitoredPair) -> str:
        return f"{self._stream_url}/{pair.chain}/{pair.address}"

    # =========================================================
    # CONNECTION LOOP
    # =========================================================

    async def _run_pair(self, state: PairState) -> None:
        while True:
            try:
                await self._consume_stream(state)
                error: DataSourceError = TransientFetchError(
                    message="Stream closed by provider",
                    source_name=self.name,
                    pair_key=state.pair.key,
                )
            except DataSourceError as e:
                error = e

            state.connected = False
            await self._emit_failure(state, error)

            delay = self.next_reconnect_delay(state)
            if delay is None:
                self._release(state)
                await self._emit_failure(
                    state,
                    ReconnectLimitExceeded(
                        message=f"Max reconnect attempts ({self._max_reconnect_attempts}) reached",
                        source_name=self.name,
                        pair_key=state.pair.key,
                        attempts=state.reconnect_attempts,
                        original_error=error,
                    ),
                    fatal=True,
                )
                return

            state.reconnect_attempts += 1
            self._logger.info(
                f"Reconnecting {state.pair} in {delay:.1f}s "
                f"(attempt {state.reconnect_attempts}/{self._max_reconnect_attempts})"
            )
            await asyncio.sleep(delay)

    def next_reconnect_delay(self, state: PairState) -> Optional[float]:
        """Seconds to wait before the next attempt, or None once the limit is hit."""
        if state.reconnect_attempts >= self._max_reconnect_attempts:
            return None
        delay_ms = compute_backoff_ms(
            self._reconnect_interval_ms,
            state.reconnect_attempts,
            self._max_reconnect_delay_ms,
        )
        return delay_ms / 1000.0

    async def _consume_stream(self, state: PairState) -> None:
        """Open the stream and read it until the provider closes it."""
        url = self.url_for(state.pair)
        session = await self._get_session()

        try:
            async with session.get(
                url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=self._stream_timeout,
            ) as response:
                if response.status != 200:
                    raise TransientFetchError(
                        message=f"Stream rejected with HTTP {response.status}",
                        source_name=self.name,
                        pair_key=state.pair.key,
                        status_code=response.status,
                        request_url=url,
                    )

                self._mark_connected(state)
                await self._read_events(
                    state, response.content.iter_chunked(self.READ_CHUNK_BYTES)
                )

        except aiohttp.ClientError as e:
            raise TransientFetchError(
                message="Stream connection error",
                source_name=self.name,
                pair_key=state.pair.key,
                request_url=url,
                original_error=e,
            )
        except asyncio.TimeoutError as e:
            raise TransientFetchError(
                message="Stream read timed out",
                source_name=self.name,
                pair_key=state.pair.key,
                request_url=url,
                original_error=e,
            )
        except HttpProcessingError as e:
            raise TransientFetchError(
                message=f"Stream protocol error: {e.message}",
                source_name=self.name,
                pair_key=state.pair.key,
                status_code=e.code or None,
                request_url=url,
                original_error=e,
            )

    def _mark_connected(self, state: PairState) -> None:
        if state.reconnect_attempts:
            self._logger.info(
                f"Stream for {state.pair} reopened after {state.reconnect_attempts} attempts"
            )
        else:
            self._logger.info(f"Stream for {state.pair} opened")
        state.connected = True
        state.reconnect_attempts = 0

    # =========================================================
    # EVENT STREAM PARSING
    # =========================================================

    async def _read_events(self, state: PairState, chunks: AsyncIterable[bytes]) -> None:
        """
        Split an SSE byte stream into events.

        Only `data:` fields are used; multi-line data is joined with
        newlines. An event is dispatched on the blank line that ends it,
        so a partial event at end of stream is discarded.

        An event larger than max_event_bytes is dropped with a non-fatal
        MalformedPayloadError and the stream keeps being read.
        """
        buffer = bytearray()
        data_lines: list[str] = []
        event_bytes = 0
        oversized = False
        # Tail of an oversized line still to be skipped
        skip_line = False

        async for chunk in chunks:
            buffer.extend(chunk)

            while True:
                end = buffer.find(b"\n")
                if end < 0:
                    break
                raw_line = bytes(buffer[:end])
                del buffer[:end + 1]

                if skip_line:
                    skip_line = False
                    continue

                line = raw_line.decode("utf-8", errors="replace").rstrip("\r")

                if not line:
                    if data_lines and not oversized:
                        await self._dispatch(state, "\n".join(data_lines))
                    data_lines = []
                    event_bytes = 0
                    oversized = False
                    continue

                if oversized or line.startswith(":"):
                    continue

                field, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if field != "data":
                    continue

                event_bytes += len(raw_line)
                if event_bytes > self._max_event_bytes:
                    await self._drop_oversized(state, event_bytes)
                    data_lines = []
                    oversized = True
                    continue
                data_lines.append(value)

            if not skip_line:
                limit = self._max_event_bytes if oversized else self._max_event_bytes - event_bytes
                if len(buffer) > limit:
                    if not oversized:
                        await self._drop_oversized(state, event_bytes + len(buffer))
                    data_lines = []
                    oversized = True
                    skip_line = True
            if skip_line:
                buffer.clear()

    async def _drop_oversized(self, state: PairState, size: int) -> None:
        await self._emit_failure(
            state,
            MalformedPayloadError(
                message=f"Event exceeds {self._max_event_bytes} bytes ({size}+ read), dropped",
                source_name=self.name,
                pair_key=state.pair.key,
            ),
        )

    async def _dispatch(self, state: PairState, data: str) -> None:
        try:
            payload = ProviderPayload.from_json(
                json.loads(data),
                source_name=self.name,
                pair_key=state.pair.key,
            )
        except json.JSONDecodeError as e:
            await self._emit_failure(
                state,
                MalformedPayloadError(
                    message="Event data is not valid JSON",
                    source_name=self.name,
                    pair_key=state.pair.key,
                    raw_data=data,
                    original_error=e,
                ),
            )
            return
        except MalformedPayloadError as e:
            await self._emit_failure(state, e)
            return

        await self._emit_payload(state, payload)
