"""
Tests for feed connectors.

============================================================
PURPOSE
============================================================
- Per-pair lifecycle (idempotent start, no-op stop)
- Polling fetch outcomes become events
- SSE stream parsing
- Reconnect backoff and the terminal failure

============================================================
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from aiohttp.http_exceptions import HttpProcessingError

from core.exceptions import InvalidConfigError
from data_sources.base import BaseFeedConnector, PairState
from data_sources.exceptions import (
    MalformedPayloadError,
    ReconnectLimitExceeded,
    TransientFetchError,
)
from data_sources.models import (
    ConnectorCrashed,
    FeedFailure,
    FeedUpdate,
    MonitoredPair,
    PairIdentity,
    ProviderPayload,
)
from data_sources.providers import (
    PollingFeedConnector,
    StreamingFeedConnector,
    compute_backoff_ms,
    create_connector,
)


# ============================================================
# HELPERS
# ============================================================

class IdleConnector(BaseFeedConnector):
    """Connector whose pair tasks just wait to be cancelled."""

    @property
    def name(self) -> str:
        return "idle"

    @property
    def transport(self) -> str:
        return "idle"

    async def _run_pair(self, state: PairState) -> None:
        state.connected = True
        await asyncio.Event().wait()


class CrashingConnector(IdleConnector):

    async def _run_pair(self, state: PairState) -> None:
        raise RuntimeError("bug")


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def mock_session(status=200, json_data=None, text="", get_side_effect=None, content=None):
    response = MagicMock()
    response.status = status
    response.content = content
    response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value=text)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    if get_side_effect is not None:
        session.get = MagicMock(side_effect=get_side_effect)
    else:
        session.get = MagicMock(return_value=context)
    return session


async def chunks_of(*chunks: bytes):
    for chunk in chunks:
        yield chunk


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def pair():
    return MonitoredPair("ethereum", "0xabc", "WETH/USDC")


@pytest.fixture
def events():
    return asyncio.Queue()


@pytest.fixture
def payload():
    return ProviderPayload.from_json({"pairs": [{"priceUsd": "100.0"}]})


# ============================================================
# LIFECYCLE
# ============================================================

class TestConnectorLifecycle:
    """Tests for start/stop semantics shared by all connectors."""

    @pytest.mark.asyncio
    async def test_start_pair_is_idempotent(self, events, pair):
        connector = IdleConnector(events)
        await connector.start_pair(pair)
        first_task = connector._pairs[pair.key].task

        await connector.start_pair(pair)

        assert connector._pairs[pair.key].task is first_task
        assert len(connector.get_status()) == 1
        await connector.close()

    @pytest.mark.asyncio
    async def test_stop_unknown_pair_is_noop(self, events):
        connector = IdleConnector(events)
        await connector.stop_pair(PairIdentity("solana", "nope"))
        assert connector.get_status() == []

    @pytest.mark.asyncio
    async def test_stop_pair_cancels_task(self, events, pair):
        connector = IdleConnector(events)
        await connector.start_pair(pair)
        task = connector._pairs[pair.key].task

        await connector.stop_pair(pair.identity)

        assert task.cancelled()
        assert not connector.is_monitoring(pair)

    @pytest.mark.asyncio
    async def test_stop_all(self, events):
        connector = IdleConnector(events)
        await connector.start_pair(MonitoredPair("ethereum", "0x1", "A/B"))
        await connector.start_pair(MonitoredPair("ethereum", "0x2", "C/D"))

        await connector.stop_all()

        assert connector.get_status() == []

    @pytest.mark.asyncio
    async def test_status_reports_connection(self, events, pair):
        connector = IdleConnector(events)
        await connector.start_pair(pair)
        await asyncio.sleep(0)

        [status] = connector.get_status()
        assert status.key == "ethereum:0xabc"
        assert status.connected is True
        assert status.reconnect_attempts == 0
        await connector.close()

    @pytest.mark.asyncio
    async def test_crash_is_reported_as_event(self, events, pair):
        connector = CrashingConnector(events)
        await connector.start_pair(pair)

        event = await asyncio.wait_for(events.get(), timeout=1)

        assert isinstance(event, ConnectorCrashed)
        assert isinstance(event.exception, RuntimeError)
        assert not connector.is_monitoring(pair)


class TestCreateConnector:

    def test_poll(self, events):
        assert isinstance(create_connector("poll", events), PollingFeedConnector)

    def test_sse(self, events):
        assert isinstance(create_connector("sse", events), StreamingFeedConnector)

    def test_unknown_transport(self, events):
        with pytest.raises(InvalidConfigError):
            create_connector("carrier-pigeon", events)


# ============================================================
# POLLING
# ============================================================

class TestPollingConnector:
    """Tests for the REST polling connector."""

    def test_url(self, events, pair):
        connector = PollingFeedConnector(events, base_url="https://example.test/pairs/")
        assert connector.url_for(pair) == "https://example.test/pairs/ethereum/0xabc"

    @pytest.mark.asyncio
    async def test_successful_poll_emits_update(self, events, pair, payload):
        connector = PollingFeedConnector(events)
        state = PairState(pair=pair)

        with patch.object(connector, "fetch_payload", AsyncMock(return_value=payload)):
            await connector.poll_once(state)

        [event] = drain(events)
        assert isinstance(event, FeedUpdate)
        assert event.pair == pair
        assert event.payload is payload
        assert state.connected is True
        assert state.last_update_at is not None

    @pytest.mark.asyncio
    async def test_failed_poll_emits_non_fatal_failure(self, events, pair):
        connector = PollingFeedConnector(events)
        state = PairState(pair=pair)
        error = TransientFetchError("HTTP 503", pair_key=pair.key, status_code=503)

        with patch.object(connector, "fetch_payload", AsyncMock(side_effect=error)):
            await connector.poll_once(state)
            await connector.poll_once(state)

        failures = drain(events)
        assert len(failures) == 2
        assert all(isinstance(f, FeedFailure) and not f.fatal for f in failures)
        assert state.connected is False
        assert state.reconnect_attempts == 2

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, events, pair, payload):
        connector = PollingFeedConnector(events)
        state = PairState(pair=pair, reconnect_attempts=3)

        with patch.object(connector, "fetch_payload", AsyncMock(return_value=payload)):
            await connector.poll_once(state)

        assert state.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_empty_result_is_not_forwarded(self, events, pair):
        connector = PollingFeedConnector(events)
        state = PairState(pair=pair)

        with patch.object(connector, "fetch_payload", AsyncMock(return_value=ProviderPayload())):
            await connector.poll_once(state)

        assert events.empty()
        assert connector.get_metrics()["empty_responses"] == 1

    @pytest.mark.asyncio
    async def test_fetch_payload_parses_body(self, events, pair):
        session = mock_session(json_data={"pairs": [{"priceUsd": "1.23"}]})
        connector = PollingFeedConnector(events, session=session)

        result = await connector.fetch_payload(pair)

        assert result.results == ({"priceUsd": "1.23"},)
        session.get.assert_called_once_with(
            "https://api.dexscreener.com/latest/dex/pairs/ethereum/0xabc"
        )

    @pytest.mark.asyncio
    async def test_fetch_payload_http_error(self, events, pair):
        connector = PollingFeedConnector(events, session=mock_session(status=503, text="down"))

        with pytest.raises(TransientFetchError) as exc_info:
            await connector.fetch_payload(pair)

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_fetch_payload_connection_error(self, events, pair):
        session = mock_session(get_side_effect=aiohttp.ClientConnectionError("refused"))
        connector = PollingFeedConnector(events, session=session)

        with pytest.raises(TransientFetchError):
            await connector.fetch_payload(pair)

    @pytest.mark.asyncio
    async def test_fetch_payload_timeout(self, events, pair):
        session = mock_session(get_side_effect=asyncio.TimeoutError())
        connector = PollingFeedConnector(events, session=session)

        with pytest.raises(TransientFetchError):
            await connector.fetch_payload(pair)

    @pytest.mark.asyncio
    async def test_fetch_payload_invalid_json(self, events, pair):
        session = mock_session()
        response = session.get.return_value.__aenter__.return_value
        response.json = AsyncMock(side_effect=ValueError("not json"))
        connector = PollingFeedConnector(events, session=session)

        with pytest.raises(MalformedPayloadError):
            await connector.fetch_payload(pair)

    @pytest.mark.asyncio
    async def test_polls_immediately_then_on_interval(self, events, pair, payload):
        connector = PollingFeedConnector(events, poll_interval_ms=20)
        fetch = AsyncMock(return_value=payload)

        with patch.object(connector, "fetch_payload", fetch):
            await connector.start_pair(pair)
            await asyncio.sleep(0.07)
            await connector.stop_pair(pair)

        assert fetch.await_count >= 2
        assert isinstance(events.get_nowait(), FeedUpdate)


# ============================================================
# SSE / BACKOFF
# ============================================================

class TestBackoff:
    """Tests for the reconnect delay schedule."""

    def test_doubles_per_attempt(self):
        assert [compute_backoff_ms(5000, n) for n in range(3)] == [5000, 10000, 20000]

    def test_ceiling(self):
        assert compute_backoff_ms(5000, 10, max_ms=300_000) == 300_000

    def test_no_ceiling(self):
        assert compute_backoff_ms(5000, 10, max_ms=None) == 5000 * 1024


class TestStreamingConnector:
    """Tests for the SSE push connector."""

    def test_url(self, events, pair):
        connector = StreamingFeedConnector(events)
        assert connector.url_for(pair) == "https://io.dexscreener.com/dex/sse/ethereum/0xabc"

    def test_next_reconnect_delay(self, events, pair):
        connector = StreamingFeedConnector(events, reconnect_interval_ms=5000)
        state = PairState(pair=pair)

        delays = []
        for attempt in range(3):
            state.reconnect_attempts = attempt
            delays.append(connector.next_reconnect_delay(state))

        assert delays == [5.0, 10.0, 20.0]

    def test_no_delay_once_limit_reached(self, events, pair):
        connector = StreamingFeedConnector(events, max_reconnect_attempts=10)
        state = PairState(pair=pair, reconnect_attempts=10)
        assert connector.next_reconnect_delay(state) is None

    @pytest.mark.asyncio
    async def test_gives_up_on_eleventh_failure(self, events, pair):
        connector = StreamingFeedConnector(
            events,
            reconnect_interval_ms=5000,
            max_reconnect_attempts=10,
            max_reconnect_delay_ms=None,
        )
        state = PairState(pair=pair)
        connector._pairs[pair.key] = state
        failing = AsyncMock(side_effect=TransientFetchError("refused", pair_key=pair.key))

        with patch.object(connector, "_consume_stream", failing), \
                patch("asyncio.sleep", new=AsyncMock()) as sleep:
            await connector._run_pair(state)

        assert failing.await_count == 11
        scheduled = [call.args[0] for call in sleep.await_args_list]
        assert scheduled == [5.0 * 2 ** n for n in range(10)]

        emitted = drain(events)
        fatal = [e for e in emitted if isinstance(e, FeedFailure) and e.fatal]
        assert len(emitted) == 12
        assert len(fatal) == 1
        assert isinstance(fatal[0].error, ReconnectLimitExceeded)
        assert emitted[-1] is fatal[0]
        assert not connector.is_monitoring(pair)

    @pytest.mark.asyncio
    async def test_open_resets_attempts(self, events, pair):
        connector = StreamingFeedConnector(events)
        state = PairState(pair=pair, reconnect_attempts=4)

        connector._mark_connected(state)

        assert state.connected is True
        assert state.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_read_events(self, events, pair):
        connector = StreamingFeedConnector(events)
        state = PairState(pair=pair)

        await connector._read_events(state, chunks_of(
            b": keep-alive\n",
            b"event: pair\n",
            b'data: {"pairs": [{"priceUsd": "1.5"}]}\n',
            b"\n",
            b"data: not json\n",
            b"\r\n",
            b'data: {"pairs":\n',
            b"data: []}\n",
            b"\n",
            b'data: {"pairs": [{"priceUsd": "9"}]}\n',
        ))

        emitted = drain(events)
        assert len(emitted) == 2
        assert isinstance(emitted[0], FeedUpdate)
        assert emitted[0].payload.results == ({"priceUsd": "1.5"},)
        assert isinstance(emitted[1], FeedFailure)
        assert isinstance(emitted[1].error, MalformedPayloadError)
        assert emitted[1].fatal is False
        assert connector.get_metrics()["empty_responses"] == 1

    @pytest.mark.asyncio
    async def test_lines_split_across_chunks(self, events, pair):
        connector = StreamingFeedConnector(events)
        state = PairState(pair=pair)

        await connector._read_events(state, chunks_of(
            b'da',
            b'ta: {"pairs": [{"price',
            b'Usd": "3.25"}]}\r\n\r',
            b'\n',
        ))

        [update] = drain(events)
        assert update.payload.results == ({"priceUsd": "3.25"},)

    @pytest.mark.asyncio
    async def test_oversized_event_is_dropped_and_stream_continues(self, events, pair):
        reader = aiohttp.StreamReader(MagicMock(), 2 ** 16, loop=asyncio.get_running_loop())
        reader.feed_data(b"data: " + b"x" * 300_000 + b"\n\n")
        reader.feed_data(b'data: {"pairs": [{"priceUsd": "2.5"}]}\n\n')
        reader.feed_eof()
        connector = StreamingFeedConnector(
            events,
            session=mock_session(content=reader),
            max_event_bytes=64 * 1024,
        )
        state = PairState(pair=pair)

        await connector._consume_stream(state)

        emitted = drain(events)
        assert [type(e) for e in emitted] == [FeedFailure, FeedUpdate]
        assert isinstance(emitted[0].error, MalformedPayloadError)
        assert emitted[0].fatal is False
        assert emitted[1].payload.results == ({"priceUsd": "2.5"},)
        assert state.connected is True

    @pytest.mark.asyncio
    async def test_oversized_multiline_event_is_dropped(self, events, pair):
        connector = StreamingFeedConnector(events, max_event_bytes=48)
        state = PairState(pair=pair)

        await connector._read_events(state, chunks_of(
            b"data: [1, 2, 3, 4, 5, 6, 7, 8, 9,\n",
            b"data: 10, 11, 12]\n",
            b"data: 13\n",
            b"\n",
            b'data: {"pairs": [{"priceUsd": "7"}]}\n\n',
        ))

        emitted = drain(events)
        assert [type(e) for e in emitted] == [FeedFailure, FeedUpdate]
        assert isinstance(emitted[0].error, MalformedPayloadError)

    @pytest.mark.asyncio
    async def test_protocol_error_is_transient_failure(self, events, pair):
        async def broken_chunks(size):
            raise HttpProcessingError(code=400, message="Got more than 8190 bytes when reading")
            yield b""

        content = MagicMock()
        content.iter_chunked = broken_chunks
        connector = StreamingFeedConnector(events, session=mock_session(content=content))
        state = PairState(pair=pair)

        with pytest.raises(TransientFetchError) as exc_info:
            await connector._consume_stream(state)

        assert exc_info.value.status_code == 400
        assert isinstance(exc_info.value.original_error, HttpProcessingError)

    @pytest.mark.asyncio
    async def test_rejected_stream_is_transient_failure(self, events, pair):
        connector = StreamingFeedConnector(events, session=mock_session(status=403))
        state = PairState(pair=pair)

        with pytest.raises(TransientFetchError) as exc_info:
            await connector._consume_stream(state)

        assert exc_info.value.status_code == 403
        assert state.connected is False
