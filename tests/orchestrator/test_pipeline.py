"""
Tests for the price pipeline.

============================================================
PURPOSE
============================================================
- Feed update -> normalize -> gate -> publish -> digest
- Failure events are absorbed
- Unclassified errors stop the pipeline with exit code 1,
  after a final flush
- Shutdown drains queued events and pending records

============================================================
"""

import asyncio
import dataclasses
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from core.clock import MockClock
from core.exceptions import ConfigurationError
from data_ingestion.types import price_to_fixed_point
from data_sources.base import BaseFeedConnector, PairState
from data_sources.exceptions import ReconnectLimitExceeded, TransientFetchError
from data_sources.models import (
    ConnectorCrashed,
    FeedFailure,
    FeedUpdate,
    MonitoredPair,
    ProviderPayload,
)
from ledger.client import DryRunLedgerClient, LedgerClient
from ledger.encoder import decode_price_record
from monitoring.digest import LatestPriceBook
from orchestrator.core import PricePipeline
from orchestrator.models import PipelineConfig


# ============================================================
# HELPERS
# ============================================================

class UnreachableLedger(LedgerClient):
    """Ledger whose transport fails outside the ledger error hierarchy."""

    def __init__(self) -> None:
        self.calls = 0

    async def write_batch(self, records) -> str:
        self.calls += 1
        raise ConnectionError("socket closed")


class QuietConnector(BaseFeedConnector):
    """Connector that never fetches; tests push events directly."""

    @property
    def name(self) -> str:
        return "quiet"

    @property
    def transport(self) -> str:
        return "quiet"

    async def _run_pair(self, state: PairState) -> None:
        state.connected = True
        await asyncio.Event().wait()


def update_for(pair: MonitoredPair, price: str, clock: MockClock) -> FeedUpdate:
    payload = ProviderPayload(results=({
        "chainId": pair.chain,
        "pairAddress": pair.address,
        "baseToken": {"symbol": "WETH"},
        "quoteToken": {"symbol": "USDC"},
        "priceUsd": price,
        "priceChange": {"h24": 1.5},
    },))
    return FeedUpdate(pair=pair, payload=payload, received_at=clock.now())


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def pair():
    return MonitoredPair("ethereum", "0xabc", "WETH/USDC")


@pytest.fixture
def clock():
    return MockClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def config(pair):
    return PipelineConfig(
        pairs=[pair],
        dry_run=True,
        min_update_interval_ms=1000,
        price_change_threshold=0.001,
        batch_size=10,
        batch_interval_ms=60_000,
        shutdown_timeout_seconds=2.0,
    )


@pytest.fixture
def ledger():
    return DryRunLedgerClient()


@pytest.fixture
def pipeline(config, ledger, clock):
    return PricePipeline(
        config,
        connector=QuietConnector(asyncio.Queue(), clock=clock),
        ledger=ledger,
        clock=clock,
    )


def written_prices(ledger: DryRunLedgerClient) -> list:
    return [
        decode_price_record(record.payload).price_usd
        for batch in ledger.batches
        for record in batch
    ]


# ============================================================
# CONSTRUCTION
# ============================================================

class TestConstruction:

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError):
            PricePipeline(PipelineConfig())

    def test_builds_default_components(self, config):
        pipeline = PricePipeline(config)

        assert pipeline.connector.transport == "poll"
        assert isinstance(pipeline.digest_sink, LatestPriceBook)


# ============================================================
# UPDATE PROCESSING
# ============================================================

class TestProcessUpdate:
    """Tests for the normalize -> gate -> publish path."""

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, pipeline, pair, clock, ledger):
        """100.00, then 100.02 two seconds later, then 100.50 three seconds later."""
        accepted = []

        accepted.append(pipeline.process_update(update_for(pair, "100.00", clock)))
        await pipeline.publisher.flush()

        clock.advance(2)
        accepted.append(pipeline.process_update(update_for(pair, "100.02", clock)))
        await pipeline.publisher.flush()

        clock.advance(3)
        accepted.append(pipeline.process_update(update_for(pair, "100.50", clock)))
        await pipeline.publisher.flush()

        assert [r is not None for r in accepted] == [True, False, True]
        assert written_prices(ledger) == [
            price_to_fixed_point(100.00),
            price_to_fixed_point(100.50),
        ]
        assert len(ledger.batches) == 2
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_record_keyed_by_pair(self, pipeline, pair, clock, ledger):
        pipeline.process_update(update_for(pair, "1.0", clock))
        await pipeline.publisher.flush()

        [[record]] = ledger.batches
        assert record.key == "ethereum:0xabc"
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_accepted_record_reaches_digest(self, pipeline, pair, clock):
        pipeline.process_update(update_for(pair, "2500.5", clock))

        snapshot = pipeline.digest_sink.get(pair.key)
        assert snapshot.pair_label == "WETH/USDC"
        assert snapshot.price_usd == 2500.5
        assert snapshot.change_24h == 1.5
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_unpublishable_record_is_not_a_baseline(self, pipeline, pair, clock, ledger):
        pipeline.process_update(update_for(pair, "100.00", clock))
        clock.advance(2)

        assert pipeline.process_update(update_for(pair, "-5", clock)) is None

        assert pipeline.gate.cached_price(pair.key) == price_to_fixed_point(100.00)
        assert pipeline.digest_sink.get(pair.key).price_usd == 100.0
        assert pipeline.gate.metrics.accepted == 1

        accepted = pipeline.process_update(update_for(pair, "100.05", clock))
        assert accepted is None
        await pipeline.stop()
        assert written_prices(ledger) == [price_to_fixed_point(100.00)]

    @pytest.mark.asyncio
    async def test_unpublishable_first_record_leaves_pair_unseen(self, pipeline, pair, clock):
        assert pipeline.process_update(update_for(pair, "-5", clock)) is None

        assert pipeline.gate.size() == 0
        assert pipeline.digest_sink.get(pair.key) is None
        assert pipeline.process_update(update_for(pair, "5", clock)) is not None
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_payload_without_price_is_dropped(self, pipeline, pair, clock):
        update = FeedUpdate(pair=pair, payload=ProviderPayload(results=({},)), received_at=clock.now())

        assert pipeline.process_update(update) is None
        assert pipeline.publisher.pending_count() == 0
        await pipeline.stop()


# ============================================================
# EVENT LOOP
# ============================================================

class TestEventHandling:
    """Tests for the event consumer and lifecycle."""

    @pytest.mark.asyncio
    async def test_events_flow_through_consumer(self, pipeline, pair, clock, ledger):
        await pipeline.start()
        await pipeline.connector.events.put(update_for(pair, "10.0", clock))
        await asyncio.sleep(0.01)

        assert pipeline.publisher.pending_count() == 1
        await pipeline.stop()
        assert written_prices(ledger) == [price_to_fixed_point(10.0)]

    @pytest.mark.asyncio
    async def test_stop_drains_queued_events(self, pipeline, pair, clock, ledger):
        await pipeline.start()
        pipeline.connector.events.put_nowait(update_for(pair, "10.0", clock))

        await pipeline.stop()

        assert written_prices(ledger) == [price_to_fixed_point(10.0)]
        assert pipeline.connector.get_status() == []

    @pytest.mark.asyncio
    async def test_failures_are_absorbed(self, pipeline, pair):
        await pipeline.start()
        events = pipeline.connector.events
        await events.put(FeedFailure(pair=pair, error=TransientFetchError("HTTP 502", pair_key=pair.key)))
        await events.put(FeedFailure(
            pair=pair,
            error=ReconnectLimitExceeded("gave up", pair_key=pair.key, attempts=10),
            fatal=True,
        ))
        await asyncio.sleep(0.01)

        status = pipeline.get_status()
        assert pipeline.is_running
        assert list(status["failed_pairs"]) == [pair.key]
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_start_twice_warns(self, pipeline):
        await pipeline.start()
        await pipeline.start()
        assert len(pipeline.connector.get_status()) == 1
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_status(self, pipeline):
        await pipeline.start()
        await asyncio.sleep(0.01)

        status = pipeline.get_status()

        assert status["pairs_total"] == 1
        assert status["pairs_connected"] == 1
        assert status["gate"]["tracked_pairs"] == 0
        assert status["publisher"]["pending"] == 0
        await pipeline.stop()


class TestUnexpectedErrors:
    """Programming errors stop the pipeline after a final flush."""

    @pytest.mark.asyncio
    async def test_connector_crash_exits_1(self, pipeline, pair):
        runner = asyncio.create_task(pipeline.run())
        await asyncio.sleep(0.01)

        await pipeline.connector.events.put(ConnectorCrashed(pair=pair, exception=RuntimeError("bug")))

        assert await asyncio.wait_for(runner, timeout=2) == 1

    @pytest.mark.asyncio
    async def test_unclassified_error_flushes_then_exits_1(self, pipeline, pair, clock, ledger):
        runner = asyncio.create_task(pipeline.run())
        await asyncio.sleep(0.01)
        events = pipeline.connector.events

        await events.put(update_for(pair, "10.0", clock))
        await asyncio.sleep(0.01)

        with patch.object(pipeline._normalizer, "normalize", side_effect=KeyError("boom")):
            await events.put(update_for(pair, "20.0", clock))
            code = await asyncio.wait_for(runner, timeout=2)

        assert code == 1
        assert written_prices(ledger) == [price_to_fixed_point(10.0)]

    @pytest.mark.asyncio
    async def test_requested_stop_exits_0(self, pipeline):
        runner = asyncio.create_task(pipeline.run())
        await asyncio.sleep(0.01)

        pipeline.request_stop()

        assert await asyncio.wait_for(runner, timeout=2) == 0
        assert not pipeline.is_running

    @pytest.mark.asyncio
    async def test_publisher_crash_stops_with_final_flush(self, config, pair, clock):
        ledger = UnreachableLedger()
        pipeline = PricePipeline(
            dataclasses.replace(config, batch_size=1),
            connector=QuietConnector(asyncio.Queue(), clock=clock),
            ledger=ledger,
            clock=clock,
        )
        runner = asyncio.create_task(pipeline.run())
        await asyncio.sleep(0.01)

        await pipeline.connector.events.put(update_for(pair, "10.0", clock))
        code = await asyncio.wait_for(runner, timeout=2)

        assert code == 1
        assert ledger.calls == 2
        assert pipeline.publisher.pending_keys() == [pair.key]
