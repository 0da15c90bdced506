"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Wires the price pipeline together and owns its lifecycle.

- Starts one feed per configured pair
- Consumes feed events: normalize -> dedup -> publish -> digest
- Handles signals (SIGINT, SIGTERM)
- Shuts down gracefully with a final ledger flush

============================================================
ARCHITECTURAL POSITION
============================================================
- All mutable state lives on the PricePipeline instance
- Connectors report through an event queue, never by callback
- Classified errors are logged and absorbed at their boundary
- Anything else stops the pipeline (final flush included)
  and the process exits with status 1

============================================================
"""

import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.clock import ClockProtocol, SystemClock
from core.exceptions import ConfigurationError, PipelineError
from data_ingestion.deduplicator import DeduplicationGate
from data_ingestion.normalizers import MarketNormalizer
from data_ingestion.types import PriceRecord
from data_sources.base import BaseFeedConnector
from data_sources.models import (
    ConnectorCrashed,
    FeedEvent,
    FeedFailure,
    FeedUpdate,
    MonitoredPair,
)
from data_sources.providers import create_connector
from ledger.batch_publisher import BatchPublisher
from ledger.client import DryRunLedgerClient, HttpLedgerClient, LedgerClient
from monitoring.digest import DigestSink, LatestPriceBook
from monitoring.status_reporter import StatusReporter

from .models import PipelineConfig


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging.

    Args:
        level: Log level
        log_format: Output format (json or text)
        correlation_id: Correlation ID for tracing

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
                "correlation_id": correlation_id or "",
            })
        )
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or ''} | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


def new_correlation_id(prefix: str = "run") -> str:
    return f"{prefix}_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"


# ============================================================
# PRICE PIPELINE
# ============================================================

class PricePipeline:
    """
    Feed -> Normalizer -> Gate -> Publisher, for every configured pair.

    Components can be injected for testing; anything not supplied is
    built from the config. An injected connector brings its own event
    queue.
    """

    def __init__(
        self,
        config: PipelineConfig,
        connector: Optional[BaseFeedConnector] = None,
        ledger: Optional[LedgerClient] = None,
        clock: Optional[ClockProtocol] = None,
        digest_sink: Optional[DigestSink] = None,
    ) -> None:
        errors = config.validate()
        if errors:
            raise ConfigurationError(
                message=f"Invalid configuration: {'; '.join(errors)}",
                context={"errors": errors},
            )

        self._config = config
        self._clock = clock or SystemClock()
        self._logger = logging.getLogger("orchestrator")

        if connector is None:
            connector = create_connector(
                config.transport,
                asyncio.Queue(),
                poll_interval_ms=config.poll_interval_ms,
                base_url=config.provider_base_url,
                stream_url=config.provider_stream_url,
                timeout=config.fetch_timeout_seconds,
                idle_timeout=config.stream_idle_timeout_seconds,
                reconnect_interval_ms=config.reconnect_interval_ms,
                max_reconnect_attempts=config.max_reconnect_attempts,
                max_reconnect_delay_ms=config.max_reconnect_delay_ms or None,
                clock=self._clock,
            )
        self._connector = connector
        self._events: "asyncio.Queue[FeedEvent]" = connector.events

        if ledger is None:
            if config.dry_run:
                ledger = DryRunLedgerClient()
            else:
                ledger = HttpLedgerClient(
                    url=config.ledger_url,
                    api_key=config.ledger_api_key,
                    timeout=config.ledger_timeout_seconds,
                )
        self._ledger = ledger

        self._normalizer = MarketNormalizer(config.result_selection, clock=self._clock)
        self._gate = DeduplicationGate(
            min_update_interval_ms=config.min_update_interval_ms,
            price_change_threshold=config.price_change_threshold,
            clock=self._clock,
        )
        self._publisher = BatchPublisher(
            ledger=self._ledger,
            schema_id=config.ledger_schema_id or "dry-run",
            batch_size=config.batch_size,
            batch_interval_ms=config.batch_interval_ms,
            retry_policy=config.retry_policy(),
            clock=self._clock,
        )
        self._status_reporter = StatusReporter(
            self._connector,
            self._publisher,
            interval_seconds=config.status_interval_seconds,
        )
        self._digest_sink = digest_sink or LatestPriceBook(clock=self._clock)

        self._consumer_task: Optional[asyncio.Task] = None
        self._publisher_watch: Optional[asyncio.Task] = None
        self._stop_requested = asyncio.Event()
        self._running = False
        self._stopped = False
        self._exit_code = 0
        self._failed_pairs: Dict[str, str] = {}

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def connector(self) -> BaseFeedConnector:
        return self._connector

    @property
    def publisher(self) -> BatchPublisher:
        return self._publisher

    @property
    def gate(self) -> DeduplicationGate:
        return self._gate

    @property
    def digest_sink(self) -> DigestSink:
        return self._digest_sink

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def exit_code(self) -> int:
        return self._exit_code

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start every pair, the event consumer and the status reporter."""
        if self._running:
            self._logger.warning("Pipeline already running")
            return

        self._logger.info("=== PRICE PIPELINE STARTUP ===")
        self._logger.info(
            f"Transport: {self._config.transport.value}, "
            f"pairs: {len(self._config.pairs)}, "
            f"dry run: {self._config.dry_run}"
        )

        self._consumer_task = asyncio.create_task(self._consume(), name="feed-consumer")
        self._publisher_watch = asyncio.create_task(
            self._watch_publisher(), name="publisher-watch"
        )
        for pair in self._config.pairs:
            await self._connector.start_pair(pair)
        self._status_reporter.start()

        self._running = True
        self._logger.info("=== PRICE PIPELINE RUNNING ===")

    async def run(self) -> int:
        """
        Run until a stop is requested, then shut down.

        Returns:
            Exit code (0 on a requested stop, 1 after an unexpected error)
        """
        self._install_signal_handlers()
        try:
            await self.start()
            await self._stop_requested.wait()
        finally:
            await self.stop()
            self._restore_signal_handlers()
        return self._exit_code

    def request_stop(self, exit_code: Optional[int] = None) -> None:
        if exit_code is not None:
            self._exit_code = max(self._exit_code, exit_code)
        self._stop_requested.set()

    async def stop(self) -> None:
        """
        Stop gracefully.

        Stops all feeds, processes events already queued, then drains
        the publisher within shutdown_timeout_seconds.
        """
        if self._stopped:
            return
        self._stopped = True

        self._logger.info("=== PRICE PIPELINE SHUTDOWN ===")

        await self._status_reporter.stop()
        if self._publisher_watch is not None:
            self._publisher_watch.cancel()
        await self._connector.stop_all()

        if self._consumer_task is not None and not self._consumer_task.done():
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
        self._drain_events()

        drained = await self._publisher.shutdown(timeout=self._config.shutdown_timeout_seconds)
        if not drained:
            self._logger.error(
                f"{self._publisher.pending_count()} records were not written before shutdown"
            )

        await self._connector.close()
        await self._ledger.close()

        self._running = False
        self._stop_requested.set()
        self._logger.info("=== PRICE PIPELINE STOPPED ===")

    async def restart_pair(self, pair: MonitoredPair) -> None:
        """Resume monitoring a pair, typically after a fatal feed failure."""
        self._failed_pairs.pop(pair.key, None)
        await self._connector.start_pair(pair)

    # --------------------------------------------------------
    # Event handling
    # --------------------------------------------------------

    def process_update(self, update: FeedUpdate) -> Optional[PriceRecord]:
        """
        Run one feed update through normalize -> gate -> publish.

        Returns:
            The accepted record, or None if it was dropped
        """
        pair = update.pair
        record = self._normalizer.normalize(pair, update.payload)
        if record is None:
            self._logger.debug(f"No usable price in update for {pair}")
            return None

        previous = self._gate.cache_entry(pair.key)
        if not self._gate.should_accept(pair.key, record):
            return None

        if not self._publisher.enqueue(pair, record):
            # Not published, so it must not become the dedup baseline
            self._gate.revert(pair.key, previous)
            self._logger.warning(f"Update for {pair} was not queued for the ledger, dropped")
            return None

        self._logger.info(
            f"Accepted {record.pair_label} on {record.chain}: "
            f"${record.price_usd_float:.6f} ({record.change_24h_percent:+.2f}% 24h)"
        )
        self._notify_digest(pair, record)
        return record

    def handle_failure(self, failure: FeedFailure) -> None:
        if failure.fatal:
            self._failed_pairs[failure.pair.key] = str(failure.error)
            self._logger.error(
                f"Monitoring stopped for {failure.pair}: {failure.error.to_log_format()}"
            )
        else:
            self._logger.warning(f"Feed failure for {failure.pair}: {failure.error.to_log_format()}")

    def _dispatch(self, event: FeedEvent) -> None:
        if isinstance(event, FeedUpdate):
            self.process_update(event)
        elif isinstance(event, FeedFailure):
            self.handle_failure(event)
        elif isinstance(event, ConnectorCrashed):
            self._logger.error(
                f"Feed for {event.pair} crashed, stopping pipeline",
                exc_info=event.exception,
            )
            self.request_stop(exit_code=1)
        else:
            raise TypeError(f"Unknown feed event: {event!r}")

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()
            if not self._handle_event(event):
                return

    def _drain_events(self) -> None:
        while not self._events.empty():
            if not self._handle_event(self._events.get_nowait()):
                return

    def _handle_event(self, event: FeedEvent) -> bool:
        """Dispatch one event; False once the pipeline must stop."""
        try:
            self._dispatch(event)
        except PipelineError as e:
            self._logger.error(f"Error handling feed event: {e.to_log_format()}")
        except Exception:
            self._logger.exception("Unexpected error handling feed event, stopping pipeline")
            self.request_stop(exit_code=1)
            return False
        return True

    async def _watch_publisher(self) -> None:
        error = await self._publisher.wait_for_crash()
        self._logger.error("Ledger publisher crashed, stopping pipeline", exc_info=error)
        self.request_stop(exit_code=1)

    def _notify_digest(self, pair: MonitoredPair, record: PriceRecord) -> None:
        try:
            self._digest_sink.record(pair, record)
        except Exception:
            self._logger.exception(f"Digest sink failed for {pair}")

    # --------------------------------------------------------
    # Status
    # --------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        status = self._status_reporter.build_status()
        status.update({
            "running": self._running,
            "transport": self._config.transport.value,
            "failed_pairs": dict(self._failed_pairs),
            "connector": self._connector.get_metrics(),
            "normalizer": self._normalizer.metrics.to_dict(),
            "gate": {**self._gate.metrics.to_dict(), "tracked_pairs": self._gate.size()},
            "publisher": self._publisher.get_metrics(),
        })
        return status

    # --------------------------------------------------------
    # Signal Handling
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        if sys.platform == "win32":
            # No loop signal handlers on Windows
            signal.signal(
                signal.SIGINT,
                lambda s, f: loop.call_soon_threadsafe(self._on_signal, s),
            )
        else:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: self._on_signal(s))

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, signal.default_int_handler)
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: int) -> None:
        self._logger.info(f"Received signal {signal.Signals(sig).name}, shutting down")
        self.request_stop()
