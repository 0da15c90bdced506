"""
Base Feed Connector - Abstract per-pair monitoring for all transports.

All connectors MUST implement this interface to ensure:
- Isolation (one pair's failure never affects another)
- Replaceability (polling and push are interchangeable)
- Fail-safety (transport errors never reach the caller)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

import aiohttp

from core.clock import ClockProtocol, SystemClock
from data_sources.exceptions import DataSourceError
from data_sources.models import (
    ConnectorCrashed,
    ConnectorMetrics,
    FeedEvent,
    FeedFailure,
    FeedUpdate,
    MonitoredPair,
    PairIdentity,
    PairStatus,
    ProviderPayload,
    pair_key,
)


@dataclass
class PairState:
    """Per-pair connector bookkeeping; lives while the pair is monitored."""
    pair: MonitoredPair
    task: Optional[asyncio.Task] = None
    connected: bool = False
    reconnect_attempts: int = 0
    last_update_at: Optional[datetime] = None
    last_error: Optional[str] = None


PairRef = Union[MonitoredPair, PairIdentity, str]


class BaseFeedConnector(ABC):
    """
    Abstract base class for feed connectors.

    Each connector implementation must:
    1. Implement name - provider/transport identifier
    2. Implement _run_pair() - the long-running loop for one pair

    The base class provides:
    - One asyncio task per monitored pair
    - Idempotent start, no-op stop for unknown pairs
    - Event emission onto the shared queue
    - HTTP session management
    """

    DEFAULT_TIMEOUT = 15.0

    def __init__(
        self,
        events: "asyncio.Queue[FeedEvent]",
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._events = events
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._clock = clock or SystemClock()

        self._pairs: dict[str, PairState] = {}
        self._metrics = ConnectorMetrics()
        self._logger = logging.getLogger(f"feed.{self.transport}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this connector."""
        pass

    @property
    @abstractmethod
    def transport(self) -> str:
        """Transport strategy name (poll, sse)."""
        pass

    @abstractmethod
    async def _run_pair(self, state: PairState) -> None:
        """
        Monitor one pair until cancelled.

        Implementations catch their own transport errors and report
        them with _emit_failure(); they return only when they give up
        on the pair.
        """
        pass

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def start_pair(self, pair: MonitoredPair) -> None:
        """
        Begin monitoring a pair.

        A pair that is already monitored is left alone.
        """
        key = pair.key
        if key in self._pairs:
            self._logger.warning(f"Pair {pair} is already being monitored")
            return

        self._logger.info(f"Starting {self.transport} feed for {pair}")
        state = PairState(pair=pair)
        self._pairs[key] = state
        state.task = asyncio.create_task(
            self._guarded_run(state),
            name=f"{self.name}:{key}",
        )

    async def stop_pair(self, pair: PairRef) -> None:
        """Stop monitoring a pair and release its task. No-op if not monitored."""
        key = self._resolve_key(pair)
        state = self._pairs.pop(key, None)
        if state is None:
            self._logger.debug(f"Pair {key} is not monitored")
            return

        await self._cancel_task(state)
        state.connected = False
        self._logger.info(f"Stopped {self.transport} feed for {key}")

    async def stop_all(self) -> None:
        """Stop every monitored pair."""
        if self._pairs:
            self._logger.info(f"Stopping all {self.transport} feeds ({len(self._pairs)} pairs)")
        for key in list(self._pairs):
            await self.stop_pair(key)

    async def close(self) -> None:
        """Stop all pairs and close resources."""
        await self.stop_all()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "BaseFeedConnector":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================
    # STATUS
    # =========================================================

    @property
    def events(self) -> "asyncio.Queue[FeedEvent]":
        """Queue every FeedEvent of this connector is pushed onto."""
        return self._events

    def is_monitoring(self, pair: PairRef) -> bool:
        return self._resolve_key(pair) in self._pairs

    def get_status(self) -> list[PairStatus]:
        """Status for every currently monitored pair."""
        return [
            PairStatus(
                key=key,
                label=state.pair.label,
                connected=state.connected,
                reconnect_attempts=state.reconnect_attempts,
                last_update_at=state.last_update_at,
                last_error=state.last_error,
            )
            for key, state in self._pairs.items()
        ]

    def get_metrics(self) -> dict[str, Any]:
        return {
            "connector": self.name,
            "monitored_pairs": len(self._pairs),
            "updates_emitted": self._metrics.updates_emitted,
            "failures_emitted": self._metrics.failures_emitted,
            "fatal_failures": self._metrics.fatal_failures,
            "empty_responses": self._metrics.empty_responses,
        }

    # =========================================================
    # EVENT EMISSION
    # =========================================================

    async def _emit_payload(self, state: PairState, payload: ProviderPayload) -> None:
        """Forward a payload downstream; empty result sets are only logged."""
        if payload.is_empty:
            self._metrics.empty_responses += 1
            self._logger.warning(f"No pair data found for {state.pair.key}")
            return

        state.last_update_at = self._clock.now()
        self._metrics.record_update(state.pair.key)
        await self._events.put(
            FeedUpdate(pair=state.pair, payload=payload, received_at=state.last_update_at)
        )

    async def _emit_failure(
        self,
        state: PairState,
        error: DataSourceError,
        fatal: bool = False,
    ) -> None:
        state.last_error = str(error)
        self._metrics.failures_emitted += 1
        if fatal:
            self._metrics.fatal_failures += 1
            self._logger.error(f"Giving up on {state.pair}: {error}")
        else:
            self._logger.warning(f"Feed error for {state.pair}: {error}")
        await self._events.put(FeedFailure(pair=state.pair, error=error, fatal=fatal))

    # =========================================================
    # INTERNALS
    # =========================================================

    async def _guarded_run(self, state: PairState) -> None:
        try:
            await self._run_pair(state)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.exception(f"Connector task for {state.pair} crashed")
            self._release(state)
            await self._events.put(ConnectorCrashed(pair=state.pair, exception=e))

    def _release(self, state: PairState) -> None:
        """Forget a pair from inside its own task."""
        state.connected = False
        if self._pairs.get(state.pair.key) is state:
            del self._pairs[state.pair.key]

    async def _cancel_task(self, state: PairState) -> None:
        task = state.task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    def _resolve_key(pair: PairRef) -> str:
        if isinstance(pair, str):
            return pair
        if isinstance(pair, MonitoredPair):
            return pair.key
        return pair_key(pair)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers=self._get_default_headers(),
            )
            self._owns_session = True
        return self._session

    def _get_default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": "dex-price-streamer/1.0",
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name}, pairs={len(self._pairs)})>"
