"""
Ledger Batch Publisher.

============================================================
RESPONSIBILITY
============================================================
Delivers accepted PriceRecords to the ledger in batches.

- Keeps at most one pending entry per PairKey (latest value wins)
- Flushes when the batch is full or the batch timer fires
- At most one ledger write in flight at any time
- Failed writes are re-queued and retried per RetryPolicy

============================================================
FLUSH RULES
============================================================
1. flush() cancels the armed timer
2. Nothing pending -> no-op
3. A write already in flight -> no-op, timer re-armed
4. Otherwise the pending set is swapped out and written in one call
5. On failure the snapshot is merged back without overwriting
   entries that arrived during the write, and a retry is scheduled
6. Any other error also puts the snapshot back and is re-raised;
   from a background flush it is kept as the publisher's crash

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional, Set

from core.clock import ClockProtocol, SystemClock, to_iso8601
from data_ingestion.types import PriceRecord
from data_sources.models import MonitoredPair
from ledger.client import LedgerClient, LedgerRecord
from ledger.encoder import encode_price_record
from ledger.exceptions import EncodingError, LedgerError
from ledger.retry import RetryPolicy


logger = logging.getLogger("ledger.publisher")


@dataclass(frozen=True)
class PendingBatchEntry:
    """An encoded record waiting for the next flush."""
    key: str
    record: PriceRecord
    ledger_record: LedgerRecord
    enqueued_at: datetime


@dataclass
class PublisherMetrics:
    """Batch publisher counters."""
    enqueued: int = 0
    collapsed: int = 0
    encoding_failures: int = 0
    flushes: int = 0
    records_written: int = 0
    write_failures: int = 0
    retries_scheduled: int = 0
    last_tx_id: Optional[str] = None
    last_flush_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enqueued": self.enqueued,
            "collapsed": self.collapsed,
            "encoding_failures": self.encoding_failures,
            "flushes": self.flushes,
            "records_written": self.records_written,
            "write_failures": self.write_failures,
            "retries_scheduled": self.retries_scheduled,
            "last_tx_id": self.last_tx_id,
            "last_flush_at": to_iso8601(self.last_flush_at) if self.last_flush_at else None,
            "last_error": self.last_error,
        }


class BatchPublisher:
    """
    Batches records per PairKey and writes them to the ledger.

    enqueue() never waits on the ledger; writes run as background
    tasks on the current event loop.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        schema_id: str,
        batch_size: int = 10,
        batch_interval_ms: float = 5000,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._ledger = ledger
        self._schema_id = schema_id
        self._batch_size = batch_size
        self._batch_interval = batch_interval_ms / 1000.0
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or SystemClock()

        self._pending: Dict[str, PendingBatchEntry] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._retry_attempt = 0
        self._is_writing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._crash: Optional[BaseException] = None
        self._crashed = asyncio.Event()

        self._metrics = PublisherMetrics()

    # =========================================================
    # PUBLIC API
    # =========================================================

    def enqueue(self, pair: MonitoredPair, record: PriceRecord) -> bool:
        """
        Queue a record for the next flush.

        Returns:
            False if the record could not be encoded or the publisher is shut down
        """
        if self._closed:
            logger.warning(f"Publisher is shut down, dropping record for {pair.key}")
            return False

        try:
            payload = encode_price_record(record, pair_key=pair.key)
        except EncodingError as e:
            self._metrics.encoding_failures += 1
            logger.error(f"Dropping record for {pair.key}: {e.to_log_format()}")
            return False

        if pair.key in self._pending:
            self._metrics.collapsed += 1

        self._pending[pair.key] = PendingBatchEntry(
            key=pair.key,
            record=record,
            ledger_record=LedgerRecord(key=pair.key, schema_id=self._schema_id, payload=payload),
            enqueued_at=self._clock.now(),
        )
        self._metrics.enqueued += 1

        if len(self._pending) >= self._batch_size:
            self._spawn(self.flush())
        elif self._timer is None:
            self._arm_timer()
        return True

    async def flush(self) -> Optional[str]:
        """
        Write every pending entry in one ledger call.

        Returns:
            The transaction id, or None if nothing was written
        """
        self._cancel_timer()

        if not self._pending:
            return None

        if self._is_writing:
            logger.debug("Flush already in flight, re-arming batch timer")
            self._arm_timer()
            return None

        self._is_writing = True
        self._idle.clear()
        snapshot = self._pending
        self._pending = {}

        logger.info(f"Flushing {len(snapshot)} records to ledger")
        try:
            tx_id = await self._ledger.write_batch(
                [entry.ledger_record for entry in snapshot.values()]
            )
        except LedgerError as e:
            self._requeue(snapshot)
            self._metrics.write_failures += 1
            self._metrics.last_error = str(e)
            logger.error(f"Ledger write failed: {e.to_log_format()}")
            self._schedule_retry()
            return None
        except BaseException:
            # Cancellation or an unclassified error: keep the entries
            self._requeue(snapshot)
            raise
        finally:
            self._is_writing = False
            self._idle.set()

        self._retry_attempt = 0
        self._metrics.flushes += 1
        self._metrics.records_written += len(snapshot)
        self._metrics.last_tx_id = tx_id
        self._metrics.last_flush_at = self._clock.now()
        logger.info(f"Wrote {len(snapshot)} records, tx {tx_id}")
        return tx_id

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting records and drain the pending set.

        Waits for an in-flight write, runs a final flush and then any
        scheduled retries, until nothing is pending, retries are
        exhausted or timeout seconds have passed.

        Returns:
            True if nothing is left pending
        """
        self._closed = True
        self._cancel_timer()

        try:
            await asyncio.wait_for(self._drain(), timeout)
        except asyncio.TimeoutError:
            logger.error(f"Shutdown timed out with {len(self._pending)} records pending")
        except Exception:
            logger.exception("Final flush failed with an unexpected error")

        self._cancel_timer()
        self._cancel_retry()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._pending:
            logger.error(
                f"Publisher stopped with {len(self._pending)} unwritten records: "
                f"{', '.join(self._pending)}"
            )
            return False

        logger.info("Publisher drained")
        return True

    def pending_count(self) -> int:
        return len(self._pending)

    def pending_keys(self) -> list[str]:
        return list(self._pending)

    def pending_entry(self, key: str) -> Optional[PendingBatchEntry]:
        return self._pending.get(key)

    @property
    def is_writing(self) -> bool:
        return self._is_writing

    @property
    def has_retry_scheduled(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    @property
    def crash(self) -> Optional[BaseException]:
        """First unclassified error raised by a background flush, if any."""
        return self._crash

    async def wait_for_crash(self) -> BaseException:
        await self._crashed.wait()
        return self._crash

    @property
    def retries_exhausted(self) -> bool:
        return self._retry_policy.is_exhausted(self._retry_attempt)

    def get_metrics(self) -> Dict[str, Any]:
        data = self._metrics.to_dict()
        data["pending"] = len(self._pending)
        data["in_flight"] = self._is_writing
        data["retry_attempt"] = self._retry_attempt
        return data

    # =========================================================
    # INTERNALS
    # =========================================================

    def _requeue(self, snapshot: Dict[str, PendingBatchEntry]) -> None:
        # Entries enqueued during the write are newer and must win
        for key, entry in snapshot.items():
            self._pending.setdefault(key, entry)

    async def _drain(self) -> None:
        flushed = False
        while True:
            if self._is_writing:
                await self._idle.wait()
                continue

            if not self._pending:
                return

            if not flushed:
                flushed = True
                await self.flush()
                continue

            if not self.has_retry_scheduled:
                # Final flush failed and no retry is left
                return
            await asyncio.wait({self._retry_task})

    def _arm_timer(self) -> None:
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._batch_interval, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._spawn(self.flush())

    def _schedule_retry(self) -> None:
        if self.has_retry_scheduled:
            return

        delay = self._retry_policy.delay_for(self._retry_attempt)
        if delay is None:
            logger.error(
                f"Retry attempts exhausted after {self._retry_attempt} retries, "
                f"{len(self._pending)} records stay pending until the next flush"
            )
            return

        self._retry_attempt += 1
        self._metrics.retries_scheduled += 1
        logger.info(f"Retrying flush in {delay:.1f}s (retry {self._retry_attempt})")
        self._retry_task = asyncio.create_task(self._retry_after(delay))
        self._retry_task.add_done_callback(self._on_task_done)

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        await self.flush()

    def _cancel_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        self._retry_task = None

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background flush crashed", exc_info=error)
            if self._crash is None:
                self._crash = error
                self._crashed.set()
