"""
Monitoring - Periodic Status Reporter.

============================================================
RESPONSIBILITY
============================================================
Logs a one-line health summary on a fixed cadence:

    Status: 2/3 pairs connected, 4 updates pending

Read-only: never changes connector or publisher state.

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from data_sources.base import BaseFeedConnector
from ledger.batch_publisher import BatchPublisher


logger = logging.getLogger("monitoring.status")


class StatusReporter:
    """Background task logging connector and publisher status."""

    DEFAULT_INTERVAL_SECONDS = 60.0

    def __init__(
        self,
        connector: BaseFeedConnector,
        publisher: BatchPublisher,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self._connector = connector
        self._publisher = publisher
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def build_status(self) -> Dict[str, Any]:
        pairs = self._connector.get_status()
        return {
            "pairs_total": len(pairs),
            "pairs_connected": sum(1 for p in pairs if p.connected),
            "pending_updates": self._publisher.pending_count(),
            "pairs": [p.to_dict() for p in pairs],
        }

    def log_status(self) -> Dict[str, Any]:
        status = self.build_status()
        logger.info(
            f"Status: {status['pairs_connected']}/{status['pairs_total']} pairs connected, "
            f"{status['pending_updates']} updates pending"
        )
        for pair in status["pairs"]:
            if not pair["connected"]:
                logger.info(
                    f"  {pair['label']} ({pair['key']}): disconnected, "
                    f"{pair['reconnect_attempts']} reconnect attempts"
                )
        return status

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="status-reporter")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.log_status()
