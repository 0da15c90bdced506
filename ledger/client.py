"""
Ledger Clients - Batched writes to the ledger service.

============================================================
RESPONSIBILITY
============================================================
Delivers a batch of encoded records in a single call and returns the
ledger's transaction identifier.

- HttpLedgerClient: JSON over HTTP to a ledger gateway
- DryRunLedgerClient: logs batches, writes nothing

Any failure (network, timeout, remote rejection) is raised as
LedgerWriteError; the caller decides whether to retry.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import aiohttp

from core.exceptions import MissingConfigError
from ledger.exceptions import LedgerWriteError


logger = logging.getLogger("ledger.client")


@dataclass(frozen=True)
class LedgerRecord:
    """One ledger write: key is the PairKey, payload the encoded record."""
    key: str
    schema_id: str
    payload: bytes

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.key,
            "schemaId": self.schema_id,
            "data": "0x" + self.payload.hex(),
        }


class LedgerClient(ABC):
    """Abstract ledger service client."""

    @abstractmethod
    async def write_batch(self, records: Sequence[LedgerRecord]) -> str:
        """
        Write all records in one call.

        Returns:
            Transaction identifier

        Raises:
            LedgerWriteError: If the write is not confirmed
        """
        pass

    async def close(self) -> None:
        """Release resources."""
        pass


class HttpLedgerClient(LedgerClient):
    """
    Ledger gateway client.

    POSTs {"records": [{"id", "schemaId", "data"}, ...]} and expects a
    2xx JSON body carrying txHash (or transactionId).
    """

    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        if not url:
            raise MissingConfigError("LEDGER_URL")
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
        return self._session

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def write_batch(self, records: Sequence[LedgerRecord]) -> str:
        batch_size = len(records)
        body = {"records": [record.to_json() for record in records]}
        session = await self._get_session()

        try:
            async with session.post(self._url, json=body, headers=self._headers()) as response:
                if not 200 <= response.status < 300:
                    text = await response.text()
                    raise LedgerWriteError(
                        message=f"Ledger rejected batch: HTTP {response.status}: {text[:200]}",
                        status_code=response.status,
                        batch_size=batch_size,
                    )

                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise LedgerWriteError(
                        message="Ledger response is not valid JSON",
                        status_code=response.status,
                        batch_size=batch_size,
                        original_error=e,
                    )

        except aiohttp.ClientError as e:
            raise LedgerWriteError(
                message="Ledger connection error",
                batch_size=batch_size,
                original_error=e,
            )
        except asyncio.TimeoutError as e:
            raise LedgerWriteError(
                message=f"Ledger write timed out after {self._timeout}s",
                batch_size=batch_size,
                original_error=e,
            )

        tx_id = None
        if isinstance(data, dict):
            tx_id = data.get("txHash") or data.get("transactionId")
        if not tx_id:
            raise LedgerWriteError(
                message="Ledger response has no transaction id",
                batch_size=batch_size,
            )
        return str(tx_id)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


class DryRunLedgerClient(LedgerClient):
    """Logs what would be written and returns a synthetic transaction id."""

    def __init__(self) -> None:
        self.batches: list[list[LedgerRecord]] = []

    async def write_batch(self, records: Sequence[LedgerRecord]) -> str:
        self.batches.append(list(records))
        tx_id = f"dry-run-{len(self.batches)}"
        logger.info(
            f"[dry-run] Would write {len(records)} records "
            f"({', '.join(r.key for r in records)}) as {tx_id}"
        )
        return tx_id
