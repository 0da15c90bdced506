"""
Data Source Models - Pair identity, provider payloads and feed events.

Connectors never call downstream code directly: they push FeedUpdate and
FeedFailure events onto a queue owned by the orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from core.clock import to_iso8601
from data_sources.exceptions import DataSourceError, MalformedPayloadError


class FeedTransport(Enum):
    """Supported transport strategies for a feed connector."""
    POLL = "poll"
    SSE = "sse"


# =============================================================
# PAIR IDENTITY
# =============================================================

@dataclass(frozen=True)
class PairIdentity:
    """A tradable pair identified by chain + on-chain address."""
    chain: str
    address: str

    @property
    def key(self) -> str:
        """Stable key used for caching and as the ledger record id."""
        return pair_key(self)


def pair_key(identity: PairIdentity) -> str:
    """
    Derive the PairKey for an identity.

    Pure function of (chain, address); the address is kept verbatim
    because some chains use case-sensitive encodings.
    """
    return f"{identity.chain}:{identity.address}"


@dataclass(frozen=True)
class MonitoredPair:
    """A configured pair with its human-readable label (e.g. SOL/USDC)."""
    chain: str
    address: str
    label: str

    @property
    def identity(self) -> PairIdentity:
        return PairIdentity(chain=self.chain, address=self.address)

    @property
    def key(self) -> str:
        return pair_key(self.identity)

    def __str__(self) -> str:
        return f"{self.label} ({self.key})"


# =============================================================
# PROVIDER PAYLOAD
# =============================================================

@dataclass(frozen=True)
class ProviderPayload:
    """
    Raw provider response for one pair query.

    The full result list is kept; choosing an entry is the
    normalizer's job.
    """
    results: tuple[dict[str, Any], ...] = ()
    schema_version: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return len(self.results) == 0

    @classmethod
    def from_json(
        cls,
        data: Any,
        source_name: Optional[str] = None,
        pair_key: Optional[str] = None,
    ) -> "ProviderPayload":
        """
        Build a payload from a decoded JSON body.

        Accepts {"schemaVersion": ..., "pairs": [...] | null} and the
        single-pair variant {"pair": {...}}.

        Raises:
            MalformedPayloadError: If the body does not have that shape
        """
        if not isinstance(data, dict):
            raise MalformedPayloadError(
                message=f"Expected JSON object, got {type(data).__name__}",
                source_name=source_name,
                pair_key=pair_key,
                raw_data=data,
            )

        raw_results = data.get("pairs")
        if raw_results is None and isinstance(data.get("pair"), dict):
            raw_results = [data["pair"]]
        if raw_results is None:
            raw_results = []

        if not isinstance(raw_results, list):
            raise MalformedPayloadError(
                message="Field 'pairs' must be a list or null",
                source_name=source_name,
                pair_key=pair_key,
                raw_data=data,
            )

        results = tuple(entry for entry in raw_results if isinstance(entry, dict))
        schema_version = data.get("schemaVersion")
        return cls(
            results=results,
            schema_version=str(schema_version) if schema_version is not None else None,
        )


# =============================================================
# FEED EVENTS
# =============================================================

@dataclass(frozen=True)
class FeedUpdate:
    """A provider payload received for a pair."""
    pair: MonitoredPair
    payload: ProviderPayload
    received_at: datetime


@dataclass(frozen=True)
class FeedFailure:
    """
    A connectivity or parse failure for a pair.

    fatal=True means the connector gave up on the pair and it is no
    longer monitored until started again.
    """
    pair: MonitoredPair
    error: DataSourceError
    fatal: bool = False


@dataclass(frozen=True)
class ConnectorCrashed:
    """A connector task died on an unclassified (programming) error."""
    pair: MonitoredPair
    exception: BaseException


FeedEvent = Union[FeedUpdate, FeedFailure, ConnectorCrashed]


# =============================================================
# STATUS
# =============================================================

@dataclass
class PairStatus:
    """Per-pair connector status snapshot."""
    key: str
    label: str
    connected: bool
    reconnect_attempts: int = 0
    last_update_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "connected": self.connected,
            "reconnect_attempts": self.reconnect_attempts,
            "last_update_at": to_iso8601(self.last_update_at) if self.last_update_at else None,
            "last_error": self.last_error,
        }


@dataclass
class ConnectorMetrics:
    """Aggregated counters for a connector."""
    updates_emitted: int = 0
    failures_emitted: int = 0
    fatal_failures: int = 0
    empty_responses: int = 0
    per_pair_updates: dict[str, int] = field(default_factory=dict)

    def record_update(self, key: str) -> None:
        self.updates_emitted += 1
        self.per_pair_updates[key] = self.per_pair_updates.get(key, 0) + 1
