"""
Orchestrator - Models.

============================================================
RESPONSIBILITY
============================================================
Configuration for the price pipeline.

- PipelineConfig dataclass with defaults
- Loading from environment (.env supported)
- Validation returning a list of errors
- PAIRS list parsing

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from core.exceptions import InvalidConfigError
from data_ingestion.types import ResultSelection
from data_sources.models import FeedTransport, MonitoredPair
from data_sources.providers import PollingFeedConnector, StreamingFeedConnector
from ledger.retry import RetryPolicy


# ============================================================
# PAIRS PARSING
# ============================================================

def parse_pairs(value: str) -> List[MonitoredPair]:
    """
    Parse "chain:address:label,chain:address:label,...".

    The label is optional and defaults to the address. Blank entries
    are ignored.

    Raises:
        InvalidConfigError: On a malformed entry or a duplicate pair
    """
    pairs: List[MonitoredPair] = []
    seen: Dict[str, str] = {}

    for raw in value.split(","):
        entry = raw.strip()
        if not entry:
            continue

        parts = [p.strip() for p in entry.split(":")]
        if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
            raise InvalidConfigError("PAIRS", entry, "expected chain:address[:label]")

        chain, address = parts[0], parts[1]
        label = parts[2] if len(parts) == 3 and parts[2] else address
        pair = MonitoredPair(chain=chain, address=address, label=label)

        if pair.key in seen:
            raise InvalidConfigError("PAIRS", entry, f"duplicate of {seen[pair.key]}")
        seen[pair.key] = entry
        pairs.append(pair)

    return pairs


# ============================================================
# ENVIRONMENT HELPERS
# ============================================================

def load_environment(dotenv_path: Optional[str] = None) -> None:
    """Load a .env file into os.environ without overriding existing values."""
    load_dotenv(dotenv_path or find_dotenv(usecwd=True), override=False)


def _get_str(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key)
    return value.strip() if value is not None and value.strip() else default


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get_str(env, key, str(default))
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfigError(key, raw, "must be an integer")


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get_str(env, key, str(default))
    try:
        return float(raw)
    except ValueError:
        raise InvalidConfigError(key, raw, "must be a number")


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    return _get_str(env, key, "true" if default else "false").lower() in ("1", "true", "yes")


def _get_enum(env: Mapping[str, str], key: str, enum_cls: Any, default: Any) -> Any:
    raw = _get_str(env, key, default.value).lower()
    try:
        return enum_cls(raw)
    except ValueError:
        raise InvalidConfigError(key, raw, f"must be one of {[m.value for m in enum_cls]}")


# ============================================================
# PIPELINE CONFIG
# ============================================================

@dataclass
class PipelineConfig:
    """Price pipeline configuration."""

    pairs: List[MonitoredPair] = field(default_factory=list)

    # Feed
    transport: FeedTransport = FeedTransport.POLL
    poll_interval_ms: int = PollingFeedConnector.DEFAULT_POLL_INTERVAL_MS
    provider_base_url: str = PollingFeedConnector.BASE_URL
    provider_stream_url: str = StreamingFeedConnector.STREAM_URL
    fetch_timeout_seconds: float = 15.0
    stream_idle_timeout_seconds: float = 60.0
    reconnect_interval_ms: int = 5000
    max_reconnect_attempts: int = 10
    max_reconnect_delay_ms: int = 300_000

    # Normalization and dedup
    min_update_interval_ms: int = 1000
    price_change_threshold: float = 0.001
    result_selection: ResultSelection = ResultSelection.FIRST

    # Ledger
    ledger_url: Optional[str] = None
    ledger_api_key: Optional[str] = None
    ledger_schema_id: Optional[str] = None
    ledger_timeout_seconds: float = 30.0
    batch_size: int = 10
    batch_interval_ms: int = 5000
    publish_retry_delay_ms: int = 5000
    publish_retry_max_attempts: int = 0
    publish_retry_backoff: float = 1.0
    publish_retry_max_delay_ms: int = 0

    # Runtime
    status_interval_seconds: float = 60.0
    shutdown_timeout_seconds: float = 30.0
    log_level: str = "INFO"
    log_format: str = "text"
    dry_run: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        """
        Load configuration from environment variables.

        Raises:
            InvalidConfigError: If a value cannot be parsed
        """
        env = os.environ if env is None else env
        ledger_api_key = _get_str(env, "LEDGER_API_KEY", "")
        ledger_url = _get_str(env, "LEDGER_URL", "")
        ledger_schema_id = _get_str(env, "LEDGER_SCHEMA_ID", "")

        return cls(
            pairs=parse_pairs(env.get("PAIRS", "")),
            transport=_get_enum(env, "FEED_TRANSPORT", FeedTransport, FeedTransport.POLL),
            poll_interval_ms=_get_int(env, "POLL_INTERVAL_MS", 10000),
            provider_base_url=_get_str(env, "PROVIDER_BASE_URL", PollingFeedConnector.BASE_URL),
            provider_stream_url=_get_str(env, "PROVIDER_STREAM_URL", StreamingFeedConnector.STREAM_URL),
            fetch_timeout_seconds=_get_float(env, "FETCH_TIMEOUT_SECONDS", 15.0),
            stream_idle_timeout_seconds=_get_float(env, "STREAM_IDLE_TIMEOUT_SECONDS", 60.0),
            reconnect_interval_ms=_get_int(env, "RECONNECT_INTERVAL_MS", 5000),
            max_reconnect_attempts=_get_int(env, "MAX_RECONNECT_ATTEMPTS", 10),
            max_reconnect_delay_ms=_get_int(env, "MAX_RECONNECT_DELAY_MS", 300_000),
            min_update_interval_ms=_get_int(env, "MIN_UPDATE_INTERVAL_MS", 1000),
            price_change_threshold=_get_float(env, "PRICE_CHANGE_THRESHOLD", 0.001),
            result_selection=_get_enum(env, "RESULT_SELECTION", ResultSelection, ResultSelection.FIRST),
            ledger_url=ledger_url or None,
            ledger_api_key=ledger_api_key or None,
            ledger_schema_id=ledger_schema_id or None,
            ledger_timeout_seconds=_get_float(env, "LEDGER_TIMEOUT_SECONDS", 30.0),
            batch_size=_get_int(env, "BATCH_SIZE", 10),
            batch_interval_ms=_get_int(env, "BATCH_INTERVAL_MS", 5000),
            publish_retry_delay_ms=_get_int(env, "PUBLISH_RETRY_DELAY_MS", 5000),
            publish_retry_max_attempts=_get_int(env, "PUBLISH_RETRY_MAX_ATTEMPTS", 0),
            publish_retry_backoff=_get_float(env, "PUBLISH_RETRY_BACKOFF", 1.0),
            publish_retry_max_delay_ms=_get_int(env, "PUBLISH_RETRY_MAX_DELAY_MS", 0),
            status_interval_seconds=_get_float(env, "STATUS_INTERVAL_SECONDS", 60.0),
            shutdown_timeout_seconds=_get_float(env, "SHUTDOWN_TIMEOUT_SECONDS", 30.0),
            log_level=_get_str(env, "LOG_LEVEL", "INFO").upper(),
            log_format=_get_str(env, "LOG_FORMAT", "text").lower(),
            dry_run=_get_bool(env, "DRY_RUN", False),
        )

    def retry_policy(self) -> RetryPolicy:
        """Publisher retry policy; zero means unlimited / uncapped."""
        return RetryPolicy(
            delay_ms=self.publish_retry_delay_ms,
            max_attempts=self.publish_retry_max_attempts or None,
            backoff_multiplier=self.publish_retry_backoff,
            max_delay_ms=self.publish_retry_max_delay_ms or None,
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.pairs:
            errors.append("PAIRS must list at least one chain:address:label entry")

        if self.poll_interval_ms < 1:
            errors.append("poll_interval_ms must be at least 1")

        if self.fetch_timeout_seconds <= 0:
            errors.append("fetch_timeout_seconds must be positive")

        if self.stream_idle_timeout_seconds <= 0:
            errors.append("stream_idle_timeout_seconds must be positive")

        if self.reconnect_interval_ms < 0:
            errors.append("reconnect_interval_ms must be >= 0")

        if self.max_reconnect_attempts < 0:
            errors.append("max_reconnect_attempts must be >= 0")

        if self.max_reconnect_delay_ms < 0:
            errors.append("max_reconnect_delay_ms must be >= 0")

        if self.min_update_interval_ms < 0:
            errors.append("min_update_interval_ms must be >= 0")

        if self.price_change_threshold < 0:
            errors.append("price_change_threshold must be >= 0")

        if self.batch_size < 1:
            errors.append("batch_size must be at least 1")

        if self.batch_interval_ms < 1:
            errors.append("batch_interval_ms must be at least 1")

        if self.status_interval_seconds <= 0:
            errors.append("status_interval_seconds must be positive")

        if self.shutdown_timeout_seconds <= 0:
            errors.append("shutdown_timeout_seconds must be positive")

        if self.log_format not in ("json", "text"):
            errors.append("log_format must be json or text")

        if not self.dry_run:
            if not self.ledger_url:
                errors.append("LEDGER_URL is required unless dry-run is enabled")
            if not self.ledger_schema_id:
                errors.append("LEDGER_SCHEMA_ID is required unless dry-run is enabled")

        errors.extend(self.retry_policy().validate())
        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Loggable view; the API key is masked."""
        return {
            "pairs": [str(p) for p in self.pairs],
            "transport": self.transport.value,
            "poll_interval_ms": self.poll_interval_ms,
            "reconnect_interval_ms": self.reconnect_interval_ms,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "max_reconnect_delay_ms": self.max_reconnect_delay_ms,
            "min_update_interval_ms": self.min_update_interval_ms,
            "price_change_threshold": self.price_change_threshold,
            "result_selection": self.result_selection.value,
            "ledger_url": self.ledger_url,
            "ledger_api_key": "***" if self.ledger_api_key else None,
            "ledger_schema_id": self.ledger_schema_id,
            "batch_size": self.batch_size,
            "batch_interval_ms": self.batch_interval_ms,
            "dry_run": self.dry_run,
        }
