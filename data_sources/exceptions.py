"""
Data Source Exceptions - Custom exception hierarchy for feed connectors.

Every transport failure is caught at the connector boundary and turned
into a FeedFailure event; none of these escape start_pair()/stop_pair().
"""

from typing import Any, Optional

from core.exceptions import ErrorClassification, PipelineError, Severity


class DataSourceError(PipelineError):
    """Base exception for all market data provider errors."""

    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        pair_key: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
        **kwargs,
    ) -> None:
        context = dict(context or {})
        if source_name:
            context["source"] = source_name
        if pair_key:
            context["pair"] = pair_key
        super().__init__(message, context=context, cause=original_error, **kwargs)
        self.source_name = source_name
        self.pair_key = pair_key
        self.original_error = original_error

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.pair_key:
            parts.append(f"[pair={self.pair_key}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error!r})")
        return " ".join(parts)


class TransientFetchError(DataSourceError):
    """HTTP or stream failure talking to the provider; retried by poll or backoff."""

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        pair_key: Optional[str] = None,
        status_code: Optional[int] = None,
        request_url: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, pair_key, original_error, context)
        self.status_code = status_code
        self.request_url = request_url
        if status_code is not None:
            self.context["status_code"] = status_code

    def is_rate_limited(self) -> bool:
        """Check if error is due to rate limiting."""
        return self.status_code == 429

    def is_server_error(self) -> bool:
        """Check if error is server-side."""
        return self.status_code is not None and 500 <= self.status_code < 600


class MalformedPayloadError(DataSourceError):
    """A single message could not be parsed; it is dropped, the connection is kept."""

    default_severity = Severity.LOW
    default_classification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        pair_key: Optional[str] = None,
        raw_data: Optional[Any] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, source_name, pair_key, original_error)
        # Truncated, provider bodies can be large
        self.raw_data = str(raw_data)[:500] if raw_data is not None else None


class ReconnectLimitExceeded(DataSourceError):
    """Push connection for a pair failed too many times; monitoring for it stops."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        pair_key: Optional[str] = None,
        attempts: int = 0,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            source_name,
            pair_key,
            original_error,
            context={"attempts": attempts},
        )
        self.attempts = attempts
