"""
Ledger Exceptions - Errors raised while encoding or writing records.
"""

from typing import Any, Optional

from core.exceptions import ErrorClassification, PipelineError, Severity


class LedgerError(PipelineError):
    """Base exception for ledger-side failures."""

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, context=context, cause=original_error, **kwargs)
        self.original_error = original_error


class LedgerWriteError(LedgerError):
    """
    A batched write was not confirmed.

    Covers network errors, timeouts and remote rejection; the batch is
    re-queued and retried.
    """

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        batch_size: int = 0,
        original_error: Optional[BaseException] = None,
    ) -> None:
        context: dict[str, Any] = {"batch_size": batch_size}
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, original_error=original_error, context=context)
        self.status_code = status_code
        self.batch_size = batch_size


class EncodingError(LedgerError):
    """A record cannot be represented in the ledger wire format."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        pair_key: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        context = {"pair": pair_key} if pair_key else {}
        super().__init__(message, original_error=original_error, context=context)
        self.pair_key = pair_key
