"""
Ledger Retry Policy - How long to wait before re-flushing after a failed write.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    """
    Delay schedule for publisher retries.

    The defaults retry every 5 seconds forever. attempt is the number
    of retries already made since the last successful write.
    """
    delay_ms: float = 5000
    max_attempts: Optional[int] = None
    backoff_multiplier: float = 1.0
    max_delay_ms: Optional[float] = None

    def delay_for(self, attempt: int) -> Optional[float]:
        """Seconds to wait before retry number attempt + 1, or None when exhausted."""
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None

        delay_ms = self.delay_ms * (self.backoff_multiplier ** attempt)
        if self.max_delay_ms:
            delay_ms = min(delay_ms, self.max_delay_ms)
        return delay_ms / 1000.0

    def is_exhausted(self, attempt: int) -> bool:
        return self.delay_for(attempt) is None

    def validate(self) -> list[str]:
        errors = []
        if self.delay_ms < 0:
            errors.append("delay_ms must be >= 0")
        if self.max_attempts is not None and self.max_attempts < 0:
            errors.append("max_attempts must be >= 0")
        if self.backoff_multiplier < 1.0:
            errors.append("backoff_multiplier must be >= 1.0")
        if self.max_delay_ms is not None and self.max_delay_ms < 0:
            errors.append("max_delay_ms must be >= 0")
        return errors
