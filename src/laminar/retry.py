"""Retry decisions and exponential backoff for failed dispatches."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ErrorKind

RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.CONNECTION_TIMEOUT, ErrorKind.RATE_LIMITED})


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    base_delay_ms: int = 1000
    max_delay_ms: int = 60_000
    max_attempts: int = 5

    def backoff_delay(self, attempt: int) -> int:
        """Delay in milliseconds before retrying after the given attempt."""

        exponent = max(attempt, 1) - 1
        # Past this point the cap always wins; skip the huge power.
        if exponent >= 63:
            return self.max_delay_ms
        return min(self.base_delay_ms * (2**exponent), self.max_delay_ms)

    def should_retry(self, error_kind: ErrorKind | str, attempts: int) -> bool:
        try:
            kind = ErrorKind(error_kind)
        except ValueError:
            return False
        if kind not in RETRYABLE_KINDS:
            return False
        return attempts < self.max_attempts


DEFAULT_POLICY = RetryPolicy()


def backoff_delay(attempt: int) -> int:
    return DEFAULT_POLICY.backoff_delay(attempt)


def should_retry(error_kind: ErrorKind | str, attempts: int) -> bool:
    return DEFAULT_POLICY.should_retry(error_kind, attempts)


__all__ = ["DEFAULT_POLICY", "RETRYABLE_KINDS", "RetryPolicy", "backoff_delay", "should_retry"]
