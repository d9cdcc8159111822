"""Error taxonomy shared by the orchestration core and its external boundaries."""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    INVARIANT = "invariant"


class ErrorKind(str, Enum):
    MISSING_PARAMETERS = "missing_parameters"
    UNSUPPORTED_CONVERSION = "unsupported_conversion"
    CONNECTION_TIMEOUT = "connection_timeout"
    RATE_LIMITED = "rate_limited"
    CONNECTION_REFUSED = "connection_refused"
    NOT_FOUND = "not_found"
    QUOTA_EXHAUSTED = "quota_exhausted"
    ENGINE_ERROR = "engine_error"
    ABORTED = "aborted"
    INVALID_TRANSITION = "invalid_transition"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.MISSING_PARAMETERS: ErrorCategory.VALIDATION,
    ErrorKind.UNSUPPORTED_CONVERSION: ErrorCategory.VALIDATION,
    ErrorKind.CONNECTION_TIMEOUT: ErrorCategory.TRANSIENT,
    ErrorKind.RATE_LIMITED: ErrorCategory.TRANSIENT,
    ErrorKind.CONNECTION_REFUSED: ErrorCategory.PERMANENT,
    ErrorKind.NOT_FOUND: ErrorCategory.PERMANENT,
    ErrorKind.QUOTA_EXHAUSTED: ErrorCategory.PERMANENT,
    ErrorKind.ENGINE_ERROR: ErrorCategory.PERMANENT,
    ErrorKind.ABORTED: ErrorCategory.PERMANENT,
    ErrorKind.INVALID_TRANSITION: ErrorCategory.INVARIANT,
}


class LaminarError(RuntimeError):
    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    def to_payload(self) -> dict[str, str]:
        return {"error": self.kind.value, "reason": str(self), "category": self.category.value}


class JobValidationError(LaminarError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.MISSING_PARAMETERS, message)


class InvalidTransitionError(LaminarError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.INVALID_TRANSITION, message)


class UnsupportedConversionError(LaminarError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.UNSUPPORTED_CONVERSION, message)


class QuotaExhaustedError(LaminarError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.QUOTA_EXHAUSTED, message)


class EngineError(LaminarError):
    """Raised when a call into the external transfer engine fails."""


class NotFoundError(LaminarError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.NOT_FOUND, message)


class JobAbortedError(LaminarError):
    def __init__(self, message: str = "aborted") -> None:
        super().__init__(ErrorKind.ABORTED, message)


__all__ = [
    "EngineError",
    "ErrorCategory",
    "ErrorKind",
    "InvalidTransitionError",
    "JobAbortedError",
    "JobValidationError",
    "LaminarError",
    "NotFoundError",
    "QuotaExhaustedError",
    "UnsupportedConversionError",
]
