"""Domain-level exception primitives with stable machine-readable codes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .services.error_classifier import StampingErrorType


@dataclass(eq=False)
class DomainError(Exception):
    """Use-case level error with stable code and HTTP mapping."""

    code: str
    http_status: int
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class RetryableStampingError(DomainError):
    """Raised back to the job queue so it redelivers the job with backoff."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "STAMPING_RETRYABLE",
        error_type: StampingErrorType | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code=code, http_status=503, message=message, details=details)
        self.error_type = error_type


class StampingLockRefused(DomainError):
    """Lock refused for a reason that another attempt cannot fix."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(
            code="STAMPING_LOCK_REFUSED",
            http_status=409,
            message=message,
            details={"reason": reason},
        )
        self.reason = reason


class StampingInputError(DomainError):
    """The document cannot be stamped as stored (missing XML, company, ...)."""

    error_type = StampingErrorType.VALIDATION

    def __init__(self, message: str, *, code: str = "STAMPING_INPUT_INVALID") -> None:
        super().__init__(code=code, http_status=422, message=message)


class CredentialsError(DomainError):
    """Signing certificate or PAC credentials are missing or no longer valid."""

    error_type = StampingErrorType.CERTIFICATE

    def __init__(self, message: str) -> None:
        super().__init__(code="SIGNING_CREDENTIALS_INVALID", http_status=422, message=message)


class StampNotPersistedError(DomainError):
    """The PAC issued a folio but the transaction that stores it failed."""

    error_type = StampingErrorType.UNKNOWN

    def __init__(self, message: str, *, folio: str) -> None:
        super().__init__(
            code="STAMP_NOT_PERSISTED",
            http_status=500,
            message=message,
            details={"folio": folio},
        )
        self.folio = folio
