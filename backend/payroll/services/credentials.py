"""Signing credentials for a company, decrypted on demand."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from ..domain_errors import CredentialsError, StampingInputError
from ..models import Company

logger = logging.getLogger(__name__)

Decryptor = Callable[[str], str]


@dataclass(frozen=True)
class SigningCredentials:
    """Everything the stamping client needs to sign and submit for one company."""

    company_id: UUID
    rfc: str
    provider: str | None
    mode: str
    certificate_number: str | None = None
    pac_user: str | None = field(default=None, repr=False)
    pac_password: str | None = field(default=None, repr=False)
    certificate_cer: str | None = field(default=None, repr=False)
    certificate_key: str | None = field(default=None, repr=False)
    certificate_password: str | None = field(default=None, repr=False)

    @property
    def is_sandbox(self) -> bool:
        return self.mode != "production"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CompanyCredentialsProvider:
    """
    Reads a company's PAC account and certificate material.

    Secret columns are stored encrypted; ``decrypt`` is the key-management
    hook. Without one the stored values are passed through unchanged, which
    is only meant for sandbox data.
    """

    def __init__(
        self,
        db: Session,
        *,
        decrypt: Decryptor | None = None,
        now_utc: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.decrypt = decrypt
        self.now_utc = now_utc or (lambda: datetime.now(timezone.utc))

    def _reveal(self, value: str | None) -> str | None:
        if value is None or self.decrypt is None:
            return value
        return self.decrypt(value)

    def get_signing_credentials(self, company_id: UUID) -> SigningCredentials:
        company = self.db.query(Company).filter(Company.id == company_id).first()
        if company is None:
            raise StampingInputError(
                f"Company {company_id} not found",
                code="COMPANY_NOT_FOUND",
            )

        if company.certificate_valid_until is not None:
            if _as_utc(company.certificate_valid_until) < self.now_utc():
                raise CredentialsError(
                    f"Signing certificate for company {company.rfc} expired on "
                    f"{company.certificate_valid_until.date().isoformat()}"
                )

        if company.pac_mode == "production" and not (company.pac_user and company.pac_password):
            raise CredentialsError(f"PAC credentials are not configured for company {company.rfc}")

        # Never log the decrypted values.
        logger.debug(f"Loaded signing credentials for company {company.rfc} ({company.pac_mode})")
        return SigningCredentials(
            company_id=company.id,
            rfc=company.rfc,
            provider=company.pac_provider,
            mode=company.pac_mode,
            certificate_number=company.certificate_number,
            pac_user=self._reveal(company.pac_user),
            pac_password=self._reveal(company.pac_password),
            certificate_cer=self._reveal(company.certificate_cer),
            certificate_key=self._reveal(company.certificate_key),
            certificate_password=self._reveal(company.certificate_password),
        )
