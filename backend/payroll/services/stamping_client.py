"""PAC stamping client: one remote call per attempt, no internal retries."""
from __future__ import annotations

import logging
import random
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import requests

from ..config import settings
from .credentials import SigningCredentials
from .error_classifier import StampingErrorType

logger = logging.getLogger(__name__)

SANDBOX_SAT_CERTIFICATE_NUMBER = "00001000000504465028"
TFD_NAMESPACE = "http://www.sat.gob.mx/TimbreFiscalDigital"


class PacError(Exception):
    """Raised when the PAC rejects or cannot process a stamp request."""

    def __init__(self, message: str, *, error_type: StampingErrorType | None = None, status_code: int | None = None):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code


@dataclass(frozen=True)
class StampResult:
    folio: str
    stamped_at: datetime
    signed_xml: str
    sat_certificate_number: str | None = None
    sat_seal: str | None = None
    original_chain: str | None = None
    provider_response: dict[str, Any] = field(default_factory=dict)


class StampingClient(Protocol):
    def stamp(
        self,
        source_xml: str,
        credentials: SigningCredentials,
        *,
        idempotency_key: str | None = None,
    ) -> StampResult:
        ...


def _sandbox_seal(length: int = 88) -> str:
    alphabet = string.ascii_letters + string.digits + "+/"
    return "".join(random.choice(alphabet) for _ in range(length))


class PacClient:
    """
    Talks to the company's PAC.

    Sandbox companies (or a missing PAC_URL) get a simulated stamp so the
    pipeline can run end to end in development.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_seconds: int = settings.PAC_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url if base_url is not None else settings.PAC_URL
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def stamp(
        self,
        source_xml: str,
        credentials: SigningCredentials,
        *,
        idempotency_key: str | None = None,
    ) -> StampResult:
        if credentials.is_sandbox or not self.base_url:
            return self._simulate(source_xml)
        return self._post(source_xml, credentials, idempotency_key=idempotency_key)

    def _simulate(self, source_xml: str) -> StampResult:
        folio = str(uuid.uuid4()).upper()
        stamped_at = datetime.now(timezone.utc)
        stamped_iso = stamped_at.strftime("%Y-%m-%dT%H:%M:%S")
        sat_seal = _sandbox_seal()
        timbre = (
            "<cfdi:Complemento>"
            f'<tfd:TimbreFiscalDigital xmlns:tfd="{TFD_NAMESPACE}" Version="1.1" '
            f'UUID="{folio}" FechaTimbrado="{stamped_iso}" SelloCFD="SANDBOX" '
            f'NoCertificadoSAT="{SANDBOX_SAT_CERTIFICATE_NUMBER}" SelloSAT="{sat_seal}"/>'
            "</cfdi:Complemento>"
        )
        if "</cfdi:Comprobante>" in source_xml:
            signed_xml = source_xml.replace("</cfdi:Comprobante>", f"{timbre}</cfdi:Comprobante>")
        else:
            signed_xml = source_xml + timbre

        logger.info(f"🧪 Sandbox stamp issued: {folio}")
        return StampResult(
            folio=folio,
            stamped_at=stamped_at,
            signed_xml=signed_xml,
            sat_certificate_number=SANDBOX_SAT_CERTIFICATE_NUMBER,
            sat_seal=sat_seal,
            original_chain=f"||1.1|{folio}|{stamped_iso}|SANDBOX|{SANDBOX_SAT_CERTIFICATE_NUMBER}||",
            provider_response={"success": True, "mode": "sandbox", "timestamp": stamped_at.isoformat()},
        )

    def _post(
        self,
        source_xml: str,
        credentials: SigningCredentials,
        *,
        idempotency_key: str | None,
    ) -> StampResult:
        url = f"{self.base_url.rstrip('/')}/stamp"
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = self.session.post(
                url,
                json={"xml": source_xml, "rfc": credentials.rfc, "provider": credentials.provider},
                auth=(credentials.pac_user or "", credentials.pac_password or ""),
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as e:
            raise PacError(f"PAC timeout after {self.timeout_seconds * 1000}ms: {e}") from e
        except requests.ConnectionError as e:
            raise PacError(f"PAC connection error: {e}") from e

        if response.status_code >= 400:
            raise PacError(
                f"Error {response.status_code}: {self._error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PacError(f"PAC returned a non-JSON body: {response.text[:200]}") from e

        if not data.get("uuid"):
            raise PacError(f"PAC response carries no folio: {self._error_detail(response)}")

        return StampResult(
            folio=str(data["uuid"]).upper(),
            stamped_at=self._parse_datetime(data.get("fechaTimbrado")),
            signed_xml=data.get("xml") or source_xml,
            sat_certificate_number=data.get("noCertificadoSAT"),
            sat_seal=data.get("selloSAT"),
            original_chain=data.get("cadenaOriginal"),
            provider_response=data,
        )

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:500]
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or data)[:500]
        return str(data)[:500]

    @staticmethod
    def _parse_datetime(value: str | None) -> datetime:
        if not value:
            return datetime.now(timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
