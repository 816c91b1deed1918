"""Classify PAC/stamping failures into a closed taxonomy with a retry decision."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class StampingErrorType(str, Enum):
    NETWORK = "NETWORK"
    PAC_TEMPORARY = "PAC_TEMPORARY"
    VALIDATION = "VALIDATION"
    CERTIFICATE = "CERTIFICATE"
    DUPLICATE = "DUPLICATE"
    PAC_PERMANENT = "PAC_PERMANENT"
    UNKNOWN = "UNKNOWN"


RETRYABLE_ERROR_TYPES: frozenset[StampingErrorType] = frozenset(
    {
        StampingErrorType.NETWORK,
        StampingErrorType.PAC_TEMPORARY,
        StampingErrorType.UNKNOWN,
    }
)


@dataclass(frozen=True)
class ErrorClassification:
    type: StampingErrorType
    is_retryable: bool


def _codes(*codes: str) -> re.Pattern[str]:
    # Whole numbers only: "30000ms" must not read as SAT code 300x.
    return re.compile(r"(?<!\d)(?:" + "|".join(codes) + r")(?!\d)")


_NETWORK_MARKERS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "econnrefused",
    "connection refused",
    "econnreset",
    "enotfound",
    "host not found",
    "name or service not known",
    "network",
    "connection",
)
_TEMPORARY_MARKERS: tuple[str, ...] = ("busy", "temporary", "temporal", "too many requests")
_TEMPORARY_CODES = _codes("502", "503", "429")
_VALIDATION_MARKERS: tuple[str, ...] = (
    "rfc",
    "validation",
    "validación",
    "validacion",
    "invalid",
    "inválid",
    "schema",
    "estructura",
)
_SAT_CODES = _codes("301", "302", "303", "305")
# SAT complement validation rules: CCE401, NOM134, CFDI40101, ...
_SAT_RULE_CODE = re.compile(r"\b(?:cce|nom|cfdi)\d{3,5}\b")
_CERTIFICATE_MARKERS: tuple[str, ...] = (
    "certificate",
    "certificado",
    "signature",
    "firma",
    "seal",
    "sello",
)
_DUPLICATE_MARKERS: tuple[str, ...] = ("duplicate", "duplicado", "previamente timbrado")
_PERMANENT_CODES = _codes("400", "401")


def _contains_any(message: str, markers: tuple[str, ...]) -> bool:
    return any(marker in message for marker in markers)


def classify(error_message: str | None) -> ErrorClassification:
    """
    Map a raw provider/stamping error text to a taxonomy entry.

    Case-insensitive; the first matching tier wins, in this order: network,
    PAC temporary, fiscal validation, certificate, duplicate, PAC permanent.
    Anything else is UNKNOWN and optimistically retryable.
    """
    message = (error_message or "").lower()

    if _contains_any(message, _NETWORK_MARKERS):
        return ErrorClassification(StampingErrorType.NETWORK, True)

    if _TEMPORARY_CODES.search(message) or _contains_any(message, _TEMPORARY_MARKERS):
        return ErrorClassification(StampingErrorType.PAC_TEMPORARY, True)

    if (
        _contains_any(message, _VALIDATION_MARKERS)
        or _SAT_CODES.search(message)
        or _SAT_RULE_CODE.search(message)
    ):
        return ErrorClassification(StampingErrorType.VALIDATION, False)

    if _contains_any(message, _CERTIFICATE_MARKERS):
        return ErrorClassification(StampingErrorType.CERTIFICATE, False)

    if _contains_any(message, _DUPLICATE_MARKERS):
        return ErrorClassification(StampingErrorType.DUPLICATE, False)

    if _PERMANENT_CODES.search(message):
        return ErrorClassification(StampingErrorType.PAC_PERMANENT, False)

    return ErrorClassification(StampingErrorType.UNKNOWN, True)


def classify_exception(error: BaseException) -> ErrorClassification:
    """Use the type an exception already carries, else fall back to its text."""
    preset = getattr(error, "error_type", None)
    if isinstance(preset, StampingErrorType):
        return ErrorClassification(preset, preset in RETRYABLE_ERROR_TYPES)
    return classify(str(error))
