"""RFC 7807 Problem Details helpers."""
from __future__ import annotations

from http import HTTPStatus

from fastapi.responses import JSONResponse

from .domain_errors import DomainError
from .services.error_classifier import RETRYABLE_ERROR_TYPES


def build_problem_details_response(exc: DomainError) -> JSONResponse:
    """
    Render DomainError as RFC 7807 payload with stable domain code.

    Stamping errors that carry a classified error type also expose it, with
    whether the queue would retry it.
    """
    try:
        title = HTTPStatus(exc.http_status).phrase
    except ValueError:
        title = "Domain Error"

    payload: dict[str, object] = {
        "type": f"https://api.nomina.local/problems/{exc.code.lower()}",
        "title": title,
        "status": exc.http_status,
        "detail": exc.message,
        "code": exc.code,
    }
    error_type = getattr(exc, "error_type", None)
    if error_type is not None:
        payload["error_type"] = error_type.value
        payload["retryable"] = error_type in RETRYABLE_ERROR_TYPES
    if exc.details is not None:
        payload["details"] = exc.details

    return JSONResponse(
        status_code=exc.http_status,
        content=payload,
        media_type="application/problem+json",
    )

