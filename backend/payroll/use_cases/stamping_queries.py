"""Read-side use-cases for operators watching the stamping pipeline."""
from __future__ import annotations

from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..domain_errors import DomainError
from ..models import CfdiDocument, PayrollLineItem, StampingAttempt
from ..schemas import CfdiStampingStatus


def get_cfdi_or_404(db: Session, cfdi_id: UUID) -> CfdiDocument:
    document = db.query(CfdiDocument).filter(CfdiDocument.id == cfdi_id).first()
    if document is None:
        raise DomainError(
            code="CFDI_NOT_FOUND",
            http_status=404,
            message=f"CFDI {cfdi_id} not found",
        )
    return document


def get_cfdi_stamping_status(*, cfdi_id: UUID, db: Session) -> CfdiStampingStatus:
    """Document state, folio, attempt count and the last classified error."""
    document = get_cfdi_or_404(db, cfdi_id)

    line_item = None
    if document.line_item_id is not None:
        line_item = db.query(PayrollLineItem).filter(PayrollLineItem.id == document.line_item_id).first()

    attempts = (
        db.query(func.count(StampingAttempt.id))
        .filter(StampingAttempt.cfdi_id == document.id)
        .scalar()
    ) or 0
    last_failure = (
        db.query(StampingAttempt)
        .filter(StampingAttempt.cfdi_id == document.id, StampingAttempt.status == "FAILED")
        .order_by(StampingAttempt.started_at.desc())
        .first()
    )

    last_error_type = last_failure.error_type if last_failure else None
    last_error_message = last_failure.error_message if last_failure else None
    if document.status == "STAMPED":
        last_error_type = last_error_message = None

    return CfdiStampingStatus(
        cfdi_id=document.id,
        status=document.status,
        folio=document.uuid,
        stamped_at=document.stamped_at,
        line_item_status=line_item.status if line_item else None,
        attempts=attempts,
        last_error_type=last_error_type,
        last_error_message=last_error_message,
    )
