"""Audit chain verification endpoints."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..schemas import ChainVerification, EntryVerification, IntegrityReport
from ..services.audit_chain import AuditChain

router = APIRouter(prefix="/audit", tags=["audit"])


def get_audit_chain() -> AuditChain:
    return AuditChain()


@router.get("/verify", response_model=ChainVerification)
def verify_audit_chain(
    start_sequence: int = Query(1, ge=1),
    end_sequence: Optional[int] = Query(None, ge=1),
    limit: int = Query(1000, ge=1, le=settings.AUDIT_VERIFY_LIMIT),
    db: Session = Depends(get_db),
    chain: AuditChain = Depends(get_audit_chain),
):
    """Recompute hashes and links over a sequence range. Findings are reported, never repaired."""
    return chain.verify_chain(db, start_sequence=start_sequence, end_sequence=end_sequence, limit=limit)


@router.get("/entries/{entry_id}/verify", response_model=EntryVerification)
def verify_audit_entry(
    entry_id: UUID,
    db: Session = Depends(get_db),
    chain: AuditChain = Depends(get_audit_chain),
):
    return chain.verify_entry(db, entry_id)


@router.get("/integrity-report", response_model=IntegrityReport)
def get_integrity_report(
    db: Session = Depends(get_db),
    chain: AuditChain = Depends(get_audit_chain),
):
    return chain.integrity_report(db)
