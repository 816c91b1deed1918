"""
Per-document stamping lock backed by stamping_attempts rows.

An IN_PROGRESS attempt is the lock. The partial unique index on
(cfdi_id, receipt_version) WHERE status = 'IN_PROGRESS' guarantees that at
most one unresolved attempt exists per pair, even for workers racing past
the row lock on databases that ignore FOR UPDATE.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import DomainError
from ..models import CfdiDocument, PayrollLineItem, PayrollPeriod, StampingAttempt
from ..schemas import CanStampReport, StampingAttemptOut, StampingStats
from .error_classifier import RETRYABLE_ERROR_TYPES, StampingErrorType

logger = logging.getLogger(__name__)

ALREADY_STAMPED = "ALREADY_STAMPED"
IN_PROGRESS = "IN_PROGRESS"
NOT_STAMPABLE = "NOT_STAMPABLE"

PERMANENT_ERROR_TYPES: tuple[str, ...] = tuple(
    t.value for t in StampingErrorType if t not in RETRYABLE_ERROR_TYPES
)


@dataclass(frozen=True)
class LockAcquisition:
    acquired: bool
    idempotency_key: str
    attempt_id: UUID | None = None
    reason: str | None = None
    existing_folio: str | None = None


@dataclass(frozen=True)
class LockOutcome:
    """How an attempt ended; written onto the attempt row when the lock is released."""

    success: bool
    error_type: str | None = None
    error_message: str | None = None
    provider_response: dict[str, Any] | None = None


def generate_idempotency_key(cfdi_id: UUID | str, receipt_version: int, **context: Any) -> str:
    """SHA-256 of the (document, receipt version) pair plus optional extra context."""
    data = {"cfdiId": str(cfdi_id), "receiptVersion": receipt_version, **context}
    return hashlib.sha256(json.dumps(data, separators=(",", ":")).encode("utf-8")).hexdigest()


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


class StampingLockManager:
    """Acquire, release and inspect stamping locks. Every method runs in the caller's session."""

    def __init__(
        self,
        *,
        lock_timeout_seconds: int = settings.STAMPING_LOCK_TIMEOUT_SECONDS,
        now_utc: Callable[[], datetime] = _default_now,
    ) -> None:
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds)
        self.now_utc = now_utc

    def acquire_lock(
        self,
        db: Session,
        *,
        cfdi_id: UUID,
        receipt_version: int,
        worker_id: str,
    ) -> LockAcquisition:
        key = generate_idempotency_key(cfdi_id, receipt_version)

        document = (
            db.query(CfdiDocument)
            .filter(CfdiDocument.id == cfdi_id)
            .with_for_update()
            .first()
        )
        if document is None:
            raise DomainError(
                code="CFDI_NOT_FOUND",
                http_status=404,
                message=f"CFDI {cfdi_id} not found",
            )

        if document.status == "STAMPED":
            return LockAcquisition(
                acquired=False,
                idempotency_key=key,
                reason=ALREADY_STAMPED,
                existing_folio=document.uuid,
            )
        if document.status != "PENDING":
            return LockAcquisition(acquired=False, idempotency_key=key, reason=NOT_STAMPABLE)

        now = self.now_utc()
        expired = self._expire_stale(db, now=now, cfdi_id=cfdi_id, receipt_version=receipt_version)
        if expired:
            logger.warning(f"⏰ Expired {expired} stale stamping attempt(s) for CFDI {cfdi_id}")

        live = (
            db.query(StampingAttempt)
            .filter(
                StampingAttempt.cfdi_id == cfdi_id,
                StampingAttempt.receipt_version == receipt_version,
                StampingAttempt.status == "IN_PROGRESS",
            )
            .first()
        )
        if live is not None:
            logger.info(f"🔒 CFDI {cfdi_id} is already being stamped by {live.worker_id}")
            return LockAcquisition(
                acquired=False,
                idempotency_key=key,
                attempt_id=live.id,
                reason=IN_PROGRESS,
            )

        attempt = StampingAttempt(
            cfdi_id=cfdi_id,
            receipt_version=receipt_version,
            idempotency_key=key,
            worker_id=worker_id,
            status="IN_PROGRESS",
            started_at=now,
        )
        try:
            with db.begin_nested():
                db.add(attempt)
        except IntegrityError:
            # Another worker inserted its IN_PROGRESS row between our check and insert.
            logger.info(f"🔒 Lost lock race for CFDI {cfdi_id} (receipt v{receipt_version})")
            return LockAcquisition(acquired=False, idempotency_key=key, reason=IN_PROGRESS)

        logger.info(f"🔐 Lock acquired for CFDI {cfdi_id} by {worker_id} (attempt {attempt.id})")
        return LockAcquisition(acquired=True, idempotency_key=key, attempt_id=attempt.id)

    def release_lock(
        self,
        db: Session,
        *,
        attempt_id: UUID,
        outcome: LockOutcome,
        cfdi_id: UUID | None = None,
    ) -> bool:
        """Resolve the attempt. Releasing an attempt that is no longer IN_PROGRESS is a no-op."""
        result = db.execute(
            update(StampingAttempt)
            .where(
                StampingAttempt.id == attempt_id,
                StampingAttempt.status == "IN_PROGRESS",
            )
            .values(
                status="SUCCESS" if outcome.success else "FAILED",
                completed_at=self.now_utc(),
                error_type=outcome.error_type,
                error_message=outcome.error_message,
                pac_response=outcome.provider_response,
            )
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
        if released:
            logger.info(
                f"🔓 Lock released for CFDI {cfdi_id or '?'} (attempt {attempt_id}): "
                f"{'SUCCESS' if outcome.success else 'FAILED'}"
            )
        else:
            logger.debug(f"Attempt {attempt_id} already resolved, release skipped")
        return released

    def cleanup_stale_attempts(self, db: Session) -> int:
        """Expire every IN_PROGRESS attempt older than the lock timeout."""
        expired = self._expire_stale(db, now=self.now_utc())
        logger.info(f"🧹 Stamping cleanup: {expired} stale attempt(s) expired")
        return expired

    def get_attempt_by_key(self, db: Session, idempotency_key: str) -> StampingAttempt | None:
        return (
            db.query(StampingAttempt)
            .filter(StampingAttempt.idempotency_key == idempotency_key)
            .order_by(StampingAttempt.started_at.desc())
            .first()
        )

    def can_stamp(self, db: Session, cfdi_id: UUID) -> CanStampReport:
        """Advisory report of everything that would stop a stamping job for this document."""
        document = db.query(CfdiDocument).filter(CfdiDocument.id == cfdi_id).first()
        if document is None:
            raise DomainError(
                code="CFDI_NOT_FOUND",
                http_status=404,
                message=f"CFDI {cfdi_id} not found",
            )

        issues: list[str] = []
        if document.status == "STAMPED":
            issues.append(f"CFDI already stamped with folio {document.uuid}")
        elif document.status != "PENDING":
            issues.append(f"CFDI is in terminal status {document.status}")

        cutoff = self.now_utc() - self.lock_timeout
        has_active_lock = (
            db.query(StampingAttempt.id)
            .filter(
                StampingAttempt.cfdi_id == cfdi_id,
                StampingAttempt.status == "IN_PROGRESS",
                StampingAttempt.started_at >= cutoff,
            )
            .first()
            is not None
        )
        if has_active_lock:
            issues.append("A stamping attempt is currently in progress")

        period_status = None
        if document.line_item_id is not None:
            period_status = (
                db.query(PayrollPeriod.status)
                .join(PayrollLineItem, PayrollLineItem.period_id == PayrollPeriod.id)
                .filter(PayrollLineItem.id == document.line_item_id)
                .scalar()
            )
            if period_status is not None and period_status != "PROCESSING":
                issues.append(f"Payroll period is {period_status}, not PROCESSING")

        recent = (
            db.query(StampingAttempt)
            .filter(StampingAttempt.cfdi_id == cfdi_id)
            .order_by(StampingAttempt.started_at.desc())
            .limit(5)
            .all()
        )
        permanent_failures = sum(
            1 for a in recent if a.status == "FAILED" and a.error_type in PERMANENT_ERROR_TYPES
        )
        if permanent_failures:
            issues.append(
                f"{permanent_failures} previous permanent failure(s); review the receipt before retrying"
            )

        return CanStampReport(
            cfdi_id=document.id,
            can_stamp=not issues,
            issues=issues,
            cfdi_status=document.status,
            folio=document.uuid,
            period_status=period_status,
            has_active_lock=has_active_lock,
            previous_permanent_failures=permanent_failures,
            recent_attempts=[StampingAttemptOut.model_validate(a) for a in recent],
        )

    def stamping_stats(self, db: Session, *, period_id: UUID | None = None) -> StampingStats:
        status_query = db.query(StampingAttempt.status, func.count(StampingAttempt.id))
        errors_query = db.query(StampingAttempt.error_type, func.count(StampingAttempt.id)).filter(
            StampingAttempt.status == "FAILED"
        )
        if period_id is not None:
            status_query = self._scope_to_period(status_query, period_id)
            errors_query = self._scope_to_period(errors_query, period_id)

        by_status = dict(status_query.group_by(StampingAttempt.status).all())
        errors_by_type = {
            (error_type or StampingErrorType.UNKNOWN.value): count
            for error_type, count in errors_query.group_by(StampingAttempt.error_type).all()
        }

        total = sum(by_status.values())
        successful = by_status.get("SUCCESS", 0)
        return StampingStats(
            total_attempts=total,
            successful=successful,
            failed=by_status.get("FAILED", 0),
            in_progress=by_status.get("IN_PROGRESS", 0),
            expired=by_status.get("EXPIRED", 0),
            success_rate=round(successful / total * 100, 2) if total else 0.0,
            errors_by_type=errors_by_type,
        )

    @staticmethod
    def _scope_to_period(query, period_id: UUID):
        return (
            query.join(CfdiDocument, CfdiDocument.id == StampingAttempt.cfdi_id)
            .join(PayrollLineItem, PayrollLineItem.id == CfdiDocument.line_item_id)
            .filter(PayrollLineItem.period_id == period_id)
        )

    def _expire_stale(
        self,
        db: Session,
        *,
        now: datetime,
        cfdi_id: UUID | None = None,
        receipt_version: int | None = None,
    ) -> int:
        conditions = [
            StampingAttempt.status == "IN_PROGRESS",
            StampingAttempt.started_at < now - self.lock_timeout,
        ]
        if cfdi_id is not None:
            conditions.append(StampingAttempt.cfdi_id == cfdi_id)
        if receipt_version is not None:
            conditions.append(StampingAttempt.receipt_version == receipt_version)

        result = db.execute(
            update(StampingAttempt)
            .where(*conditions)
            .values(
                status="EXPIRED",
                completed_at=now,
                error_message="Timeout: attempt did not finish within the lock window",
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
