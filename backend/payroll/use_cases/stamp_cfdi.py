"""
Stamping use-case: one queue job, one attempt at turning a PENDING CFDI into a STAMPED one.

Transitions: START -> PRE_CHECKED -> LOCKED -> CALLED_PROVIDER -> COMMITTED
-> PERIOD_CHECKED -> DONE, with exits to RETRY (RetryableStampingError is
raised back to the queue) and PERMANENT_FAIL (document marked ERROR, the
job returns normally). No database session stays open across the PAC call.
"""
from __future__ import annotations

import logging
import os
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal, session_scope
from ..domain_errors import (
    DomainError,
    RetryableStampingError,
    StampingInputError,
    StampingLockRefused,
    StampNotPersistedError,
)
from ..models import CfdiDocument, Employee, PayrollLineItem
from ..schemas import StampingJobPayload, StampingJobResult
from ..services.audit_chain import AuditChain, format_timestamp, to_json_safe
from ..services.credentials import CompanyCredentialsProvider, SigningCredentials
from ..services.error_classifier import ErrorClassification, classify_exception
from ..services.events import CFDI_STAMP_FAILED, CFDI_STAMP_RETRY, CFDI_STAMPED, EventBus
from ..services.period_finalizer import PeriodFinalizer
from ..services.retry_policy import should_retry
from ..services.stamping_client import StampingClient, StampResult
from ..services.stamping_lock import (
    ALREADY_STAMPED,
    IN_PROGRESS,
    LockAcquisition,
    LockOutcome,
    StampingLockManager,
)

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 500


@dataclass(frozen=True)
class StampingJob:
    """A delivered job: its payload plus how many times the queue already tried it."""

    payload: StampingJobPayload
    attempts_made: int = 0
    max_attempts: int = settings.STAMPING_MAX_ATTEMPTS

    @property
    def attempt_number(self) -> int:
        return self.attempts_made + 1


@dataclass(frozen=True)
class _StampingInput:
    source_xml: str
    credentials: SigningCredentials
    employee_id: UUID
    line_item_id: UUID | None
    period_id: UUID | None


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


class StampingOrchestrator:
    def __init__(
        self,
        *,
        stamping_client: StampingClient,
        session_factory: Callable[[], Session] = SessionLocal,
        lock_manager: StampingLockManager | None = None,
        audit_chain: AuditChain | None = None,
        period_finalizer: PeriodFinalizer | None = None,
        events: EventBus | None = None,
        credentials_provider_factory: Callable[[Session], CompanyCredentialsProvider] = CompanyCredentialsProvider,
        worker_id: str | None = None,
        unknown_max_attempts: int | None = settings.STAMPING_UNKNOWN_MAX_ATTEMPTS,
        now_utc: Callable[[], datetime] | None = None,
    ) -> None:
        self.stamping_client = stamping_client
        self.session_factory = session_factory
        self.now_utc = now_utc or (lambda: datetime.now(timezone.utc))
        self.lock_manager = lock_manager or StampingLockManager(now_utc=self.now_utc)
        self.audit_chain = audit_chain or AuditChain(now_utc=self.now_utc)
        self.events = events or EventBus()
        self.period_finalizer = period_finalizer or PeriodFinalizer(
            audit_chain=self.audit_chain,
            events=self.events,
            now_utc=self.now_utc,
        )
        self.credentials_provider_factory = credentials_provider_factory
        self.worker_id = worker_id or default_worker_id()
        self.unknown_max_attempts = unknown_max_attempts

    def process(self, job: StampingJob) -> StampingJobResult:
        started = time.monotonic()
        payload = job.payload
        cfdi_id = payload.cfdi_id
        logger.info(
            f"▶️ CFDI {cfdi_id}: START attempt {job.attempt_number}/{job.max_attempts}"
            f"{f' [batch {payload.batch_id}]' if payload.batch_id else ''}"
        )

        # PRE_CHECK: a redelivered job for a finished document ends here.
        try:
            with session_scope(self.session_factory) as db:
                existing_folio = self._pre_check(db, payload)
                finalized = False
                if existing_folio is not None:
                    finalized = self.period_finalizer.finalize_if_complete(
                        db,
                        cfdi_id=cfdi_id,
                        line_item_id=payload.line_item_id,
                        period_id=payload.period_id,
                    )
        except DomainError as exc:
            self._publish_refusal(payload, exc)
            raise
        if existing_folio is not None:
            logger.info(f"⏭️ CFDI {cfdi_id}: already stamped ({existing_folio}), nothing to do")
            self._publish_stamped(payload, existing_folio, finalized=finalized, already_stamped=True)
            return self._result(job, started, success=True, folio=existing_folio,
                                already_stamped=True, period_finalized=finalized)
        logger.debug(f"CFDI {cfdi_id}: PRE_CHECKED")

        # LOCK
        with session_scope(self.session_factory) as db:
            lock = self.lock_manager.acquire_lock(
                db,
                cfdi_id=cfdi_id,
                receipt_version=payload.receipt_version,
                worker_id=self.worker_id,
            )
        if not lock.acquired:
            return self._handle_refused_lock(job, lock, started)
        logger.debug(f"CFDI {cfdi_id}: LOCKED (attempt {lock.attempt_id})")

        # CALL_PROVIDER
        try:
            with session_scope(self.session_factory) as db:
                stamping_input = self._prepare(db, payload)
            stamp = self.stamping_client.stamp(
                stamping_input.source_xml,
                stamping_input.credentials,
                idempotency_key=lock.idempotency_key,
            )
        except Exception as exc:
            return self._handle_failure(job, lock, exc, started)
        logger.debug(f"CFDI {cfdi_id}: CALLED_PROVIDER -> {stamp.folio}")

        # COMMIT
        try:
            with session_scope(self.session_factory) as db:
                self._commit_success(db, job, lock, stamping_input, stamp)
        except Exception as exc:
            # The PAC issued a folio we could not persist. The attempt is released
            # so the next delivery reaches the PAC again with the same idempotency key.
            logger.critical(
                f"🚨 CFDI {cfdi_id}: folio {stamp.folio} issued but not persisted",
                exc_info=True,
            )
            not_persisted = StampNotPersistedError(
                f"Folio {stamp.folio} issued but not persisted ({exc.__class__.__name__})",
                folio=stamp.folio,
            )
            not_persisted.__cause__ = exc
            return self._handle_failure(job, lock, not_persisted, started)
        logger.info(f"✅ CFDI {cfdi_id}: COMMITTED with folio {stamp.folio}")

        # PERIOD_CHECK
        with session_scope(self.session_factory) as db:
            finalized = self.period_finalizer.finalize_if_complete(
                db,
                cfdi_id=cfdi_id,
                line_item_id=stamping_input.line_item_id,
                period_id=stamping_input.period_id,
            )

        self._publish_stamped(
            payload,
            stamp.folio,
            finalized=finalized,
            line_item_id=stamping_input.line_item_id,
            period_id=stamping_input.period_id,
        )
        logger.info(f"🏁 CFDI {cfdi_id}: DONE")
        return self._result(job, started, success=True, folio=stamp.folio, period_finalized=finalized)

    # Steps

    def _pre_check(self, db: Session, payload: StampingJobPayload) -> str | None:
        """Return the existing folio when the document (or its line item) is already stamped."""
        document = db.query(CfdiDocument).filter(CfdiDocument.id == payload.cfdi_id).first()
        if document is None:
            raise DomainError(
                code="CFDI_NOT_FOUND",
                http_status=404,
                message=f"CFDI {payload.cfdi_id} not found",
            )
        if document.status == "STAMPED":
            return document.uuid

        line_item_id = payload.line_item_id or document.line_item_id
        if line_item_id is not None:
            line_status = (
                db.query(PayrollLineItem.status)
                .filter(PayrollLineItem.id == line_item_id)
                .scalar()
            )
            if line_status == "STAMP_OK" and document.uuid:
                return document.uuid
        return None

    def _handle_refused_lock(self, job: StampingJob, lock: LockAcquisition, started: float) -> StampingJobResult:
        payload = job.payload
        if lock.reason == ALREADY_STAMPED:
            logger.info(f"⏭️ CFDI {payload.cfdi_id}: stamped while waiting for the lock ({lock.existing_folio})")
            with session_scope(self.session_factory) as db:
                finalized = self.period_finalizer.finalize_if_complete(
                    db,
                    cfdi_id=payload.cfdi_id,
                    line_item_id=payload.line_item_id,
                    period_id=payload.period_id,
                )
            self._publish_stamped(payload, lock.existing_folio, finalized=finalized, already_stamped=True)
            return self._result(job, started, success=True, folio=lock.existing_folio,
                                already_stamped=True, period_finalized=finalized)

        if lock.reason == IN_PROGRESS:
            raise RetryableStampingError(
                f"CFDI {payload.cfdi_id} is being stamped by another worker",
                code="STAMPING_IN_PROGRESS",
                details={"cfdi_id": str(payload.cfdi_id)},
            )

        exc = StampingLockRefused(
            f"CFDI {payload.cfdi_id} cannot be stamped: {lock.reason}",
            reason=lock.reason or "UNKNOWN",
        )
        self._publish_refusal(payload, exc)
        raise exc

    def _prepare(self, db: Session, payload: StampingJobPayload) -> _StampingInput:
        document = db.query(CfdiDocument).filter(CfdiDocument.id == payload.cfdi_id).one()
        if not document.xml_original:
            raise StampingInputError(
                f"CFDI {document.id} has no source XML",
                code="CFDI_SOURCE_XML_MISSING",
            )

        company_id = payload.company_id
        if company_id is None:
            company_id = (
                db.query(Employee.company_id)
                .filter(Employee.id == document.employee_id)
                .scalar()
            )
        if company_id is None:
            raise StampingInputError(
                f"Could not determine the issuing company for CFDI {document.id}",
                code="COMPANY_NOT_RESOLVED",
            )
        credentials = self.credentials_provider_factory(db).get_signing_credentials(company_id)

        line_item_id = payload.line_item_id or document.line_item_id
        period_id = payload.period_id
        if period_id is None and line_item_id is not None:
            period_id = (
                db.query(PayrollLineItem.period_id)
                .filter(PayrollLineItem.id == line_item_id)
                .scalar()
            )

        return _StampingInput(
            source_xml=document.xml_original,
            credentials=credentials,
            employee_id=document.employee_id,
            line_item_id=line_item_id,
            period_id=period_id,
        )

    def _commit_success(
        self,
        db: Session,
        job: StampingJob,
        lock: LockAcquisition,
        stamping_input: _StampingInput,
        stamp: StampResult,
    ) -> None:
        payload = job.payload
        now = self.now_utc()
        provider_response = to_json_safe(stamp.provider_response)

        document = (
            db.query(CfdiDocument)
            .filter(CfdiDocument.id == payload.cfdi_id)
            .with_for_update()
            .one()
        )
        document.uuid = stamp.folio
        document.status = "STAMPED"
        document.stamped_at = stamp.stamped_at
        document.xml_stamped = stamp.signed_xml
        document.sat_certificate_number = stamp.sat_certificate_number
        document.sat_seal = stamp.sat_seal
        document.original_chain = stamp.original_chain
        document.pac_response = provider_response

        line_item = self._line_item(db, stamping_input.line_item_id)
        if line_item is not None:
            line_item.status = "STAMP_OK"
            line_item.stamping_attempts = job.attempt_number
            line_item.last_stamping_attempt = now
            line_item.stamping_error_code = None
            line_item.stamping_error_message = None

        self.lock_manager.release_lock(
            db,
            attempt_id=lock.attempt_id,
            cfdi_id=payload.cfdi_id,
            outcome=LockOutcome(success=True, provider_response=provider_response),
        )
        self.audit_chain.log_cfdi_stamp(
            db,
            user_id=payload.actor_id,
            cfdi_id=payload.cfdi_id,
            folio=stamp.folio,
            employee_id=stamping_input.employee_id,
            line_item_id=stamping_input.line_item_id,
        )

    def _handle_failure(
        self,
        job: StampingJob,
        lock: LockAcquisition,
        exc: Exception,
        started: float,
    ) -> StampingJobResult:
        payload = job.payload
        classification = classify_exception(exc)
        message = (str(exc) or exc.__class__.__name__)[:ERROR_MESSAGE_LIMIT]
        retry = should_retry(
            classification,
            attempt_number=job.attempt_number,
            max_attempts=job.max_attempts,
            unknown_max_attempts=self.unknown_max_attempts,
        )
        logger.warning(
            f"⚠️ CFDI {payload.cfdi_id}: attempt {job.attempt_number}/{job.max_attempts} failed "
            f"({classification.type.value}, retryable={classification.is_retryable}): {message}"
        )

        period_id = None
        with session_scope(self.session_factory) as db:
            self.lock_manager.release_lock(
                db,
                attempt_id=lock.attempt_id,
                cfdi_id=payload.cfdi_id,
                outcome=LockOutcome(
                    success=False,
                    error_type=classification.type.value,
                    error_message=message,
                ),
            )
            if not retry:
                period_id = self._mark_permanent_failure(db, job, classification, message)

        if retry:
            self.events.publish(
                CFDI_STAMP_RETRY,
                {
                    "cfdi_id": str(payload.cfdi_id),
                    "attempt_number": job.attempt_number,
                    "error_type": classification.type.value,
                    "error_message": message,
                    "batch_id": payload.batch_id,
                },
            )
            logger.info(f"🔄 CFDI {payload.cfdi_id}: RETRY scheduled by the queue")
            raise RetryableStampingError(
                message,
                error_type=classification.type,
                details={"cfdi_id": str(payload.cfdi_id), "attempt_number": job.attempt_number},
            ) from exc

        logger.error(
            f"❌ CFDI {payload.cfdi_id}: PERMANENT_FAIL after {job.attempt_number} attempt(s) "
            f"({classification.type.value}): {message}"
        )
        self.events.publish(
            CFDI_STAMP_FAILED,
            {
                "cfdi_id": str(payload.cfdi_id),
                "error_type": classification.type.value,
                "error_message": message,
                "attempt_number": job.attempt_number,
                "period_id": str(period_id) if period_id else None,
                "batch_id": payload.batch_id,
            },
        )
        return self._result(
            job,
            started,
            success=False,
            error_type=classification.type.value,
            error_message=message,
        )

    def _mark_permanent_failure(
        self,
        db: Session,
        job: StampingJob,
        classification: ErrorClassification,
        message: str,
    ) -> UUID | None:
        payload = job.payload
        now = self.now_utc()
        document = (
            db.query(CfdiDocument)
            .filter(CfdiDocument.id == payload.cfdi_id)
            .with_for_update()
            .one()
        )
        document.status = "ERROR"
        document.pac_response = {
            "error": True,
            "errorType": classification.type.value,
            "errorMessage": message,
            "attempts": job.attempt_number,
            "lastAttempt": format_timestamp(now),
        }

        line_item = self._line_item(db, payload.line_item_id or document.line_item_id)
        if line_item is not None:
            line_item.status = "STAMP_ERROR"
            line_item.stamping_attempts = job.attempt_number
            line_item.last_stamping_attempt = now
            line_item.stamping_error_code = classification.type.value
            line_item.stamping_error_message = message

        self.audit_chain.log_cfdi_stamp_failure(
            db,
            user_id=payload.actor_id,
            cfdi_id=payload.cfdi_id,
            error_type=classification.type.value,
            error_message=message,
            attempts=job.attempt_number,
        )
        return payload.period_id or (line_item.period_id if line_item is not None else None)

    # Helpers

    @staticmethod
    def _line_item(db: Session, line_item_id: UUID | None) -> PayrollLineItem | None:
        if line_item_id is None:
            return None
        return db.query(PayrollLineItem).filter(PayrollLineItem.id == line_item_id).first()

    def report_exhausted(self, job: StampingJob, exc: Exception) -> None:
        """Publish the final failure of a job the queue will not deliver again."""
        classification = classify_exception(exc)
        payload = job.payload
        logger.error(
            f"❌ CFDI {payload.cfdi_id}: giving up after {job.attempt_number} attempt(s) "
            f"({classification.type.value}): {exc}"
        )
        self.events.publish(
            CFDI_STAMP_FAILED,
            {
                "cfdi_id": str(payload.cfdi_id),
                "error_type": classification.type.value,
                "error_message": (str(exc) or exc.__class__.__name__)[:ERROR_MESSAGE_LIMIT],
                "code": getattr(exc, "code", None),
                "attempt_number": job.attempt_number,
                "period_id": str(payload.period_id) if payload.period_id else None,
                "batch_id": payload.batch_id,
            },
        )

    def _publish_stamped(
        self,
        payload: StampingJobPayload,
        folio: str | None,
        *,
        finalized: bool,
        already_stamped: bool = False,
        line_item_id: UUID | None = None,
        period_id: UUID | None = None,
    ) -> None:
        line_item_id = line_item_id or payload.line_item_id
        period_id = period_id or payload.period_id
        self.events.publish(
            CFDI_STAMPED,
            {
                "cfdi_id": str(payload.cfdi_id),
                "folio": folio,
                "line_item_id": str(line_item_id) if line_item_id else None,
                "period_id": str(period_id) if period_id else None,
                "period_finalized": finalized,
                "already_stamped": already_stamped,
                "batch_id": payload.batch_id,
            },
        )

    def _publish_refusal(self, payload: StampingJobPayload, exc: DomainError) -> None:
        self.events.publish(
            CFDI_STAMP_FAILED,
            {
                "cfdi_id": str(payload.cfdi_id),
                "error_type": None,
                "error_message": exc.message,
                "code": exc.code,
                "period_id": str(payload.period_id) if payload.period_id else None,
                "batch_id": payload.batch_id,
            },
        )

    @staticmethod
    def _result(job: StampingJob, started: float, **fields) -> StampingJobResult:
        return StampingJobResult(
            cfdi_id=job.payload.cfdi_id,
            attempt_number=job.attempt_number,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
