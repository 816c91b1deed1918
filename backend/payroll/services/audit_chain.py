"""
Tamper-evident audit log.

Each entry stores the SHA-256 of its own canonical content plus the hash of
the previous entry, so editing or deleting any row breaks verification from
that point on. Verification only reports findings; it never repairs rows.
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain_errors import DomainError
from ..models import AuditLogEntry
from ..schemas import ChainError, ChainVerification, EntryVerification, IntegrityReport

logger = logging.getLogger(__name__)

GENESIS = "GENESIS"
SYSTEM_ACTOR = "SYSTEM"


class CriticalAction(str, Enum):
    CFDI_STAMP = "CFDI_STAMP"
    CFDI_STAMP_FAILED = "CFDI_STAMP_FAILED"
    PAYROLL_APPROVE = "PAYROLL_APPROVE"


def format_timestamp(value: datetime) -> str:
    """UTC, millisecond precision, trailing Z. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return format(obj.normalize(), "f")
    if isinstance(obj, datetime):
        return format_timestamp(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_json_serializer, ensure_ascii=False)


def to_json_safe(data: dict[str, Any] | None) -> dict[str, Any] | None:
    """Reduce a snapshot to plain JSON types, so what is stored is exactly what was hashed."""
    if data is None:
        return None
    return json.loads(canonical_json(data))


def compute_entry_hash(
    *,
    user_id: str,
    action: str,
    entity: str,
    entity_id: str | None,
    old_values: dict[str, Any] | None,
    new_values: dict[str, Any] | None,
    created_at: datetime,
    previous_entry_hash: str | None,
    sequence_number: int,
) -> str:
    content = {
        "userId": user_id,
        "action": action,
        "entity": entity,
        "entityId": entity_id,
        "oldValues": old_values,
        "newValues": new_values,
        "createdAt": format_timestamp(created_at),
        "previousEntryHash": previous_entry_hash or GENESIS,
        "sequenceNumber": sequence_number,
    }
    return hashlib.sha256(canonical_json(content).encode("utf-8")).hexdigest()


def _hash_of(entry: AuditLogEntry) -> str:
    return compute_entry_hash(
        user_id=entry.user_id,
        action=entry.action,
        entity=entry.entity,
        entity_id=entry.entity_id,
        old_values=entry.old_values,
        new_values=entry.new_values,
        created_at=entry.created_at,
        previous_entry_hash=entry.previous_entry_hash,
        sequence_number=entry.sequence_number,
    )


class AuditChain:
    """Append and verify hash-chained audit entries in the caller's transaction."""

    def __init__(
        self,
        *,
        now_utc: Callable[[], datetime] | None = None,
        max_append_attempts: int = 3,
    ) -> None:
        self.now_utc = now_utc or (lambda: datetime.now(timezone.utc))
        self.max_append_attempts = max_append_attempts

    def append(
        self,
        db: Session,
        *,
        action: str,
        entity: str,
        entity_id: str | UUID,
        user_id: str | UUID | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        actor = str(user_id) if user_id else SYSTEM_ACTOR
        action = action.value if isinstance(action, Enum) else action
        old_values = to_json_safe(old_values)
        new_values = to_json_safe(new_values)
        # Caller changes must fail as themselves, not as a sequence collision.
        db.flush()

        for attempt in range(1, self.max_append_attempts + 1):
            last = (
                db.query(AuditLogEntry)
                .filter(AuditLogEntry.entry_hash.isnot(None))
                .order_by(AuditLogEntry.sequence_number.desc())
                .first()
            )
            sequence_number = (last.sequence_number if last else 0) + 1
            previous_hash = last.entry_hash if last else None
            now = self.now_utc()
            # Stored precision matches hashed precision.
            created_at = now.replace(microsecond=(now.microsecond // 1000) * 1000)

            entry = AuditLogEntry(
                sequence_number=sequence_number,
                user_id=actor,
                action=action,
                entity=entity,
                entity_id=str(entity_id),
                old_values=old_values,
                new_values=new_values,
                created_at=created_at,
                previous_entry_hash=previous_hash,
            )
            entry.entry_hash = _hash_of(entry)

            try:
                with db.begin_nested():
                    db.add(entry)
            except IntegrityError as exc:
                if "sequence_number" not in str(exc.orig):
                    raise
                # A concurrent writer took this sequence number; re-read the tail.
                logger.warning(f"⚠️ Audit sequence {sequence_number} taken, retrying ({attempt})")
                continue

            logger.debug(f"Audit entry {entry.id} [seq: {sequence_number}] {action} {entity}:{entity_id}")
            return entry

        raise DomainError(
            code="AUDIT_APPEND_CONFLICT",
            http_status=503,
            message=f"Could not append audit entry after {self.max_append_attempts} attempts",
        )

    def verify_chain(
        self,
        db: Session,
        *,
        start_sequence: int = 1,
        end_sequence: int | None = None,
        limit: int = 1000,
    ) -> ChainVerification:
        query = db.query(AuditLogEntry).filter(AuditLogEntry.sequence_number >= start_sequence)
        if end_sequence is not None:
            query = query.filter(AuditLogEntry.sequence_number <= end_sequence)
        entries = query.order_by(AuditLogEntry.sequence_number.asc()).limit(limit).all()

        previous = None
        if start_sequence > 1:
            previous = (
                db.query(AuditLogEntry)
                .filter(AuditLogEntry.sequence_number == start_sequence - 1)
                .first()
            )

        errors: list[ChainError] = []
        expected_sequence = start_sequence
        for entry in entries:
            if entry.sequence_number != expected_sequence:
                errors.append(
                    ChainError(
                        sequence_number=entry.sequence_number,
                        entry_id=entry.id,
                        error_type="missing_sequence",
                        detail=f"Expected sequence {expected_sequence}, found {entry.sequence_number}",
                    )
                )

            computed = _hash_of(entry)
            if computed != entry.entry_hash:
                errors.append(
                    ChainError(
                        sequence_number=entry.sequence_number,
                        entry_id=entry.id,
                        error_type="hash_mismatch",
                        detail=f"Stored hash {entry.entry_hash} does not match computed {computed}",
                    )
                )

            expected_previous = previous.entry_hash if previous is not None else None
            check_link = previous is not None or entry.sequence_number == 1
            if check_link and entry.previous_entry_hash != expected_previous:
                errors.append(
                    ChainError(
                        sequence_number=entry.sequence_number,
                        entry_id=entry.id,
                        error_type="chain_break",
                        detail=(
                            f"previous_entry_hash {entry.previous_entry_hash or GENESIS} does not match "
                            f"prior entry hash {expected_previous or GENESIS}"
                        ),
                    )
                )

            previous = entry
            expected_sequence = entry.sequence_number + 1

        if errors:
            logger.error(f"❌ Audit chain verification found {len(errors)} problem(s)")
        return ChainVerification(valid=not errors, total_checked=len(entries), errors=errors)

    def verify_entry(self, db: Session, entry_id: UUID) -> EntryVerification:
        entry = db.query(AuditLogEntry).filter(AuditLogEntry.id == entry_id).first()
        if entry is None:
            raise DomainError(
                code="AUDIT_ENTRY_NOT_FOUND",
                http_status=404,
                message=f"Audit entry {entry_id} not found",
            )

        computed = _hash_of(entry)
        if entry.sequence_number > 1:
            previous = (
                db.query(AuditLogEntry)
                .filter(AuditLogEntry.sequence_number == entry.sequence_number - 1)
                .first()
            )
            previous_link_ok = previous is not None and previous.entry_hash == entry.previous_entry_hash
        else:
            previous_link_ok = entry.previous_entry_hash is None

        return EntryVerification(
            entry_id=entry.id,
            sequence_number=entry.sequence_number,
            valid=computed == entry.entry_hash and previous_link_ok,
            stored_hash=entry.entry_hash,
            computed_hash=computed,
            previous_link_ok=previous_link_ok,
        )

    def integrity_report(self, db: Session, *, limit: int = settings.AUDIT_VERIFY_LIMIT) -> IntegrityReport:
        total = db.query(AuditLogEntry).count()
        first = db.query(AuditLogEntry).order_by(AuditLogEntry.sequence_number.asc()).first()
        last = db.query(AuditLogEntry).order_by(AuditLogEntry.sequence_number.desc()).first()
        verification = self.verify_chain(db, start_sequence=1, limit=limit)
        return IntegrityReport(
            generated_at=self.now_utc(),
            total_entries=total,
            first_sequence=first.sequence_number if first else None,
            last_sequence=last.sequence_number if last else None,
            last_entry_hash=last.entry_hash if last else None,
            chain_valid=verification.valid,
            total_checked=verification.total_checked,
            error_count=len(verification.errors),
            errors=verification.errors[:50],
        )

    # Typed helpers for the pipeline's critical actions

    def log_cfdi_stamp(
        self,
        db: Session,
        *,
        user_id: str | None,
        cfdi_id: UUID,
        folio: str,
        employee_id: UUID,
        line_item_id: UUID | None = None,
    ) -> AuditLogEntry:
        return self.append(
            db,
            user_id=user_id,
            action=CriticalAction.CFDI_STAMP,
            entity="CfdiNomina",
            entity_id=cfdi_id,
            old_values={"status": "PENDING"},
            new_values={
                "status": "STAMPED",
                "uuid": folio,
                "employeeId": employee_id,
                "lineItemId": line_item_id,
            },
        )

    def log_cfdi_stamp_failure(
        self,
        db: Session,
        *,
        user_id: str | None,
        cfdi_id: UUID,
        error_type: str,
        error_message: str,
        attempts: int,
    ) -> AuditLogEntry:
        return self.append(
            db,
            user_id=user_id,
            action=CriticalAction.CFDI_STAMP_FAILED,
            entity="CfdiNomina",
            entity_id=cfdi_id,
            old_values={"status": "PENDING"},
            new_values={
                "status": "ERROR",
                "errorType": error_type,
                "errorMessage": error_message[:500],
                "attempts": attempts,
            },
        )

    def log_period_approval(
        self,
        db: Session,
        *,
        user_id: str | None,
        period_id: UUID,
        total_employees: int,
        total_net: Decimal | int,
    ) -> AuditLogEntry:
        return self.append(
            db,
            user_id=user_id,
            action=CriticalAction.PAYROLL_APPROVE,
            entity="PayrollPeriod",
            entity_id=period_id,
            old_values={"status": "PROCESSING"},
            new_values={
                "status": "APPROVED",
                "totalEmployees": total_employees,
                "totalNet": total_net,
                "automatic": True,
            },
        )
