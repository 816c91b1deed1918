"""SQLAlchemy models for payroll periods, CFDI documents, stamping attempts and the audit chain."""
from sqlalchemy import (
    Boolean, Column, String, Integer, DateTime, Text, Numeric, JSON,
    ForeignKey, CheckConstraint, Index, UniqueConstraint, Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func
import uuid
from .database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

PERIOD_STATUSES = ('DRAFT', 'PROCESSING', 'CALCULATED', 'APPROVED', 'PAID', 'CLOSED', 'CANCELLED')
LINE_ITEM_STATUSES = (
    'PENDING', 'CALCULATED', 'APPROVED', 'STAMPING', 'STAMP_OK', 'STAMP_ERROR',
    'SUPERSEDED', 'PAID', 'CANCELLED',
)
CFDI_STATUSES = ('PENDING', 'STAMPED', 'ERROR', 'CANCELLED')
ATTEMPT_STATUSES = ('IN_PROGRESS', 'SUCCESS', 'FAILED', 'EXPIRED')


class Company(Base):
    """Issuing employer with its PAC account and signing material (secrets stored encrypted)."""
    __tablename__ = "companies"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    rfc = Column(String(13), unique=True, nullable=False, index=True)
    pac_provider = Column(String(50), nullable=True)
    pac_mode = Column(String(20), nullable=False, default='sandbox')
    pac_user = Column(Text, nullable=True)
    pac_password = Column(Text, nullable=True)
    certificate_cer = Column(Text, nullable=True)
    certificate_key = Column(Text, nullable=True)
    certificate_password = Column(Text, nullable=True)
    certificate_number = Column(String(20), nullable=True)
    certificate_valid_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(pac_mode.in_(['sandbox', 'production']), name='chk_company_pac_mode'),
    )

    # Relationships
    employees = relationship("Employee", back_populates="company")
    periods = relationship("PayrollPeriod", back_populates="company")


class Employee(Base):
    """Employee model."""
    __tablename__ = "employees"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid(as_uuid=True), ForeignKey("companies.id"), nullable=False, index=True)
    employee_number = Column(String(50), nullable=False)
    rfc = Column(String(13), nullable=False)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('company_id', 'employee_number', name='uq_employee_company_number'),
    )

    # Relationships
    company = relationship("Company", back_populates="employees")


class PayrollPeriod(Base):
    """Payroll period; moves PROCESSING -> APPROVED once every active receipt is stamped."""
    __tablename__ = "payroll_periods"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid(as_uuid=True), ForeignKey("companies.id"), nullable=False, index=True)
    period_number = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default='DRAFT', index=True)
    total_perceptions = Column(Numeric(14, 2), nullable=False, default=0)
    total_deductions = Column(Numeric(14, 2), nullable=False, default=0)
    total_net = Column(Numeric(14, 2), nullable=False, default=0)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(PERIOD_STATUSES), name='chk_payroll_period_status'),
        UniqueConstraint('company_id', 'year', 'period_number', name='uq_payroll_period_number'),
    )

    # Relationships
    company = relationship("Company", back_populates="periods")
    line_items = relationship("PayrollLineItem", back_populates="period")


class PayrollLineItem(Base):
    """One employee's receipt within a period. Superseded versions stay with active=False."""
    __tablename__ = "payroll_details"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    period_id = Column(Uuid(as_uuid=True), ForeignKey("payroll_periods.id"), nullable=False, index=True)
    employee_id = Column(Uuid(as_uuid=True), ForeignKey("employees.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    active = Column(Boolean, nullable=False, default=True)
    total_perceptions = Column(Numeric(14, 2), nullable=False, default=0)
    total_deductions = Column(Numeric(14, 2), nullable=False, default=0)
    net_pay = Column(Numeric(14, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default='PENDING', index=True)
    stamping_error_code = Column(String(50), nullable=True)
    stamping_error_message = Column(Text, nullable=True)
    stamping_attempts = Column(Integer, nullable=False, default=0)
    last_stamping_attempt = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(LINE_ITEM_STATUSES), name='chk_payroll_detail_status'),
        CheckConstraint(stamping_attempts >= 0, name='chk_payroll_detail_attempts_non_negative'),
        Index('idx_payroll_details_period_active', 'period_id', 'active'),
    )

    # Relationships
    period = relationship("PayrollPeriod", back_populates="line_items")
    employee = relationship("Employee")
    cfdi_documents = relationship("CfdiDocument", back_populates="line_item")


class CfdiDocument(Base):
    """Electronic payroll receipt. The fiscal folio (uuid) is assigned once and never changes."""
    __tablename__ = "cfdi_nominas"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    employee_id = Column(Uuid(as_uuid=True), ForeignKey("employees.id"), nullable=False, index=True)
    line_item_id = Column(Uuid(as_uuid=True), ForeignKey("payroll_details.id"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default='PENDING', index=True)
    uuid = Column(String(36), unique=True, nullable=True)  # fiscal folio
    stamped_at = Column(DateTime(timezone=True), nullable=True)
    xml_original = Column(Text, nullable=True)
    xml_stamped = Column(Text, nullable=True)
    sat_certificate_number = Column(String(20), nullable=True)
    sat_seal = Column(Text, nullable=True)
    original_chain = Column(Text, nullable=True)
    pac_response = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(CFDI_STATUSES), name='chk_cfdi_status'),
        CheckConstraint("status <> 'STAMPED' OR uuid IS NOT NULL", name='chk_cfdi_stamped_has_folio'),
    )

    # Relationships
    employee = relationship("Employee")
    line_item = relationship("PayrollLineItem", back_populates="cfdi_documents")
    stamping_attempts = relationship("StampingAttempt", back_populates="cfdi")

    @validates("uuid")
    def _validate_folio(self, _key, value):
        if self.uuid is not None and value != self.uuid:
            raise ValueError(f"CFDI {self.id} already carries folio {self.uuid}")
        return value


class StampingAttempt(Base):
    """
    One try at stamping a (document, receipt version) pair.

    The partial unique index allows at most one IN_PROGRESS row per pair,
    which is what makes the stamping lock exclusive.
    """
    __tablename__ = "stamping_attempts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cfdi_id = Column(Uuid(as_uuid=True), ForeignKey("cfdi_nominas.id"), nullable=False, index=True)
    receipt_version = Column(Integer, nullable=False, default=1)
    idempotency_key = Column(String(64), nullable=False, index=True)
    worker_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default='IN_PROGRESS', index=True)
    error_type = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)
    pac_response = Column(JSONType, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(status.in_(ATTEMPT_STATUSES), name='chk_stamping_attempt_status'),
        Index(
            'uq_stamping_attempts_in_progress',
            'cfdi_id', 'receipt_version',
            unique=True,
            postgresql_where=(status == 'IN_PROGRESS'),
            sqlite_where=(status == 'IN_PROGRESS'),
        ),
    )

    # Relationships
    cfdi = relationship("CfdiDocument", back_populates="stamping_attempts")


class AuditLogEntry(Base):
    """Append-only, hash-chained audit record of critical actions."""
    __tablename__ = "audit_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sequence_number = Column(Integer, nullable=False, unique=True, index=True)
    user_id = Column(String(255), nullable=False)  # user UUID or SYSTEM
    action = Column(String(50), nullable=False, index=True)
    entity = Column(String(100), nullable=False)
    entity_id = Column(String(255), nullable=False)
    old_values = Column(JSONType, nullable=True)
    new_values = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    entry_hash = Column(String(64), nullable=False, index=True)
    previous_entry_hash = Column(String(64), nullable=True)

    __table_args__ = (
        Index('idx_audit_logs_entity', 'entity', 'entity_id'),
    )
