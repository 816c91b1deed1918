"""stamping pipeline schema

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("rfc", sa.String(13), nullable=False),
        sa.Column("pac_provider", sa.String(50)),
        sa.Column("pac_mode", sa.String(20), nullable=False, server_default="sandbox"),
        sa.Column("pac_user", sa.Text()),
        sa.Column("pac_password", sa.Text()),
        sa.Column("certificate_cer", sa.Text()),
        sa.Column("certificate_key", sa.Text()),
        sa.Column("certificate_password", sa.Text()),
        sa.Column("certificate_number", sa.String(20)),
        sa.Column("certificate_valid_until", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.CheckConstraint("pac_mode IN ('sandbox', 'production')", name="chk_company_pac_mode"),
    )
    op.create_index("ix_companies_rfc", "companies", ["rfc"], unique=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("company_id", sa.Uuid(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("employee_number", sa.String(50), nullable=False),
        sa.Column("rfc", sa.String(13), nullable=False),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("company_id", "employee_number", name="uq_employee_company_number"),
    )
    op.create_index("ix_employees_company_id", "employees", ["company_id"])

    op.create_table(
        "payroll_periods",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("company_id", sa.Uuid(), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("period_number", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("total_perceptions", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_deductions", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_net", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('DRAFT', 'PROCESSING', 'CALCULATED', 'APPROVED', 'PAID', 'CLOSED', 'CANCELLED')",
            name="chk_payroll_period_status",
        ),
        sa.UniqueConstraint("company_id", "year", "period_number", name="uq_payroll_period_number"),
    )
    op.create_index("ix_payroll_periods_company_id", "payroll_periods", ["company_id"])
    op.create_index("ix_payroll_periods_status", "payroll_periods", ["status"])

    op.create_table(
        "payroll_details",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("period_id", sa.Uuid(), sa.ForeignKey("payroll_periods.id"), nullable=False),
        sa.Column("employee_id", sa.Uuid(), sa.ForeignKey("employees.id"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_perceptions", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_deductions", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("net_pay", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("stamping_error_code", sa.String(50)),
        sa.Column("stamping_error_message", sa.Text()),
        sa.Column("stamping_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_stamping_attempt", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('PENDING', 'CALCULATED', 'APPROVED', 'STAMPING', 'STAMP_OK', 'STAMP_ERROR', "
            "'SUPERSEDED', 'PAID', 'CANCELLED')",
            name="chk_payroll_detail_status",
        ),
        sa.CheckConstraint("stamping_attempts >= 0", name="chk_payroll_detail_attempts_non_negative"),
    )
    op.create_index("ix_payroll_details_period_id", "payroll_details", ["period_id"])
    op.create_index("ix_payroll_details_employee_id", "payroll_details", ["employee_id"])
    op.create_index("ix_payroll_details_status", "payroll_details", ["status"])
    op.create_index("idx_payroll_details_period_active", "payroll_details", ["period_id", "active"])

    op.create_table(
        "cfdi_nominas",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("employee_id", sa.Uuid(), sa.ForeignKey("employees.id"), nullable=False),
        sa.Column("line_item_id", sa.Uuid(), sa.ForeignKey("payroll_details.id")),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("uuid", sa.String(36), unique=True),
        sa.Column("stamped_at", sa.DateTime(timezone=True)),
        sa.Column("xml_original", sa.Text()),
        sa.Column("xml_stamped", sa.Text()),
        sa.Column("sat_certificate_number", sa.String(20)),
        sa.Column("sat_seal", sa.Text()),
        sa.Column("original_chain", sa.Text()),
        sa.Column("pac_response", postgresql.JSONB()),
        *_timestamps(),
        sa.CheckConstraint("status IN ('PENDING', 'STAMPED', 'ERROR', 'CANCELLED')", name="chk_cfdi_status"),
        sa.CheckConstraint("status <> 'STAMPED' OR uuid IS NOT NULL", name="chk_cfdi_stamped_has_folio"),
    )
    op.create_index("ix_cfdi_nominas_employee_id", "cfdi_nominas", ["employee_id"])
    op.create_index("ix_cfdi_nominas_line_item_id", "cfdi_nominas", ["line_item_id"])
    op.create_index("ix_cfdi_nominas_status", "cfdi_nominas", ["status"])

    op.create_table(
        "stamping_attempts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("cfdi_id", sa.Uuid(), sa.ForeignKey("cfdi_nominas.id"), nullable=False),
        sa.Column("receipt_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("idempotency_key", sa.String(64), nullable=False),
        sa.Column("worker_id", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="IN_PROGRESS"),
        sa.Column("error_type", sa.String(30)),
        sa.Column("error_message", sa.Text()),
        sa.Column("pac_response", postgresql.JSONB()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "status IN ('IN_PROGRESS', 'SUCCESS', 'FAILED', 'EXPIRED')",
            name="chk_stamping_attempt_status",
        ),
    )
    op.create_index("ix_stamping_attempts_cfdi_id", "stamping_attempts", ["cfdi_id"])
    op.create_index("ix_stamping_attempts_idempotency_key", "stamping_attempts", ["idempotency_key"])
    op.create_index("ix_stamping_attempts_status", "stamping_attempts", ["status"])
    # At most one unresolved attempt per (document, receipt version).
    op.create_index(
        "uq_stamping_attempts_in_progress",
        "stamping_attempts",
        ["cfdi_id", "receipt_version"],
        unique=True,
        postgresql_where=sa.text("status = 'IN_PROGRESS'"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("old_values", postgresql.JSONB()),
        sa.Column("new_values", postgresql.JSONB()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("previous_entry_hash", sa.String(64)),
    )
    op.create_index("ix_audit_logs_sequence_number", "audit_logs", ["sequence_number"], unique=True)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entry_hash", "audit_logs", ["entry_hash"])
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    # Audit rows are append-only.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION audit_logs_forbid_mutation() RETURNS trigger AS $$
        BEGIN
          RAISE EXCEPTION 'audit_logs is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_audit_logs_append_only
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION audit_logs_forbid_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_audit_logs_append_only ON audit_logs")
    op.execute("DROP FUNCTION IF EXISTS audit_logs_forbid_mutation()")
    op.drop_table("audit_logs")
    op.drop_table("stamping_attempts")
    op.drop_table("cfdi_nominas")
    op.drop_table("payroll_details")
    op.drop_table("payroll_periods")
    op.drop_table("employees")
    op.drop_table("companies")
