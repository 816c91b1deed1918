"""Pydantic schemas for stamping jobs and API."""
from pydantic import BaseModel, Field, ConfigDict
from typing import Literal, Optional
from datetime import datetime
from uuid import UUID

JobPriority = Literal["high", "normal", "low"]


# Job schemas
class StampingJobPayload(BaseModel):
    """What the queue carries for one stamping job."""
    cfdi_id: UUID
    line_item_id: Optional[UUID] = None
    period_id: Optional[UUID] = None
    receipt_version: int = Field(1, ge=1)
    company_id: Optional[UUID] = None
    actor_id: Optional[str] = None
    priority: JobPriority = "normal"
    batch_id: Optional[str] = None


class StampingJobResult(BaseModel):
    success: bool
    cfdi_id: UUID
    folio: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    attempt_number: int
    period_finalized: bool = False
    already_stamped: bool = False
    processing_time_ms: int = 0


# Request schemas
class StampRequest(BaseModel):
    receipt_version: int = Field(1, ge=1)
    line_item_id: Optional[UUID] = None
    period_id: Optional[UUID] = None
    company_id: Optional[UUID] = None
    actor_id: Optional[str] = None
    priority: JobPriority = "normal"


class BatchStampRequest(BaseModel):
    cfdi_ids: list[UUID] = Field(..., min_length=1, max_length=5000)
    period_id: Optional[UUID] = None
    company_id: Optional[UUID] = None
    actor_id: Optional[str] = None
    priority: JobPriority = "normal"


# Response schemas
class EnqueueResponse(BaseModel):
    job_id: str
    cfdi_id: UUID


class BatchEnqueueResponse(BaseModel):
    batch_id: str
    total: int
    job_ids: list[str]


class BatchStatus(BaseModel):
    batch_id: str
    total: int
    completed: int
    failed: int
    pending: int
    is_complete: bool
    completed_at: Optional[datetime] = None


class StampingAttemptOut(BaseModel):
    id: UUID
    receipt_version: int
    worker_id: Optional[str] = None
    status: str
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class CfdiStampingStatus(BaseModel):
    """Per-document view for operators: state, folio, last classified error."""
    cfdi_id: UUID
    status: str
    folio: Optional[str] = None
    stamped_at: Optional[datetime] = None
    line_item_status: Optional[str] = None
    attempts: int = 0
    last_error_type: Optional[str] = None
    last_error_message: Optional[str] = None


class CanStampReport(BaseModel):
    cfdi_id: UUID
    can_stamp: bool
    issues: list[str] = []
    cfdi_status: str
    folio: Optional[str] = None
    period_status: Optional[str] = None
    has_active_lock: bool = False
    previous_permanent_failures: int = 0
    recent_attempts: list[StampingAttemptOut] = []


class StampingStats(BaseModel):
    total_attempts: int
    successful: int
    failed: int
    in_progress: int
    expired: int
    success_rate: float
    errors_by_type: dict[str, int]


# Audit schemas
class ChainError(BaseModel):
    sequence_number: int
    entry_id: Optional[UUID] = None
    error_type: Literal["hash_mismatch", "chain_break", "missing_sequence"]
    detail: str


class ChainVerification(BaseModel):
    valid: bool
    total_checked: int
    errors: list[ChainError]


class EntryVerification(BaseModel):
    entry_id: UUID
    sequence_number: int
    valid: bool
    stored_hash: str
    computed_hash: str
    previous_link_ok: bool


class IntegrityReport(BaseModel):
    generated_at: datetime
    total_entries: int
    first_sequence: Optional[int] = None
    last_sequence: Optional[int] = None
    last_entry_hash: Optional[str] = None
    chain_valid: bool
    total_checked: int
    error_count: int
    errors: list[ChainError]
