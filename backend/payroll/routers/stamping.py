"""CFDI stamping endpoints: enqueue jobs and inspect their progress."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..celery_app import get_redis, celery_app
from ..database import get_db
from ..domain_errors import DomainError
from ..schemas import (
    BatchEnqueueResponse,
    BatchStampRequest,
    BatchStatus,
    CanStampReport,
    CfdiStampingStatus,
    EnqueueResponse,
    StampingJobPayload,
    StampingStats,
    StampRequest,
)
from ..services.batch_tracker import BatchTracker
from ..services.queue_service import QueueService
from ..services.stamping_lock import StampingLockManager
from ..use_cases.stamping_queries import get_cfdi_or_404, get_cfdi_stamping_status

router = APIRouter(prefix="/stamping", tags=["stamping"])


def get_batch_tracker() -> BatchTracker:
    return BatchTracker(get_redis())


def get_queue_service(batch_tracker: BatchTracker = Depends(get_batch_tracker)) -> QueueService:
    return QueueService(celery_app, batch_tracker=batch_tracker)


def get_lock_manager() -> StampingLockManager:
    return StampingLockManager()


@router.post("/cfdi/{cfdi_id}", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue_cfdi_stamping(
    cfdi_id: UUID,
    data: Optional[StampRequest] = None,
    db: Session = Depends(get_db),
    queue: QueueService = Depends(get_queue_service),
):
    """Queue one CFDI for stamping. Already stamped documents are refused."""
    data = data or StampRequest()
    document = get_cfdi_or_404(db, cfdi_id)
    if document.status == "STAMPED":
        raise DomainError(
            code="CFDI_ALREADY_STAMPED",
            http_status=409,
            message=f"CFDI {cfdi_id} is already stamped",
            details={"folio": document.uuid},
        )

    job_id = queue.enqueue_cfdi(StampingJobPayload(cfdi_id=cfdi_id, **data.model_dump()))
    return EnqueueResponse(job_id=job_id, cfdi_id=cfdi_id)


@router.post("/batches", response_model=BatchEnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue_batch_stamping(
    data: BatchStampRequest,
    queue: QueueService = Depends(get_queue_service),
):
    """Queue many CFDIs under one batch id with shared progress counters."""
    batch_id, job_ids = queue.enqueue_batch(
        data.cfdi_ids,
        period_id=data.period_id,
        company_id=data.company_id,
        actor_id=data.actor_id,
        priority=data.priority,
    )
    return BatchEnqueueResponse(batch_id=batch_id, total=len(job_ids), job_ids=job_ids)


@router.get("/batches/{batch_id}", response_model=BatchStatus)
def get_batch_status(
    batch_id: str,
    tracker: BatchTracker = Depends(get_batch_tracker),
):
    batch = tracker.get_status(batch_id)
    if batch is None:
        raise DomainError(
            code="BATCH_NOT_FOUND",
            http_status=404,
            message=f"Batch {batch_id} not found or expired",
        )
    return batch


@router.get("/cfdi/{cfdi_id}", response_model=CfdiStampingStatus)
def get_cfdi_status(cfdi_id: UUID, db: Session = Depends(get_db)):
    return get_cfdi_stamping_status(cfdi_id=cfdi_id, db=db)


@router.get("/cfdi/{cfdi_id}/can-stamp", response_model=CanStampReport)
def can_stamp_cfdi(
    cfdi_id: UUID,
    db: Session = Depends(get_db),
    lock_manager: StampingLockManager = Depends(get_lock_manager),
):
    return lock_manager.can_stamp(db, cfdi_id)


@router.get("/stats", response_model=StampingStats)
def get_stamping_stats(
    period_id: Optional[UUID] = None,
    db: Session = Depends(get_db),
    lock_manager: StampingLockManager = Depends(get_lock_manager),
):
    """Attempt totals, success rate and failures by error type (optionally per period)."""
    return lock_manager.stamping_stats(db, period_id=period_id)
