"""Enqueue stamping jobs on the Celery stamping queue."""
from __future__ import annotations

import logging
import time
import uuid
from typing import Iterable
from uuid import UUID

from ..config import settings
from ..schemas import JobPriority, StampingJobPayload
from .batch_tracker import BatchTracker

logger = logging.getLogger(__name__)

STAMP_TASK_NAME = "stamp_cfdi"

# Redis transport: lower number is served first.
CELERY_PRIORITIES: dict[str, int] = {"high": 0, "normal": 3, "low": 6}


def new_batch_id() -> str:
    return f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class QueueService:
    def __init__(self, celery_app, *, batch_tracker: BatchTracker | None = None) -> None:
        self.celery_app = celery_app
        self.batch_tracker = batch_tracker

    def enqueue_cfdi(self, payload: StampingJobPayload) -> str:
        result = self.celery_app.send_task(
            STAMP_TASK_NAME,
            args=[payload.model_dump(mode="json")],
            queue=settings.STAMPING_QUEUE,
            priority=CELERY_PRIORITIES[payload.priority],
        )
        logger.info(f"📥 Enqueued CFDI {payload.cfdi_id} as job {result.id} ({payload.priority})")
        return result.id

    def enqueue_batch(
        self,
        cfdi_ids: Iterable[UUID],
        *,
        period_id: UUID | None = None,
        company_id: UUID | None = None,
        actor_id: str | None = None,
        priority: JobPriority = "normal",
    ) -> tuple[str, list[str]]:
        """Register batch counters first, then enqueue one job per distinct document."""
        unique_ids = list(dict.fromkeys(cfdi_ids))
        batch_id = new_batch_id()
        if self.batch_tracker is not None:
            self.batch_tracker.init_batch(
                batch_id,
                len(unique_ids),
                period_id=str(period_id) if period_id else None,
            )

        job_ids = [
            self.enqueue_cfdi(
                StampingJobPayload(
                    cfdi_id=cfdi_id,
                    period_id=period_id,
                    company_id=company_id,
                    actor_id=actor_id,
                    priority=priority,
                    batch_id=batch_id,
                )
            )
            for cfdi_id in unique_ids
        ]
        logger.info(f"📦 Batch {batch_id}: {len(job_ids)} stamping job(s) enqueued")
        return batch_id, job_ids
