from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

import payroll.celery_app as worker
from payroll.domain_errors import RetryableStampingError
from payroll.models import StampingAttempt
from payroll.schemas import StampingJobResult
from payroll.services.audit_chain import AuditChain


class _OrchestratorStub:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.jobs = []
        self.exhausted = []

    def process(self, job):
        self.jobs.append(job)
        if self.error is not None:
            raise self.error
        return StampingJobResult(
            success=True,
            cfdi_id=job.payload.cfdi_id,
            folio="ABC-123",
            attempt_number=job.attempt_number,
        )

    def report_exhausted(self, job, exc):
        self.exhausted.append((job, exc))


def test_stamp_task_builds_job_and_returns_json_result(monkeypatch) -> None:
    stub = _OrchestratorStub()
    monkeypatch.setattr(worker, "get_orchestrator", lambda: stub)
    cfdi_id = uuid4()

    result = worker.stamp_cfdi({"cfdi_id": str(cfdi_id), "batch_id": "batch_1"})

    assert result["success"] is True
    assert result["folio"] == "ABC-123"
    assert result["cfdi_id"] == str(cfdi_id)
    job = stub.jobs[0]
    assert job.attempt_number == 1
    assert job.max_attempts == worker.stamp_cfdi.max_retries + 1
    assert job.payload.batch_id == "batch_1"


def test_stamp_task_hands_retryable_errors_back_to_celery(monkeypatch) -> None:
    stub = _OrchestratorStub(error=RetryableStampingError("Error 503"))
    monkeypatch.setattr(worker, "get_orchestrator", lambda: stub)

    # Called directly (outside a worker) Celery's retry re-raises the original error.
    with pytest.raises(RetryableStampingError, match="Error 503"):
        worker.stamp_cfdi({"cfdi_id": str(uuid4())})

    assert stub.exhausted == []


def test_stamp_task_reports_final_failure_when_retries_run_out(monkeypatch) -> None:
    error = RetryableStampingError("busy elsewhere", code="STAMPING_IN_PROGRESS")
    stub = _OrchestratorStub(error=error)
    monkeypatch.setattr(worker, "get_orchestrator", lambda: stub)
    monkeypatch.setattr(worker.stamp_cfdi, "max_retries", 0)

    with pytest.raises(RetryableStampingError, match="busy elsewhere"):
        worker.stamp_cfdi({"cfdi_id": str(uuid4()), "batch_id": "batch_1"})

    [(job, reported)] = stub.exhausted
    assert reported is error
    assert job.attempt_number == job.max_attempts == 1
    assert job.payload.batch_id == "batch_1"


def test_backoff_seconds_grows_with_attempts(monkeypatch) -> None:
    monkeypatch.setattr(worker.settings, "STAMPING_BACKOFF_JITTER", 0.0)

    assert worker.backoff_seconds(1) == 2.0
    assert worker.backoff_seconds(2) == 4.0
    assert worker.backoff_seconds(30) == worker.settings.STAMPING_BACKOFF_MAX_MS / 1000


def test_cleanup_task_expires_stale_attempts(monkeypatch, session_factory, make_period) -> None:
    period = make_period()
    monkeypatch.setattr(worker, "SessionLocal", session_factory)
    with session_factory() as db:
        db.add(
            StampingAttempt(
                cfdi_id=period.cfdi_ids[0],
                receipt_version=1,
                idempotency_key="k" * 64,
                worker_id="worker-dead",
                status="IN_PROGRESS",
                started_at=datetime.now(timezone.utc) - timedelta(hours=1),
            )
        )
        db.commit()

    assert worker.cleanup_stale_stamping_attempts() == {"expired": 1}
    with session_factory() as db:
        assert db.query(StampingAttempt).one().status == "EXPIRED"


def test_verify_audit_chain_task_reports_findings(monkeypatch, session_factory) -> None:
    monkeypatch.setattr(worker, "SessionLocal", session_factory)
    with session_factory() as db:
        AuditChain().append(db, action="PAYROLL_APPROVE", entity="PayrollPeriod", entity_id="p-1")
        db.commit()

    result = worker.verify_audit_chain(limit=100)

    assert result["valid"] is True
    assert result["total_checked"] == 1


def test_beat_schedule_runs_maintenance_tasks() -> None:
    tasks = {entry["task"] for entry in worker.celery_app.conf.beat_schedule.values()}

    assert tasks == {"cleanup_stale_stamping_attempts", "verify_audit_chain"}
    assert worker.celery_app.conf.beat_schedule["cleanup-stale-stamping-attempts"]["schedule"] > 0
