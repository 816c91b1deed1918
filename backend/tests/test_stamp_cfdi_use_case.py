from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from payroll.domain_errors import DomainError, RetryableStampingError, StampingLockRefused
from payroll.models import AuditLogEntry, CfdiDocument, PayrollLineItem, PayrollPeriod, StampingAttempt
from payroll.schemas import StampingJobPayload
from payroll.services.audit_chain import AuditChain
from payroll.services.batch_tracker import BatchTracker
from payroll.services.events import (
    CFDI_STAMP_FAILED,
    CFDI_STAMP_RETRY,
    CFDI_STAMPED,
    PAYROLL_PERIOD_APPROVED,
    EventBus,
)
from payroll.services.stamping_client import PacError, StampResult
from payroll.services.stamping_lock import StampingLockManager
from payroll.use_cases.stamp_cfdi import StampingJob, StampingOrchestrator
from payroll.use_cases.stamping_queries import get_cfdi_stamping_status

STAMPED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _StubClient:
    def __init__(self, *, folios=None, error: Exception | None = None, on_call=None) -> None:
        self.folios = list(folios or [])
        self.error = error
        self.on_call = on_call
        self.calls: list[dict] = []

    def stamp(self, source_xml, credentials, *, idempotency_key=None):
        self.calls.append({"xml": source_xml, "rfc": credentials.rfc, "idempotency_key": idempotency_key})
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error
        folio = self.folios.pop(0) if self.folios else str(uuid4()).upper()
        return StampResult(
            folio=folio,
            stamped_at=STAMPED_AT,
            signed_xml=source_xml.replace("</cfdi:Comprobante>", "<tfd/></cfdi:Comprobante>"),
            sat_certificate_number="00001000000504465028",
            provider_response={"uuid": folio},
        )


class _CountingLockManager(StampingLockManager):
    def __init__(self) -> None:
        super().__init__()
        self.acquire_calls = 0

    def acquire_lock(self, db, **kwargs):
        self.acquire_calls += 1
        return super().acquire_lock(db, **kwargs)


class _Recorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[str, dict]] = []
        for name in (CFDI_STAMPED, CFDI_STAMP_FAILED, CFDI_STAMP_RETRY, PAYROLL_PERIOD_APPROVED):
            bus.subscribe(name, lambda payload, name=name: self.events.append((name, payload)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payload(self, name: str) -> dict:
        return next(payload for event, payload in self.events if event == name)


def _orchestrator(session_factory, client, **kwargs) -> tuple[StampingOrchestrator, _Recorder]:
    events = EventBus()
    recorder = _Recorder(events)
    orchestrator = StampingOrchestrator(
        stamping_client=client,
        session_factory=session_factory,
        events=events,
        worker_id="worker-test",
        **kwargs,
    )
    return orchestrator, recorder


def _job(cfdi_id, *, attempts_made: int = 0, max_attempts: int = 5, **payload) -> StampingJob:
    return StampingJob(
        payload=StampingJobPayload(cfdi_id=cfdi_id, **payload),
        attempts_made=attempts_made,
        max_attempts=max_attempts,
    )


def _audit_actions(session_factory) -> list[str]:
    with session_factory() as db:
        return [
            entry.action
            for entry in db.query(AuditLogEntry).order_by(AuditLogEntry.sequence_number.asc()).all()
        ]


def test_successful_stamp_commits_folio_and_approves_single_item_period(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    client = _StubClient(folios=["ABC-123"])
    orchestrator, recorder = _orchestrator(session_factory, client)

    result = orchestrator.process(_job(cfdi_id, actor_id="operator-1", batch_id="batch_1"))

    assert result.success is True
    assert result.folio == "ABC-123"
    assert result.period_finalized is True
    assert result.already_stamped is False
    assert result.attempt_number == 1
    assert len(client.calls) == 1
    assert len(client.calls[0]["idempotency_key"]) == 64

    with session_factory() as db:
        document = db.get(CfdiDocument, cfdi_id)
        assert document.status == "STAMPED"
        assert document.uuid == "ABC-123"
        assert "<tfd/>" in document.xml_stamped
        assert document.pac_response == {"uuid": "ABC-123"}

        line_item = db.get(PayrollLineItem, period.line_item_ids[0])
        assert line_item.status == "STAMP_OK"
        assert line_item.stamping_attempts == 1
        assert line_item.stamping_error_code is None

        attempt = db.query(StampingAttempt).filter(StampingAttempt.cfdi_id == cfdi_id).one()
        assert attempt.status == "SUCCESS"
        assert attempt.worker_id == "worker-test"

        assert db.get(PayrollPeriod, period.period_id).status == "APPROVED"
        stamp_entry = db.query(AuditLogEntry).filter(AuditLogEntry.action == "CFDI_STAMP").one()
        assert stamp_entry.user_id == "operator-1"

    assert _audit_actions(session_factory) == ["CFDI_STAMP", "PAYROLL_APPROVE"]
    assert recorder.names() == [PAYROLL_PERIOD_APPROVED, CFDI_STAMPED]
    stamped = recorder.payload(CFDI_STAMPED)
    assert stamped["folio"] == "ABC-123"
    assert stamped["batch_id"] == "batch_1"
    assert stamped["period_finalized"] is True


def test_already_stamped_document_short_circuits(session_factory, make_period) -> None:
    period = make_period(items=1, period_status="APPROVED")
    cfdi_id = period.cfdi_ids[0]
    with session_factory() as db:
        document = db.get(CfdiDocument, cfdi_id)
        document.uuid = "XYZ-999"
        document.status = "STAMPED"
        db.get(PayrollLineItem, period.line_item_ids[0]).status = "STAMP_OK"
        db.commit()
    client = _StubClient()
    lock_manager = _CountingLockManager()
    orchestrator, recorder = _orchestrator(session_factory, client, lock_manager=lock_manager)

    result = orchestrator.process(_job(cfdi_id))

    assert result.success is True
    assert result.folio == "XYZ-999"
    assert result.already_stamped is True
    assert client.calls == []
    assert lock_manager.acquire_calls == 0
    assert _audit_actions(session_factory) == []
    assert recorder.names() == [CFDI_STAMPED]
    assert recorder.payload(CFDI_STAMPED)["already_stamped"] is True
    assert recorder.payload(CFDI_STAMPED)["folio"] == "XYZ-999"
    with session_factory() as db:
        assert db.query(StampingAttempt).count() == 0


def test_temporary_pac_error_releases_lock_and_asks_queue_to_retry(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    client = _StubClient(error=PacError("Error 503: Service Unavailable", status_code=503))
    orchestrator, recorder = _orchestrator(session_factory, client)

    with pytest.raises(RetryableStampingError, match="503") as exc_info:
        orchestrator.process(_job(cfdi_id, attempts_made=0, max_attempts=5))

    assert exc_info.value.error_type.value == "PAC_TEMPORARY"
    with session_factory() as db:
        document = db.get(CfdiDocument, cfdi_id)
        assert document.status == "PENDING"
        assert document.uuid is None

        line_item = db.get(PayrollLineItem, period.line_item_ids[0])
        assert line_item.status == "CALCULATED"

        attempt = db.query(StampingAttempt).filter(StampingAttempt.cfdi_id == cfdi_id).one()
        assert attempt.status == "FAILED"
        assert attempt.error_type == "PAC_TEMPORARY"
        assert attempt.completed_at is not None

    assert _audit_actions(session_factory) == []
    assert recorder.names() == [CFDI_STAMP_RETRY]
    assert recorder.payload(CFDI_STAMP_RETRY)["attempt_number"] == 1


def test_retry_after_temporary_error_succeeds_on_next_delivery(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    client = _StubClient(error=PacError("ECONNRESET"))
    orchestrator, _ = _orchestrator(session_factory, client)

    with pytest.raises(RetryableStampingError):
        orchestrator.process(_job(cfdi_id, attempts_made=0))

    client.error = None
    client.folios = ["ABC-123"]
    result = orchestrator.process(_job(cfdi_id, attempts_made=1))

    assert result.success is True
    assert result.attempt_number == 2
    assert len(client.calls) == 2
    assert client.calls[0]["idempotency_key"] == client.calls[1]["idempotency_key"]
    with session_factory() as db:
        statuses = sorted(a.status for a in db.query(StampingAttempt).all())
        assert statuses == ["FAILED", "SUCCESS"]
        assert db.get(PayrollLineItem, period.line_item_ids[0]).stamping_attempts == 2


def test_validation_error_marks_document_and_line_item_as_failed(session_factory, make_period) -> None:
    period = make_period(items=2)
    cfdi_id = period.cfdi_ids[0]
    client = _StubClient(error=PacError("RFC del emisor inválido"))
    orchestrator, recorder = _orchestrator(session_factory, client)

    result = orchestrator.process(_job(cfdi_id, actor_id="operator-1", batch_id="batch_9"))

    assert result.success is False
    assert result.error_type == "VALIDATION"
    assert result.error_message == "RFC del emisor inválido"
    with session_factory() as db:
        document = db.get(CfdiDocument, cfdi_id)
        assert document.status == "ERROR"
        assert document.uuid is None
        assert document.pac_response["errorType"] == "VALIDATION"
        assert document.pac_response["errorMessage"] == "RFC del emisor inválido"
        assert document.pac_response["attempts"] == 1

        line_item = db.get(PayrollLineItem, period.line_item_ids[0])
        assert line_item.status == "STAMP_ERROR"
        assert line_item.stamping_error_code == "VALIDATION"
        assert line_item.stamping_attempts == 1

        assert db.get(PayrollPeriod, period.period_id).status == "PROCESSING"

    assert _audit_actions(session_factory) == ["CFDI_STAMP_FAILED"]
    failed = recorder.payload(CFDI_STAMP_FAILED)
    assert failed["period_id"] == str(period.period_id)
    assert failed["batch_id"] == "batch_9"


def test_retryable_error_on_last_attempt_fails_permanently(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    client = _StubClient(error=PacError("PAC timeout after 30000ms"))
    orchestrator, recorder = _orchestrator(session_factory, client)

    result = orchestrator.process(_job(cfdi_id, attempts_made=4, max_attempts=5))

    assert result.success is False
    assert result.error_type == "NETWORK"
    assert result.attempt_number == 5
    with session_factory() as db:
        assert db.get(CfdiDocument, cfdi_id).status == "ERROR"
        assert db.get(PayrollLineItem, period.line_item_ids[0]).stamping_attempts == 5
    assert recorder.names() == [CFDI_STAMP_FAILED]


def test_unknown_errors_stop_at_their_own_ceiling(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    client = _StubClient(error=RuntimeError("something odd"))
    orchestrator, _ = _orchestrator(session_factory, client, unknown_max_attempts=2)

    with pytest.raises(RetryableStampingError):
        orchestrator.process(_job(cfdi_id, attempts_made=0))
    result = orchestrator.process(_job(cfdi_id, attempts_made=1))

    assert result.success is False
    assert result.error_type == "UNKNOWN"


def test_expired_certificate_fails_without_calling_the_pac(session_factory, make_period) -> None:
    period = make_period(items=1, certificate_valid_until=datetime.now(timezone.utc) - timedelta(days=1))
    cfdi_id = period.cfdi_ids[0]
    client = _StubClient()
    orchestrator, _ = _orchestrator(session_factory, client)

    result = orchestrator.process(_job(cfdi_id))

    assert result.success is False
    assert result.error_type == "CERTIFICATE"
    assert client.calls == []
    with session_factory() as db:
        assert db.get(CfdiDocument, cfdi_id).status == "ERROR"
        attempt = db.query(StampingAttempt).filter(StampingAttempt.cfdi_id == cfdi_id).one()
        assert attempt.status == "FAILED"


def test_missing_source_xml_is_a_validation_failure(session_factory, make_period) -> None:
    period = make_period(items=1, xml_original=None)
    client = _StubClient()
    orchestrator, _ = _orchestrator(session_factory, client)

    result = orchestrator.process(_job(period.cfdi_ids[0]))

    assert result.success is False
    assert result.error_type == "VALIDATION"
    assert client.calls == []


def test_live_lock_held_elsewhere_is_retried(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    with session_factory() as db:
        StampingLockManager().acquire_lock(db, cfdi_id=cfdi_id, receipt_version=1, worker_id="other")
        db.commit()
    client = _StubClient()
    orchestrator, _ = _orchestrator(session_factory, client)

    with pytest.raises(RetryableStampingError) as exc_info:
        orchestrator.process(_job(cfdi_id))

    assert exc_info.value.code == "STAMPING_IN_PROGRESS"
    assert client.calls == []


def test_document_in_error_status_is_refused(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    with session_factory() as db:
        db.get(CfdiDocument, cfdi_id).status = "ERROR"
        db.commit()
    orchestrator, recorder = _orchestrator(session_factory, _StubClient())

    with pytest.raises(StampingLockRefused) as exc_info:
        orchestrator.process(_job(cfdi_id, batch_id="batch_2"))

    assert exc_info.value.reason == "NOT_STAMPABLE"
    assert recorder.payload(CFDI_STAMP_FAILED)["batch_id"] == "batch_2"


def test_missing_document_raises_not_found(session_factory) -> None:
    orchestrator, recorder = _orchestrator(session_factory, _StubClient())

    with pytest.raises(DomainError, match="not found") as exc_info:
        orchestrator.process(_job(uuid4()))

    assert exc_info.value.code == "CFDI_NOT_FOUND"
    assert recorder.names() == [CFDI_STAMP_FAILED]


def test_duplicate_deliveries_during_pac_call_never_double_stamp(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    concurrent_errors: list[Exception] = []
    client = _StubClient(folios=["ABC-123", "DEF-456"])
    orchestrator, _ = _orchestrator(session_factory, client)

    def _redeliver() -> None:
        for _ in range(5):
            try:
                orchestrator.process(_job(cfdi_id))
            except RetryableStampingError as exc:
                concurrent_errors.append(exc)

    client.on_call = _redeliver
    result = orchestrator.process(_job(cfdi_id))

    assert result.success is True
    assert result.folio == "ABC-123"
    assert len(client.calls) == 1
    assert [exc.code for exc in concurrent_errors] == ["STAMPING_IN_PROGRESS"] * 5

    client.on_call = None
    redelivered = orchestrator.process(_job(cfdi_id))
    assert redelivered.already_stamped is True
    assert redelivered.folio == "ABC-123"
    assert len(client.calls) == 1

    with session_factory() as db:
        assert db.query(CfdiDocument).filter(CfdiDocument.uuid.isnot(None)).count() == 1
        assert [a.status for a in db.query(StampingAttempt).all()] == ["SUCCESS"]
    assert _audit_actions(session_factory) == ["CFDI_STAMP", "PAYROLL_APPROVE"]


def test_commit_failure_releases_the_lock_for_the_next_delivery(session_factory, make_period) -> None:
    period = make_period(items=2)
    first_id, second_id = period.cfdi_ids
    # The PAC hands out the same folio twice; the second document cannot store it.
    client = _StubClient(folios=["DUP-1", "DUP-1"])
    orchestrator, recorder = _orchestrator(session_factory, client)
    orchestrator.process(_job(first_id))

    with pytest.raises(RetryableStampingError, match="DUP-1 issued but not persisted") as exc_info:
        orchestrator.process(_job(second_id, attempts_made=0))

    assert exc_info.value.error_type.value == "UNKNOWN"
    with session_factory() as db:
        attempt = db.query(StampingAttempt).filter(StampingAttempt.cfdi_id == second_id).one()
        assert attempt.status == "FAILED"
        assert attempt.error_type == "UNKNOWN"
        document = db.get(CfdiDocument, second_id)
        assert document.status == "PENDING"
        assert document.uuid is None
    assert recorder.names()[-1] == CFDI_STAMP_RETRY

    client.folios = ["DUP-2"]
    result = orchestrator.process(_job(second_id, attempts_made=1))

    assert result.success is True
    assert result.folio == "DUP-2"
    assert result.period_finalized is True
    assert client.calls[1]["idempotency_key"] == client.calls[2]["idempotency_key"]
    with session_factory() as db:
        statuses = sorted(
            a.status for a in db.query(StampingAttempt).filter(StampingAttempt.cfdi_id == second_id).all()
        )
        assert statuses == ["FAILED", "SUCCESS"]
        assert AuditChain().verify_chain(db).valid is True


def test_commit_failure_on_last_attempt_marks_document_failed(session_factory, make_period) -> None:
    period = make_period(items=2)
    first_id, second_id = period.cfdi_ids
    client = _StubClient(folios=["DUP-1", "DUP-1"])
    orchestrator, recorder = _orchestrator(session_factory, client)
    orchestrator.process(_job(first_id))

    result = orchestrator.process(_job(second_id, attempts_made=4, max_attempts=5))

    assert result.success is False
    assert result.error_type == "UNKNOWN"
    with session_factory() as db:
        assert db.get(CfdiDocument, second_id).status == "ERROR"
        attempt = db.query(StampingAttempt).filter(StampingAttempt.cfdi_id == second_id).one()
        assert attempt.status == "FAILED"
    assert _audit_actions(session_factory) == ["CFDI_STAMP", "CFDI_STAMP_FAILED"]
    assert recorder.names()[-1] == CFDI_STAMP_FAILED


def test_batch_with_previously_stamped_document_completes(session_factory, make_period, redis_stub) -> None:
    period = make_period(items=2)
    first_id, second_id = period.cfdi_ids
    orchestrator, _ = _orchestrator(session_factory, _StubClient())
    tracker = BatchTracker(redis_stub, events=orchestrator.events)
    tracker.subscribe(orchestrator.events)
    orchestrator.process(_job(first_id))
    tracker.init_batch("batch_1", 2)

    results = [orchestrator.process(_job(cfdi_id, batch_id="batch_1")) for cfdi_id in (first_id, second_id)]

    assert [r.success for r in results] == [True, True]
    assert results[0].already_stamped is True
    status = tracker.get_status("batch_1")
    assert (status.total, status.completed, status.failed, status.pending) == (2, 2, 0, 0)
    assert status.is_complete is True


def test_exhausted_job_is_counted_as_failed_in_its_batch(session_factory, make_period, redis_stub) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    orchestrator, recorder = _orchestrator(session_factory, _StubClient())
    tracker = BatchTracker(redis_stub, events=orchestrator.events)
    tracker.subscribe(orchestrator.events)
    tracker.init_batch("batch_1", 1)
    job = _job(cfdi_id, attempts_made=4, max_attempts=5, batch_id="batch_1")

    orchestrator.report_exhausted(
        job,
        RetryableStampingError("CFDI is being stamped by another worker", code="STAMPING_IN_PROGRESS"),
    )

    failed = recorder.payload(CFDI_STAMP_FAILED)
    assert failed["code"] == "STAMPING_IN_PROGRESS"
    assert failed["attempt_number"] == 5
    status = tracker.get_status("batch_1")
    assert (status.failed, status.is_complete) == (1, True)


def test_period_with_several_items_is_approved_exactly_once(session_factory, make_period) -> None:
    period = make_period(items=3)
    client = _StubClient()
    orchestrator, recorder = _orchestrator(session_factory, client)

    results = [orchestrator.process(_job(cfdi_id)) for cfdi_id in period.cfdi_ids]

    assert [r.period_finalized for r in results] == [False, False, True]
    assert recorder.names().count(PAYROLL_PERIOD_APPROVED) == 1

    again = orchestrator.process(_job(period.cfdi_ids[-1]))
    assert again.already_stamped is True
    assert again.period_finalized is False
    assert _audit_actions(session_factory).count("PAYROLL_APPROVE") == 1

    with session_factory() as db:
        assert AuditChain().verify_chain(db).valid is True


def test_status_query_reports_last_classified_error(session_factory, make_period) -> None:
    period = make_period(items=1)
    cfdi_id = period.cfdi_ids[0]
    client = _StubClient(error=PacError("Error 503: Service Unavailable"))
    orchestrator, _ = _orchestrator(session_factory, client)
    with pytest.raises(RetryableStampingError):
        orchestrator.process(_job(cfdi_id))

    with session_factory() as db:
        failing = get_cfdi_stamping_status(cfdi_id=cfdi_id, db=db)

    client.error = None
    orchestrator.process(_job(cfdi_id, attempts_made=1))
    with session_factory() as db:
        stamped = get_cfdi_stamping_status(cfdi_id=cfdi_id, db=db)

    assert failing.status == "PENDING"
    assert failing.attempts == 1
    assert failing.last_error_type == "PAC_TEMPORARY"
    assert stamped.status == "STAMPED"
    assert stamped.attempts == 2
    assert stamped.folio is not None
    assert stamped.last_error_type is None
