"""
Celery worker for CFDI stamping jobs and the periodic lock/audit maintenance tasks.
"""
from celery import Celery
from sqlalchemy.exc import OperationalError
import logging
import redis
from .config import settings
from .database import SessionLocal, session_scope
from .domain_errors import RetryableStampingError
from .schemas import StampingJobPayload
from .services.audit_chain import AuditChain
from .services.batch_tracker import BatchTracker
from .services.events import EventBus
from .services.retry_policy import compute_backoff_delay
from .services.stamping_client import PacClient
from .services.stamping_lock import StampingLockManager
from .use_cases.stamp_cfdi import StampingJob, StampingOrchestrator

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

celery_app = Celery(
    "nomina_timbrado",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_default_queue=settings.STAMPING_QUEUE,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.STAMPING_WORKER_CONCURRENCY,
)

_redis_client = None
_orchestrator = None


def get_redis():
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def get_orchestrator() -> StampingOrchestrator:
    """One orchestrator per worker process, with batch counters wired to its events."""
    global _orchestrator
    if _orchestrator is None:
        events = EventBus()
        BatchTracker(get_redis(), events=events).subscribe(events)
        _orchestrator = StampingOrchestrator(
            stamping_client=PacClient(),
            session_factory=SessionLocal,
            events=events,
        )
    return _orchestrator


def backoff_seconds(attempt_number: int) -> float:
    delay_ms = compute_backoff_delay(
        attempt_number,
        base_delay_ms=settings.STAMPING_BACKOFF_BASE_MS,
        max_delay_ms=settings.STAMPING_BACKOFF_MAX_MS,
        jitter=settings.STAMPING_BACKOFF_JITTER,
    )
    return delay_ms / 1000


@celery_app.task(
    name="stamp_cfdi",
    bind=True,
    acks_late=True,
    max_retries=settings.STAMPING_MAX_ATTEMPTS - 1,
)
def stamp_cfdi(self, payload: dict):
    """
    Run one stamping attempt for the CFDI in ``payload``.

    Retryable failures go back to the queue with exponential backoff. On the
    last attempt the failure is published for batch counters and re-raised.
    """
    job = StampingJob(
        payload=StampingJobPayload.model_validate(payload),
        attempts_made=self.request.retries or 0,
        max_attempts=self.max_retries + 1,
    )

    orchestrator = get_orchestrator()
    try:
        result = orchestrator.process(job)
    except (RetryableStampingError, OperationalError) as e:
        if job.attempt_number >= job.max_attempts:
            orchestrator.report_exhausted(job, e)
            raise
        countdown = backoff_seconds(job.attempt_number)
        logger.warning(
            f"🔄 Retry {job.attempt_number}/{job.max_attempts} in {countdown:.1f}s "
            f"for CFDI {job.payload.cfdi_id}: {e}"
        )
        raise self.retry(exc=e, countdown=countdown)

    return result.model_dump(mode="json")


@celery_app.task(name="cleanup_stale_stamping_attempts")
def cleanup_stale_stamping_attempts():
    """Expire IN_PROGRESS attempts whose worker died without releasing the lock."""
    try:
        with session_scope(SessionLocal) as db:
            expired = StampingLockManager().cleanup_stale_attempts(db)
    except Exception as e:
        logger.error(f"❌ Error cleaning up stamping attempts: {e}", exc_info=True)
        raise
    return {"expired": expired}


@celery_app.task(name="verify_audit_chain")
def verify_audit_chain(limit: int = settings.AUDIT_VERIFY_LIMIT):
    """Diagnostic only: report tampering or breaks, never repair."""
    with session_scope(SessionLocal) as db:
        verification = AuditChain().verify_chain(db, start_sequence=1, limit=limit)

    if verification.valid:
        logger.info(f"✅ Audit chain valid ({verification.total_checked} entries checked)")
    else:
        for error in verification.errors:
            logger.error(f"❌ Audit chain {error.error_type} at seq {error.sequence_number}: {error.detail}")
    return verification.model_dump(mode="json")


# Schedule periodic maintenance
celery_app.conf.beat_schedule = {
    'cleanup-stale-stamping-attempts': {
        'task': 'cleanup_stale_stamping_attempts',
        'schedule': settings.STAMPING_CLEANUP_INTERVAL_SECONDS,
    },
    'verify-audit-chain-daily': {
        'task': 'verify_audit_chain',
        'schedule': settings.AUDIT_VERIFY_INTERVAL_SECONDS,
    },
}
