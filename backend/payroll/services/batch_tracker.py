"""Batch progress counters in Redis, fed by stamping events."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from redis.exceptions import RedisError

from ..config import settings
from ..schemas import BatchStatus
from .events import CFDI_BATCH_COMPLETED, CFDI_STAMP_FAILED, CFDI_STAMPED, EventBus

logger = logging.getLogger(__name__)


def _batch_key(batch_id: str) -> str:
    return f"stamping:batch:{batch_id}"


def _seen_key(batch_id: str) -> str:
    return f"stamping:batch:{batch_id}:seen"


class BatchTracker:
    """
    Keeps {total, completed, failed} per batch.

    Each document is counted once: redelivered jobs that report the same
    terminal outcome again are ignored through the per-batch "seen" set.
    """

    def __init__(
        self,
        redis_client,
        *,
        events: EventBus | None = None,
        ttl_seconds: int = settings.BATCH_STATUS_TTL_SECONDS,
    ) -> None:
        self.redis = redis_client
        self.events = events
        self.ttl_seconds = ttl_seconds

    def init_batch(self, batch_id: str, total: int, *, period_id: str | None = None) -> None:
        mapping: dict[str, Any] = {
            "total": total,
            "completed": 0,
            "failed": 0,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if period_id:
            mapping["period_id"] = period_id
        key = _batch_key(batch_id)
        self.redis.hset(key, mapping=mapping)
        self.redis.expire(key, self.ttl_seconds)
        logger.info(f"📦 Batch {batch_id} registered with {total} document(s)")

    def record_result(self, batch_id: str, cfdi_id: str, *, success: bool) -> BatchStatus | None:
        key = _batch_key(batch_id)
        if self.redis.sadd(_seen_key(batch_id), cfdi_id) == 0:
            logger.debug(f"Batch {batch_id}: result for {cfdi_id} already counted")
            return self.get_status(batch_id)
        self.redis.expire(_seen_key(batch_id), self.ttl_seconds)

        self.redis.hincrby(key, "completed" if success else "failed", 1)
        status = self.get_status(batch_id)
        if status is None:
            logger.warning(f"⚠️ Batch {batch_id} has no counters (expired or never registered)")
            return None

        if status.is_complete and self.redis.hsetnx(key, "completed_at", datetime.now(timezone.utc).isoformat()):
            logger.info(
                f"🏁 Batch {batch_id} complete: {status.completed} stamped, {status.failed} failed"
            )
            if self.events is not None:
                self.events.publish(
                    CFDI_BATCH_COMPLETED,
                    {
                        "batch_id": batch_id,
                        "total": status.total,
                        "completed": status.completed,
                        "failed": status.failed,
                    },
                )
        return status

    def get_status(self, batch_id: str) -> BatchStatus | None:
        data = self.redis.hgetall(_batch_key(batch_id))
        if not data or "total" not in data:
            return None
        total = int(data["total"])
        completed = int(data.get("completed", 0))
        failed = int(data.get("failed", 0))
        return BatchStatus(
            batch_id=batch_id,
            total=total,
            completed=completed,
            failed=failed,
            pending=max(total - completed - failed, 0),
            is_complete=completed + failed >= total,
            completed_at=data.get("completed_at"),
        )

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(CFDI_STAMPED, self._on_stamped)
        bus.subscribe(CFDI_STAMP_FAILED, self._on_failed)

    def _on_stamped(self, payload: dict[str, Any]) -> None:
        self._record_from_event(payload, success=True)

    def _on_failed(self, payload: dict[str, Any]) -> None:
        self._record_from_event(payload, success=False)

    def _record_from_event(self, payload: dict[str, Any], *, success: bool) -> None:
        batch_id = payload.get("batch_id")
        if not batch_id:
            return
        try:
            self.record_result(batch_id, str(payload["cfdi_id"]), success=success)
        except RedisError:
            # Counters are advisory; the stamping outcome is already committed.
            logger.exception(f"Redis error while updating batch {batch_id} (ignored)")
