"""In-process publish/subscribe for stamping notifications."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

CFDI_STAMPED = "cfdi.stamped"
CFDI_STAMP_FAILED = "cfdi.stamp.failed"
CFDI_STAMP_RETRY = "cfdi.stamp.retry"
CFDI_BATCH_COMPLETED = "cfdi.batch.completed"
PAYROLL_PERIOD_APPROVED = "payroll.period.approved"

EventHandler = Callable[[dict[str, Any]], None]


class EventBus:
    """
    Handlers run synchronously in publish order.

    A failing handler is logged and skipped; it never fails the job that
    published the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        handlers = list(self._handlers.get(event, ()))
        logger.debug(f"📣 {event} -> {len(handlers)} handler(s)")
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Event handler {getattr(handler, '__name__', handler)!r} failed for {event}")
