"""Automatic PROCESSING -> APPROVED transition once every receipt of a period is stamped."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy import event as sa_event, func, update
from sqlalchemy.orm import Session

from ..models import CfdiDocument, PayrollLineItem, PayrollPeriod
from .audit_chain import AuditChain, SYSTEM_ACTOR
from .events import PAYROLL_PERIOD_APPROVED, EventBus

logger = logging.getLogger(__name__)


class PeriodFinalizer:
    def __init__(
        self,
        *,
        audit_chain: AuditChain,
        events: EventBus | None = None,
        now_utc: Callable[[], datetime] | None = None,
    ) -> None:
        self.audit_chain = audit_chain
        self.events = events
        self.now_utc = now_utc or (lambda: datetime.now(timezone.utc))

    def resolve_period_id(
        self,
        db: Session,
        *,
        cfdi_id: UUID,
        line_item_id: UUID | None = None,
        period_id: UUID | None = None,
    ) -> UUID | None:
        if period_id is not None:
            return period_id
        if line_item_id is None:
            line_item_id = (
                db.query(CfdiDocument.line_item_id)
                .filter(CfdiDocument.id == cfdi_id)
                .scalar()
            )
        if line_item_id is None:
            return None
        return (
            db.query(PayrollLineItem.period_id)
            .filter(PayrollLineItem.id == line_item_id)
            .scalar()
        )

    def finalize_if_complete(
        self,
        db: Session,
        *,
        cfdi_id: UUID,
        line_item_id: UUID | None = None,
        period_id: UUID | None = None,
    ) -> bool:
        """
        Approve the owning period if no active line item is left unstamped.

        Returns True only for the caller whose conditional update performed
        the transition. Periods outside PROCESSING are never touched, and an
        unresolvable period is logged and reported as False.
        """
        resolved = self.resolve_period_id(db, cfdi_id=cfdi_id, line_item_id=line_item_id, period_id=period_id)
        if resolved is None:
            logger.warning(f"⚠️ Could not resolve payroll period for CFDI {cfdi_id}; finalization skipped")
            return False

        status = db.query(PayrollPeriod.status).filter(PayrollPeriod.id == resolved).scalar()
        if status != "PROCESSING":
            logger.debug(f"Period {resolved} is {status}, finalization not applicable")
            return False

        pending = (
            db.query(func.count(PayrollLineItem.id))
            .filter(
                PayrollLineItem.period_id == resolved,
                PayrollLineItem.active.is_(True),
                PayrollLineItem.status != "STAMP_OK",
            )
            .scalar()
        )
        if pending:
            logger.debug(f"Period {resolved}: {pending} receipt(s) still pending stamping")
            return False

        result = db.execute(
            update(PayrollPeriod)
            .where(PayrollPeriod.id == resolved, PayrollPeriod.status == "PROCESSING")
            .values(status="APPROVED", approved_at=self.now_utc())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Period {resolved} was finalized by another worker")
            return False

        total_employees, total_net = (
            db.query(func.count(PayrollLineItem.id), func.coalesce(func.sum(PayrollLineItem.net_pay), 0))
            .filter(PayrollLineItem.period_id == resolved, PayrollLineItem.active.is_(True))
            .one()
        )
        self.audit_chain.log_period_approval(
            db,
            user_id=SYSTEM_ACTOR,
            period_id=resolved,
            total_employees=total_employees,
            total_net=total_net,
        )
        logger.info(f"✅ Period {resolved} approved: all {total_employees} receipt(s) stamped")

        if self.events is not None:
            payload = {"period_id": str(resolved), "total_employees": total_employees, "trigger_cfdi_id": str(cfdi_id)}
            # Announce only once the approval is durable.
            sa_event.listen(
                db,
                "after_commit",
                lambda _session: self.events.publish(PAYROLL_PERIOD_APPROVED, payload),
                once=True,
            )
        return True
