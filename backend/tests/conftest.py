from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from payroll import models  # noqa: F401
from payroll.database import Base
from payroll.models import CfdiDocument, Company, Employee, PayrollLineItem, PayrollPeriod


@pytest.fixture
def session_factory():
    """In-memory SQLite with real transactions and SAVEPOINT support."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_autobegin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def make_period(session_factory):
    """Create a company, a period and ``items`` line items each with a PENDING CFDI."""

    def _make(
        *,
        items: int = 1,
        period_status: str = "PROCESSING",
        pac_mode: str = "sandbox",
        certificate_valid_until: datetime | None = None,
        xml_original: str | None = "<cfdi:Comprobante></cfdi:Comprobante>",
    ) -> SimpleNamespace:
        with session_factory() as db:
            company = Company(
                id=uuid4(),
                name="Demo",
                rfc=f"DEM{uuid4().hex[:9].upper()}"[:13],
                pac_mode=pac_mode,
                certificate_valid_until=certificate_valid_until
                or datetime.now(timezone.utc) + timedelta(days=365),
            )
            period = PayrollPeriod(
                id=uuid4(),
                company_id=company.id,
                period_number=1,
                year=2026,
                status=period_status,
            )
            db.add_all([company, period])
            db.flush()

            employee_ids, line_item_ids, cfdi_ids = [], [], []
            for index in range(items):
                employee = Employee(
                    id=uuid4(),
                    company_id=company.id,
                    employee_number=f"E-{index:03d}",
                    rfc="XAXX010101000",
                    first_name="Emp",
                    last_name=str(index),
                )
                line_item = PayrollLineItem(
                    id=uuid4(),
                    period_id=period.id,
                    employee_id=employee.id,
                    net_pay=Decimal("1000.00"),
                    status="CALCULATED",
                )
                document = CfdiDocument(
                    id=uuid4(),
                    employee_id=employee.id,
                    line_item_id=line_item.id,
                    status="PENDING",
                    xml_original=xml_original,
                )
                db.add(employee)
                db.flush()
                db.add(line_item)
                db.flush()
                db.add(document)
                employee_ids.append(employee.id)
                line_item_ids.append(line_item.id)
                cfdi_ids.append(document.id)
            db.commit()

        return SimpleNamespace(
            company_id=company.id,
            period_id=period.id,
            employee_ids=employee_ids,
            line_item_ids=line_item_ids,
            cfdi_ids=cfdi_ids,
        )

    return _make


class RedisStub:
    """Just the hash/set commands the batch tracker uses, with decode_responses semantics."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def sadd(self, key, member):
        members = self.sets.setdefault(key, set())
        if member in members:
            return 0
        members.add(member)
        return 1

    def hincrby(self, key, field, amount):
        data = self.hashes.setdefault(key, {})
        data[field] = str(int(data.get(field, 0)) + amount)
        return int(data[field])

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def hsetnx(self, key, field, value):
        data = self.hashes.setdefault(key, {})
        if field in data:
            return 0
        data[field] = str(value)
        return 1


class CeleryStub:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send_task(self, name, args, queue, priority):
        self.sent.append({"name": name, "args": args, "queue": queue, "priority": priority})
        return SimpleNamespace(id=f"job-{len(self.sent)}")


@pytest.fixture
def redis_stub() -> RedisStub:
    return RedisStub()


@pytest.fixture
def celery_stub() -> CeleryStub:
    return CeleryStub()
