"""Seed database with a demo company and a payroll period ready for stamping."""
from payroll.database import Base, SessionLocal, engine
from payroll.models import (
    Company, Employee, PayrollPeriod, PayrollLineItem, CfdiDocument
)
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import uuid

SOURCE_XML_TEMPLATE = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<cfdi:Comprobante xmlns:cfdi="http://www.sat.gob.mx/cfd/4" Version="4.0" '
    'TipoDeComprobante="N" Total="{net}">'
    '<cfdi:Emisor Rfc="{company_rfc}"/>'
    '<cfdi:Receptor Rfc="{employee_rfc}"/>'
    '</cfdi:Comprobante>'
)


def seed():
    """Seed database with demo data."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()

    try:
        # Create company (sandbox PAC, no real signing material)
        company = Company(
            id=uuid.UUID('00000000-0000-0000-0000-000000000001'),
            name="Demo Nómina S.A. de C.V.",
            rfc="DNO010101AAA",
            pac_provider="sandbox",
            pac_mode="sandbox",
            certificate_number="30001000000400002434",
            certificate_valid_until=datetime.now(timezone.utc) + timedelta(days=365),
        )
        db.add(company)
        db.flush()

        # Create employees
        employees_data = [
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000101'),
                'employee_number': 'E-001',
                'rfc': 'GOMA800101AB1',
                'first_name': 'Ana',
                'last_name': 'Gómez Martínez',
                'net': Decimal('12450.00'),
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000102'),
                'employee_number': 'E-002',
                'rfc': 'PELJ850505CD2',
                'first_name': 'Juan',
                'last_name': 'Pérez López',
                'net': Decimal('9870.50'),
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000103'),
                'employee_number': 'E-003',
                'rfc': 'RARL900909EF3',
                'first_name': 'Lucía',
                'last_name': 'Ramírez Ruiz',
                'net': Decimal('15320.75'),
            },
        ]

        employees = []
        for employee_data in employees_data:
            net = employee_data.pop('net')
            employee = Employee(company_id=company.id, **employee_data)
            db.add(employee)
            employees.append((employee, net))

        db.flush()

        # Create period awaiting stamping
        total_net = sum(net for _, net in employees)
        period = PayrollPeriod(
            id=uuid.UUID('00000000-0000-0000-0000-000000000201'),
            company_id=company.id,
            period_number=1,
            year=datetime.now(timezone.utc).year,
            status='PROCESSING',
            total_perceptions=total_net,
            total_deductions=Decimal('0'),
            total_net=total_net,
        )
        db.add(period)
        db.flush()

        # Create one calculated receipt and one PENDING CFDI per employee
        for index, (employee, net) in enumerate(employees, start=1):
            line_item = PayrollLineItem(
                id=uuid.UUID(f'00000000-0000-0000-0000-{300 + index:012d}'),
                period_id=period.id,
                employee_id=employee.id,
                total_perceptions=net,
                total_deductions=Decimal('0'),
                net_pay=net,
                status='CALCULATED',
            )
            db.add(line_item)
            db.flush()

            db.add(CfdiDocument(
                id=uuid.UUID(f'00000000-0000-0000-0000-{400 + index:012d}'),
                employee_id=employee.id,
                line_item_id=line_item.id,
                status='PENDING',
                xml_original=SOURCE_XML_TEMPLATE.format(
                    net=net,
                    company_rfc=company.rfc,
                    employee_rfc=employee.rfc,
                ),
            ))

        db.commit()
        print("✅ Database seeded successfully!")
        print(f"\nPeriod {period.id} (PROCESSING) with {len(employees)} PENDING CFDIs:")
        for index in range(1, len(employees) + 1):
            print(f"  00000000-0000-0000-0000-{400 + index:012d}")

    except Exception as e:
        db.rollback()
        print(f"❌ Error seeding database: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
