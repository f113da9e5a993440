"""Tests for invoice number allocation."""

import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from billcore.db import Base
from billcore.errors import InvalidInput
from billcore.services.billing.sequences import (
    SequenceAllocator,
    format_invoice_number,
    parse_invoice_number,
)

DAY = date(2026, 3, 10)


def test_format_invoice_number():
    assert format_invoice_number(DAY, 7) == "INV-20260310-0007"
    assert format_invoice_number(DAY, 12345) == "INV-20260310-12345"
    with pytest.raises(InvalidInput):
        format_invoice_number(DAY, 0)


def test_parse_invoice_number():
    parsed = parse_invoice_number("INV-20260310-0042")
    assert parsed.issued_on == DAY
    assert parsed.sequence == 42


@pytest.mark.parametrize(
    "value", ["", "INV-2026031-0001", "INV-20261340-0001", "inv-20260310-0001", "INV-20260310-01"]
)
def test_parse_invoice_number_rejects_malformed(value):
    with pytest.raises(InvalidInput):
        parse_invoice_number(value)


def test_allocate_increments_per_tenant_and_day(db_session):
    tenant = uuid.uuid4()
    other = uuid.uuid4()
    assert SequenceAllocator.allocate(db_session, tenant, DAY) == 1
    assert SequenceAllocator.allocate(db_session, tenant, DAY) == 2
    assert SequenceAllocator.allocate(db_session, other, DAY) == 1
    assert SequenceAllocator.allocate(db_session, tenant, date(2026, 3, 11)) == 1
    assert SequenceAllocator.current(db_session, tenant, DAY) == 2
    assert SequenceAllocator.current(db_session, uuid.uuid4(), DAY) == 0


def test_next_invoice_number(db_session):
    tenant = uuid.uuid4()
    assert SequenceAllocator.next_invoice_number(db_session, tenant, DAY) == "INV-20260310-0001"
    assert SequenceAllocator.next_invoice_number(db_session, tenant, DAY) == "INV-20260310-0002"


def test_concurrent_allocations_are_distinct_and_gapless(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'sequences.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    tenant = uuid.uuid4()

    def allocate(_):
        db = factory()
        try:
            return SequenceAllocator.allocate(db, tenant, DAY)
        finally:
            db.close()

    try:
        with ThreadPoolExecutor(max_workers=50) as pool:
            values = list(pool.map(allocate, range(50)))
    finally:
        engine.dispose()

    assert sorted(values) == list(range(1, 51))
