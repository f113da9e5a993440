"""Per-tenant, per-day invoice numbering (``INV-YYYYMMDD-NNNN``)."""
from __future__ import annotations

import logging
import re
from datetime import UTC, date, datetime
from typing import NamedTuple

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from billcore.errors import InvalidInput, SequenceExhausted
from billcore.models.billing import InvoiceSequence
from billcore.services.common import require_uuid, retry_on_contention, set_lock_timeout

logger = logging.getLogger(__name__)

INVOICE_NUMBER_RE = re.compile(r"^INV-(\d{4})(\d{2})(\d{2})-(\d{4,})$")

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class ParsedInvoiceNumber(NamedTuple):
    issued_on: date
    sequence: int


def format_invoice_number(on_date: date, sequence: int) -> str:
    if sequence < 1:
        raise InvalidInput("Sequence numbers start at 1")
    return f"INV-{on_date:%Y%m%d}-{sequence:04d}"


def parse_invoice_number(value: str) -> ParsedInvoiceNumber:
    match = INVOICE_NUMBER_RE.match(value or "")
    if not match:
        raise InvalidInput(f"Malformed invoice number: {value!r}")
    year, month, day, seq = match.groups()
    try:
        issued_on = date(int(year), int(month), int(day))
    except ValueError as exc:
        raise InvalidInput(f"Invalid date in invoice number: {value!r}") from exc
    return ParsedInvoiceNumber(issued_on, int(seq))


class SequenceAllocator:
    @staticmethod
    def increment(db: Session, tenant_id, on_date: date) -> int:
        """Increment and return the counter inside the caller's transaction."""
        dialect = db.get_bind().dialect.name
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Unsupported database dialect for sequences: {dialect}")
        set_lock_timeout(db)
        now = datetime.now(UTC)
        stmt = insert(InvoiceSequence).values(
            tenant_id=require_uuid(tenant_id),
            sequence_date=on_date,
            last_value=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[InvoiceSequence.tenant_id, InvoiceSequence.sequence_date],
            set_={
                "last_value": InvoiceSequence.last_value + 1,
                "updated_at": now,
            },
        ).returning(InvoiceSequence.last_value)
        return db.execute(stmt).scalar_one()

    @staticmethod
    @retry_on_contention(exhausted=SequenceExhausted)
    def allocate(db: Session, tenant_id, on_date: date) -> int:
        value = SequenceAllocator.increment(db, tenant_id, on_date)
        db.commit()
        logger.debug(
            "Allocated invoice sequence %d for %s",
            value,
            on_date,
            extra={"tenant_id": tenant_id},
        )
        return value

    @staticmethod
    def next_invoice_number(db: Session, tenant_id, on_date: date) -> str:
        return format_invoice_number(
            on_date, SequenceAllocator.allocate(db, tenant_id, on_date)
        )

    @staticmethod
    def current(db: Session, tenant_id, on_date: date) -> int:
        row = db.get(InvoiceSequence, (require_uuid(tenant_id), on_date))
        return row.last_value if row else 0
