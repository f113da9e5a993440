"""Post-commit delivery of invoice snapshots to renderers and notifiers."""
from __future__ import annotations

import logging
from typing import Protocol

from billcore.models.billing import Invoice
from billcore.schemas.billing import InvoiceRead
from billcore.services.billing.money import to_minor_units

logger = logging.getLogger(__name__)


class InvoiceSink(Protocol):
    def emit(self, event: str, invoice: InvoiceRead) -> None: ...


class LoggingInvoiceSink:
    def emit(self, event: str, invoice: InvoiceRead) -> None:
        logger.info(
            "Invoice %s: %s (%d minor units due)",
            event,
            invoice.invoice_number,
            to_minor_units(invoice.amount_due),
            extra={
                "tenant_id": invoice.tenant_id,
                "invoice_id": invoice.id,
                "status": invoice.status,
                "amount": invoice.amount_due,
            },
        )


class RecordingInvoiceSink:
    """Keeps every emitted snapshot; handy for tests and dry runs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, InvoiceRead]] = []

    def emit(self, event: str, invoice: InvoiceRead) -> None:
        self.events.append((event, invoice))


def deliver(sink: InvoiceSink | None, event: str, invoice: Invoice) -> None:
    """Hand a committed invoice to ``sink``; failures are logged, never raised."""
    if sink is None:
        return
    try:
        sink.emit(event, InvoiceRead.model_validate(invoice))
    except Exception:
        logger.exception(
            "Invoice sink failed for %s",
            event,
            extra={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number},
        )
