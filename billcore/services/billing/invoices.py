from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from billcore.clock import Clock, SystemClock
from billcore.config import settings
from billcore.errors import (
    InvalidAmount,
    InvalidInput,
    InvalidState,
    NotFound,
    SequenceExhausted,
)
from billcore.models.billing import (
    CHARGE_ITEM_TYPES,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    TenantSubscription,
)
from billcore.schemas.billing import InvoiceCreate, InvoiceItemCreate
from billcore.services.billing import line_items
from billcore.services.billing.money import ZERO, round2, round4, to_decimal
from billcore.services.billing.sequences import SequenceAllocator, format_invoice_number
from billcore.services.billing.sink import InvoiceSink, LoggingInvoiceSink, deliver
from billcore.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_raise,
    require_uuid,
    retry_on_contention,
    set_lock_timeout,
    validate_enum,
)
from billcore.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def _require_status(invoice: Invoice, allowed: set[InvoiceStatus], action: str) -> None:
    if invoice.status not in allowed:
        raise InvalidState(
            f"Cannot {action} an invoice in status {invoice.status.value}",
            {
                "invoice_id": str(invoice.id),
                "status": invoice.status.value,
                "allowed": sorted(s.value for s in allowed),
            },
        )


def check_item_policy(payload: InvoiceItemCreate) -> InvoiceItemType:
    """Sign and quantity rules per item type, checked on the stored precision."""
    item_type = InvoiceItemType(payload.item_type)
    quantity = round4(payload.quantity)
    unit_price = round2(payload.unit_price)
    if quantity <= 0:
        raise InvalidAmount("Quantity must be greater than zero")
    if item_type in CHARGE_ITEM_TYPES and unit_price < 0:
        raise InvalidAmount(
            f"Unit price for {item_type.value} items cannot be negative"
        )
    if item_type not in CHARGE_ITEM_TYPES and unit_price > 0:
        raise InvalidAmount(
            f"Unit price for {item_type.value} items cannot be positive"
        )
    if to_decimal(payload.tax_rate) < 0:
        raise InvalidAmount("Tax rate cannot be negative")
    return item_type


class Invoices(ListResponseMixin):
    def __init__(
        self,
        clock: Clock | None = None,
        sink: InvoiceSink | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.sink = sink if sink is not None else LoggingInvoiceSink()

    # ── Drafts ───────────────────────────────────────────

    def new_draft(self, db: Session, payload: InvoiceCreate) -> Invoice:
        """Insert a zero-total draft without committing."""
        tenant_id = require_uuid(payload.tenant_id)
        if payload.subscription_id:
            subscription = get_or_raise(
                db, TenantSubscription, payload.subscription_id, "Subscription"
            )
            if subscription.tenant_id != tenant_id:
                raise InvalidInput("Subscription belongs to a different tenant")
        now = self.clock.now()
        due_date = payload.due_date or now + timedelta(days=settings.invoice_due_days)
        if due_date < now:
            raise InvalidInput("Due date cannot be before the issue date")
        sequence = SequenceAllocator.increment(db, tenant_id, now.date())
        invoice = Invoice(
            tenant_id=tenant_id,
            subscription_id=coerce_uuid(payload.subscription_id),
            invoice_number=format_invoice_number(now.date(), sequence),
            status=InvoiceStatus.draft,
            currency=payload.currency or settings.default_currency,
            subtotal=ZERO,
            tax_amount=ZERO,
            discount_amount=ZERO,
            total_amount=ZERO,
            amount_paid=ZERO,
            amount_due=ZERO,
            period_start=payload.period_start,
            period_end=payload.period_end,
            issue_date=now,
            due_date=due_date,
            notes=payload.notes,
        )
        db.add(invoice)
        db.flush()
        return invoice

    @retry_on_contention(exhausted=SequenceExhausted)
    def create_draft(self, db: Session, payload: InvoiceCreate) -> Invoice:
        invoice = self.new_draft(db, payload)
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Created draft invoice: %s",
            invoice.invoice_number,
            extra={"tenant_id": invoice.tenant_id, "invoice_id": invoice.id},
        )
        return invoice

    # ── Items and totals ─────────────────────────────────

    def append_item(
        self, db: Session, invoice: Invoice, payload: InvoiceItemCreate
    ) -> InvoiceItem:
        """Add an item to a locked draft and recompute totals, no commit."""
        _require_status(invoice, {InvoiceStatus.draft}, "add items to")
        item_type = check_item_policy(payload)
        quantity = round4(payload.quantity)
        unit_price = round2(payload.unit_price)
        amounts = line_items.compute_item(quantity, unit_price, payload.tax_rate)
        item = InvoiceItem(
            description=payload.description,
            item_type=item_type,
            quantity=quantity,
            unit_price=unit_price,
            amount=amounts.amount,
            tax_rate=to_decimal(payload.tax_rate),
            tax_amount=amounts.tax_amount,
            usage_type=payload.usage_type,
            unit=payload.unit,
        )
        invoice.items.append(item)
        self.recalculate_totals(db, invoice)
        return item

    @retry_on_contention()
    def add_item(self, db: Session, invoice_id: str, payload: InvoiceItemCreate) -> InvoiceItem:
        set_lock_timeout(db)
        invoice = get_or_raise(db, Invoice, invoice_id, "Invoice", for_update=True)
        item = self.append_item(db, invoice, payload)
        db.commit()
        db.refresh(item)
        logger.info(
            "Added %s item to invoice %s",
            item.item_type.value,
            invoice.invoice_number,
            extra={"invoice_id": invoice.id, "amount": item.amount},
        )
        return item

    @staticmethod
    def recalculate_totals(db: Session, invoice: Invoice) -> Invoice:
        totals = line_items.aggregate(invoice.items)
        discount = to_decimal(invoice.discount_amount or ZERO)
        ceiling = round2(totals.subtotal + totals.tax_total)
        if discount > 0 and discount > ceiling:
            raise InvalidAmount(
                "Discount cannot exceed subtotal plus tax",
                {"discount": discount, "maximum": ceiling},
            )
        invoice.subtotal = totals.subtotal
        invoice.tax_amount = totals.tax_total
        invoice.total_amount = line_items.invoice_total(
            totals.subtotal, totals.tax_total, discount
        )
        invoice.amount_due = line_items.amount_due(
            invoice.total_amount, invoice.amount_paid or ZERO
        )
        db.flush()
        return invoice

    @retry_on_contention()
    def set_discount(self, db: Session, invoice_id: str, amount: Decimal) -> Invoice:
        set_lock_timeout(db)
        invoice = get_or_raise(db, Invoice, invoice_id, "Invoice", for_update=True)
        _require_status(invoice, {InvoiceStatus.draft}, "discount")
        discount = round2(amount)
        if discount < 0:
            raise InvalidAmount("Discount cannot be negative")
        invoice.discount_amount = discount
        self.recalculate_totals(db, invoice)
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Set discount on invoice %s",
            invoice.invoice_number,
            extra={"invoice_id": invoice.id, "amount": discount},
        )
        return invoice

    # ── Transitions ──────────────────────────────────────

    def open_draft(self, invoice: Invoice) -> None:
        _require_status(invoice, {InvoiceStatus.draft}, "finalize")
        invoice.status = InvoiceStatus.open

    @retry_on_contention()
    def finalize(self, db: Session, invoice_id: str) -> Invoice:
        set_lock_timeout(db)
        invoice = get_or_raise(db, Invoice, invoice_id, "Invoice", for_update=True)
        self.open_draft(invoice)
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Finalized invoice %s",
            invoice.invoice_number,
            extra={"invoice_id": invoice.id, "amount": invoice.amount_due},
        )
        deliver(self.sink, "finalized", invoice)
        return invoice

    def apply_payment(
        self,
        invoice: Invoice,
        amount: object,
        method: str | None = None,
        reference: str | None = None,
    ) -> Decimal:
        """Book a payment on a locked invoice; returns the rounded amount."""
        if invoice.status == InvoiceStatus.paid:
            raise InvalidState(
                "Invoice is already paid", {"invoice_id": str(invoice.id)}
            )
        _require_status(invoice, {InvoiceStatus.open}, "record a payment on")
        value = round2(amount)
        if value <= 0:
            raise InvalidAmount("Payment amount must be greater than zero")
        invoice.amount_paid = round2(to_decimal(invoice.amount_paid) + value)
        invoice.amount_due = line_items.amount_due(
            invoice.total_amount, invoice.amount_paid
        )
        if method:
            invoice.payment_method = method
        if reference:
            invoice.payment_reference = reference
        if invoice.amount_due == 0:
            invoice.status = InvoiceStatus.paid
            invoice.paid_at = self.clock.now()
        return value

    @retry_on_contention()
    def record_payment(
        self,
        db: Session,
        invoice_id: str,
        amount: Decimal,
        method: str | None = None,
        reference: str | None = None,
    ) -> Invoice:
        set_lock_timeout(db)
        invoice = get_or_raise(db, Invoice, invoice_id, "Invoice", for_update=True)
        value = self.apply_payment(invoice, amount, method, reference)
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Recorded payment on invoice %s",
            invoice.invoice_number,
            extra={
                "invoice_id": invoice.id,
                "amount": value,
                "status": invoice.status.value,
            },
        )
        event = "paid" if invoice.status == InvoiceStatus.paid else "payment_recorded"
        deliver(self.sink, event, invoice)
        return invoice

    @retry_on_contention()
    def void(self, db: Session, invoice_id: str) -> Invoice:
        set_lock_timeout(db)
        invoice = get_or_raise(db, Invoice, invoice_id, "Invoice", for_update=True)
        _require_status(invoice, {InvoiceStatus.draft, InvoiceStatus.open}, "void")
        invoice.status = InvoiceStatus.void
        invoice.voided_at = self.clock.now()
        db.commit()
        db.refresh(invoice)
        logger.info("Voided invoice %s", invoice.invoice_number, extra={"invoice_id": invoice.id})
        return invoice

    @retry_on_contention()
    def mark_uncollectible(self, db: Session, invoice_id: str) -> Invoice:
        set_lock_timeout(db)
        invoice = get_or_raise(db, Invoice, invoice_id, "Invoice", for_update=True)
        if invoice.status == InvoiceStatus.paid:
            raise InvalidState(
                "Paid invoices cannot be marked uncollectible",
                {"invoice_id": str(invoice.id)},
            )
        _require_status(invoice, {InvoiceStatus.open}, "mark uncollectible")
        invoice.status = InvoiceStatus.uncollectible
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Marked invoice %s uncollectible",
            invoice.invoice_number,
            extra={"invoice_id": invoice.id, "amount": invoice.amount_due},
        )
        return invoice

    # ── Queries ──────────────────────────────────────────

    def is_overdue(self, invoice: Invoice, now: datetime | None = None) -> bool:
        now = now or self.clock.now()
        return invoice.status == InvoiceStatus.open and invoice.due_date < now

    @staticmethod
    def get(db: Session, invoice_id: str) -> Invoice:
        return get_or_raise(db, Invoice, invoice_id, "Invoice")

    @staticmethod
    def get_by_number(db: Session, tenant_id: str, invoice_number: str) -> Invoice:
        invoice = (
            db.query(Invoice)
            .filter(Invoice.tenant_id == require_uuid(tenant_id))
            .filter(Invoice.invoice_number == invoice_number)
            .first()
        )
        if not invoice:
            raise NotFound("Invoice not found", {"invoice_number": invoice_number})
        return invoice

    @staticmethod
    def list(
        db: Session,
        tenant_id: str | None,
        status: str | None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        query = db.query(Invoice)
        if tenant_id:
            query = query.filter(Invoice.tenant_id == require_uuid(tenant_id))
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Invoice.created_at,
                "due_date": Invoice.due_date,
                "total_amount": Invoice.total_amount,
                "invoice_number": Invoice.invoice_number,
            },
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total

    def list_overdue(self, db: Session, tenant_id: str | None = None) -> list[Invoice]:
        query = (
            db.query(Invoice)
            .filter(Invoice.status == InvoiceStatus.open)
            .filter(Invoice.due_date < self.clock.now())
        )
        if tenant_id:
            query = query.filter(Invoice.tenant_id == require_uuid(tenant_id))
        return query.order_by(Invoice.due_date.asc()).all()
