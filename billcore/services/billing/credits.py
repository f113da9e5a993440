from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from billcore.clock import Clock, SystemClock
from billcore.config import settings
from billcore.errors import Contended, InvalidAmount, InvalidInput, InvalidState
from billcore.models.billing import (
    Credit,
    CreditAllocation,
    CreditStatus,
    CreditType,
    Invoice,
    InvoiceStatus,
)
from billcore.schemas.billing import CreditCreate
from billcore.services.billing.invoices import Invoices
from billcore.services.billing.money import ZERO, round2, sum_money
from billcore.services.billing.sink import deliver
from billcore.services.common import (
    apply_ordering,
    apply_pagination,
    get_or_raise,
    require_uuid,
    retry_on_contention,
    set_lock_timeout,
    validate_enum,
)
from billcore.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

_FAR_FUTURE = datetime.max.replace(tzinfo=UTC)


@dataclass(frozen=True)
class Allocation:
    credit_id: uuid.UUID
    amount: Decimal
    remaining_after: Decimal


@dataclass
class CreditApplication:
    allocations: list[Allocation] = field(default_factory=list)
    total_used: Decimal = ZERO
    remaining_due: Decimal = ZERO


def is_usable(credit, now: datetime) -> bool:
    if credit.status != CreditStatus.active:
        return False
    if round2(credit.remaining_amount) <= 0:
        return False
    return credit.expires_at is None or credit.expires_at > now


def _allocation_order(credit) -> tuple:
    # Soonest expiry first, never-expiring last, oldest first on ties.
    return (
        credit.expires_at is None,
        credit.expires_at or _FAR_FUTURE,
        getattr(credit, "created_at", None) or _FAR_FUTURE,
    )


def plan_allocation(credits: Iterable, amount_due: object, now: datetime) -> list[tuple]:
    """Decide how much to take from each credit, without touching them.

    Returns ``(credit, amount)`` pairs in consumption order. No pair takes
    more than the credit's remaining balance and the amounts never sum to
    more than ``amount_due``.
    """
    outstanding = round2(amount_due)
    if outstanding < 0:
        raise InvalidAmount("Amount due cannot be negative")
    plan: list[tuple] = []
    usable = sorted((c for c in credits if is_usable(c, now)), key=_allocation_order)
    for credit in usable:
        if outstanding <= 0:
            break
        used = min(round2(credit.remaining_amount), outstanding)
        plan.append((credit, used))
        outstanding = round2(outstanding - used)
    return plan


class Credits(ListResponseMixin):
    def __init__(
        self,
        clock: Clock | None = None,
        invoices: Invoices | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.invoices = invoices or Invoices(clock=self.clock)

    # ── Grants ───────────────────────────────────────────

    def build(self, payload: CreditCreate) -> Credit:
        """Validate a grant and return the unsaved credit."""
        amount = round2(payload.amount)
        if amount <= 0:
            raise InvalidAmount("Credit amount must be greater than zero")
        if payload.expires_at is not None and payload.expires_at <= self.clock.now():
            raise InvalidInput("Credit expiry must be in the future")
        return Credit(
            tenant_id=require_uuid(payload.tenant_id),
            amount=amount,
            remaining_amount=amount,
            currency=payload.currency or settings.default_currency,
            credit_type=CreditType(payload.credit_type),
            description=payload.description,
            expires_at=payload.expires_at,
            status=CreditStatus.active,
        )

    @retry_on_contention()
    def grant(self, db: Session, payload: CreditCreate) -> Credit:
        credit = self.build(payload)
        db.add(credit)
        db.commit()
        db.refresh(credit)
        logger.info(
            "Granted %s credit: %s",
            credit.credit_type.value,
            credit.id,
            extra={
                "tenant_id": credit.tenant_id,
                "credit_id": credit.id,
                "amount": credit.amount,
            },
        )
        return credit

    def grant_promotional(
        self,
        db: Session,
        tenant_id: str,
        amount: Decimal,
        description: str,
        expires_at: datetime | None = None,
    ) -> Credit:
        return self.grant(
            db,
            CreditCreate.model_construct(
                tenant_id=tenant_id,
                amount=amount,
                credit_type="promotional",
                description=description,
                expires_at=expires_at,
            ),
        )

    def grant_refund(
        self,
        db: Session,
        tenant_id: str,
        amount: Decimal,
        invoice_id: str | None = None,
        description: str | None = None,
    ) -> Credit:
        if invoice_id is not None:
            invoice = get_or_raise(db, Invoice, invoice_id, "Invoice")
            if invoice.tenant_id != require_uuid(tenant_id):
                raise InvalidInput("Invoice belongs to a different tenant")
            description = description or f"Refund for invoice {invoice.invoice_number}"
        return self.grant(
            db,
            CreditCreate.model_construct(
                tenant_id=tenant_id,
                amount=amount,
                credit_type="refund",
                description=description or "Refund",
            ),
        )

    def grant_adjustment(
        self, db: Session, tenant_id: str, amount: Decimal, description: str
    ) -> Credit:
        return self.grant(
            db,
            CreditCreate.model_construct(
                tenant_id=tenant_id,
                amount=amount,
                credit_type="adjustment",
                description=description,
            ),
        )

    def grant_trial(
        self, db: Session, tenant_id: str, amount: Decimal, trial_days: int = 14
    ) -> Credit:
        if trial_days < 1:
            raise InvalidInput("Trial credits need at least one day")
        return self.grant(
            db,
            CreditCreate.model_construct(
                tenant_id=tenant_id,
                amount=amount,
                credit_type="trial",
                description=f"{trial_days}-day trial credit",
                expires_at=self.clock.now() + timedelta(days=trial_days),
            ),
        )

    # ── Balance and allocation ───────────────────────────

    def available_balance(
        self, db: Session, tenant_id: str, currency: str | None = None
    ) -> Decimal:
        now = self.clock.now()
        query = (
            db.query(Credit)
            .filter(Credit.tenant_id == require_uuid(tenant_id))
            .filter(Credit.status == CreditStatus.active)
        )
        if currency:
            query = query.filter(Credit.currency == currency)
        return sum_money(c.remaining_amount for c in query.all() if is_usable(c, now))

    @staticmethod
    def _draw_down(db: Session, credit: Credit, used: Decimal) -> Decimal:
        """Compare-and-set the balance against the value read under lock.

        Stores that ignore ``FOR UPDATE`` can still hand two writers the same
        balance; the second write then matches no row and surfaces as
        ``Contended`` so the caller's unit of work is retried.
        """
        seen = credit.remaining_amount
        remaining = round2(seen - used)
        result = db.execute(
            update(Credit)
            .where(Credit.id == credit.id)
            .where(Credit.status == CreditStatus.active)
            .where(Credit.remaining_amount == seen)
            .values(
                remaining_amount=remaining,
                status=CreditStatus.used if remaining == 0 else CreditStatus.active,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Contended(
                "Credit balance changed while it was being applied",
                {"credit_id": str(credit.id)},
            )
        db.expire(credit, ["remaining_amount", "status", "updated_at"])
        return remaining

    def consume(
        self,
        db: Session,
        tenant_id,
        amount_due: object,
        invoice_id: uuid.UUID | None = None,
        currency: str | None = None,
    ) -> CreditApplication:
        """Lock, re-read and draw down credits inside the caller's transaction.

        With ``currency`` only credits in that currency are drawn.
        """
        outstanding = round2(amount_due)
        if outstanding < 0:
            raise InvalidAmount("Amount due cannot be negative")
        if outstanding == 0:
            return CreditApplication(remaining_due=ZERO)
        set_lock_timeout(db)
        query = (
            db.query(Credit)
            .filter(Credit.tenant_id == require_uuid(tenant_id))
            .filter(Credit.status == CreditStatus.active)
            .filter(Credit.remaining_amount > 0)
        )
        if currency:
            query = query.filter(Credit.currency == currency)
        locked = query.order_by(Credit.id).with_for_update().populate_existing().all()
        application = CreditApplication(remaining_due=outstanding)
        for credit, used in plan_allocation(locked, outstanding, self.clock.now()):
            remaining = self._draw_down(db, credit, used)
            db.add(
                CreditAllocation(
                    credit_id=credit.id,
                    tenant_id=credit.tenant_id,
                    invoice_id=invoice_id,
                    amount=used,
                    remaining_after=remaining,
                )
            )
            application.allocations.append(Allocation(credit.id, used, remaining))
        application.total_used = sum_money(a.amount for a in application.allocations)
        application.remaining_due = round2(outstanding - application.total_used)
        db.flush()
        return application

    @retry_on_contention()
    def apply(
        self,
        db: Session,
        tenant_id: str,
        amount_due: Decimal,
        invoice_id: str | None = None,
        currency: str | None = None,
    ) -> CreditApplication:
        invoice_pk = require_uuid(invoice_id) if invoice_id else None
        application = self.consume(db, tenant_id, amount_due, invoice_pk, currency)
        db.commit()
        logger.info(
            "Applied %s in credits, %s still due",
            application.total_used,
            application.remaining_due,
            extra={"tenant_id": tenant_id, "invoice_id": invoice_pk},
        )
        return application

    @retry_on_contention()
    def apply_to_invoice(self, db: Session, invoice_id: str) -> CreditApplication:
        """Pay down an open invoice from the tenant's credits."""
        set_lock_timeout(db)
        invoice = get_or_raise(db, Invoice, invoice_id, "Invoice", for_update=True)
        if invoice.status != InvoiceStatus.open:
            raise InvalidState(
                f"Credits can only be applied to open invoices, not {invoice.status.value}",
                {"invoice_id": str(invoice.id), "status": invoice.status.value},
            )
        application = self.consume(
            db, invoice.tenant_id, invoice.amount_due, invoice.id, invoice.currency
        )
        if application.total_used > 0:
            self.invoices.apply_payment(invoice, application.total_used, method="credit")
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Applied credits to invoice %s",
            invoice.invoice_number,
            extra={
                "invoice_id": invoice.id,
                "amount": application.total_used,
                "status": invoice.status.value,
            },
        )
        if application.total_used > 0:
            event = "paid" if invoice.status == InvoiceStatus.paid else "payment_recorded"
            deliver(self.invoices.sink, event, invoice)
        return application

    # ── Lifecycle ────────────────────────────────────────

    @retry_on_contention()
    def void(self, db: Session, credit_id: str, reason: str | None = None) -> Credit:
        set_lock_timeout(db)
        credit = get_or_raise(db, Credit, credit_id, "Credit", for_update=True)
        if credit.status == CreditStatus.void:
            raise InvalidState("Credit is already voided", {"credit_id": str(credit.id)})
        if credit.status == CreditStatus.used:
            raise InvalidState("Cannot void a fully used credit", {"credit_id": str(credit.id)})
        if credit.status != CreditStatus.active:
            raise InvalidState(
                f"Cannot void a credit in status {credit.status.value}",
                {"credit_id": str(credit.id)},
            )
        credit.status = CreditStatus.void
        credit.voided_at = self.clock.now()
        credit.void_reason = reason
        db.commit()
        db.refresh(credit)
        logger.info(
            "Voided credit: %s",
            credit.id,
            extra={"credit_id": credit.id, "amount": credit.remaining_amount},
        )
        return credit

    @retry_on_contention()
    def expire_sweep(self, db: Session, now: datetime | None = None) -> int:
        now = now or self.clock.now()
        result = db.execute(
            update(Credit)
            .where(Credit.status == CreditStatus.active)
            .where(Credit.expires_at.is_not(None))
            .where(Credit.expires_at < now)
            .values(status=CreditStatus.expired, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        db.commit()
        expired = result.rowcount or 0
        if expired:
            logger.info("Expired %d credits", expired)
        return expired

    # ── Queries ──────────────────────────────────────────

    @staticmethod
    def get(db: Session, credit_id: str) -> Credit:
        return get_or_raise(db, Credit, credit_id, "Credit")

    @staticmethod
    def list(
        db: Session,
        tenant_id: str | None,
        status: str | None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Credit], int]:
        query = db.query(Credit)
        if tenant_id:
            query = query.filter(Credit.tenant_id == require_uuid(tenant_id))
        if status:
            query = query.filter(
                Credit.status == validate_enum(status, CreditStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Credit.created_at, "expires_at": Credit.expires_at},
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total

    def list_expiring_soon(
        self, db: Session, tenant_id: str, within_days: int = 7
    ) -> list[Credit]:
        now = self.clock.now()
        return (
            db.query(Credit)
            .filter(Credit.tenant_id == require_uuid(tenant_id))
            .filter(Credit.status == CreditStatus.active)
            .filter(Credit.remaining_amount > 0)
            .filter(Credit.expires_at.is_not(None))
            .filter(Credit.expires_at > now)
            .filter(Credit.expires_at <= now + timedelta(days=within_days))
            .order_by(Credit.expires_at.asc())
            .all()
        )
