"""Billing-cycle orchestration.

Ties the engines together for the two flows an external scheduler or API
drives: billing a subscription's current period, and switching plans with
proration. Each flow is a single transaction; sink delivery happens after
commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from billcore.clock import Clock, SystemClock
from billcore.config import settings
from billcore.errors import BillingError, ConflictError, InvalidState
from billcore.models.billing import (
    Credit,
    Invoice,
    InvoiceStatus,
    SubscriptionPlan,
    SubscriptionStatus,
    TenantSubscription,
)
from billcore.schemas.billing import (
    CreditCreate,
    InvoiceCreate,
    ProrationPreviewRead,
    UsageSummaryRead,
)
from billcore.services.billing import line_items
from billcore.services.billing.credits import CreditApplication, Credits
from billcore.services.billing.invoices import Invoices
from billcore.services.billing.proration import ProrationEngine
from billcore.services.billing.sink import InvoiceSink, deliver
from billcore.services.billing.subscriptions import Subscriptions, plan_price
from billcore.services.billing.usage import (
    QUANTITY_ZERO,
    UsageRecords,
    billable_overage,
    sum_usage,
    summarize,
    usage_status,
)
from billcore.services.common import get_or_raise, retry_on_contention

logger = logging.getLogger(__name__)


@dataclass
class PlanChange:
    subscription: TenantSubscription
    old_price: Decimal
    new_price: Decimal
    credit: Decimal
    charge: Decimal
    net: Decimal
    prorated: bool
    invoice: Invoice | None = None
    issued_credit: Credit | None = None


class BillingCycles:
    def __init__(
        self,
        clock: Clock | None = None,
        sink: InvoiceSink | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.invoices = Invoices(clock=self.clock, sink=sink)
        self.subscriptions = Subscriptions(clock=self.clock)
        self.credits = Credits(clock=self.clock, invoices=self.invoices)
        self.proration = ProrationEngine(clock=self.clock)
        self.usage = UsageRecords(clock=self.clock)

    def _deliver(self, invoice: Invoice) -> None:
        deliver(self.invoices.sink, "finalized", invoice)
        if invoice.status == InvoiceStatus.paid:
            deliver(self.invoices.sink, "paid", invoice)

    # ── Period billing ───────────────────────────────────

    @retry_on_contention()
    def bill_subscription(
        self,
        db: Session,
        subscription_id: str,
        tax_rate: Decimal = Decimal("0"),
        apply_credits: bool = True,
    ) -> Invoice:
        """Invoice the subscription's current period: plan price plus overage.

        The invoice is finalized, and available credits are drawn down in
        the same transaction. A period that already has a live invoice is
        refused with ``ConflictError``.
        """
        subscription = self.subscriptions.lock(db, subscription_id)
        if subscription.status not in (SubscriptionStatus.active, SubscriptionStatus.past_due):
            raise InvalidState(
                f"Cannot bill a subscription in status {subscription.status.value}",
                {"subscription_id": str(subscription.id)},
            )
        existing = (
            db.query(Invoice)
            .filter(Invoice.subscription_id == subscription.id)
            .filter(Invoice.period_start == subscription.current_period_start)
            .filter(Invoice.status != InvoiceStatus.void)
            .first()
        )
        if existing:
            raise ConflictError(
                "Period is already invoiced",
                {"invoice_number": existing.invoice_number},
            )
        plan = subscription.plan
        invoice = self.invoices.new_draft(
            db,
            InvoiceCreate(
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                currency=subscription.currency,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
            ),
        )
        self.invoices.append_item(
            db,
            invoice,
            line_items.subscription_item(
                plan.display_name,
                subscription.current_price,
                subscription.billing_cycle.value,
                tax_rate,
                subscription.current_period_start,
                subscription.current_period_end,
            ),
        )
        totals = sum_usage(
            self.usage.for_period(
                db,
                subscription.tenant_id,
                subscription.current_period_start,
                subscription.current_period_end,
            )
        )
        for allowance in plan.allowances:
            overage = billable_overage(
                totals.get(allowance.usage_type, 0), allowance.included_quantity
            )
            if overage > 0 and allowance.overage_unit_price > 0:
                self.invoices.append_item(
                    db,
                    invoice,
                    line_items.usage_item(
                        allowance.usage_type,
                        overage,
                        allowance.overage_unit_price,
                        allowance.unit,
                        tax_rate,
                    ),
                )
        self.invoices.open_draft(invoice)
        application = CreditApplication(remaining_due=invoice.amount_due)
        if apply_credits:
            application = self.credits.consume(
                db, invoice.tenant_id, invoice.amount_due, invoice.id, invoice.currency
            )
            if application.total_used > 0:
                self.invoices.apply_payment(
                    invoice, application.total_used, method="credit"
                )
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Billed subscription %s as %s",
            subscription.id,
            invoice.invoice_number,
            extra={
                "subscription_id": subscription.id,
                "invoice_id": invoice.id,
                "amount": invoice.total_amount,
                "status": invoice.status.value,
            },
        )
        self._deliver(invoice)
        return invoice

    def renew_and_bill_due(self, db: Session) -> list[Invoice]:
        """Renew every subscription whose period ended and bill the new period.

        A failure on one subscription is logged and does not stop the run.
        """
        billed: list[Invoice] = []
        for subscription in self.subscriptions.list_due_for_renewal(db):
            subscription_id = subscription.id
            try:
                self.subscriptions.renew(db, subscription_id)
                billed.append(self.bill_subscription(db, subscription_id))
            except BillingError as exc:
                logger.warning(
                    "Billing run skipped subscription %s: %s (%s)",
                    subscription_id,
                    exc.message,
                    exc.kind.value,
                    extra={"subscription_id": subscription_id},
                )
        return billed

    # ── Usage ────────────────────────────────────────────

    def usage_summary(self, db: Session, subscription_id: str) -> list[UsageSummaryRead]:
        """Current-period usage per type, measured against the plan's allowances."""
        subscription = self.subscriptions.get(db, subscription_id)
        summaries = summarize(
            self.usage.for_period(
                db,
                subscription.tenant_id,
                subscription.current_period_start,
                subscription.current_period_end,
            )
        )
        allowances = {a.usage_type: a for a in subscription.plan.allowances}
        rows: list[UsageSummaryRead] = []
        for usage_type in sorted(set(summaries) | set(allowances)):
            summary = summaries.get(usage_type)
            allowance = allowances.get(usage_type)
            quantity = summary.quantity if summary else QUANTITY_ZERO
            row = UsageSummaryRead(
                usage_type=usage_type,
                quantity=quantity,
                unit=summary.unit if summary else allowance.unit,
                record_count=summary.record_count if summary else 0,
            )
            if allowance is not None:
                row.included = allowance.included_quantity
                row.overage = billable_overage(quantity, allowance.included_quantity)
                row.status = usage_status(quantity, allowance.included_quantity).value
            rows.append(row)
        return rows

    # ── Plan changes ─────────────────────────────────────

    def preview_plan_change(
        self,
        db: Session,
        subscription_id: str,
        new_plan_id: str,
        effective: datetime | None = None,
    ) -> ProrationPreviewRead:
        subscription = self.subscriptions.get(db, subscription_id)
        plan = get_or_raise(db, SubscriptionPlan, new_plan_id, "Subscription plan")
        new_price = plan_price(plan, subscription.billing_cycle)
        upgrade = self.proration.upgrade(subscription, new_price, effective)
        return ProrationPreviewRead(
            credit=upgrade.credit,
            charge=upgrade.charge,
            net=upgrade.net,
            unused_days=upgrade.unused_days,
            total_days=upgrade.total_days,
            charge_full_amount=self.proration.should_charge_full_amount(
                subscription, new_price, effective
            ),
        )

    @retry_on_contention()
    def change_plan(
        self,
        db: Session,
        subscription_id: str,
        new_plan_id: str,
        effective: datetime | None = None,
        tax_rate: Decimal = Decimal("0"),
    ) -> PlanChange:
        """Switch plans and settle the difference for the rest of the period.

        Upgrades bill the prorated net on a new finalized invoice; downgrades
        issue an adjustment credit. Adjustments below
        ``settings.proration_min_amount``, or with fewer than
        ``settings.proration_min_unused_days`` left in the period, are skipped.
        """
        effective = effective or self.clock.now()
        subscription = self.subscriptions.lock(db, subscription_id)
        if subscription.status != SubscriptionStatus.active:
            raise InvalidState(
                f"Cannot change the plan of a subscription in status {subscription.status.value}",
                {"subscription_id": str(subscription.id)},
            )
        old_price = subscription.current_price
        plan = get_or_raise(db, SubscriptionPlan, new_plan_id, "Subscription plan")
        new_price = plan_price(plan, subscription.billing_cycle)

        upgrade = self.proration.upgrade(subscription, new_price, effective)
        downgrade = self.proration.downgrade(subscription, new_price, effective)
        is_upgrade = new_price > old_price
        adjustment = upgrade.net if is_upgrade else downgrade.credit
        prorated = (
            upgrade.unused_days >= settings.proration_min_unused_days
            and adjustment >= settings.proration_min_amount
        )
        self.subscriptions.switch_plan(db, subscription, new_plan_id)

        change = PlanChange(
            subscription=subscription,
            old_price=old_price,
            new_price=new_price,
            credit=upgrade.credit if is_upgrade else downgrade.credit,
            charge=upgrade.charge if is_upgrade else Decimal("0.00"),
            net=upgrade.net if is_upgrade else Decimal("0.00"),
            prorated=prorated,
        )
        if prorated and is_upgrade:
            invoice = self.invoices.new_draft(
                db,
                InvoiceCreate(
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                    currency=subscription.currency,
                    period_start=effective,
                    period_end=subscription.current_period_end,
                ),
            )
            self.invoices.append_item(
                db,
                invoice,
                line_items.proration_item(
                    f"Proration: upgrade to {plan.display_name}", upgrade.net, tax_rate
                ),
            )
            self.invoices.open_draft(invoice)
            change.invoice = invoice
        elif prorated:
            credit = self.credits.build(
                CreditCreate.model_construct(
                    tenant_id=subscription.tenant_id,
                    amount=downgrade.credit,
                    credit_type="adjustment",
                    currency=subscription.currency,
                    description=f"Proration: downgrade to {plan.display_name}",
                    expires_at=None,
                )
            )
            db.add(credit)
            change.issued_credit = credit
        db.commit()
        db.refresh(subscription)
        logger.info(
            "Changed plan of subscription %s: %s -> %s",
            subscription.id,
            old_price,
            new_price,
            extra={"subscription_id": subscription.id, "amount": change.net},
        )
        if change.invoice is not None:
            db.refresh(change.invoice)
            self._deliver(change.invoice)
        return change
