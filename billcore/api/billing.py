from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from billcore.api.deps import get_billing, get_db
from billcore.schemas.billing import (
    CancelRequest,
    CreditApplicationRead,
    CreditBalanceRead,
    CreditCreate,
    CreditRead,
    CreditVoid,
    DiscountSet,
    InvoiceCreate,
    InvoiceItemCreate,
    InvoiceItemRead,
    InvoiceRead,
    PaymentCreate,
    PlanChangeRead,
    PlanChangeRequest,
    ProrationPreviewRead,
    SubscriptionCreate,
    SubscriptionRead,
    UsageBatchCreate,
    UsageRecordRead,
    UsageStatisticsRead,
    UsageSummaryRead,
    UsageThresholdRead,
)
from billcore.schemas.common import ListResponse
from billcore.services.billing.cycle import BillingCycles

router = APIRouter(tags=["billing"])


# ── Subscriptions ────────────────────────────────────────


@router.post(
    "/subscriptions",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.subscriptions.create(db, payload)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.subscriptions.get(db, subscription_id)


@router.get("/subscriptions", response_model=ListResponse[SubscriptionRead])
def list_subscriptions(
    tenant_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.subscriptions.list_response(
        db, tenant_id, status, order_by, order_dir, limit=limit, offset=offset
    )


@router.post(
    "/subscriptions/{subscription_id}/plan-change/preview",
    response_model=ProrationPreviewRead,
)
def preview_plan_change(
    subscription_id: str,
    payload: PlanChangeRequest,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.preview_plan_change(
        db, subscription_id, str(payload.new_plan_id), payload.effective_at
    )


@router.post(
    "/subscriptions/{subscription_id}/plan-change", response_model=PlanChangeRead
)
def change_plan(
    subscription_id: str,
    payload: PlanChangeRequest,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    change = billing.change_plan(
        db, subscription_id, str(payload.new_plan_id), payload.effective_at
    )
    return PlanChangeRead.model_validate(change)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: str,
    payload: CancelRequest,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.subscriptions.cancel(db, subscription_id, payload.immediately)


@router.post("/subscriptions/{subscription_id}/renew", response_model=SubscriptionRead)
def renew_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.subscriptions.renew(db, subscription_id)


@router.post("/subscriptions/{subscription_id}/suspend", response_model=SubscriptionRead)
def suspend_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.subscriptions.suspend(db, subscription_id)


@router.post(
    "/subscriptions/{subscription_id}/reactivate", response_model=SubscriptionRead
)
def reactivate_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.subscriptions.reactivate(db, subscription_id)


@router.post(
    "/subscriptions/{subscription_id}/past-due", response_model=SubscriptionRead
)
def mark_subscription_past_due(
    subscription_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.subscriptions.mark_past_due(db, subscription_id)


@router.post(
    "/subscriptions/{subscription_id}/bill",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
)
def bill_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.bill_subscription(db, subscription_id)


@router.get(
    "/subscriptions/{subscription_id}/usage", response_model=list[UsageSummaryRead]
)
def subscription_usage(
    subscription_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.usage_summary(db, subscription_id)


@router.post("/subscriptions/expire")
def expire_subscriptions(
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
) -> dict[str, int]:
    return {"expired": billing.subscriptions.expire_ended(db)}


@router.post("/billing-runs", response_model=list[InvoiceRead])
def run_billing(
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.renew_and_bill_due(db)


# ── Invoices ─────────────────────────────────────────────


@router.post(
    "/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED
)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.create_draft(db, payload)


@router.get("/invoices/overdue", response_model=list[InvoiceRead])
def list_overdue_invoices(
    tenant_id: str | None = None,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.list_overdue(db, tenant_id)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.get(db, invoice_id)


@router.get("/invoices", response_model=ListResponse[InvoiceRead])
def list_invoices(
    tenant_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.list_response(
        db, tenant_id, status, order_by, order_dir, limit=limit, offset=offset
    )


@router.post(
    "/invoices/{invoice_id}/items",
    response_model=InvoiceItemRead,
    status_code=status.HTTP_201_CREATED,
)
def add_invoice_item(
    invoice_id: str,
    payload: InvoiceItemCreate,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.add_item(db, invoice_id, payload)


@router.put("/invoices/{invoice_id}/discount", response_model=InvoiceRead)
def set_invoice_discount(
    invoice_id: str,
    payload: DiscountSet,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.set_discount(db, invoice_id, payload.amount)


@router.post("/invoices/{invoice_id}/finalize", response_model=InvoiceRead)
def finalize_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.finalize(db, invoice_id)


@router.post("/invoices/{invoice_id}/payments", response_model=InvoiceRead)
def record_invoice_payment(
    invoice_id: str,
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.record_payment(
        db, invoice_id, payload.amount, payload.method, payload.reference
    )


@router.post("/invoices/{invoice_id}/void", response_model=InvoiceRead)
def void_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.void(db, invoice_id)


@router.post("/invoices/{invoice_id}/uncollectible", response_model=InvoiceRead)
def mark_invoice_uncollectible(
    invoice_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.invoices.mark_uncollectible(db, invoice_id)


@router.post(
    "/invoices/{invoice_id}/apply-credits", response_model=CreditApplicationRead
)
def apply_credits_to_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    application = billing.credits.apply_to_invoice(db, invoice_id)
    return CreditApplicationRead.model_validate(application)


# ── Credits ──────────────────────────────────────────────


@router.post("/credits", response_model=CreditRead, status_code=status.HTTP_201_CREATED)
def grant_credit(
    payload: CreditCreate,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.credits.grant(db, payload)


@router.post("/credits/expire")
def expire_credits(
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
) -> dict[str, int]:
    return {"expired": billing.credits.expire_sweep(db)}


@router.get("/credits/{credit_id}", response_model=CreditRead)
def get_credit(
    credit_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.credits.get(db, credit_id)


@router.get("/credits", response_model=ListResponse[CreditRead])
def list_credits(
    tenant_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.credits.list_response(
        db, tenant_id, status, order_by, order_dir, limit=limit, offset=offset
    )


@router.post("/credits/{credit_id}/void", response_model=CreditRead)
def void_credit(
    credit_id: str,
    payload: CreditVoid,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.credits.void(db, credit_id, payload.reason)


@router.get("/tenants/{tenant_id}/credit-balance", response_model=CreditBalanceRead)
def credit_balance(
    tenant_id: str,
    currency: str | None = Query(default=None, min_length=3, max_length=3),
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return CreditBalanceRead(
        tenant_id=tenant_id,
        available=billing.credits.available_balance(db, tenant_id, currency),
    )


# ── Usage ────────────────────────────────────────────────


@router.post(
    "/usage-records",
    response_model=list[UsageRecordRead],
    status_code=status.HTTP_201_CREATED,
)
def record_usage(
    payload: UsageBatchCreate,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.usage.record_batch(
        db,
        str(payload.tenant_id),
        payload.records,
        str(payload.subscription_id) if payload.subscription_id else None,
    )


@router.get("/tenants/{tenant_id}/usage-types", response_model=list[str])
def usage_types(
    tenant_id: str,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return billing.usage.usage_types(db, tenant_id)


@router.get("/tenants/{tenant_id}/usage-statistics", response_model=UsageStatisticsRead)
def usage_statistics(
    tenant_id: str,
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return UsageStatisticsRead.model_validate(
        billing.usage.statistics(db, tenant_id, start, end)
    )


@router.get("/tenants/{tenant_id}/usage-threshold", response_model=UsageThresholdRead)
def usage_threshold(
    tenant_id: str,
    usage_type: str,
    threshold: Decimal,
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    return UsageThresholdRead.model_validate(
        billing.usage.check_threshold(db, tenant_id, usage_type, threshold, start, end)
    )


@router.get("/tenants/{tenant_id}/usage-export")
def export_usage(
    tenant_id: str,
    start: datetime,
    end: datetime,
    fmt: str = Query(default="csv", alias="format", pattern="^(csv|json)$"),
    db: Session = Depends(get_db),
    billing: BillingCycles = Depends(get_billing),
):
    body = billing.usage.export(db, tenant_id, start, end, fmt)
    media_type = "application/json" if fmt == "json" else "text/csv"
    return Response(content=body, media_type=media_type)
