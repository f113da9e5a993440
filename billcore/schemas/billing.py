from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

# ── Plans ────────────────────────────────────────────────


class PlanAllowanceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    usage_type: str
    unit: str
    included_quantity: Decimal
    overage_unit_price: Decimal


class SubscriptionPlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    name: str
    display_name: str
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str
    is_active: bool
    allowances: list[PlanAllowanceRead] = Field(default_factory=list)


# ── Subscriptions ────────────────────────────────────────


class SubscriptionCreate(BaseModel):
    tenant_id: UUID
    plan_id: UUID
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    price: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    started_at: AwareDatetime | None = None
    period_end: AwareDatetime | None = None
    auto_renew: bool = True
    trial_days: int = Field(default=0, ge=0, le=365)


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    tenant_id: UUID
    plan_id: UUID
    status: str
    billing_cycle: str
    current_price: Decimal
    currency: str
    started_at: datetime
    current_period_start: datetime
    current_period_end: datetime
    cancelled_at: datetime | None = None
    expires_at: datetime | None = None
    auto_renew: bool
    is_trial: bool
    trial_ends_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PlanChangeRequest(BaseModel):
    new_plan_id: UUID
    effective_at: AwareDatetime | None = None


class CancelRequest(BaseModel):
    immediately: bool = False


# ── Invoices ─────────────────────────────────────────────


class InvoiceCreate(BaseModel):
    tenant_id: UUID
    subscription_id: UUID | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    period_start: AwareDatetime
    period_end: AwareDatetime
    due_date: AwareDatetime | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check_period(self) -> "InvoiceCreate":
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class InvoiceItemCreate(BaseModel):
    description: str = Field(min_length=1)
    item_type: Literal["subscription", "usage", "credit", "fee", "discount"]
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    usage_type: str | None = Field(default=None, max_length=80)
    unit: str | None = Field(default=None, max_length=40)


class InvoiceItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    invoice_id: UUID
    description: str
    item_type: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    usage_type: str | None = None
    unit: str | None = None
    created_at: datetime


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    tenant_id: UUID
    subscription_id: UUID | None = None
    invoice_number: str
    status: str
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    period_start: datetime
    period_end: datetime
    issue_date: datetime
    due_date: datetime
    paid_at: datetime | None = None
    voided_at: datetime | None = None
    payment_method: str | None = None
    payment_reference: str | None = None
    notes: str | None = None
    items: list[InvoiceItemRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class PaymentCreate(BaseModel):
    amount: Decimal
    method: str | None = Field(default=None, max_length=40)
    reference: str | None = Field(default=None, max_length=255)


class DiscountSet(BaseModel):
    amount: Decimal = Field(ge=0)


# ── Credits ──────────────────────────────────────────────


class CreditCreate(BaseModel):
    tenant_id: UUID
    amount: Decimal = Field(gt=0)
    credit_type: Literal["promotional", "refund", "adjustment", "trial"]
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    description: str | None = None
    expires_at: AwareDatetime | None = None


class CreditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    tenant_id: UUID
    amount: Decimal
    remaining_amount: Decimal
    currency: str
    credit_type: str
    description: str | None = None
    expires_at: datetime | None = None
    status: str
    voided_at: datetime | None = None
    void_reason: str | None = None
    created_at: datetime


class CreditVoid(BaseModel):
    reason: str | None = None


class CreditAllocationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    credit_id: UUID
    amount: Decimal
    remaining_after: Decimal


class CreditApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    allocations: list[CreditAllocationRead]
    total_used: Decimal
    remaining_due: Decimal


class CreditBalanceRead(BaseModel):
    tenant_id: UUID
    available: Decimal


# ── Usage ────────────────────────────────────────────────


class UsageRecordCreate(BaseModel):
    usage_type: str = Field(min_length=1, max_length=80)
    quantity: Decimal = Field(ge=0, decimal_places=4)
    unit: str = Field(min_length=1, max_length=40)
    period_start: AwareDatetime
    period_end: AwareDatetime
    recorded_at: AwareDatetime | None = None

    @model_validator(mode="after")
    def _check_period(self) -> "UsageRecordCreate":
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class UsageBatchCreate(BaseModel):
    tenant_id: UUID
    subscription_id: UUID | None = None
    records: list[UsageRecordCreate] = Field(min_length=1)


class UsageRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    tenant_id: UUID
    subscription_id: UUID | None = None
    usage_type: str
    quantity: Decimal
    unit: str
    period_start: datetime
    period_end: datetime
    recorded_at: datetime


class UsageSummaryRead(BaseModel):
    usage_type: str
    quantity: Decimal
    unit: str
    record_count: int
    included: Decimal | None = None
    overage: Decimal | None = None
    status: Literal["low", "medium", "high", "exceeded"] | None = None


class UsageStatisticsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    total_usage: Decimal
    usage_by_type: dict[str, Decimal]
    record_count: int
    average_per_day: Decimal


class UsageThresholdRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    usage_type: str
    exceeded: bool
    current: Decimal
    threshold: Decimal
    percentage: Decimal


# ── Proration ────────────────────────────────────────────


class ProrationPreviewRead(BaseModel):
    credit: Decimal
    charge: Decimal
    net: Decimal
    unused_days: int
    total_days: int
    charge_full_amount: bool


class PlanChangeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    subscription: SubscriptionRead
    old_price: Decimal
    new_price: Decimal
    credit: Decimal
    charge: Decimal
    net: Decimal
    prorated: bool
    invoice: InvoiceRead | None = None
    issued_credit: CreditRead | None = None
