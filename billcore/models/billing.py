import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billcore.db import Base, TimestampMixin, TZDateTime

MONEY = Numeric(12, 2)
QUANTITY = Numeric(14, 4)
RATE = Numeric(7, 4)

# ── Enums ────────────────────────────────────────────────


class BillingCycle(str, enum.Enum):
    monthly = "monthly"
    yearly = "yearly"


class SubscriptionStatus(str, enum.Enum):
    active = "active"
    cancelled = "cancelled"
    expired = "expired"
    suspended = "suspended"
    past_due = "past_due"


class InvoiceStatus(str, enum.Enum):
    draft = "draft"
    open = "open"
    paid = "paid"
    void = "void"
    uncollectible = "uncollectible"


class InvoiceItemType(str, enum.Enum):
    subscription = "subscription"
    usage = "usage"
    credit = "credit"
    fee = "fee"
    discount = "discount"


CHARGE_ITEM_TYPES = frozenset(
    {InvoiceItemType.subscription, InvoiceItemType.usage, InvoiceItemType.fee}
)


class CreditType(str, enum.Enum):
    promotional = "promotional"
    refund = "refund"
    adjustment = "adjustment"
    trial = "trial"


class CreditStatus(str, enum.Enum):
    active = "active"
    used = "used"
    expired = "expired"
    void = "void"


# ── Plans ────────────────────────────────────────────────


class SubscriptionPlan(TimestampMixin, Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (UniqueConstraint("name", name="uq_subscription_plans_name"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price_monthly: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    price_yearly: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    allowances = relationship(
        "PlanAllowance", back_populates="plan", cascade="all, delete-orphan"
    )
    subscriptions = relationship("TenantSubscription", back_populates="plan")


class PlanAllowance(TimestampMixin, Base):
    """Included usage per usage type, and the rate charged beyond it."""

    __tablename__ = "plan_allowances"
    __table_args__ = (
        UniqueConstraint("plan_id", "usage_type", name="uq_plan_allowances_plan_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=False, index=True
    )
    usage_type: Mapped[str] = mapped_column(String(80), nullable=False)
    unit: Mapped[str] = mapped_column(String(40), nullable=False)
    included_quantity: Mapped[Decimal] = mapped_column(QUANTITY, default=Decimal("0"))
    overage_unit_price: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))

    plan = relationship("SubscriptionPlan", back_populates="allowances")


# ── Subscriptions ────────────────────────────────────────


class TenantSubscription(TimestampMixin, Base):
    __tablename__ = "tenant_subscriptions"
    __table_args__ = (
        Index(
            "uq_tenant_subscriptions_one_active",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        CheckConstraint("current_price >= 0", name="ck_tenant_subscriptions_price"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=False, index=True
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.active
    )
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        Enum(BillingCycle), nullable=False
    )
    current_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    started_at: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(TZDateTime())
    expires_at: Mapped[datetime | None] = mapped_column(TZDateTime())
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)
    is_trial: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(TZDateTime())

    plan = relationship("SubscriptionPlan", back_populates="subscriptions")
    invoices = relationship("Invoice", back_populates="subscription")


# ── Invoicing ────────────────────────────────────────────


class InvoiceSequence(TimestampMixin, Base):
    """Per-tenant, per-day invoice number counter."""

    __tablename__ = "invoice_sequences"

    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    sequence_date: Mapped[date] = mapped_column(Date, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Invoice(TimestampMixin, Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "invoice_number", name="uq_invoices_tenant_number"
        ),
        CheckConstraint("amount_paid >= 0", name="ck_invoices_amount_paid"),
        CheckConstraint("amount_due >= 0", name="ck_invoices_amount_due"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenant_subscriptions.id"), index=True
    )
    invoice_number: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.draft
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    subtotal: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    amount_paid: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    amount_due: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    period_start: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    issue_date: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    due_date: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(TZDateTime())
    voided_at: Mapped[datetime | None] = mapped_column(TZDateTime())
    payment_method: Mapped[str | None] = mapped_column(String(40))
    payment_reference: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(Text)

    subscription = relationship("TenantSubscription", back_populates="invoices")
    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.created_at",
    )
    credit_allocations = relationship("CreditAllocation", back_populates="invoice")


class InvoiceItem(TimestampMixin, Base):
    __tablename__ = "invoice_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    item_type: Mapped[InvoiceItemType] = mapped_column(
        Enum(InvoiceItemType), nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(RATE, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    usage_type: Mapped[str | None] = mapped_column(String(80))
    unit: Mapped[str | None] = mapped_column(String(40))

    invoice = relationship("Invoice", back_populates="items")


# ── Credits ──────────────────────────────────────────────


class Credit(TimestampMixin, Base):
    __tablename__ = "credits"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credits_amount_positive"),
        CheckConstraint(
            "remaining_amount >= 0 AND remaining_amount <= amount",
            name="ck_credits_remaining_bounds",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    credit_type: Mapped[CreditType] = mapped_column(Enum(CreditType), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(TZDateTime())
    status: Mapped[CreditStatus] = mapped_column(
        Enum(CreditStatus), default=CreditStatus.active
    )
    voided_at: Mapped[datetime | None] = mapped_column(TZDateTime())
    void_reason: Mapped[str | None] = mapped_column(Text)

    allocations = relationship("CreditAllocation", back_populates="credit")


class CreditAllocation(TimestampMixin, Base):
    """Append-only record of one credit consumption."""

    __tablename__ = "credit_allocations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    credit_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("credits.id"), nullable=False, index=True
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id"), index=True
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    remaining_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    credit = relationship("Credit", back_populates="allocations")
    invoice = relationship("Invoice", back_populates="credit_allocations")


# ── Usage ────────────────────────────────────────────────


class UsageRecord(TimestampMixin, Base):
    __tablename__ = "usage_records"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_usage_records_quantity"),
        Index(
            "ix_usage_records_tenant_type_period",
            "tenant_id",
            "usage_type",
            "period_start",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenant_subscriptions.id"), index=True
    )
    usage_type: Mapped[str] = mapped_column(String(80), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    unit: Mapped[str] = mapped_column(String(40), nullable=False)
    period_start: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    period_end: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
