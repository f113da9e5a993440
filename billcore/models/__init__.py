from billcore.models.billing import (  # noqa: F401
    BillingCycle,
    Credit,
    CreditAllocation,
    CreditStatus,
    CreditType,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceSequence,
    InvoiceStatus,
    PlanAllowance,
    SubscriptionPlan,
    SubscriptionStatus,
    TenantSubscription,
    UsageRecord,
)
