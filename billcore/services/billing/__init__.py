from billcore.services.billing.credits import Credits
from billcore.services.billing.cycle import BillingCycles, PlanChange
from billcore.services.billing.invoices import Invoices
from billcore.services.billing.proration import ProrationEngine
from billcore.services.billing.sequences import SequenceAllocator
from billcore.services.billing.subscriptions import Subscriptions
from billcore.services.billing.usage import UsageRecords

__all__ = [
    "BillingCycles",
    "Credits",
    "Invoices",
    "PlanChange",
    "ProrationEngine",
    "SequenceAllocator",
    "Subscriptions",
    "UsageRecords",
]
