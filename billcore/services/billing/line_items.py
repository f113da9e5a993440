"""Line item amounts, invoice totals, and item builders."""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple

from billcore.errors import InvalidAmount
from billcore.schemas.billing import InvoiceItemCreate
from billcore.services.billing.money import ZERO, round2, round4, to_decimal

HUNDRED = Decimal("100")


class ItemAmounts(NamedTuple):
    amount: Decimal
    tax_amount: Decimal


class Totals(NamedTuple):
    subtotal: Decimal
    tax_total: Decimal
    grand_total: Decimal


def compute_item(
    quantity: object, unit_price: object, tax_rate_percent: object = 0
) -> ItemAmounts:
    amount = round2(to_decimal(quantity) * to_decimal(unit_price))
    tax_amount = round2(amount * to_decimal(tax_rate_percent) / HUNDRED)
    return ItemAmounts(amount, tax_amount)


def aggregate(items: Iterable) -> Totals:
    """Sum already-rounded item values and round each partial sum once.

    ``items`` may be ``InvoiceItem`` rows or ``ItemAmounts``; anything with
    ``amount`` and ``tax_amount`` attributes.
    """
    subtotal = Decimal("0")
    tax_total = Decimal("0")
    for item in items:
        subtotal += to_decimal(item.amount)
        tax_total += to_decimal(item.tax_amount)
    subtotal = round2(subtotal)
    tax_total = round2(tax_total)
    return Totals(subtotal, tax_total, round2(subtotal + tax_total))


def invoice_total(subtotal: object, tax: object, discount: object) -> Decimal:
    return round2(to_decimal(subtotal) + to_decimal(tax) - to_decimal(discount))


def amount_due(total: object, paid: object) -> Decimal:
    return max(ZERO, round2(to_decimal(total) - to_decimal(paid)))


# ── Builders ─────────────────────────────────────────────


def subscription_item(
    plan_name: str,
    price: object,
    billing_cycle: str,
    tax_rate: object = 0,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> InvoiceItemCreate:
    description = f"{plan_name} - {billing_cycle.capitalize()} Subscription"
    if period_start and period_end:
        description += f" ({period_start:%Y-%m-%d} to {period_end:%Y-%m-%d})"
    return InvoiceItemCreate(
        description=description,
        item_type="subscription",
        quantity=Decimal("1"),
        unit_price=round2(price),
        tax_rate=to_decimal(tax_rate),
    )


def usage_item(
    usage_type: str,
    quantity: object,
    unit_price: object,
    unit: str,
    tax_rate: object = 0,
) -> InvoiceItemCreate:
    qty = round4(quantity)
    return InvoiceItemCreate(
        description=f"{usage_type} ({qty.normalize():f} {unit})",
        item_type="usage",
        quantity=qty,
        unit_price=round2(unit_price),
        tax_rate=to_decimal(tax_rate),
        usage_type=usage_type,
        unit=unit,
    )


def credit_item(description: str, amount: object) -> InvoiceItemCreate:
    return InvoiceItemCreate(
        description=description,
        item_type="credit",
        quantity=Decimal("1"),
        unit_price=-abs(round2(amount)),
    )


def discount_item(description: str, amount: object) -> InvoiceItemCreate:
    return InvoiceItemCreate(
        description=description,
        item_type="discount",
        quantity=Decimal("1"),
        unit_price=-abs(round2(amount)),
    )


def percentage_discount_item(
    subtotal: object, percent: object, description: str | None = None
) -> InvoiceItemCreate:
    pct = to_decimal(percent)
    if pct < 0 or pct > HUNDRED:
        raise InvalidAmount("Discount percent must be between 0 and 100")
    amount = round2(to_decimal(subtotal) * pct / HUNDRED)
    return discount_item(description or f"{pct.normalize():f}% Discount", amount)


def fee_item(description: str, amount: object, tax_rate: object = 0) -> InvoiceItemCreate:
    return InvoiceItemCreate(
        description=description,
        item_type="fee",
        quantity=Decimal("1"),
        unit_price=round2(amount),
        tax_rate=to_decimal(tax_rate),
    )


def proration_item(
    description: str, amount: object, tax_rate: object = 0
) -> InvoiceItemCreate:
    """Net proration as a charge, or as a credit when negative."""
    value = round2(amount)
    if value < 0:
        return credit_item(description, value)
    return InvoiceItemCreate(
        description=description,
        item_type="subscription",
        quantity=Decimal("1"),
        unit_price=value,
        tax_rate=to_decimal(tax_rate),
    )
