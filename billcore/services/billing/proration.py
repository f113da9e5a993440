"""Whole-day proration for plan changes and cancellations.

Day counts round up: a period of 29 days and 1 hour counts as 30 days, and
an effective date one minute before the period end leaves 1 unused day. The
factor is ``unused_days / total_days``; amounts are ``round2(amount *
factor)``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from billcore.clock import Clock, SystemClock
from billcore.config import settings
from billcore.errors import InvalidAmount, InvalidInput
from billcore.models.billing import TenantSubscription
from billcore.services.billing.money import ZERO, round2, to_decimal

logger = logging.getLogger(__name__)

_MICROSECOND = timedelta(microseconds=1)
_DAY_MICROS = timedelta(days=1) // _MICROSECOND


def _ceil_days(delta: timedelta) -> int:
    if delta <= timedelta(0):
        return 0
    micros = delta // _MICROSECOND
    return -(-micros // _DAY_MICROS)


@dataclass(frozen=True)
class ProrationResult:
    amount: Decimal
    unused_days: int
    total_days: int

    @property
    def factor(self) -> Decimal:
        if self.total_days == 0:
            return Decimal("0")
        return Decimal(self.unused_days) / Decimal(self.total_days)


@dataclass(frozen=True)
class UpgradeProration:
    credit: Decimal
    charge: Decimal
    net: Decimal
    unused_days: int
    total_days: int
    effective_date: datetime


@dataclass(frozen=True)
class DowngradeProration:
    credit: Decimal
    charge: Decimal
    effective_date: datetime


@dataclass(frozen=True)
class CancellationRefund:
    refund_amount: Decimal
    unused_days: int
    total_days: int
    effective_date: datetime


class ProrationEngine:
    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    def calculate(
        self,
        amount: object,
        period_start: datetime,
        period_end: datetime,
        effective: datetime | None = None,
    ) -> ProrationResult:
        value = to_decimal(amount)
        if value < 0:
            raise InvalidAmount("Amount to prorate cannot be negative")
        if period_start >= period_end:
            raise InvalidInput(
                "Period start must be before period end",
                {"period_start": period_start, "period_end": period_end},
            )
        effective = effective or self.clock.now()
        if effective < period_start:
            raise InvalidInput(
                "Effective date cannot be before period start",
                {"effective": effective, "period_start": period_start},
            )
        total_days = _ceil_days(period_end - period_start)
        unused_days = _ceil_days(period_end - effective)
        if total_days == 0:
            prorated = ZERO
        else:
            prorated = round2(value * unused_days / total_days)
        return ProrationResult(prorated, unused_days, total_days)

    def prorate(
        self,
        amount: object,
        period_start: datetime,
        period_end: datetime,
        effective: datetime | None = None,
    ) -> Decimal:
        return self.calculate(amount, period_start, period_end, effective).amount

    def upgrade(
        self,
        subscription: TenantSubscription,
        new_price: object,
        effective: datetime | None = None,
    ) -> UpgradeProration:
        effective = effective or self.clock.now()
        credit = self.calculate(
            subscription.current_price,
            subscription.current_period_start,
            subscription.current_period_end,
            effective,
        )
        charge = self.calculate(
            new_price,
            subscription.current_period_start,
            subscription.current_period_end,
            effective,
        )
        net = max(ZERO, round2(charge.amount - credit.amount))
        logger.info(
            "Upgrade proration for subscription %s: credit=%s charge=%s net=%s",
            subscription.id,
            credit.amount,
            charge.amount,
            net,
            extra={"subscription_id": subscription.id, "amount": net},
        )
        return UpgradeProration(
            credit=credit.amount,
            charge=charge.amount,
            net=net,
            unused_days=charge.unused_days,
            total_days=charge.total_days,
            effective_date=effective,
        )

    def downgrade(
        self,
        subscription: TenantSubscription,
        new_price: object,
        effective: datetime | None = None,
    ) -> DowngradeProration:
        effective = effective or self.clock.now()
        difference = to_decimal(subscription.current_price) - to_decimal(new_price)
        if difference <= 0:
            return DowngradeProration(credit=ZERO, charge=ZERO, effective_date=effective)
        credit = self.prorate(
            difference,
            subscription.current_period_start,
            subscription.current_period_end,
            effective,
        )
        logger.info(
            "Downgrade proration for subscription %s: credit=%s",
            subscription.id,
            credit,
            extra={"subscription_id": subscription.id, "amount": credit},
        )
        return DowngradeProration(credit=credit, charge=ZERO, effective_date=effective)

    def cancellation_refund(
        self,
        subscription: TenantSubscription,
        effective: datetime | None = None,
    ) -> CancellationRefund:
        effective = effective or self.clock.now()
        result = self.calculate(
            subscription.current_price,
            subscription.current_period_start,
            subscription.current_period_end,
            effective,
        )
        return CancellationRefund(
            refund_amount=result.amount,
            unused_days=result.unused_days,
            total_days=result.total_days,
            effective_date=effective,
        )

    def should_charge_full_amount(
        self,
        subscription: TenantSubscription,
        new_price: object,
        effective: datetime | None = None,
    ) -> bool:
        """True when proration is not worth it: too few days left, or too little money."""
        result = self.calculate(
            new_price,
            subscription.current_period_start,
            subscription.current_period_end,
            effective,
        )
        if result.unused_days < settings.proration_min_unused_days:
            return True
        return result.amount < settings.proration_min_amount

    def days_remaining(self, subscription: TenantSubscription) -> int:
        return _ceil_days(subscription.current_period_end - self.clock.now())

    def percentage_remaining(self, subscription: TenantSubscription) -> int:
        effective = max(self.clock.now(), subscription.current_period_start)
        result = self.calculate(
            100,
            subscription.current_period_start,
            subscription.current_period_end,
            effective,
        )
        return int((result.factor * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
