from __future__ import annotations

import csv
import enum
import io
import json
import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from billcore.clock import Clock, SystemClock
from billcore.errors import InvalidInput
from billcore.models.billing import TenantSubscription, UsageRecord
from billcore.schemas.billing import UsageRecordCreate
from billcore.services.billing.money import round2, round4, to_decimal
from billcore.services.common import get_or_raise, require_uuid, retry_on_contention

logger = logging.getLogger(__name__)

QUANTITY_ZERO = Decimal("0.0000")
HUNDRED = Decimal("100")
EXPORT_FORMATS = ("csv", "json")
EXPORT_FIELDS = [
    "id",
    "tenant_id",
    "subscription_id",
    "usage_type",
    "quantity",
    "unit",
    "period_start",
    "period_end",
    "recorded_at",
]


class UsageStatus(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    exceeded = "exceeded"


@dataclass(frozen=True)
class UsageSummary:
    usage_type: str
    quantity: Decimal
    unit: str
    record_count: int


@dataclass(frozen=True)
class UsageStatistics:
    total_usage: Decimal
    usage_by_type: dict[str, Decimal]
    record_count: int
    average_per_day: Decimal


@dataclass(frozen=True)
class ThresholdCheck:
    usage_type: str
    exceeded: bool
    current: Decimal
    threshold: Decimal
    percentage: Decimal


def sum_usage(records: Iterable, group_by_type: bool = True) -> dict[str, Decimal] | Decimal:
    """Total quantity per usage type, or overall when not grouping."""
    if not group_by_type:
        return round4(sum((to_decimal(r.quantity) for r in records), QUANTITY_ZERO))
    totals: dict[str, Decimal] = {}
    for record in records:
        totals[record.usage_type] = totals.get(record.usage_type, QUANTITY_ZERO) + to_decimal(
            record.quantity
        )
    return {usage_type: round4(total) for usage_type, total in totals.items()}


def summarize(records: Iterable) -> dict[str, UsageSummary]:
    grouped: dict[str, list] = {}
    for record in records:
        grouped.setdefault(record.usage_type, []).append(record)
    return {
        usage_type: UsageSummary(
            usage_type=usage_type,
            quantity=sum_usage(items, group_by_type=False),
            unit=items[0].unit,
            record_count=len(items),
        )
        for usage_type, items in grouped.items()
    }


def billable_overage(total_usage: object, included: object) -> Decimal:
    return max(QUANTITY_ZERO, round4(to_decimal(total_usage) - to_decimal(included)))


def overage_cost(total_usage: object, included: object, unit_price: object) -> Decimal:
    return round2(billable_overage(total_usage, included) * to_decimal(unit_price))


def usage_percentage(total_usage: object, plan_limit: object) -> Decimal:
    """Share of the limit used, capped at 100; a zero limit reads as 0."""
    limit = to_decimal(plan_limit)
    if limit == 0:
        return Decimal("0.00")
    return min(HUNDRED, round2(to_decimal(total_usage) / limit * HUNDRED))


def usage_status(total_usage: object, plan_limit: object) -> UsageStatus:
    """Band the raw usage against the limit; rounding is for display only."""
    used = to_decimal(total_usage) * HUNDRED
    limit = to_decimal(plan_limit)
    if limit == 0:
        return UsageStatus.low
    if used >= limit * 100:
        return UsageStatus.exceeded
    if used >= limit * 80:
        return UsageStatus.high
    if used >= limit * 50:
        return UsageStatus.medium
    return UsageStatus.low


def remaining_usage(total_usage: object, plan_limit: object) -> Decimal:
    return max(QUANTITY_ZERO, round4(to_decimal(plan_limit) - to_decimal(total_usage)))


class UsageRecords:
    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    @retry_on_contention()
    def record_batch(
        self,
        db: Session,
        tenant_id: str,
        payloads: list[UsageRecordCreate],
        subscription_id: str | None = None,
    ) -> list[UsageRecord]:
        """Persist a batch that was validated at the boundary."""
        tenant = require_uuid(tenant_id)
        subscription_pk = None
        if subscription_id:
            subscription = get_or_raise(
                db, TenantSubscription, subscription_id, "Subscription"
            )
            if subscription.tenant_id != tenant:
                raise InvalidInput("Subscription belongs to a different tenant")
            subscription_pk = subscription.id
        now = self.clock.now()
        records = [
            UsageRecord(
                tenant_id=tenant,
                subscription_id=subscription_pk,
                usage_type=payload.usage_type,
                quantity=round4(payload.quantity),
                unit=payload.unit,
                period_start=payload.period_start,
                period_end=payload.period_end,
                recorded_at=payload.recorded_at or now,
            )
            for payload in payloads
        ]
        db.add_all(records)
        db.commit()
        for record in records:
            db.refresh(record)
        logger.info(
            "Recorded %d usage records",
            len(records),
            extra={"tenant_id": tenant, "subscription_id": subscription_pk},
        )
        return records

    @staticmethod
    def for_period(
        db: Session,
        tenant_id: str,
        start: datetime,
        end: datetime,
        subscription_id: str | None = None,
        usage_type: str | None = None,
    ) -> list[UsageRecord]:
        """Records whose period starts inside ``[start, end)``."""
        if end <= start:
            raise InvalidInput("Period end must be after period start")
        query = (
            db.query(UsageRecord)
            .filter(UsageRecord.tenant_id == require_uuid(tenant_id))
            .filter(UsageRecord.period_start >= start)
            .filter(UsageRecord.period_start < end)
        )
        if subscription_id:
            query = query.filter(UsageRecord.subscription_id == require_uuid(subscription_id))
        if usage_type:
            query = query.filter(UsageRecord.usage_type == usage_type)
        return query.order_by(UsageRecord.period_start.asc()).all()

    @staticmethod
    def totals_for_period(
        db: Session,
        tenant_id: str,
        start: datetime,
        end: datetime,
        subscription_id: str | None = None,
    ) -> dict[str, Decimal]:
        records = UsageRecords.for_period(db, tenant_id, start, end, subscription_id)
        return sum_usage(records)  # type: ignore[return-value]

    def statistics(
        self, db: Session, tenant_id: str, start: datetime, end: datetime
    ) -> UsageStatistics:
        records = self.for_period(db, tenant_id, start, end)
        by_type = sum_usage(records)
        total = round4(sum(by_type.values(), QUANTITY_ZERO))  # type: ignore[union-attr]
        days = math.ceil((end - start) / timedelta(days=1))
        return UsageStatistics(
            total_usage=total,
            usage_by_type=by_type,  # type: ignore[arg-type]
            record_count=len(records),
            average_per_day=round2(total / days),
        )

    @staticmethod
    def usage_types(db: Session, tenant_id: str) -> list[str]:
        rows = (
            db.query(UsageRecord.usage_type)
            .filter(UsageRecord.tenant_id == require_uuid(tenant_id))
            .distinct()
            .order_by(UsageRecord.usage_type.asc())
            .all()
        )
        return [row[0] for row in rows]

    def check_threshold(
        self,
        db: Session,
        tenant_id: str,
        usage_type: str,
        threshold: object,
        start: datetime,
        end: datetime,
    ) -> ThresholdCheck:
        """Compare one usage type against an arbitrary threshold.

        Unlike ``usage_percentage`` the percentage here is not capped, so a
        caller can tell how far past the threshold the tenant has gone.
        """
        limit = round4(threshold)
        if limit < 0:
            raise InvalidInput("Threshold must be non-negative", {"threshold": str(limit)})
        records = self.for_period(db, tenant_id, start, end, usage_type=usage_type)
        current: Decimal = sum_usage(records, group_by_type=False)  # type: ignore[assignment]
        percentage = round2(current / limit * HUNDRED) if limit > 0 else Decimal("0.00")
        result = ThresholdCheck(
            usage_type=usage_type,
            exceeded=current > limit,
            current=current,
            threshold=limit,
            percentage=percentage,
        )
        if result.exceeded:
            logger.info(
                "Usage threshold exceeded for %s",
                usage_type,
                extra={"tenant_id": tenant_id, "current": str(current), "threshold": str(limit)},
            )
        return result

    def export(
        self,
        db: Session,
        tenant_id: str,
        start: datetime,
        end: datetime,
        fmt: str = "csv",
    ) -> str:
        """Render the period's records as CSV (header row always present) or JSON."""
        if fmt not in EXPORT_FORMATS:
            raise InvalidInput(
                "Unsupported export format", {"format": fmt, "allowed": list(EXPORT_FORMATS)}
            )
        rows = [_export_row(record) for record in self.for_period(db, tenant_id, start, end)]
        logger.info(
            "Exported %d usage records as %s", len(rows), fmt, extra={"tenant_id": tenant_id}
        )
        if fmt == "json":
            return json.dumps(rows, indent=2)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_FIELDS, lineterminator="\n")
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue()


def _export_row(record: UsageRecord) -> dict[str, str]:
    return {
        "id": str(record.id),
        "tenant_id": str(record.tenant_id),
        "subscription_id": str(record.subscription_id) if record.subscription_id else "",
        "usage_type": record.usage_type,
        "quantity": str(record.quantity),
        "unit": record.unit,
        "period_start": record.period_start.isoformat(),
        "period_end": record.period_end.isoformat(),
        "recorded_at": record.recorded_at.isoformat(),
    }
