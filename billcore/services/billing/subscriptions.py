from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billcore.clock import Clock, SystemClock
from billcore.errors import ConflictError, InvalidInput, InvalidState
from billcore.models.billing import (
    BillingCycle,
    SubscriptionPlan,
    SubscriptionStatus,
    TenantSubscription,
)
from billcore.schemas.billing import SubscriptionCreate
from billcore.services.billing.money import round2
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

_CYCLE_STEP = {
    BillingCycle.monthly: relativedelta(months=1),
    BillingCycle.yearly: relativedelta(years=1),
}


def next_period_end(start: datetime, billing_cycle: BillingCycle | str) -> datetime:
    """One billing-cycle unit after ``start`` (Jan 31 + 1 month is Feb 28/29)."""
    return start + _CYCLE_STEP[BillingCycle(billing_cycle)]


def plan_price(plan: SubscriptionPlan, billing_cycle: BillingCycle | str) -> Decimal:
    if BillingCycle(billing_cycle) == BillingCycle.yearly:
        return round2(plan.price_yearly)
    return round2(plan.price_monthly)


def _require_status(
    subscription: TenantSubscription, allowed: set[SubscriptionStatus], action: str
) -> None:
    if subscription.status not in allowed:
        raise InvalidState(
            f"Cannot {action} a subscription in status {subscription.status.value}",
            {
                "subscription_id": str(subscription.id),
                "status": subscription.status.value,
                "allowed": sorted(s.value for s in allowed),
            },
        )


def _flush_or_conflict(db: Session, tenant_id) -> None:
    """Flush, turning a second active subscription into ``ConflictError``."""
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            "Tenant already has an active subscription",
            {"tenant_id": str(tenant_id)},
        ) from exc


class Subscriptions(ListResponseMixin):
    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    def lock(self, db: Session, subscription_id: str) -> TenantSubscription:
        set_lock_timeout(db)
        return get_or_raise(
            db, TenantSubscription, subscription_id, "Subscription", for_update=True
        )

    def _commit(self, db: Session, subscription: TenantSubscription, message: str) -> TenantSubscription:
        db.commit()
        db.refresh(subscription)
        logger.info(
            message,
            subscription.id,
            extra={
                "tenant_id": subscription.tenant_id,
                "subscription_id": subscription.id,
                "status": subscription.status.value,
            },
        )
        return subscription

    @retry_on_contention()
    def create(self, db: Session, payload: SubscriptionCreate) -> TenantSubscription:
        tenant_id = require_uuid(payload.tenant_id)
        plan = get_or_raise(db, SubscriptionPlan, payload.plan_id, "Subscription plan")
        if not plan.is_active:
            raise InvalidInput("Subscription plan is not available")
        billing_cycle = BillingCycle(payload.billing_cycle)
        started_at = payload.started_at or self.clock.now()
        period_end = payload.period_end or next_period_end(started_at, billing_cycle)
        if period_end <= started_at:
            raise InvalidInput("Period end must be after the start")
        price = round2(payload.price) if payload.price is not None else plan_price(plan, billing_cycle)
        subscription = TenantSubscription(
            tenant_id=tenant_id,
            plan_id=plan.id,
            status=SubscriptionStatus.active,
            billing_cycle=billing_cycle,
            current_price=price,
            currency=payload.currency or plan.currency,
            started_at=started_at,
            current_period_start=started_at,
            current_period_end=period_end,
            auto_renew=payload.auto_renew,
            is_trial=payload.trial_days > 0,
            trial_ends_at=(
                started_at + timedelta(days=payload.trial_days)
                if payload.trial_days
                else None
            ),
        )
        db.add(subscription)
        _flush_or_conflict(db, tenant_id)
        return self._commit(db, subscription, "Created subscription: %s")

    @staticmethod
    def switch_plan(
        db: Session, subscription: TenantSubscription, new_plan_id: str
    ) -> SubscriptionPlan:
        """Point a locked subscription at another plan, without committing."""
        _require_status(subscription, {SubscriptionStatus.active}, "change the plan of")
        plan = get_or_raise(db, SubscriptionPlan, new_plan_id, "Subscription plan")
        if not plan.is_active:
            raise InvalidInput("Subscription plan is not available")
        if plan.id == subscription.plan_id:
            raise InvalidInput("Subscription is already on this plan")
        subscription.plan_id = plan.id
        subscription.current_price = plan_price(plan, subscription.billing_cycle)
        return plan

    @retry_on_contention()
    def change_plan(self, db: Session, subscription_id: str, new_plan_id: str) -> TenantSubscription:
        """Switch plan and price. Proration is the caller's concern."""
        subscription = self.lock(db, subscription_id)
        self.switch_plan(db, subscription, new_plan_id)
        return self._commit(db, subscription, "Changed plan of subscription: %s")

    @retry_on_contention()
    def cancel(self, db: Session, subscription_id: str, immediately: bool = False) -> TenantSubscription:
        subscription = self.lock(db, subscription_id)
        _require_status(subscription, {SubscriptionStatus.active}, "cancel")
        now = self.clock.now()
        subscription.status = SubscriptionStatus.cancelled
        subscription.cancelled_at = now
        subscription.expires_at = now if immediately else subscription.current_period_end
        subscription.auto_renew = False
        return self._commit(db, subscription, "Cancelled subscription: %s")

    @retry_on_contention()
    def renew(self, db: Session, subscription_id: str) -> TenantSubscription:
        subscription = self.lock(db, subscription_id)
        _require_status(
            subscription,
            {
                SubscriptionStatus.active,
                SubscriptionStatus.cancelled,
                SubscriptionStatus.expired,
                SubscriptionStatus.past_due,
            },
            "renew",
        )
        was_active = subscription.status == SubscriptionStatus.active
        start = subscription.current_period_end
        subscription.current_period_start = start
        subscription.current_period_end = next_period_end(start, subscription.billing_cycle)
        subscription.status = SubscriptionStatus.active
        subscription.cancelled_at = None
        subscription.expires_at = None
        if not was_active:
            subscription.auto_renew = True
        if subscription.is_trial and (
            subscription.trial_ends_at is None or subscription.trial_ends_at <= start
        ):
            subscription.is_trial = False
        _flush_or_conflict(db, subscription.tenant_id)
        return self._commit(db, subscription, "Renewed subscription: %s")

    @retry_on_contention()
    def suspend(self, db: Session, subscription_id: str) -> TenantSubscription:
        subscription = self.lock(db, subscription_id)
        if subscription.status == SubscriptionStatus.suspended:
            raise InvalidState("Subscription is already suspended")
        _require_status(
            subscription,
            {SubscriptionStatus.active, SubscriptionStatus.past_due},
            "suspend",
        )
        subscription.status = SubscriptionStatus.suspended
        return self._commit(db, subscription, "Suspended subscription: %s")

    @retry_on_contention()
    def reactivate(self, db: Session, subscription_id: str) -> TenantSubscription:
        subscription = self.lock(db, subscription_id)
        if subscription.status == SubscriptionStatus.active:
            raise InvalidState("Subscription is already active")
        _require_status(
            subscription,
            {SubscriptionStatus.suspended, SubscriptionStatus.past_due},
            "reactivate",
        )
        subscription.status = SubscriptionStatus.active
        _flush_or_conflict(db, subscription.tenant_id)
        return self._commit(db, subscription, "Reactivated subscription: %s")

    @retry_on_contention()
    def mark_past_due(self, db: Session, subscription_id: str) -> TenantSubscription:
        subscription = self.lock(db, subscription_id)
        _require_status(subscription, {SubscriptionStatus.active}, "mark past due")
        subscription.status = SubscriptionStatus.past_due
        return self._commit(db, subscription, "Subscription past due: %s")

    @retry_on_contention()
    def expire_ended(self, db: Session) -> int:
        """Expire cancelled and non-renewing subscriptions whose time is up."""
        set_lock_timeout(db)
        now = self.clock.now()
        due = (
            db.query(TenantSubscription)
            .filter(
                or_(
                    (TenantSubscription.status == SubscriptionStatus.cancelled)
                    & (TenantSubscription.expires_at <= now),
                    (TenantSubscription.status == SubscriptionStatus.active)
                    & TenantSubscription.auto_renew.is_(False)
                    & (TenantSubscription.current_period_end <= now),
                )
            )
            .with_for_update(skip_locked=True)
            .all()
        )
        for subscription in due:
            subscription.status = SubscriptionStatus.expired
            if subscription.expires_at is None:
                subscription.expires_at = subscription.current_period_end
        db.commit()
        if due:
            logger.info("Expired %d subscriptions", len(due))
        return len(due)

    # ── Queries ──────────────────────────────────────────

    @staticmethod
    def get(db: Session, subscription_id: str) -> TenantSubscription:
        return get_or_raise(db, TenantSubscription, subscription_id, "Subscription")

    @staticmethod
    def get_active(db: Session, tenant_id: str) -> TenantSubscription | None:
        return (
            db.query(TenantSubscription)
            .filter(TenantSubscription.tenant_id == require_uuid(tenant_id))
            .filter(TenantSubscription.status == SubscriptionStatus.active)
            .first()
        )

    @staticmethod
    def list(
        db: Session,
        tenant_id: str | None,
        status: str | None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TenantSubscription], int]:
        query = db.query(TenantSubscription)
        if tenant_id:
            query = query.filter(TenantSubscription.tenant_id == require_uuid(tenant_id))
        if status:
            query = query.filter(
                TenantSubscription.status
                == validate_enum(status, SubscriptionStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": TenantSubscription.created_at,
                "current_period_end": TenantSubscription.current_period_end,
            },
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total

    def list_due_for_renewal(self, db: Session, now: datetime | None = None) -> list[TenantSubscription]:
        now = now or self.clock.now()
        return (
            db.query(TenantSubscription)
            .filter(TenantSubscription.status == SubscriptionStatus.active)
            .filter(TenantSubscription.auto_renew.is_(True))
            .filter(TenantSubscription.current_period_end <= now)
            .order_by(TenantSubscription.current_period_end.asc())
            .all()
        )

    def list_expiring(self, db: Session, within_days: int = 7) -> list[TenantSubscription]:
        """Active, non-renewing subscriptions ending within ``within_days``."""
        now = self.clock.now()
        return (
            db.query(TenantSubscription)
            .filter(TenantSubscription.status == SubscriptionStatus.active)
            .filter(TenantSubscription.auto_renew.is_(False))
            .filter(TenantSubscription.current_period_end > now)
            .filter(
                TenantSubscription.current_period_end <= now + timedelta(days=within_days)
            )
            .order_by(TenantSubscription.current_period_end.asc())
            .all()
        )
