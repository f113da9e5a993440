"""Tests for the subscription lifecycle service."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from billcore.errors import ConflictError, InvalidInput, InvalidState, NotFound
from billcore.models.billing import BillingCycle, SubscriptionStatus
from billcore.schemas.billing import SubscriptionCreate
from billcore.services.billing.subscriptions import next_period_end


def test_next_period_end_clamps_month_end():
    assert next_period_end(datetime(2026, 1, 31, tzinfo=UTC), "monthly") == datetime(
        2026, 2, 28, tzinfo=UTC
    )
    assert next_period_end(datetime(2028, 2, 29, tzinfo=UTC), BillingCycle.yearly) == datetime(
        2029, 2, 28, tzinfo=UTC
    )


def test_create_uses_plan_price(subscription, basic_plan):
    assert subscription.status == SubscriptionStatus.active
    assert subscription.plan_id == basic_plan.id
    assert subscription.current_price == Decimal("49.00")
    assert subscription.current_period_start == datetime(2026, 3, 1, tzinfo=UTC)
    assert subscription.current_period_end == datetime(2026, 4, 1, tzinfo=UTC)
    assert subscription.auto_renew is True
    assert subscription.is_trial is False


def test_create_yearly_with_trial(make_subscription, basic_plan):
    subscription = make_subscription(basic_plan, billing_cycle="yearly", trial_days=14)
    assert subscription.current_price == Decimal("490.00")
    assert subscription.current_period_end == datetime(2027, 3, 1, tzinfo=UTC)
    assert subscription.is_trial is True
    assert subscription.trial_ends_at == datetime(2026, 3, 15, tzinfo=UTC)


def test_create_with_explicit_price(make_subscription, basic_plan):
    subscription = make_subscription(basic_plan, price=Decimal("39.999"))
    assert subscription.current_price == Decimal("40.00")


def test_second_active_subscription_conflicts(
    db_session, make_subscription, subscription, premium_plan, tenant_id, subscription_service
):
    with pytest.raises(ConflictError):
        make_subscription(premium_plan, tenant_id)
    assert subscription_service.get_active(db_session, str(tenant_id)).id == subscription.id


def test_create_after_cancel_is_allowed(make_subscription, subscription, subscription_service, db_session, premium_plan, tenant_id):
    subscription_service.cancel(db_session, str(subscription.id), immediately=True)
    replacement = make_subscription(premium_plan, tenant_id)
    assert replacement.status == SubscriptionStatus.active


def test_create_rejects_inactive_plan(make_plan, make_subscription):
    plan = make_plan(is_active=False)
    with pytest.raises(InvalidInput):
        make_subscription(plan)


def test_create_unknown_plan(db_session, subscription_service):
    with pytest.raises(NotFound):
        subscription_service.create(
            db_session,
            SubscriptionCreate(tenant_id=uuid.uuid4(), plan_id=uuid.uuid4()),
        )


def test_change_plan_updates_price_only(db_session, subscription_service, subscription, premium_plan):
    changed = subscription_service.change_plan(db_session, str(subscription.id), str(premium_plan.id))
    assert changed.plan_id == premium_plan.id
    assert changed.current_price == Decimal("99.00")
    assert changed.current_period_end == datetime(2026, 4, 1, tzinfo=UTC)
    with pytest.raises(InvalidInput):
        subscription_service.change_plan(db_session, str(subscription.id), str(premium_plan.id))


def test_change_plan_requires_active(db_session, subscription_service, subscription, premium_plan):
    subscription_service.suspend(db_session, str(subscription.id))
    with pytest.raises(InvalidState):
        subscription_service.change_plan(db_session, str(subscription.id), str(premium_plan.id))


def test_cancel_at_period_end(db_session, subscription_service, subscription, clock):
    cancelled = subscription_service.cancel(db_session, str(subscription.id))
    assert cancelled.status == SubscriptionStatus.cancelled
    assert cancelled.cancelled_at == clock.now()
    assert cancelled.expires_at == datetime(2026, 4, 1, tzinfo=UTC)
    assert cancelled.auto_renew is False
    with pytest.raises(InvalidState):
        subscription_service.cancel(db_session, str(subscription.id))


def test_cancel_immediately(db_session, subscription_service, subscription, clock):
    cancelled = subscription_service.cancel(db_session, str(subscription.id), immediately=True)
    assert cancelled.expires_at == clock.now()


def test_renew_advances_from_prior_period_end(db_session, subscription_service, subscription):
    renewed = subscription_service.renew(db_session, str(subscription.id))
    assert renewed.current_period_start == datetime(2026, 4, 1, tzinfo=UTC)
    assert renewed.current_period_end == datetime(2026, 5, 1, tzinfo=UTC)
    assert renewed.status == SubscriptionStatus.active


def test_renew_reactivates_cancelled(db_session, subscription_service, subscription):
    subscription_service.cancel(db_session, str(subscription.id))
    renewed = subscription_service.renew(db_session, str(subscription.id))
    assert renewed.status == SubscriptionStatus.active
    assert renewed.cancelled_at is None
    assert renewed.expires_at is None
    assert renewed.auto_renew is True


def test_renew_blocked_by_other_active(
    db_session, subscription_service, subscription, make_subscription, premium_plan, tenant_id
):
    subscription_service.cancel(db_session, str(subscription.id), immediately=True)
    make_subscription(premium_plan, tenant_id)
    with pytest.raises(ConflictError):
        subscription_service.renew(db_session, str(subscription.id))
    assert subscription_service.get(db_session, str(subscription.id)).status == (
        SubscriptionStatus.cancelled
    )


def test_renew_ends_trial(db_session, subscription_service, make_subscription, basic_plan):
    subscription = make_subscription(basic_plan, trial_days=14)
    renewed = subscription_service.renew(db_session, str(subscription.id))
    assert renewed.is_trial is False


def test_suspend_and_reactivate(db_session, subscription_service, subscription):
    suspended = subscription_service.suspend(db_session, str(subscription.id))
    assert suspended.status == SubscriptionStatus.suspended
    with pytest.raises(InvalidState):
        subscription_service.suspend(db_session, str(subscription.id))
    reactivated = subscription_service.reactivate(db_session, str(subscription.id))
    assert reactivated.status == SubscriptionStatus.active
    with pytest.raises(InvalidState):
        subscription_service.reactivate(db_session, str(subscription.id))


def test_past_due_then_reactivate(db_session, subscription_service, subscription):
    past_due = subscription_service.mark_past_due(db_session, str(subscription.id))
    assert past_due.status == SubscriptionStatus.past_due
    assert subscription_service.reactivate(db_session, str(subscription.id)).status == (
        SubscriptionStatus.active
    )


def test_expire_ended_is_idempotent(db_session, subscription_service, subscription, clock):
    subscription_service.cancel(db_session, str(subscription.id))
    assert subscription_service.expire_ended(db_session) == 0

    clock.set(datetime(2026, 4, 1, 0, 1, tzinfo=UTC))
    assert subscription_service.expire_ended(db_session) == 1
    assert subscription_service.expire_ended(db_session) == 0
    expired = subscription_service.get(db_session, str(subscription.id))
    assert expired.status == SubscriptionStatus.expired


def test_expire_ended_covers_non_renewing(db_session, subscription_service, make_subscription, basic_plan, clock):
    subscription = make_subscription(basic_plan, auto_renew=False)
    clock.set(datetime(2026, 4, 2, tzinfo=UTC))
    assert subscription_service.expire_ended(db_session) == 1
    expired = subscription_service.get(db_session, str(subscription.id))
    assert expired.status == SubscriptionStatus.expired
    assert expired.expires_at == datetime(2026, 4, 1, tzinfo=UTC)


def test_due_for_renewal_and_expiring(db_session, subscription_service, subscription, make_subscription, basic_plan, clock):
    non_renewing = make_subscription(basic_plan, auto_renew=False)
    assert subscription_service.list_due_for_renewal(db_session) == []

    clock.set(datetime(2026, 3, 28, tzinfo=UTC))
    expiring = subscription_service.list_expiring(db_session, within_days=7)
    assert [s.id for s in expiring] == [non_renewing.id]

    due = subscription_service.list_due_for_renewal(
        db_session, now=datetime(2026, 4, 1, tzinfo=UTC) + timedelta(seconds=1)
    )
    assert [s.id for s in due] == [subscription.id]


def test_list_subscriptions(db_session, subscription_service, subscription, tenant_id):
    items, total = subscription_service.list(
        db_session, str(tenant_id), "active", limit=10, offset=0
    )
    assert total == 1
    assert items[0].id == subscription.id
    with pytest.raises(InvalidInput):
        subscription_service.list(db_session, None, None, order_by="price", limit=10, offset=0)
