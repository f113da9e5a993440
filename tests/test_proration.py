"""Tests for whole-day proration."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from hypothesis import given
from hypothesis import strategies as st

from billcore.clock import FixedClock
from billcore.errors import InvalidAmount, InvalidInput
from billcore.services.billing.proration import ProrationEngine

START = datetime(2026, 4, 1, tzinfo=UTC)
END = datetime(2026, 5, 1, tzinfo=UTC)
MIDPOINT = datetime(2026, 4, 16, tzinfo=UTC)


def _subscription(price="49.00", start=START, end=END):
    return SimpleNamespace(
        id="sub-1",
        current_price=Decimal(price),
        current_period_start=start,
        current_period_end=end,
    )


@pytest.fixture()
def engine():
    return ProrationEngine(clock=FixedClock(MIDPOINT))


def test_calculate_counts_whole_days(engine):
    result = engine.calculate(Decimal("30.00"), START, END, MIDPOINT)
    assert result.total_days == 30
    assert result.unused_days == 15
    assert result.amount == Decimal("15.00")
    assert result.factor == Decimal("0.5")


def test_partial_days_round_up(engine):
    result = engine.calculate(
        Decimal("100.00"), START, END + timedelta(hours=1), END - timedelta(minutes=1)
    )
    assert result.total_days == 31
    assert result.unused_days == 1
    assert result.amount == Decimal("3.23")


def test_upgrade_scenario(engine):
    upgrade = engine.upgrade(_subscription("49.00"), Decimal("99.00"))
    assert upgrade.credit == Decimal("24.50")
    assert upgrade.charge == Decimal("49.50")
    assert upgrade.net == Decimal("25.00")
    assert upgrade.unused_days == 15
    assert upgrade.effective_date == MIDPOINT


def test_upgrade_to_cheaper_plan_has_no_net(engine):
    upgrade = engine.upgrade(_subscription("99.00"), Decimal("49.00"))
    assert upgrade.net == Decimal("0.00")


def test_downgrade_credits_difference(engine):
    downgrade = engine.downgrade(_subscription("99.00"), Decimal("49.00"))
    assert downgrade.credit == Decimal("25.00")
    assert downgrade.charge == Decimal("0.00")
    assert engine.downgrade(_subscription("49.00"), Decimal("99.00")).credit == Decimal("0.00")


def test_cancellation_refund(engine):
    refund = engine.cancellation_refund(_subscription("60.00"))
    assert refund.refund_amount == Decimal("30.00")
    assert refund.unused_days == 15


def test_should_charge_full_amount(engine):
    sub = _subscription("49.00")
    assert engine.should_charge_full_amount(sub, Decimal("99.00")) is False
    assert engine.should_charge_full_amount(sub, Decimal("99.00"), END - timedelta(days=2)) is True
    assert engine.should_charge_full_amount(sub, Decimal("1.00")) is True


def test_days_and_percentage_remaining(engine):
    sub = _subscription()
    assert engine.days_remaining(sub) == 15
    assert engine.percentage_remaining(sub) == 50


def test_percentage_remaining_before_period_start():
    engine = ProrationEngine(clock=FixedClock(START - timedelta(days=3)))
    assert engine.percentage_remaining(_subscription()) == 100


@pytest.mark.parametrize(
    ("start", "end", "effective"),
    [
        (START, START, START),
        (END, START, END),
        (START, END, START - timedelta(seconds=1)),
    ],
)
def test_invalid_periods(engine, start, end, effective):
    with pytest.raises(InvalidInput):
        engine.calculate(Decimal("10"), start, end, effective)


def test_negative_amount(engine):
    with pytest.raises(InvalidAmount):
        engine.prorate(Decimal("-1"), START, END, MIDPOINT)


amounts = st.decimals(min_value=0, max_value=100000, places=2, allow_nan=False, allow_infinity=False)
lengths = st.integers(min_value=1, max_value=400 * 24 * 3600)


@given(amounts, lengths)
def test_prorate_boundaries(amount, seconds):
    engine = ProrationEngine(clock=FixedClock(START))
    end = START + timedelta(seconds=seconds)
    assert engine.prorate(amount, START, end, START) == amount
    assert engine.prorate(amount, START, end, end) == Decimal("0.00")


@given(amounts, lengths, st.floats(min_value=0, max_value=1))
def test_prorate_never_exceeds_amount(amount, seconds, fraction):
    engine = ProrationEngine(clock=FixedClock(START))
    end = START + timedelta(seconds=seconds)
    effective = START + timedelta(seconds=int(seconds * fraction))
    assert Decimal("0.00") <= engine.prorate(amount, START, end, effective) <= amount
