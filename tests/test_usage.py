"""Tests for usage aggregation and recording."""

import csv
import io
import json
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from billcore.errors import InvalidInput, NotFound
from billcore.schemas.billing import UsageRecordCreate
from billcore.services.billing.usage import (
    UsageStatus,
    billable_overage,
    overage_cost,
    remaining_usage,
    sum_usage,
    summarize,
    usage_percentage,
    usage_status,
)

MARCH = datetime(2026, 3, 1, tzinfo=UTC)
APRIL = datetime(2026, 4, 1, tzinfo=UTC)


def _record(usage_type, quantity, unit="calls"):
    return SimpleNamespace(usage_type=usage_type, quantity=Decimal(quantity), unit=unit)


def _payload(quantity, start, usage_type="api_calls", unit="calls"):
    return UsageRecordCreate(
        usage_type=usage_type,
        quantity=Decimal(quantity),
        unit=unit,
        period_start=start,
        period_end=start + timedelta(hours=1),
    )


# ── Aggregation ──────────────────────────────────────────


def test_sum_usage_groups_by_type():
    records = [
        _record("api_calls", "600"),
        _record("storage_gb", "1.25", "GB"),
        _record("api_calls", "650.5"),
    ]
    assert sum_usage(records) == {
        "api_calls": Decimal("1250.5000"),
        "storage_gb": Decimal("1.2500"),
    }
    assert sum_usage(records, group_by_type=False) == Decimal("1251.7500")
    assert sum_usage([]) == {}


def test_summarize_counts_records():
    summaries = summarize([_record("api_calls", "10"), _record("api_calls", "5")])
    summary = summaries["api_calls"]
    assert summary.quantity == Decimal("15")
    assert summary.unit == "calls"
    assert summary.record_count == 2


def test_billable_overage_and_cost():
    assert billable_overage(Decimal("1250"), Decimal("1000")) == Decimal("250")
    assert billable_overage(Decimal("800"), Decimal("1000")) == Decimal("0")
    assert overage_cost(Decimal("1250"), Decimal("1000"), Decimal("0.01")) == Decimal("2.50")
    assert overage_cost(Decimal("1000.0049"), Decimal("1000"), Decimal("1")) == Decimal("0.00")


def test_remaining_usage():
    assert remaining_usage(Decimal("300"), Decimal("1000")) == Decimal("700")
    assert remaining_usage(Decimal("1300"), Decimal("1000")) == Decimal("0")


@pytest.mark.parametrize(
    "used,limit,expected",
    [
        ("0", "1000", UsageStatus.low),
        ("499", "1000", UsageStatus.low),
        ("500", "1000", UsageStatus.medium),
        ("799.9", "1000", UsageStatus.medium),
        ("800", "1000", UsageStatus.high),
        ("999", "1000", UsageStatus.high),
        ("1000", "1000", UsageStatus.exceeded),
        ("5000", "1000", UsageStatus.exceeded),
        ("50", "0", UsageStatus.low),
        ("49.9960", "100", UsageStatus.low),
        ("79.9950", "100", UsageStatus.medium),
        ("99.9960", "100", UsageStatus.high),
        ("100", "100", UsageStatus.exceeded),
    ],
)
def test_usage_status_bands(used, limit, expected):
    assert usage_status(Decimal(used), Decimal(limit)) == expected


def test_status_just_under_the_limit_has_no_overage():
    used, limit = Decimal("99.9960"), Decimal("100")
    assert usage_percentage(used, limit) == Decimal("100.00")
    assert usage_status(used, limit) == UsageStatus.high
    assert billable_overage(used, limit) == Decimal("0")


def test_usage_percentage_is_capped():
    assert usage_percentage(Decimal("250"), Decimal("1000")) == Decimal("25.00")
    assert usage_percentage(Decimal("3000"), Decimal("1000")) == Decimal("100")
    assert usage_percentage(Decimal("10"), Decimal("0")) == Decimal("0")


# ── Recording ────────────────────────────────────────────


def test_record_batch(db_session, usage_service, subscription, tenant_id, clock):
    records = usage_service.record_batch(
        db_session,
        str(tenant_id),
        [_payload("12.3456", MARCH), _payload("3", MARCH + timedelta(days=1))],
        str(subscription.id),
    )
    assert len(records) == 2
    assert records[0].quantity == Decimal("12.3456")
    assert records[0].subscription_id == subscription.id
    assert records[0].recorded_at == clock.now()


def test_record_batch_rejects_foreign_subscription(db_session, usage_service, subscription):
    with pytest.raises(InvalidInput):
        usage_service.record_batch(
            db_session, str(uuid.uuid4()), [_payload("1", MARCH)], str(subscription.id)
        )


def test_record_batch_unknown_subscription(db_session, usage_service, tenant_id):
    with pytest.raises(NotFound):
        usage_service.record_batch(
            db_session, str(tenant_id), [_payload("1", MARCH)], str(uuid.uuid4())
        )


def test_usage_record_period_must_be_ordered():
    with pytest.raises(ValueError):
        UsageRecordCreate(
            usage_type="api_calls",
            quantity=Decimal("1"),
            unit="calls",
            period_start=MARCH,
            period_end=MARCH,
        )


def test_for_period_is_half_open(db_session, usage_service, tenant_id):
    usage_service.record_batch(
        db_session,
        str(tenant_id),
        [
            _payload("1", MARCH - timedelta(hours=1)),
            _payload("2", MARCH),
            _payload("4", APRIL - timedelta(hours=1)),
            _payload("8", APRIL),
        ],
    )
    records = usage_service.for_period(db_session, str(tenant_id), MARCH, APRIL)
    assert [r.quantity for r in records] == [Decimal("2.0000"), Decimal("4.0000")]
    totals = usage_service.totals_for_period(db_session, str(tenant_id), MARCH, APRIL)
    assert totals == {"api_calls": Decimal("6.0000")}
    with pytest.raises(InvalidInput):
        usage_service.for_period(db_session, str(tenant_id), APRIL, MARCH)


def test_for_period_filters_by_type_and_tenant(db_session, usage_service, tenant_id):
    usage_service.record_batch(
        db_session,
        str(tenant_id),
        [_payload("5", MARCH), _payload("2", MARCH, usage_type="storage_gb", unit="GB")],
    )
    usage_service.record_batch(db_session, str(uuid.uuid4()), [_payload("9", MARCH)])
    records = usage_service.for_period(
        db_session, str(tenant_id), MARCH, APRIL, usage_type="storage_gb"
    )
    assert [(r.usage_type, r.quantity) for r in records] == [("storage_gb", Decimal("2.0000"))]


# ── Reporting ────────────────────────────────────────────


def _seed_report_usage(usage_service, db_session, tenant_id):
    usage_service.record_batch(
        db_session,
        str(tenant_id),
        [
            _payload("600", MARCH),
            _payload("650", MARCH + timedelta(days=10)),
            _payload("3.5", MARCH + timedelta(days=2), usage_type="storage_gb", unit="GB"),
            _payload("999", APRIL),
        ],
    )


def test_statistics(db_session, usage_service, tenant_id):
    _seed_report_usage(usage_service, db_session, tenant_id)
    stats = usage_service.statistics(db_session, str(tenant_id), MARCH, APRIL)
    assert stats.total_usage == Decimal("1253.5000")
    assert stats.usage_by_type == {
        "api_calls": Decimal("1250.0000"),
        "storage_gb": Decimal("3.5000"),
    }
    assert stats.record_count == 3
    # 31 days in March
    assert stats.average_per_day == Decimal("40.44")


def test_statistics_rounds_partial_days_up(db_session, usage_service, tenant_id):
    usage_service.record_batch(db_session, str(tenant_id), [_payload("30", MARCH)])
    stats = usage_service.statistics(
        db_session, str(tenant_id), MARCH, MARCH + timedelta(days=2, hours=1)
    )
    assert stats.average_per_day == Decimal("10.00")


def test_statistics_empty_period(db_session, usage_service, tenant_id):
    stats = usage_service.statistics(db_session, str(tenant_id), MARCH, APRIL)
    assert stats.total_usage == Decimal("0")
    assert stats.usage_by_type == {}
    assert stats.record_count == 0
    assert stats.average_per_day == Decimal("0.00")


def test_usage_types_are_distinct_and_sorted(db_session, usage_service, tenant_id):
    _seed_report_usage(usage_service, db_session, tenant_id)
    usage_service.record_batch(
        db_session, str(uuid.uuid4()), [_payload("1", MARCH, usage_type="seats", unit="seats")]
    )
    assert usage_service.usage_types(db_session, str(tenant_id)) == ["api_calls", "storage_gb"]


@pytest.mark.parametrize(
    "threshold,exceeded,percentage",
    [
        ("1000", True, "125.00"),
        ("1250", False, "100.00"),
        ("5000", False, "25.00"),
        ("0", True, "0.00"),
    ],
)
def test_check_threshold(db_session, usage_service, tenant_id, threshold, exceeded, percentage):
    _seed_report_usage(usage_service, db_session, tenant_id)
    check = usage_service.check_threshold(
        db_session, str(tenant_id), "api_calls", Decimal(threshold), MARCH, APRIL
    )
    assert check.usage_type == "api_calls"
    assert check.current == Decimal("1250.0000")
    assert check.exceeded is exceeded
    assert check.percentage == Decimal(percentage)


def test_check_threshold_rejects_negative(db_session, usage_service, tenant_id):
    with pytest.raises(InvalidInput):
        usage_service.check_threshold(
            db_session, str(tenant_id), "api_calls", Decimal("-1"), MARCH, APRIL
        )


def test_export_csv(db_session, usage_service, tenant_id):
    _seed_report_usage(usage_service, db_session, tenant_id)
    rows = list(
        csv.DictReader(io.StringIO(usage_service.export(db_session, str(tenant_id), MARCH, APRIL)))
    )
    assert [(row["usage_type"], row["quantity"]) for row in rows] == [
        ("api_calls", "600.0000"),
        ("storage_gb", "3.5000"),
        ("api_calls", "650.0000"),
    ]
    assert rows[0]["tenant_id"] == str(tenant_id)
    assert rows[0]["subscription_id"] == ""
    assert rows[0]["period_start"].startswith("2026-03-01T00:00:00")


def test_export_csv_without_records_keeps_header(db_session, usage_service, tenant_id):
    body = usage_service.export(db_session, str(tenant_id), MARCH, APRIL)
    assert body.splitlines() == [
        "id,tenant_id,subscription_id,usage_type,quantity,unit,"
        "period_start,period_end,recorded_at"
    ]


def test_export_json(db_session, usage_service, tenant_id):
    _seed_report_usage(usage_service, db_session, tenant_id)
    rows = json.loads(usage_service.export(db_session, str(tenant_id), MARCH, APRIL, "json"))
    assert len(rows) == 3
    assert rows[1]["usage_type"] == "storage_gb"
    assert rows[1]["unit"] == "GB"


def test_export_unknown_format(db_session, usage_service, tenant_id):
    with pytest.raises(InvalidInput):
        usage_service.export(db_session, str(tenant_id), MARCH, APRIL, "xml")
