"""Unit tests for cohort retention computations."""
from datetime import date, datetime

import pytest

from saas_ontology.models import CustomerStatus
from saas_ontology.services.cohort_service import (
    build_retention_curves,
    calculate_aggregate_retention,
    compute_cohort_retention,
    is_retained_at,
)
from tests.utils.factories import CustomerFactory

AS_OF = datetime(2024, 6, 15)


@pytest.fixture
def january_cohort():
    """Four customers acquired in January 2024, one of them churned in February."""
    active = [
        CustomerFactory.build({"created_at": datetime(2024, 1, 10), "mrr": 100.0}) for _ in range(3)
    ]
    churned = CustomerFactory.build(
        {
            "created_at": datetime(2024, 1, 12),
            "mrr": 100.0,
            "status": CustomerStatus.CHURNED,
            "churned_at": datetime(2024, 2, 20),
        }
    )
    return active + [churned]


def test_offset_zero_counts_every_member_as_retained(january_cohort):
    """Test that the acquisition month always shows full retention."""
    rows = compute_cohort_retention(january_cohort, AS_OF)

    first = rows[0]
    assert first.cohort_month == date(2024, 1, 1)
    assert first.month_offset == 0
    assert first.cohort_size == 4
    assert first.retention_rate == 1.0
    assert first.revenue_retention_rate == 1.0


def test_churned_member_drops_out_after_churn_date(january_cohort):
    rows = {row.month_offset: row for row in compute_cohort_retention(january_cohort, AS_OF)}

    # Feb 1: churn happened on Feb 20, still retained
    assert rows[1].retained_customers == 4
    # Mar 1 onwards: churned
    assert rows[2].retained_customers == 3
    assert rows[2].retention_rate == 0.75
    assert rows[2].retained_mrr == 300.0
    assert rows[2].revenue_retention_rate == 0.75


def test_offsets_are_capped_by_cohort_age_and_tracking_limit(january_cohort):
    rows = compute_cohort_retention(january_cohort, AS_OF)
    # (Jun 15 - Jan 1) is 166 days, five 30-day months
    assert [row.month_offset for row in rows] == [0, 1, 2, 3, 4, 5]

    capped = compute_cohort_retention(january_cohort, AS_OF, max_months_to_track=2)
    assert [row.month_offset for row in capped] == [0, 1, 2]


def test_customers_older_than_lookback_are_excluded(january_cohort):
    old = CustomerFactory.build({"created_at": datetime(2020, 3, 1)})
    rows = compute_cohort_retention(january_cohort + [old], AS_OF, lookback_months=24)
    assert {row.cohort_month for row in rows} == {date(2024, 1, 1)}


def test_is_retained_at_uses_churn_date():
    customer = CustomerFactory.build(
        {
            "created_at": datetime(2024, 1, 1),
            "status": CustomerStatus.CHURNED,
            "churned_at": datetime(2024, 3, 1),
        }
    )
    assert not is_retained_at(customer, datetime(2023, 12, 1))
    assert is_retained_at(customer, datetime(2024, 2, 1))
    assert not is_retained_at(customer, datetime(2024, 4, 1))


def test_aggregate_retention_only_averages_cohorts_that_reached_an_offset(january_cohort):
    may_customer = CustomerFactory.build({"created_at": datetime(2024, 5, 3), "mrr": 50.0})
    rows = compute_cohort_retention(january_cohort + [may_customer], AS_OF)
    curves = build_retention_curves(rows)

    assert [curve.cohort_month for curve in curves] == [date(2024, 1, 1), date(2024, 5, 1)]
    # May cohort: (Jun 15 - May 1) is 45 days, offsets 0 and 1
    assert len(curves[1].retention_by_month) == 2

    aggregate = calculate_aggregate_retention(curves)
    assert aggregate.cohort_count == 2
    assert aggregate.total_customers_analyzed == 5
    assert aggregate.avg_retention_by_month[0] == 1.0
    assert aggregate.avg_retention_by_month[1] == 1.0
    # Offset 2 only has the January cohort
    assert aggregate.avg_retention_by_month[2] == 0.75


def test_aggregate_retention_of_no_cohorts_is_empty():
    aggregate = calculate_aggregate_retention([])
    assert aggregate.cohort_count == 0
    assert aggregate.avg_retention_by_month == []
