"""Integration tests for organization-scoped data access."""
from datetime import date
from uuid import uuid4

import pytest

from saas_ontology.models import CohortRetention, Customer, CustomerStatus
from saas_ontology.store import AnalyticsStore
from tests.utils.factories import CustomerFactory


def _cohort_row(month: date, offset: int, retained: int) -> dict:
    return {
        "cohort_month": month,
        "month_offset": offset,
        "cohort_size": 10,
        "retained_customers": retained,
        "retention_rate": retained / 10,
        "starting_mrr": 1000.0,
        "retained_mrr": retained * 100.0,
        "revenue_retention_rate": retained / 10,
    }


@pytest.mark.asyncio
async def test_select_only_returns_rows_of_the_store_organization(db_session, store):
    """Test that a store never reads another organization's customers."""
    other = AnalyticsStore(db_session, uuid4())
    await store.insert(Customer, [CustomerFactory.create() for _ in range(3)])
    await other.insert(Customer, [CustomerFactory.create() for _ in range(2)])

    mine = await store.select(Customer)
    theirs = await other.select(Customer)

    assert len(mine) == 3
    assert len(theirs) == 2
    assert {c.organization_id for c in mine} == {store.organization_id}


@pytest.mark.asyncio
async def test_select_with_criteria_order_and_limit(store):
    await store.insert(
        Customer,
        [
            CustomerFactory.create({"mrr": 100.0}),
            CustomerFactory.create({"mrr": 300.0}),
            CustomerFactory.create({"mrr": 200.0, "status": CustomerStatus.CHURNED}),
        ],
    )

    active = await store.select(Customer, Customer.status == CustomerStatus.ACTIVE, order_by=Customer.mrr.desc())
    top = await store.select(Customer, order_by=Customer.mrr.desc(), limit=1)

    assert [c.mrr for c in active] == [300.0, 100.0]
    assert [c.mrr for c in top] == [300.0]


@pytest.mark.asyncio
async def test_upsert_updates_rows_with_the_same_key(store):
    """Test that upserting the same natural key twice leaves one updated row."""
    await store.upsert(
        CohortRetention,
        [_cohort_row(date(2024, 1, 1), 0, 10), _cohort_row(date(2024, 1, 1), 1, 9)],
        conflict_keys=("cohort_month", "month_offset"),
    )
    await store.upsert(
        CohortRetention,
        [_cohort_row(date(2024, 1, 1), 1, 7), _cohort_row(date(2024, 2, 1), 0, 10)],
        conflict_keys=("cohort_month", "month_offset"),
        batch_size=1,
    )

    rows = await store.select(CohortRetention, order_by=[CohortRetention.cohort_month, CohortRetention.month_offset])

    assert [(r.cohort_month, r.month_offset, r.retained_customers) for r in rows] == [
        (date(2024, 1, 1), 0, 10),
        (date(2024, 1, 1), 1, 7),
        (date(2024, 2, 1), 0, 10),
    ]


@pytest.mark.asyncio
async def test_update_and_delete_are_scoped(db_session, store):
    other = AnalyticsStore(db_session, uuid4())
    await store.insert(Customer, [CustomerFactory.create({"mrr": 50.0})])
    await other.insert(Customer, [CustomerFactory.create({"mrr": 50.0})])

    updated = await store.update(Customer, {"mrr": 75.0}, Customer.mrr == 50.0)
    deleted = await store.delete(Customer)

    assert updated == 1
    assert deleted == 1
    assert [c.mrr for c in await other.select(Customer)] == [50.0]
