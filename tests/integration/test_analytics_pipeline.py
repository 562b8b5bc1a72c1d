"""Integration tests for the full analytics pipeline."""
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from saas_ontology.models import (
    AnalyticsRun,
    BillingInterval,
    Customer,
    CustomerHealthScore,
    CustomerStatus,
    EconomicsSnapshot,
    ExpansionEvent,
    RunStatus,
    Segment,
    Transaction,
)
from saas_ontology.services.analytics_pipeline import get_latest_analytics, run_full_analytics
from saas_ontology.services.health_service import HealthService
from saas_ontology.utils.dates import add_months
from tests.utils.factories import CustomerFactory, ExpansionEventFactory, TransactionFactory

AS_OF = datetime(2024, 6, 15, 12, 0)
ACTIVE_CUSTOMERS = 36


async def seed_organization(store) -> list:
    """Active customers of varied size and age, a few churned ones, expansions and payments."""
    rows = []
    for i in range(ACTIVE_CUSTOMERS):
        tenure = 1 + i % 24
        rows.append(
            CustomerFactory.create(
                {
                    "mrr": 50.0 + 40.0 * i,
                    "tenure_months": tenure,
                    "created_at": add_months(AS_OF, -tenure),
                    "billing_interval": BillingInterval.ANNUAL if i % 5 == 0 else BillingInterval.MONTHLY,
                }
            )
        )
    for i in range(4):
        rows.append(
            CustomerFactory.create(
                {
                    "mrr": 80.0,
                    "tenure_months": 4,
                    "created_at": add_months(AS_OF, -10),
                    "status": CustomerStatus.CHURNED,
                    "churned_at": add_months(AS_OF, -i) - timedelta(days=10),
                }
            )
        )
    customers = await store.insert(Customer, rows)
    active = [c for c in customers if c.status == CustomerStatus.ACTIVE]

    await store.insert(
        ExpansionEvent,
        [
            ExpansionEventFactory.create({"customer_id": c.id, "occurred_at": AS_OF - timedelta(days=10 + i)})
            for i, c in enumerate(active[:10])
        ],
    )
    await store.insert(
        Transaction,
        [
            TransactionFactory.create(
                {
                    "customer_id": c.id,
                    "amount": float(c.mrr),
                    "occurred_at": AS_OF - timedelta(days=5 + 7 * (i % 8) + 30 * k),
                }
            )
            for i, c in enumerate(active)
            for k in range(1 + i % 3)
        ],
    )
    await store.commit()
    return customers


@pytest.mark.asyncio
async def test_full_run_persists_every_step(db_session, organization_id, store):
    """Test that a full run completes all steps and writes run log, scores and snapshot."""
    await seed_organization(store)
    progress = []

    result = await run_full_analytics(db_session, organization_id, on_progress=progress.append, seed=42, as_of=AS_OF)

    assert result.summary.customer_count == ACTIVE_CUSTOMERS
    assert 3 <= result.summary.segment_count <= 6
    assert result.summary.total_mrr == pytest.approx(sum(50.0 + 40.0 * i for i in range(ACTIVE_CUSTOMERS)))
    assert len(result.economics.retention.churned_in_period) == 1
    assert result.economics.cohort_retention
    assert len(result.segmentation.rfm_scores) == ACTIVE_CUSTOMERS

    [run] = await store.select(AnalyticsRun)
    assert run.id == result.run_id
    assert run.status == RunStatus.COMPLETED
    assert run.completed_steps == 8
    assert run.current_step == "Complete"
    assert run.result_summary["customer_count"] == ACTIVE_CUSTOMERS

    [snapshot] = await store.select(EconomicsSnapshot)
    assert snapshot.snapshot_date == AS_OF.date()
    assert snapshot.total_customers == ACTIVE_CUSTOMERS
    assert snapshot.churned_customers == 1
    assert len(await store.select(CustomerHealthScore)) == ACTIVE_CUSTOMERS

    assert progress[0].status == "running"
    assert progress[0].completed_steps == 0
    assert progress[-1].status == "completed"
    assert progress[-1].completed_steps == 8
    steps = [p.completed_steps for p in progress]
    assert steps == sorted(steps)


@pytest.mark.asyncio
async def test_rerun_with_same_seed_is_idempotent(db_session, organization_id, store):
    """Test that a second run over unchanged data reproduces segments and RFM classes."""
    await seed_organization(store)

    first = await run_full_analytics(db_session, organization_id, seed=42, as_of=AS_OF)
    second = await run_full_analytics(db_session, organization_id, seed=42, as_of=AS_OF)

    assert second.summary.customer_count == first.summary.customer_count
    assert second.summary.segment_count == first.summary.segment_count
    assert [(s.name, s.customer_count) for s in second.segmentation.segments] == [
        (s.name, s.customer_count) for s in first.segmentation.segments
    ]
    assert {s.customer_id: s.rfm_segment for s in second.segmentation.rfm_scores} == {
        s.customer_id: s.rfm_segment for s in first.segmentation.rfm_scores
    }

    # Daily tables are upserted, not appended
    assert len(await store.select(EconomicsSnapshot)) == 1
    assert len(await store.select(CustomerHealthScore)) == ACTIVE_CUSTOMERS
    active_segments = await store.select(Segment, Segment.is_active.is_(True))
    assert len(active_segments) == first.summary.segment_count
    assert len(await store.select(AnalyticsRun)) == 2


@pytest.mark.asyncio
async def test_failed_step_marks_run_failed(db_session, organization_id, store, monkeypatch):
    """Test that an exception in a step is re-raised and recorded on the run log."""
    await seed_organization(store)

    async def broken(self, as_of=None):
        raise RuntimeError("health source unavailable")

    monkeypatch.setattr(HealthService, "calculate_health_scores", broken)
    progress = []

    with pytest.raises(RuntimeError, match="health source unavailable"):
        await run_full_analytics(db_session, organization_id, on_progress=progress.append, seed=1, as_of=AS_OF)

    latest = await get_latest_analytics(db_session, organization_id)
    assert latest.status == "failed"
    assert latest.error_message == "health source unavailable"
    assert latest.progress.completed_steps == 6
    assert latest.progress.current_step == "Calculating health scores"
    assert latest.summary is None

    [run] = await store.select(AnalyticsRun)
    assert run.errors_count == 1
    assert run.error_details[0]["type"] == "RuntimeError"

    assert progress[-1].status == "failed"
    assert progress[-1].error == "health source unavailable"


@pytest.mark.asyncio
async def test_latest_analytics_for_an_organization_without_runs(db_session):
    latest = await get_latest_analytics(db_session, uuid4())

    assert latest.status == "never_run"
    assert latest.last_run is None
    assert latest.summary is None


@pytest.mark.asyncio
async def test_latest_analytics_after_a_completed_run(db_session, organization_id, store):
    await seed_organization(store)
    result = await run_full_analytics(db_session, organization_id, seed=7, as_of=AS_OF)

    latest = await get_latest_analytics(db_session, organization_id)

    assert latest.status == "completed"
    assert latest.completed_at is not None
    assert latest.progress.completed_steps == 8
    assert latest.summary.customer_count == result.summary.customer_count
    assert latest.summary.segment_count == result.summary.segment_count


@pytest.mark.asyncio
async def test_empty_organization_completes(db_session, organization_id):
    """Test that a run over an organization with no customers completes with an empty summary."""
    result = await run_full_analytics(db_session, organization_id, seed=1, as_of=AS_OF)

    assert result.summary.customer_count == 0
    assert result.summary.segment_count == 0
    assert result.summary.key_insights[0] == "No active customers to analyze."

    latest = await get_latest_analytics(db_session, organization_id)
    assert latest.status == "completed"
