"""Integration tests for the analytics services against a real session."""
from datetime import date, datetime

import numpy as np
import pytest

from saas_ontology.models import (
    BillingInterval,
    CohortRetention,
    CompanySize,
    Customer,
    CustomerHealthScore,
    CustomerStatus,
    Pattern,
    PatternType,
    PricingTier,
    Segment,
)
from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.health import HealthTrend
from saas_ontology.schemas.patterns import UpgradeSignalType
from saas_ontology.services.churn_detector import ChurnDetector
from saas_ontology.services.cohort_service import CohortService
from saas_ontology.services.correlation_service import CorrelationService
from saas_ontology.services.health_service import HealthService
from saas_ontology.services.retention_service import RetentionService
from saas_ontology.services.segmentation_service import SegmentationService
from saas_ontology.services.upgrade_detector import UpgradeDetector
from saas_ontology.services.usage_signals import StaticUsageSignalProvider
from saas_ontology.utils.dates import add_months
from tests.utils.factories import CustomerFactory, PricingTierFactory

AS_OF = datetime(2024, 6, 15)


@pytest.mark.asyncio
async def test_churn_inside_trailing_window_is_reported(store):
    """Test that a customer churned two months ago shows up in a three-month retention window."""
    [churned] = await store.insert(
        Customer,
        [
            CustomerFactory.create(
                {
                    "mrr": 500.0,
                    "created_at": add_months(AS_OF, -13),
                    "status": CustomerStatus.CHURNED,
                    "churned_at": add_months(AS_OF, -2),
                }
            )
        ],
    )
    await store.insert(Customer, [CustomerFactory.create({"mrr": 500.0, "created_at": add_months(AS_OF, -13)})])

    metrics = await RetentionService(store).calculate_retention_metrics(
        period_start=add_months(AS_OF, -3), period_end=AS_OF
    )

    assert metrics.churned_in_period == [churned.id]
    assert metrics.revenue_churn_amount == 500.0
    assert metrics.starting_mrr == 1000.0
    assert metrics.gross_revenue_retention == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_cohort_rows_are_stored_once_per_month_offset(store):
    await store.insert(
        Customer, [CustomerFactory.create({"created_at": datetime(2024, 1, 10)}) for _ in range(3)]
    )
    service = CohortService(store)

    first = await service.store_cohort_data(await service.analyze_cohort_retention(as_of=AS_OF))
    second = await service.store_cohort_data(await service.analyze_cohort_retention(as_of=AS_OF))

    assert first == second == 6
    assert len(await store.select(CohortRetention)) == 6


@pytest.mark.asyncio
async def test_apply_segmentation_assigns_members_and_deactivates_stale_segments(store):
    """Test that every clustered and at-risk customer gets a segment and stale ones are retired."""
    base = {"tenure_months": 6, "company_size": CompanySize.SMB, "created_at": datetime(2023, 12, 1)}
    await store.insert(
        Customer, [CustomerFactory.create({**base, "mrr": 50.0 + 25.0 * i}) for i in range(40)]
    )
    [at_risk] = await store.insert(
        Customer, [CustomerFactory.create({**base, "mrr": 100.0, "status": CustomerStatus.AT_RISK})]
    )
    await store.insert(Segment, [{"name": "Old Segment", "is_system_generated": True, "is_active": True}])

    service = SegmentationService(store)
    analysis = await service.analyze_segmentation(as_of=AS_OF, rng=np.random.default_rng(1))
    applied = await service.apply_segmentation(analysis)

    assert 3 <= len(analysis.segments) <= 6
    assert sum(s.customer_count for s in analysis.segments) == 40
    assert applied.customers_assigned == 41
    assert applied.segments_deactivated == 1

    [stale] = await store.select(Segment, Segment.name == "Old Segment")
    assert stale.is_active is False

    customers = await store.select(Customer)
    assert all(c.segment_id is not None for c in customers)
    assert next(c for c in customers if c.id == at_risk.id).segment_id in applied.segment_ids.values()


@pytest.mark.asyncio
async def test_apply_segmentation_detaches_churned_customers_from_retired_segments(store):
    """Test that a churned member of a deactivated segment no longer points at it."""
    base = {"tenure_months": 6, "company_size": CompanySize.SMB, "created_at": datetime(2023, 12, 1)}
    await store.insert(
        Customer, [CustomerFactory.create({**base, "mrr": 50.0 + 25.0 * i}) for i in range(40)]
    )
    [old_segment] = await store.insert(
        Segment, [{"name": "Old Segment", "is_system_generated": True, "is_active": True}]
    )
    [churned] = await store.insert(
        Customer,
        [
            CustomerFactory.create(
                {
                    **base,
                    "mrr": 300.0,
                    "status": CustomerStatus.CHURNED,
                    "churned_at": datetime(2024, 3, 1),
                    "segment_id": old_segment.id,
                }
            )
        ],
    )

    service = SegmentationService(store)
    analysis = await service.analyze_segmentation(as_of=AS_OF, rng=np.random.default_rng(4))
    applied = await service.apply_segmentation(analysis)

    assert applied.segments_deactivated == 1
    assert applied.memberships_cleared == 1
    [reloaded] = await store.select(Customer, Customer.id == churned.id)
    assert reloaded.segment_id is None
    assert await store.select(Customer, Customer.segment_id == old_segment.id) == []


@pytest.mark.asyncio
async def test_churn_patterns_replace_previous_findings(store):
    await store.insert(
        Customer,
        [CustomerFactory.create({"tenure_months": 11, "mrr": 400.0, "billing_interval": BillingInterval.ANNUAL})],
    )
    detector = ChurnDetector(store)

    for _ in range(2):
        result = await detector.detect_churn_risk(as_of=AS_OF)
        await detector.store_churn_patterns(result)

    patterns = await store.select(Pattern, Pattern.pattern_type == PatternType.CHURN_SIGNAL)
    assert len(result.at_risk_customers) == 1
    assert result.at_risk_customers[0].risk_score == 60
    assert len(patterns) == 2
    assert sum(1 for p in patterns if p.is_active) == 1


@pytest.mark.asyncio
async def test_upgrade_candidates_use_usage_telemetry(store):
    [starter] = await store.insert(
        PricingTier, [PricingTierFactory.create({"name": "Starter", "price_monthly": 49.0, "position": 1})]
    )
    await store.insert(
        PricingTier, [PricingTierFactory.create({"name": "Pro", "price_monthly": 149.0, "position": 2})]
    )
    [customer] = await store.insert(
        Customer, [CustomerFactory.create({"mrr": 49.0, "tenure_months": 4, "current_tier_id": starter.id})]
    )
    usage = StaticUsageSignalProvider(limit_ratios={customer.id: 0.95})

    result = await UpgradeDetector(store, usage=usage).detect_upgrade_candidates(as_of=AS_OF)

    [candidate] = result.candidates
    assert candidate.current_tier == "Starter"
    assert [s.signal_type for s in candidate.signals] == [UpgradeSignalType.USAGE_LIMIT_APPROACHING]
    assert candidate.potential_mrr_increase == 100.0
    assert result.total_potential_mrr == 100.0


@pytest.mark.asyncio
async def test_health_trend_compares_with_yesterdays_score(store):
    [customer] = await store.insert(Customer, [CustomerFactory.create({"mrr": 300.0, "tenure_months": 8})])
    await store.insert(
        CustomerHealthScore,
        [
            {
                "customer_id": customer.id,
                "score_date": date(2024, 6, 14),
                "usage_score": 10,
                "engagement_score": 10,
                "financial_score": 10,
                "health_score": 10,
                "health_trend": "stable",
                "upgrade_readiness": 0.0,
                "churn_risk": 0.5,
                "expansion_potential": 0.0,
            }
        ],
    )
    service = HealthService(store)

    result = await service.calculate_health_scores(as_of=AS_OF)
    await service.store_health_scores(result.scores)
    await service.store_health_scores(result.scores)

    [score] = result.scores
    assert score.health_score == 57
    assert score.trend == HealthTrend.IMPROVING
    assert score.trend_velocity == 47
    today = await store.select(CustomerHealthScore, CustomerHealthScore.score_date == AS_OF.date())
    assert len(today) == 1


@pytest.mark.asyncio
async def test_correlations_need_a_minimum_sample(store):
    await store.insert(
        Customer, [CustomerFactory.create({"created_at": datetime(2022, 1, 1)}) for _ in range(5)]
    )

    result = await CorrelationService(store).analyze_metric_correlations(as_of=AS_OF)

    assert isinstance(result, InsufficientData)
    assert result.sample_size == 5
    assert result.required == 30


@pytest.mark.asyncio
async def test_health_scores_of_an_empty_organization(store):
    result = await HealthService(store).calculate_health_scores(as_of=AS_OF)
    assert result.scores == []
    assert result.insights == ["No active customers to analyze."]
