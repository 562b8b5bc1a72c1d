"""Unit tests for lifetime value formulas."""
from datetime import datetime, timedelta

import pytest

from saas_ontology.models import CustomerStatus
from saas_ontology.schemas.economics import LTVMethod
from saas_ontology.services.ltv_service import (
    DEFAULT_MONTHLY_CHURN,
    churn_based_ltv,
    ltv_from_curve,
    percentile,
    project_retention_curve,
)
from tests.utils.factories import CustomerFactory


def _customers(active: int, churned: int, churned_tenure_days: int = 300):
    start = datetime(2023, 1, 1)
    customers = [
        CustomerFactory.build({"created_at": start, "mrr": 100.0}) for _ in range(active)
    ]
    customers += [
        CustomerFactory.build(
            {
                "created_at": start,
                "mrr": 100.0,
                "status": CustomerStatus.CHURNED,
                "churned_at": start + timedelta(days=churned_tenure_days),
            }
        )
        for _ in range(churned)
    ]
    return customers


def test_churn_based_ltv_formula():
    """Test that LTV is ARPU x margin / monthly churn with churn spread over churned tenure."""
    # 2 of 10 churned after 10 months: 0.2 / 10 = 2% monthly churn
    metrics = churn_based_ltv(_customers(active=8, churned=2), avg_arpu=100.0, gross_margin=0.8)

    assert metrics.calculation_method == LTVMethod.CHURN_BASED
    assert metrics.monthly_churn_rate == pytest.approx(0.02)
    assert metrics.avg_ltv == pytest.approx(4000.0)
    assert metrics.avg_lifetime_months == pytest.approx(50.0)
    assert metrics.median_ltv == pytest.approx(4000.0)


def test_churn_based_ltv_defaults_when_nobody_churned():
    metrics = churn_based_ltv(_customers(active=5, churned=0), avg_arpu=100.0, gross_margin=0.8)
    assert metrics.monthly_churn_rate == DEFAULT_MONTHLY_CHURN
    assert metrics.avg_ltv == pytest.approx(100.0 * 0.8 / DEFAULT_MONTHLY_CHURN)


def test_churn_based_ltv_without_customers_is_simple_and_zero():
    metrics = churn_based_ltv([], avg_arpu=0.0, gross_margin=0.8)
    assert metrics.calculation_method == LTVMethod.SIMPLE
    assert metrics.avg_ltv == 0


def test_project_retention_curve_decays_by_recent_ratio():
    projected = project_retention_curve([1.0, 0.9, 0.81], 5)
    assert projected[:3] == [1.0, 0.9, 0.81]
    assert projected[3] == pytest.approx(0.729)
    assert projected[4] == pytest.approx(0.6561)


def test_project_retention_curve_edge_cases():
    assert project_retention_curve([], 12) == []
    assert project_retention_curve([1.0, 0.8, 0.7], 2) == [1.0, 0.8]
    # A single point has no observable ratio
    assert project_retention_curve([1.0], 2)[1] == pytest.approx(0.95)
    # Never drops below the 1% floor
    assert project_retention_curve([1.0, 0.001], 4)[-1] == 0.01


def test_ltv_from_curve_without_discounting():
    assert ltv_from_curve([1.0, 0.5], arpu=100.0, gross_margin=0.5, annual_discount_rate=0.0) == pytest.approx(75.0)
    assert ltv_from_curve([], arpu=100.0, gross_margin=0.5, annual_discount_rate=0.1) == 0.0


def test_percentile():
    assert percentile([], 50) == 0.0
    assert percentile([1.0, 2.0, 3.0, 4.0], 50) == pytest.approx(2.5)
