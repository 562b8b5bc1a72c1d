"""Unit tests for metric correlations and feature importance."""
from datetime import datetime
from uuid import uuid4

import pytest

from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.value_metrics import (
    CorrelationAnalysisResult,
    CustomerMetricSample,
    MetricCorrelation,
    Outcome,
)
from saas_ontology.services.correlation_service import (
    approximate_p_value,
    correlate_metrics,
    pearson_correlation,
)
from saas_ontology.services.feature_importance import (
    actionability,
    calculate_feature_importance,
    get_value_metric_definitions,
)

PERIOD_START = datetime(2023, 6, 1)
PERIOD_END = datetime(2024, 6, 1)


def _correlation(name: str, r_retention: float, p_retention: float, sample_size: int = 120) -> MetricCorrelation:
    return MetricCorrelation(
        metric_name=name,
        metric_description=name.replace("_", " ").title(),
        correlation_to_retention=r_retention,
        correlation_to_expansion=0.0,
        correlation_to_churn=0.0,
        p_value_retention=p_retention,
        p_value_expansion=0.5,
        p_value_churn=0.5,
        sample_size=sample_size,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
    )


def test_pearson_correlation():
    assert pearson_correlation([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
    assert pearson_correlation([1, 2, 3], [3, 2, 1]) == pytest.approx(-1.0)
    assert pearson_correlation([1, 1, 1], [1, 2, 3]) == 0.0
    assert pearson_correlation([], []) == 0.0


def test_approximate_p_value_lookup():
    assert approximate_p_value(0.8, 30) == 0.001
    assert approximate_p_value(0.1, 30) == 0.5
    assert approximate_p_value(0.9, 2) == 1.0
    assert approximate_p_value(1.0, 30) == 0.001


def test_correlate_metrics_reports_insufficient_data():
    samples = [
        CustomerMetricSample(customer_id=uuid4(), metrics={"mrr": 1.0}, retained=True, churned=False)
        for _ in range(5)
    ]

    result = correlate_metrics(samples, PERIOD_START, PERIOD_END, min_sample_size=30)

    assert isinstance(result, InsufficientData)
    assert result.sample_size == 5
    assert result.required == 30


def test_correlate_metrics_finds_retention_driver():
    """Test that a metric separating churned from retained customers is a top retention driver."""
    samples = [
        CustomerMetricSample(
            customer_id=uuid4(),
            metrics={"mrr": float(i)},
            retained=i >= 10,
            churned=i < 10,
        )
        for i in range(40)
    ]

    result = correlate_metrics(samples, PERIOD_START, PERIOD_END, min_sample_size=30)

    assert isinstance(result, CorrelationAnalysisResult)
    [mrr] = result.correlations
    assert mrr.correlation_to_retention > 0.7
    assert mrr.correlation_to_churn == pytest.approx(-mrr.correlation_to_retention)
    assert mrr.correlation_to_expansion == 0.0
    assert [c.metric_name for c in result.top_retention_drivers] == ["mrr"]
    assert result.top_churn_predictors == []
    assert result.top_expansion_drivers == []
    assert "strongest correlation with retention" in result.insights[0]


def test_significant_correlation_outranks_stronger_insignificant_one():
    """Test that r=0.8 at p<0.01 ranks above r=0.9 at p=0.2."""
    significant = _correlation("active_users", 0.8, 0.005)
    noisy = _correlation("support_tickets", 0.9, 0.2)

    result = calculate_feature_importance([noisy, significant])

    assert [r.metric_name for r in result.rankings] == ["active_users", "support_tickets"]
    assert [r.rank for r in result.rankings] == [1, 2]
    assert result.rankings[0].importance_score == pytest.approx(0.32)
    assert result.rankings[1].importance_score == pytest.approx(0.18)
    assert result.rankings[0].predictive_for == [Outcome.RETENTION]
    assert result.rankings[0].confidence == "high"
    assert result.primary_value_metric.metric_name == "active_users"


def test_feature_importance_without_correlations():
    insufficient = InsufficientData(reason="Too few customers", sample_size=3, required=30)
    assert calculate_feature_importance(insufficient).insights == ["Too few customers"]
    assert calculate_feature_importance([]).rankings == []


def test_actionability_by_metric_name():
    assert actionability("api_calls_monthly") == "high"
    assert actionability("mrr_per_employee") == "medium"
    assert actionability("company_size") == "low"


def test_value_metric_definitions_carry_correlations():
    significant = _correlation("active_users", 0.8, 0.005)
    importance = calculate_feature_importance([significant])

    [definition] = get_value_metric_definitions(importance, [significant])

    assert definition.name == "active_users"
    assert definition.metric_type == "primary"
    assert definition.importance_rank == 1
    assert definition.correlation_to_retention == 0.8
