"""Unit tests for the ontology summary and economics snapshot helpers."""
from datetime import datetime
from uuid import uuid4

import pytest

from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.health import HealthDistribution, HealthScoreAnalysisResult
from saas_ontology.schemas.patterns import (
    AtRiskCustomer,
    ChurnRiskResult,
    SeasonalAnalysisResult,
    SeasonalPattern,
    UpgradeAnalysisResult,
    UpgradeCandidate,
)
from saas_ontology.schemas.segmentation import SegmentationAnalysisResult, SegmentDefinition
from saas_ontology.schemas.value_metrics import FeatureImportance, FeatureImportanceResult
from saas_ontology.services.analytics_pipeline import STEPS, concentration_risk_level, create_ontology_summary

GENERATED_AT = datetime(2024, 6, 1, 8, 0)


def _segment(name: str, total_mrr: float) -> SegmentDefinition:
    return SegmentDefinition(
        name=name,
        description=name,
        cluster_id=0,
        customer_count=2,
        total_mrr=total_mrr,
        avg_mrr=total_mrr / 2,
        avg_tenure=12,
        churn_rate=0.03,
        avg_ltv=1000,
    )


def _upgrade_candidate() -> UpgradeCandidate:
    return UpgradeCandidate(
        customer_id=uuid4(),
        customer_name="Acme",
        current_tier="Starter",
        current_mrr=100,
        signals=[],
        overall_score=60,
        recommended_action="Reach out",
        potential_mrr_increase=50,
    )


def _at_risk_customer() -> AtRiskCustomer:
    return AtRiskCustomer(
        customer_id=uuid4(),
        customer_name="Globex",
        current_mrr=100,
        tenure=2,
        segment="Unknown",
        signals=[],
        risk_score=40,
        recommended_action="Monitor",
    )


def _seasonal_pattern(pattern_type: str) -> SeasonalPattern:
    return SeasonalPattern(
        pattern_type=pattern_type,
        peak_periods=["December"],
        trough_periods=["August"],
        amplitude=25.0,
        confidence=0.6,
        description="Year-end peak",
    )


@pytest.mark.parametrize(
    "share, expected",
    [(0.8, "critical"), (0.7, "high"), (0.6, "high"), (0.4, "moderate"), (0.3, "low"), (0.0, "low")],
)
def test_concentration_risk_level(share, expected):
    assert concentration_risk_level(share) == expected


def test_pipeline_has_eight_steps_ending_in_complete():
    assert len(STEPS) == 8
    assert STEPS[-1].completed == "Complete"


def test_summary_collects_insights_and_patterns():
    importance = FeatureImportanceResult(
        primary_value_metric=FeatureImportance(
            metric_name="mrr",
            metric_description="Monthly Recurring Revenue",
            importance_score=0.4,
            confidence="high",
            actionability="medium",
            recommendation="Grow it",
        ),
        insights=["importance insight"],
    )
    health = HealthScoreAnalysisResult(
        distribution=HealthDistribution(healthy=3, at_risk=1, critical=0),
        insights=["health 1", "health 2", "health 3"],
    )

    summary = create_ontology_summary(
        SegmentationAnalysisResult(segments=[_segment("A", 600.0), _segment("B", 400.0)]),
        UpgradeAnalysisResult(candidates=[_upgrade_candidate(), _upgrade_candidate()], insights=["upgrade insight"]),
        ChurnRiskResult(at_risk_customers=[_at_risk_customer()], insights=["churn insight"]),
        SeasonalAnalysisResult(
            has_seasonality=True, patterns=[_seasonal_pattern("annual"), _seasonal_pattern("quarterly")]
        ),
        importance,
        health,
        generated_at=GENERATED_AT,
    )

    assert summary.generated_at == GENERATED_AT
    assert summary.total_mrr == 1000.0
    assert summary.segment_count == 2
    assert summary.key_insights == ["health 1", "health 2", "upgrade insight", "churn insight", "importance insight"]
    assert summary.top_patterns == [
        "2 upgrade candidates identified",
        "1 customers at churn risk",
        "2 seasonal revenue patterns",
    ]
    assert summary.primary_value_metric == "Monthly Recurring Revenue"
    assert summary.health_distribution.healthy == 3


def test_summary_of_an_empty_organization():
    summary = create_ontology_summary(
        SegmentationAnalysisResult(),
        UpgradeAnalysisResult(),
        ChurnRiskResult(),
        InsufficientData(reason="Not enough history", sample_size=2, required=12),
        FeatureImportanceResult(),
        HealthScoreAnalysisResult(insights=["No active customers to analyze."]),
    )

    assert summary.customer_count == 0
    assert summary.total_mrr == 0
    assert summary.key_insights == ["No active customers to analyze."]
    assert summary.top_patterns == []
    assert summary.primary_value_metric is None
