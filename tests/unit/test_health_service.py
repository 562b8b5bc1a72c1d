"""Unit tests for customer health scoring."""
from datetime import date
from uuid import uuid4

import pytest

from saas_ontology.schemas.health import HealthInputs, HealthTrend
from saas_ontology.services.health_service import (
    engagement_score,
    financial_score,
    health_distribution,
    health_trend,
    score_customer,
    usage_score,
)

TODAY = date(2024, 6, 1)


def _inputs(**overrides) -> HealthInputs:
    data = {"customer_id": uuid4(), "mrr": 300.0, "tenure": 8}
    data.update(overrides)
    return HealthInputs(**data)


def test_expanding_long_term_customer_is_healthy():
    data = _inputs(mrr=1200.0, tenure=24, recent_expansion=200.0)

    assert usage_score(data) == 90
    assert engagement_score(data) == 85
    assert financial_score(data) == 80

    score = score_customer(data, TODAY)

    # 90 x 0.35 + 85 x 0.35 + 80 x 0.30 = 85.25
    assert score.health_score == 85
    assert score.upgrade_readiness == pytest.approx(0.8)
    assert score.churn_risk == 0.0
    assert score.expansion_potential == pytest.approx(0.5)
    assert score.detected_patterns == ["expansion_ready", "champion_customer"]
    assert score.trend == HealthTrend.STABLE


def test_contracting_new_customer_is_critical():
    data = _inputs(mrr=40.0, tenure=1, recent_contraction=20.0)

    assert usage_score(data) == 35
    assert engagement_score(data) == 20
    assert financial_score(data) == 25

    score = score_customer(data, TODAY)

    assert score.health_score == 27
    assert score.churn_risk == pytest.approx(0.95)
    assert score.detected_patterns == ["churn_signal", "onboarding_risk", "downgrade_recent"]


def test_sub_scores_are_clamped():
    data = _inputs(mrr=10000.0, tenure=36, recent_expansion=5000.0)
    for value in (usage_score(data), engagement_score(data), financial_score(data)):
        assert 0 <= value <= 100


def test_health_trend():
    assert health_trend(None, 60) == (HealthTrend.STABLE, 0)
    assert health_trend(80, 72) == (HealthTrend.DECLINING, -8)
    assert health_trend(80, 77) == (HealthTrend.STABLE, -3)
    # A previous score of 0 is a real score
    assert health_trend(0, 10) == (HealthTrend.IMPROVING, 10)


def test_previous_score_feeds_trend_velocity():
    score = score_customer(_inputs(mrr=1200.0, tenure=24, recent_expansion=200.0, previous_health_score=70), TODAY)
    assert score.trend == HealthTrend.IMPROVING
    assert score.trend_velocity == 15


def test_health_distribution_buckets():
    scores = [
        score_customer(_inputs(mrr=1200.0, tenure=24, recent_expansion=200.0), TODAY),
        score_customer(_inputs(mrr=40.0, tenure=1, recent_contraction=20.0), TODAY),
        score_customer(_inputs(), TODAY),
    ]

    distribution = health_distribution(scores)

    assert distribution.healthy == 1
    assert distribution.critical == 1
    assert distribution.at_risk == 1
