"""
Feature importance ranking of value metrics.

Each metric's importance combines the magnitudes of its correlations with
retention, expansion and churn. Correlations that are not significant count
half, so significance outranks raw magnitude.
"""
from typing import List, Optional, Sequence, Union

import structlog

from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.value_metrics import (
    CorrelationAnalysisResult,
    FeatureImportance,
    FeatureImportanceResult,
    MetricCorrelation,
    Outcome,
    ValueMetricDefinition,
)

logger = structlog.get_logger(__name__)

SIGNIFICANCE_LEVEL = 0.05
OUTCOME_WEIGHTS = {Outcome.RETENTION: 0.4, Outcome.EXPANSION: 0.35, Outcome.CHURN: 0.25}
NON_SIGNIFICANT_FACTOR = 0.5
PREDICTIVE_MIN_CORRELATION = 0.2
PRIMARY_MIN_IMPORTANCE = 0.3
SECONDARY_COUNT = 3

HIGH_ACTIONABILITY = ("api_calls", "active_users", "feature_adoption", "login_frequency", "usage_score", "seats_used")
MEDIUM_ACTIONABILITY = ("mrr", "tenure_months", "support_tickets", "engagement_score")


def _outcome_values(c: MetricCorrelation, outcome: Outcome):
    if outcome == Outcome.RETENTION:
        return c.correlation_to_retention, c.p_value_retention
    if outcome == Outcome.EXPANSION:
        return c.correlation_to_expansion, c.p_value_expansion
    return c.correlation_to_churn, c.p_value_churn


def importance_score(c: MetricCorrelation) -> float:
    score = 0.0
    for outcome, weight in OUTCOME_WEIGHTS.items():
        r, p = _outcome_values(c, outcome)
        score += abs(r) * (1.0 if p < SIGNIFICANCE_LEVEL else NON_SIGNIFICANT_FACTOR) * weight
    return score


def predictive_outcomes(c: MetricCorrelation) -> List[Outcome]:
    outcomes = []
    for outcome in OUTCOME_WEIGHTS:
        r, p = _outcome_values(c, outcome)
        if p < SIGNIFICANCE_LEVEL and abs(r) > PREDICTIVE_MIN_CORRELATION:
            outcomes.append(outcome)
    return outcomes


def confidence_level(c: MetricCorrelation) -> str:
    min_p = min(c.p_value_retention, c.p_value_expansion, c.p_value_churn)
    if c.sample_size >= 100 and min_p < 0.01:
        return "high"
    if c.sample_size >= 50 and min_p < 0.05:
        return "medium"
    return "low"


def actionability(metric_name: str) -> str:
    """How directly the business can influence a metric, by name keyword."""
    name = metric_name.lower()
    if any(keyword in name for keyword in HIGH_ACTIONABILITY):
        return "high"
    if any(keyword in name for keyword in MEDIUM_ACTIONABILITY):
        return "medium"
    return "low"


def metric_recommendation(c: MetricCorrelation, predictive_for: Sequence[Outcome]) -> str:
    if not predictive_for:
        return "Monitor this metric but no strong predictive relationship found."

    name = c.metric_description
    if Outcome.RETENTION in predictive_for and c.correlation_to_retention > 0:
        return f"Increase {name} to improve retention. Consider gamification or onboarding improvements."
    if Outcome.EXPANSION in predictive_for and c.correlation_to_expansion > 0:
        return f"Customers with high {name} are prime upgrade candidates. Use as trigger for sales outreach."
    if Outcome.CHURN in predictive_for and c.correlation_to_churn > 0:
        return f"High {name} correlates with churn. Investigate if this indicates frustration or underuse."
    if Outcome.CHURN in predictive_for and c.correlation_to_churn < 0:
        return f"Low {name} is an early churn warning. Set up alerts for customers below threshold."
    return f"Track {name} as a key health indicator across the customer base."


def calculate_feature_importance(
    correlations: Union[CorrelationAnalysisResult, InsufficientData, Sequence[MetricCorrelation]],
) -> FeatureImportanceResult:
    """
    Rank metrics by predictive power.

    Args:
        correlations: Correlation analysis outcome or a plain list of correlations

    Returns:
        FeatureImportanceResult; empty rankings when no correlations are available
    """
    if isinstance(correlations, InsufficientData):
        return FeatureImportanceResult(insights=[correlations.reason])
    if isinstance(correlations, CorrelationAnalysisResult):
        correlations = correlations.correlations
    if not correlations:
        return FeatureImportanceResult(insights=["No correlation data available for feature importance analysis."])

    rankings = []
    for c in correlations:
        predictive_for = predictive_outcomes(c)
        rankings.append(
            FeatureImportance(
                metric_name=c.metric_name,
                metric_description=c.metric_description,
                importance_score=min(importance_score(c), 1.0),
                predictive_for=predictive_for,
                confidence=confidence_level(c),
                actionability=actionability(c.metric_name),
                recommendation=metric_recommendation(c, predictive_for),
            )
        )

    rankings.sort(key=lambda r: r.importance_score, reverse=True)
    for index, ranking in enumerate(rankings, start=1):
        ranking.rank = index

    strong = [r for r in rankings if r.importance_score >= PRIMARY_MIN_IMPORTANCE and r.confidence != "low"]
    primary = strong[0] if strong else None
    secondary = strong[1 : 1 + SECONDARY_COUNT]

    logger.debug("feature_importance_ranked", metrics=len(rankings), primary=primary.metric_name if primary else None)
    return FeatureImportanceResult(
        rankings=rankings,
        primary_value_metric=primary,
        secondary_value_metrics=secondary,
        insights=get_feature_insights(rankings, primary, secondary),
    )


def get_feature_insights(
    rankings: Sequence[FeatureImportance],
    primary: Optional[FeatureImportance],
    secondary: Sequence[FeatureImportance],
) -> List[str]:
    insights = []
    if primary is not None:
        insights.append(
            f"Primary value metric: {primary.metric_description} "
            f"(importance score: {primary.importance_score * 100:.0f}%). {primary.recommendation}"
        )
    if secondary:
        names = ", ".join(s.metric_description for s in secondary)
        insights.append(f"Secondary value metrics to track: {names}.")

    actionable = [r for r in rankings if r.actionability == "high" and r.importance_score > 0.2]
    if actionable:
        insights.append(
            f"Most actionable lever: {actionable[0].metric_description}. "
            "This is directly influenceable and predictive."
        )

    churn_indicators = [r for r in rankings if Outcome.CHURN in r.predictive_for and r.confidence != "low"]
    if churn_indicators:
        names = ", ".join(r.metric_description for r in churn_indicators)
        insights.append(f"Leading churn indicators: {names}. Set up monitoring alerts.")
    return insights


def get_value_metric_definitions(
    importance: FeatureImportanceResult,
    correlations: Sequence[MetricCorrelation] = (),
) -> List[ValueMetricDefinition]:
    """Primary and secondary value metrics as ontology definitions."""
    by_name = {c.metric_name: c for c in correlations}

    def define(ranking: FeatureImportance, metric_type: str, method: str) -> ValueMetricDefinition:
        correlation = by_name.get(ranking.metric_name)
        return ValueMetricDefinition(
            name=ranking.metric_name,
            display_name=ranking.metric_description,
            description=ranking.recommendation,
            metric_type=metric_type,
            correlation_to_retention=correlation.correlation_to_retention if correlation else 0.0,
            correlation_to_expansion=correlation.correlation_to_expansion if correlation else 0.0,
            importance_rank=ranking.rank,
            measurement_method=method,
        )

    definitions = []
    if importance.primary_value_metric is not None:
        pm = importance.primary_value_metric
        definitions.append(define(pm, "primary", f"Track {pm.metric_name} through product analytics"))
    for sm in importance.secondary_value_metrics:
        definitions.append(define(sm, "secondary", f"Monitor {sm.metric_name} alongside primary metric"))
    return definitions
