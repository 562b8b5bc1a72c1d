"""
Correlation of customer metrics with retention, expansion and churn.

Customers that existed at the cutoff (``lookback_months`` ago) are described
by their metrics, and their outcomes are measured strictly after the cutoff.
Significance comes from a coarse t-statistic lookup rather than a full
t-distribution.
"""
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import structlog

from saas_ontology.config import settings
from saas_ontology.models import (
    Customer,
    CustomerStatus,
    ExpansionEvent,
    ValueMetricCorrelation,
    company_size_ordinal,
)
from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.value_metrics import CorrelationAnalysisResult, CustomerMetricSample, MetricCorrelation
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import add_months

logger = structlog.get_logger(__name__)

SIGNIFICANCE_LEVEL = 0.05
TOP_DRIVERS = 5

# (|t| lower bound, p-value), checked in order
P_VALUE_TABLE = [
    (3.5, 0.001),
    (2.5, 0.01),
    (2.0, 0.05),
    (1.5, 0.1),
]

METRIC_DESCRIPTIONS = {
    "mrr": "Monthly Recurring Revenue",
    "tenure_months": "Customer tenure in months",
    "company_size": "Company size category",
    "mrr_per_employee": "MRR per estimated employee",
    "api_calls_monthly": "API calls per month",
    "active_users": "Monthly active users",
    "feature_adoption": "Feature adoption score",
    "support_tickets": "Support tickets opened",
    "login_frequency": "Average logins per week",
}


def describe_metric(metric_name: str) -> str:
    return METRIC_DESCRIPTIONS.get(metric_name, metric_name.replace("_", " "))


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson r; 0 when either series is constant or empty."""
    if len(x) == 0:
        return 0.0
    xs = np.asarray(x, dtype=float) - np.mean(x)
    ys = np.asarray(y, dtype=float) - np.mean(y)
    denominator = math.sqrt(float((xs * xs).sum() * (ys * ys).sum()))
    if denominator == 0:
        return 0.0
    return float(np.clip((xs * ys).sum() / denominator, -1.0, 1.0))


def approximate_p_value(r: float, n: int) -> float:
    """Two-tailed p-value of r from a coarse lookup on ``t = r sqrt((n-2)/(1-r^2))``."""
    if n <= 2:
        return 1.0
    if abs(r) >= 1:
        return P_VALUE_TABLE[0][1]
    t = abs(r) * math.sqrt((n - 2) / (1 - r * r))
    for bound, p in P_VALUE_TABLE:
        if t > bound:
            return p
    return 0.5


def build_metric_samples(
    customers: Sequence[Customer],
    events: Sequence[ExpansionEvent],
    cutoff: datetime,
) -> List[CustomerMetricSample]:
    """
    Metrics and post-cutoff outcomes for customers created on or before the cutoff.

    Expansion counts only positive deltas after the cutoff. A customer is
    churned when it churned after the cutoff.
    """
    expansion: Dict = {}
    for event in events:
        delta = float(event.mrr_delta or 0)
        if event.occurred_at >= cutoff and delta > 0:
            expansion[event.customer_id] = expansion.get(event.customer_id, 0.0) + delta

    samples = []
    for customer in customers:
        if customer.created_at > cutoff:
            continue
        mrr = float(customer.mrr or 0)
        size = company_size_ordinal(customer.company_size)
        churned = (
            customer.status == CustomerStatus.CHURNED
            and customer.churned_at is not None
            and customer.churned_at > cutoff
        )
        samples.append(
            CustomerMetricSample(
                customer_id=customer.id,
                metrics={
                    "mrr": mrr,
                    "tenure_months": float(customer.tenure_months or 0),
                    "company_size": float(size),
                    # Rough estimate, ten employees per size step
                    "mrr_per_employee": mrr / max(size * 10, 1),
                },
                retained=not churned,
                churned=churned,
                expansion_amount=expansion.get(customer.id, 0.0),
            )
        )
    return samples


def correlate_metrics(
    samples: Sequence[CustomerMetricSample],
    period_start: datetime,
    period_end: datetime,
    min_sample_size: int,
) -> Union[CorrelationAnalysisResult, InsufficientData]:
    """
    Correlate every metric with the three outcomes.

    Metrics with fewer than ``min_sample_size`` values are skipped.
    """
    if len(samples) < min_sample_size:
        return InsufficientData(
            reason=(
                f"Insufficient sample size ({len(samples)} customers). "
                f"Need at least {min_sample_size} for correlation analysis."
            ),
            sample_size=len(samples),
            required=min_sample_size,
        )

    metric_names: List[str] = []
    for sample in samples:
        for name in sample.metrics:
            if name not in metric_names:
                metric_names.append(name)

    correlations = []
    for name in metric_names:
        present = [s for s in samples if name in s.metrics]
        if len(present) < min_sample_size:
            continue

        values = [s.metrics[name] for s in present]
        r_retention = pearson_correlation(values, [1.0 if s.retained else 0.0 for s in present])
        r_expansion = pearson_correlation(values, [s.expansion_amount for s in present])
        r_churn = pearson_correlation(values, [1.0 if s.churned else 0.0 for s in present])
        n = len(present)

        correlations.append(
            MetricCorrelation(
                metric_name=name,
                metric_description=describe_metric(name),
                correlation_to_retention=r_retention,
                correlation_to_expansion=r_expansion,
                correlation_to_churn=r_churn,
                p_value_retention=approximate_p_value(r_retention, n),
                p_value_expansion=approximate_p_value(r_expansion, n),
                p_value_churn=approximate_p_value(r_churn, n),
                sample_size=n,
                period_start=period_start,
                period_end=period_end,
            )
        )

    def top(corr_attr: str, p_attr: str) -> List[MetricCorrelation]:
        drivers = [
            c for c in correlations if getattr(c, p_attr) < SIGNIFICANCE_LEVEL and getattr(c, corr_attr) > 0
        ]
        return sorted(drivers, key=lambda c: getattr(c, corr_attr), reverse=True)[:TOP_DRIVERS]

    retention = top("correlation_to_retention", "p_value_retention")
    expansion = top("correlation_to_expansion", "p_value_expansion")
    churn = top("correlation_to_churn", "p_value_churn")

    return CorrelationAnalysisResult(
        correlations=correlations,
        top_retention_drivers=retention,
        top_expansion_drivers=expansion,
        top_churn_predictors=churn,
        insights=get_correlation_insights(retention, expansion, churn),
    )


def get_correlation_insights(
    retention: Sequence[MetricCorrelation],
    expansion: Sequence[MetricCorrelation],
    churn: Sequence[MetricCorrelation],
) -> List[str]:
    insights = []
    if retention:
        top = retention[0]
        insights.append(
            f"{top.metric_description} has the strongest correlation with retention "
            f"(r={top.correlation_to_retention:.2f}). Focus on improving this metric."
        )
    if expansion:
        top = expansion[0]
        insights.append(
            f"{top.metric_description} is the best predictor of expansion revenue "
            f"(r={top.correlation_to_expansion:.2f}). Target customers high on this metric for upgrades."
        )
    if churn:
        top = churn[0]
        insights.append(
            f"Watch {top.metric_description} as an early churn warning "
            f"(r={top.correlation_to_churn:.2f} with churn)."
        )
    if not retention and not expansion:
        insights.append(
            "No statistically significant correlations found. "
            "Consider adding more usage metrics for better analysis."
        )
    return insights


class CorrelationService:
    """Service for discovering metrics that predict customer outcomes."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def analyze_metric_correlations(
        self,
        lookback_months: Optional[int] = None,
        min_sample_size: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> Union[CorrelationAnalysisResult, InsufficientData]:
        """
        Correlate customer metrics with outcomes after the cutoff.

        Args:
            lookback_months: Outcome window; the cutoff is this many months ago
            min_sample_size: Minimum customers (and values per metric)
            as_of: Reference "now"

        Returns:
            CorrelationAnalysisResult, or InsufficientData for small populations
        """
        lookback_months = lookback_months or settings.correlation_lookback_months
        min_sample_size = min_sample_size or settings.correlation_min_sample_size
        as_of = as_of or datetime.utcnow()
        cutoff = add_months(as_of, -lookback_months)

        customers = await self.store.select(Customer, Customer.created_at <= cutoff)
        events = await self.store.select(ExpansionEvent, ExpansionEvent.occurred_at >= cutoff)

        samples = build_metric_samples(customers, events, cutoff)
        result = correlate_metrics(samples, cutoff, as_of, min_sample_size)

        if isinstance(result, InsufficientData):
            logger.info("correlation_skipped", sample_size=result.sample_size, required=result.required)
        else:
            logger.info(
                "correlations_analyzed",
                metrics=len(result.correlations),
                sample_size=len(samples),
                retention_drivers=len(result.top_retention_drivers),
            )
        return result

    async def store_correlations(self, result: CorrelationAnalysisResult) -> int:
        """Upsert correlations by metric name and return the number of rows written."""
        rows = [
            {
                "metric_name": c.metric_name,
                "retention_correlation": c.correlation_to_retention,
                "expansion_correlation": c.correlation_to_expansion,
                "churn_correlation": c.correlation_to_churn,
                "retention_p_value": c.p_value_retention,
                "expansion_p_value": c.p_value_expansion,
                "churn_p_value": c.p_value_churn,
                "sample_size": c.sample_size,
                "period_start": c.period_start,
                "period_end": c.period_end,
            }
            for c in result.correlations
        ]
        if not rows:
            return 0
        written = await self.store.upsert(ValueMetricCorrelation, rows, conflict_keys=("metric_name",))
        logger.info("correlations_stored", written=len(written))
        return len(written)
