"""
Customer lifetime value.

The preferred method discounts projected gross-margin cash flows along the
aggregate cohort retention curve. Without cohort data the service falls back to
the classic ``ARPU x gross margin / monthly churn`` formula.
"""
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from uuid import UUID

import numpy as np
import structlog

from saas_ontology.config import settings
from saas_ontology.models import Customer, CustomerStatus, Segment
from saas_ontology.schemas.economics import AggregateRetention, LTVMethod, LTVMetrics
from saas_ontology.services.cohort_service import CohortService, build_retention_curves, calculate_aggregate_retention
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import fractional_months

logger = structlog.get_logger(__name__)

DEFAULT_DECAY_RATE = 0.95
RETENTION_FLOOR = 0.01
DEFAULT_MONTHLY_CHURN = 0.05
DEFAULT_CHURNED_TENURE_MONTHS = 12.0


def project_retention_curve(curve: Sequence[float], target_length: int) -> List[float]:
    """
    Extend a retention curve to ``target_length`` months.

    The tail decays by the average month-over-month ratio of the last (up to)
    three known months, 0.95 when no ratio is observable, and never drops
    below 1% retention.

    Args:
        curve: Known retention by month offset
        target_length: Number of months wanted

    Returns:
        Curve of exactly ``target_length`` values (or fewer if ``curve`` is empty)
    """
    if len(curve) >= target_length:
        return list(curve[:target_length])
    if not curve:
        return []

    result = list(curve)
    lookback = min(3, len(curve) - 1)
    ratios = [
        curve[i + 1] / curve[i]
        for i in range(len(curve) - lookback, len(curve) - 1)
        if curve[i] > 0 and curve[i + 1] > 0
    ]
    decay = sum(ratios) / len(ratios) if ratios else DEFAULT_DECAY_RATE

    last_value = curve[-1]
    for _ in range(len(curve), target_length):
        last_value *= decay
        result.append(max(last_value, RETENTION_FLOOR))

    return result


def ltv_from_curve(curve: Sequence[float], arpu: float, gross_margin: float, annual_discount_rate: float) -> float:
    """Discounted sum of ``retention x ARPU x gross margin`` over the curve."""
    if not curve:
        return 0.0
    months = np.arange(len(curve))
    discount = 1.0 / np.power(1.0 + annual_discount_rate / 12.0, months)
    return float(np.sum(np.asarray(curve, dtype=float) * arpu * gross_margin * discount))


def percentile(values: Sequence[float], pct: float) -> float:
    """Linear-interpolation percentile; 0 for an empty population."""
    if len(values) == 0:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), pct, method="linear"))


def churn_based_ltv(
    customers: Sequence[Customer],
    avg_arpu: float,
    gross_margin: float,
) -> LTVMetrics:
    """
    LTV from the observed churn rate when no retention curve exists.

    Monthly churn is the churned share of all customers spread over the average
    tenure of churned customers (12 months when unknown), or 5% when nobody has
    churned yet.
    """
    if not customers:
        return LTVMetrics(gross_margin=gross_margin, calculation_method=LTVMethod.SIMPLE)

    churned = [c for c in customers if c.status == CustomerStatus.CHURNED]
    churned_with_date = [c for c in churned if c.churned_at is not None]

    avg_tenure = DEFAULT_CHURNED_TENURE_MONTHS
    if churned_with_date:
        avg_tenure = sum(fractional_months(c.created_at, c.churned_at) for c in churned_with_date) / len(
            churned_with_date
        )

    if churned and avg_tenure > 0:
        monthly_churn = len(churned) / len(customers) / avg_tenure
    else:
        monthly_churn = DEFAULT_MONTHLY_CHURN

    individual = sorted(
        float(c.mrr or 0) * gross_margin / monthly_churn for c in customers if c.status == CustomerStatus.ACTIVE
    )

    return LTVMetrics(
        avg_ltv=avg_arpu * gross_margin / monthly_churn,
        median_ltv=percentile(individual, 50),
        ltv_p25=percentile(individual, 25),
        ltv_p75=percentile(individual, 75),
        ltv_p90=percentile(individual, 90),
        avg_arpu=avg_arpu,
        avg_lifetime_months=1.0 / monthly_churn,
        gross_margin=gross_margin,
        monthly_churn_rate=monthly_churn,
        calculation_method=LTVMethod.CHURN_BASED,
    )


def segment_arpus(customers: Sequence[Customer]) -> Dict[UUID, float]:
    """Average MRR of active customers per segment id."""
    totals: Dict[UUID, List[float]] = {}
    for customer in customers:
        if customer.segment_id is None:
            continue
        totals.setdefault(customer.segment_id, []).append(float(customer.mrr or 0))
    return {segment_id: sum(mrrs) / len(mrrs) for segment_id, mrrs in totals.items()}


class LTVService:
    """Service for lifetime value calculations."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def calculate_ltv(
        self,
        aggregate_retention: Optional[AggregateRetention] = None,
        as_of: Optional[datetime] = None,
        gross_margin: Optional[float] = None,
        discount_rate: Optional[float] = None,
        max_projection_months: Optional[int] = None,
    ) -> LTVMetrics:
        """
        Calculate LTV for the organization.

        Args:
            aggregate_retention: Cohort retention already computed in this run;
                recomputed from the store when omitted
            as_of: Reference "now" used if cohorts have to be recomputed
            gross_margin: Gross margin (defaults to settings)
            discount_rate: Annual discount rate (defaults to settings)
            max_projection_months: Projection horizon (defaults to settings)

        Returns:
            LTVMetrics with the method that produced them
        """
        gross_margin = settings.gross_margin if gross_margin is None else gross_margin
        discount_rate = settings.annual_discount_rate if discount_rate is None else discount_rate
        horizon = max_projection_months or settings.max_projection_months

        if aggregate_retention is None:
            cohort_data = await CohortService(self.store).analyze_cohort_retention(as_of=as_of)
            aggregate_retention = calculate_aggregate_retention(build_retention_curves(cohort_data))

        active = await self.store.select(Customer, Customer.status == CustomerStatus.ACTIVE)
        total_mrr = sum(float(c.mrr or 0) for c in active)
        avg_arpu = total_mrr / len(active) if active else 0.0

        if not aggregate_retention.avg_retention_by_month:
            everyone = await self.store.select(Customer)
            metrics = churn_based_ltv(everyone, avg_arpu, gross_margin)
            if metrics.monthly_churn_rate:
                metrics.ltv_by_segment = await self._segment_ltv(
                    active, lambda arpu: arpu * gross_margin / metrics.monthly_churn_rate
                )
            logger.info(
                "ltv_calculated",
                method=metrics.calculation_method.value,
                avg_ltv=round(metrics.avg_ltv, 2),
                monthly_churn_rate=metrics.monthly_churn_rate,
            )
            return metrics

        curve = project_retention_curve(aggregate_retention.avg_retention_by_month, horizon)
        individual = sorted(ltv_from_curve(curve, float(c.mrr or 0), gross_margin, discount_rate) for c in active)

        metrics = LTVMetrics(
            avg_ltv=ltv_from_curve(curve, avg_arpu, gross_margin, discount_rate),
            median_ltv=percentile(individual, 50),
            ltv_p25=percentile(individual, 25),
            ltv_p75=percentile(individual, 75),
            ltv_p90=percentile(individual, 90),
            ltv_by_segment=await self._segment_ltv(
                active, lambda arpu: ltv_from_curve(curve, arpu, gross_margin, discount_rate)
            ),
            avg_arpu=avg_arpu,
            avg_lifetime_months=float(sum(curve)),
            gross_margin=gross_margin,
            calculation_method=LTVMethod.RETENTION_CURVE,
        )

        logger.info(
            "ltv_calculated",
            method=metrics.calculation_method.value,
            avg_ltv=round(metrics.avg_ltv, 2),
            lifetime_months=round(metrics.avg_lifetime_months, 1),
        )
        return metrics

    async def _segment_ltv(self, active: Sequence[Customer], formula) -> Dict[str, float]:
        """Apply an ARPU -> LTV formula to every segment with active members."""
        segments = await self.store.select(Segment, Segment.is_active.is_(True))
        if not segments:
            return {}

        arpus = segment_arpus(active)
        return {segment.name: formula(arpus[segment.id]) for segment in segments if segment.id in arpus}
