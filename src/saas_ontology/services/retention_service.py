"""Revenue retention (NRR/GRR), logo churn and churn breakdowns."""
from collections import Counter
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence
from uuid import UUID

import structlog

from saas_ontology.models import Customer, CustomerStatus, ExpansionEvent, PricingTier, Segment
from saas_ontology.schemas.economics import ChurnAnalysis, ChurnByTenure, ChurnReason, RetentionMetrics
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import add_months, fractional_months

logger = structlog.get_logger(__name__)

UNKNOWN = "Unknown"


def compute_retention_metrics(
    customers: Sequence[Customer],
    events: Sequence[ExpansionEvent],
    period_start: datetime,
    period_end: datetime,
) -> RetentionMetrics:
    """
    Retention of the customers that were active when the period started.

    Args:
        customers: Customers to measure
        events: Expansion/contraction events of those customers
        period_start: Inclusive period start
        period_end: Inclusive period end

    Returns:
        RetentionMetrics; NRR and GRR are 1 when there was no starting MRR
    """
    active_at_start = [c for c in customers if c.was_active_at(period_start)]
    starting_mrr = sum(float(c.mrr or 0) for c in active_at_start)

    currently_active = [c for c in customers if c.status == CustomerStatus.ACTIVE]
    ending_mrr = sum(float(c.mrr or 0) for c in currently_active)

    expansion = 0.0
    contraction = 0.0
    for event in events:
        if not period_start <= event.occurred_at <= period_end:
            continue
        delta = float(event.mrr_delta or 0)
        if delta > 0:
            expansion += delta
        else:
            contraction += abs(delta)

    churned = [
        c
        for c in active_at_start
        if c.status == CustomerStatus.CHURNED
        and c.churned_at is not None
        and period_start <= c.churned_at <= period_end
    ]
    churned_mrr = sum(float(c.mrr or 0) for c in churned)

    def share(amount: float) -> float:
        return amount / starting_mrr if starting_mrr > 0 else 0.0

    return RetentionMetrics(
        net_revenue_retention=(
            (starting_mrr + expansion - contraction - churned_mrr) / starting_mrr if starting_mrr > 0 else 1.0
        ),
        gross_revenue_retention=(
            (starting_mrr - contraction - churned_mrr) / starting_mrr if starting_mrr > 0 else 1.0
        ),
        logo_churn_rate=len(churned) / len(active_at_start) if active_at_start else 0.0,
        logo_churn_count=len(churned),
        revenue_churn_rate=share(churned_mrr),
        revenue_churn_amount=churned_mrr,
        expansion_rate=share(expansion),
        expansion_amount=expansion,
        contraction_rate=share(contraction),
        contraction_amount=contraction,
        churned_in_period=[c.id for c in churned],
        period_start=period_start,
        period_end=period_end,
        starting_mrr=starting_mrr,
        ending_mrr=ending_mrr,
        starting_customer_count=len(active_at_start),
        ending_customer_count=len(currently_active),
    )


def _churn_rates(groups: Mapping[str, List[Customer]]) -> Dict[str, float]:
    return {
        name: sum(1 for c in members if c.status == CustomerStatus.CHURNED) / len(members)
        for name, members in groups.items()
        if members
    }


def compute_churn_analysis(
    customers: Sequence[Customer],
    segment_names: Mapping[UUID, str],
    tier_names: Mapping[UUID, str],
) -> ChurnAnalysis:
    """
    Break churn down by segment, pricing tier and tenure bucket.

    Churn reasons come from the ``churn_reason`` key of customer metadata.
    """
    if not customers:
        return ChurnAnalysis()

    churned = [c for c in customers if c.status == CustomerStatus.CHURNED]

    by_segment: Dict[str, List[Customer]] = {}
    by_tier: Dict[str, List[Customer]] = {}
    by_tenure: Dict[str, List[Customer]] = {
        "less_than_3_months": [],
        "three_to_six_months": [],
        "six_to_twelve_months": [],
        "more_than_twelve_months": [],
    }

    for customer in customers:
        segment = segment_names.get(customer.segment_id, UNKNOWN) if customer.segment_id else UNKNOWN
        tier = tier_names.get(customer.current_tier_id, UNKNOWN) if customer.current_tier_id else UNKNOWN
        by_segment.setdefault(segment, []).append(customer)
        by_tier.setdefault(tier, []).append(customer)

        tenure = customer.tenure_months or 0
        if tenure < 3:
            by_tenure["less_than_3_months"].append(customer)
        elif tenure < 6:
            by_tenure["three_to_six_months"].append(customer)
        elif tenure < 12:
            by_tenure["six_to_twelve_months"].append(customer)
        else:
            by_tenure["more_than_twelve_months"].append(customer)

    churn_tenures = [fractional_months(c.created_at, c.churned_at) for c in churned if c.churned_at is not None]

    reasons = Counter(
        (c.extra_metadata or {}).get("churn_reason") for c in churned if (c.extra_metadata or {}).get("churn_reason")
    )

    return ChurnAnalysis(
        overall_churn_rate=len(churned) / len(customers),
        churn_by_segment=_churn_rates(by_segment),
        churn_by_tier=_churn_rates(by_tier),
        churn_by_tenure=ChurnByTenure(**{bucket: rate for bucket, rate in _churn_rates(by_tenure).items()}),
        avg_time_to_churn=sum(churn_tenures) / len(churn_tenures) if churn_tenures else 0.0,
        top_churn_reasons=[ChurnReason(reason=reason, count=count) for reason, count in reasons.most_common(5)],
    )


class RetentionService:
    """Service for retention and churn metrics."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def calculate_retention_metrics(
        self,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        segment_id: Optional[UUID] = None,
    ) -> RetentionMetrics:
        """
        Calculate NRR, GRR, churn, expansion and contraction for a period.

        Args:
            period_start: Period start (defaults to one month before ``period_end``)
            period_end: Period end (defaults to now)
            segment_id: Restrict to one segment's customers

        Returns:
            RetentionMetrics for the period
        """
        period_end = period_end or datetime.utcnow()
        period_start = period_start or add_months(period_end, -1)

        criteria = [Customer.segment_id == segment_id] if segment_id is not None else []
        customers = await self.store.select(Customer, *criteria)

        event_criteria = [ExpansionEvent.occurred_at >= period_start, ExpansionEvent.occurred_at <= period_end]
        if segment_id is not None:
            event_criteria.append(ExpansionEvent.customer_id.in_([c.id for c in customers]))
        events = await self.store.select(ExpansionEvent, *event_criteria)

        metrics = compute_retention_metrics(customers, events, period_start, period_end)
        logger.info(
            "retention_metrics_calculated",
            segment_id=str(segment_id) if segment_id else None,
            nrr=round(metrics.net_revenue_retention, 4),
            grr=round(metrics.gross_revenue_retention, 4),
            churned=metrics.logo_churn_count,
        )
        return metrics

    async def calculate_segment_retention(
        self,
        segment_id: UUID,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> RetentionMetrics:
        """Retention metrics restricted to one segment."""
        return await self.calculate_retention_metrics(period_start, period_end, segment_id=segment_id)

    async def analyze_churn(self, lookback_months: int = 12, as_of: Optional[datetime] = None) -> ChurnAnalysis:
        """
        Analyze churn of customers acquired within the lookback window.

        Args:
            lookback_months: Acquisition window in months
            as_of: Reference "now"

        Returns:
            ChurnAnalysis breakdown
        """
        cutoff = add_months(as_of or datetime.utcnow(), -lookback_months)
        customers = await self.store.select(Customer, Customer.created_at >= cutoff)
        if not customers:
            return ChurnAnalysis()

        segments = await self.store.select(Segment)
        tiers = await self.store.select(PricingTier)

        return compute_churn_analysis(
            customers,
            {s.id: s.name for s in segments},
            {t.id: t.name for t in tiers},
        )
