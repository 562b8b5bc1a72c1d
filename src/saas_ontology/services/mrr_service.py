"""
MRR movements, waterfall and growth metrics.

A movement decomposes the MRR change of one period into new, expansion,
contraction, churn and reactivation. Customer MRR is taken at its current
value; the ledger keeps no MRR history beyond expansion events.
"""
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import numpy as np
import structlog

from saas_ontology.models import Customer, CustomerStatus, ExpansionEvent, ExpansionEventType, Segment
from saas_ontology.schemas.economics import MRRGrowthMetrics, MRRMovement, RevenueConcentration, SegmentMRR
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import add_months, month_end, month_key, month_start

logger = structlog.get_logger(__name__)

GAIN_EVENTS = (ExpansionEventType.UPGRADE, ExpansionEventType.EXPANSION)
LOSS_EVENTS = (ExpansionEventType.DOWNGRADE, ExpansionEventType.CONTRACTION)


def compute_mrr_movement(
    customers: Sequence[Customer],
    events: Sequence[ExpansionEvent],
    period_start: datetime,
    period_end: datetime,
) -> MRRMovement:
    """
    MRR bridge for ``[period_start, period_end]``.

    Starting MRR belongs to customers active the day before the period starts.
    Churn counts customers that were part of the starting base or joined during
    the period and churned within it.

    Args:
        customers: All customers of the organization
        events: Expansion events (filtered to the period here)
        period_start: Inclusive start
        period_end: Inclusive end

    Returns:
        MRRMovement for the period
    """
    previous_end = period_start - timedelta(days=1)
    previous = {c.id: float(c.mrr or 0) for c in customers if c.was_active_at(previous_end)}

    new_customers = [c for c in customers if period_start <= c.created_at <= period_end and c.id not in previous]
    new_mrr = sum(float(c.mrr or 0) for c in new_customers)
    new_ids = {c.id for c in new_customers}

    expansion = 0.0
    contraction = 0.0
    expanded: set = set()
    contracted: set = set()
    for event in events:
        if not period_start <= event.occurred_at <= period_end:
            continue
        delta = float(event.mrr_delta or 0)
        if event.event_type in GAIN_EVENTS:
            expansion += delta
            expanded.add(event.customer_id)
        elif event.event_type in LOSS_EVENTS:
            contraction += abs(delta)
            contracted.add(event.customer_id)

    churned = [
        c
        for c in customers
        if c.status == CustomerStatus.CHURNED
        and c.churned_at is not None
        and period_start <= c.churned_at <= period_end
        and (c.id in previous or c.id in new_ids)
    ]
    churned_mrr = sum(float(c.mrr or 0) for c in churned)

    # No status history is kept, so reactivations cannot be observed
    reactivation = 0.0

    starting_mrr = sum(previous.values())
    net_new = new_mrr + expansion + reactivation - contraction - churned_mrr

    return MRRMovement(
        period=month_key(period_start),
        period_start=period_start,
        period_end=period_end,
        starting_mrr=starting_mrr,
        new_mrr=new_mrr,
        expansion_mrr=expansion,
        contraction_mrr=contraction,
        churned_mrr=churned_mrr,
        reactivation_mrr=reactivation,
        net_new_mrr=net_new,
        ending_mrr=starting_mrr + net_new,
        new_customers=len(new_customers),
        churned_customers=len(churned),
        expanded_customers=len(expanded),
        contracted_customers=len(contracted),
    )


def calculate_gini(values: Sequence[float]) -> float:
    """
    Gini coefficient of a revenue distribution.

    Uses the pairwise-difference formula ``sum|xi - xj| / (2 n total)``.
    0 for empty, single-value or zero-total populations.
    """
    if len(values) < 2:
        return 0.0
    x = np.asarray(values, dtype=float)
    total = x.sum()
    if total == 0:
        return 0.0
    return float(np.abs(x[:, None] - x[None, :]).sum() / (2 * len(x) * total))


def revenue_concentration(values: Sequence[float]) -> RevenueConcentration:
    """Share of revenue held by the top 10% / 20% of customers plus the Gini coefficient."""
    ordered = sorted(values, reverse=True)
    total = sum(ordered)
    if not ordered or total <= 0:
        return RevenueConcentration(gini_coefficient=calculate_gini(ordered))

    top_10 = max(1, math.ceil(len(ordered) * 0.1))
    top_20 = max(1, math.ceil(len(ordered) * 0.2))
    return RevenueConcentration(
        top_10_percent_share=sum(ordered[:top_10]) / total,
        top_20_percent_share=sum(ordered[:top_20]) / total,
        gini_coefficient=calculate_gini(ordered),
    )


def quick_ratio(gains: float, losses: float) -> float:
    """SaaS quick ratio; infinite when there are gains but no losses, 0 when neither."""
    if losses > 0:
        return gains / losses
    return math.inf if gains > 0 else 0.0


def waterfall_periods(as_of: datetime, months: int) -> List[Tuple[datetime, datetime]]:
    """Calendar month boundaries for the last ``months`` months, oldest first."""
    current = month_start(as_of)
    periods = []
    for back in range(months - 1, -1, -1):
        start = add_months(current, -back)
        periods.append((start, month_end(start)))
    return periods


class MRRService:
    """Service for MRR movement analytics."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def _load(self) -> Tuple[List[Customer], List[ExpansionEvent]]:
        customers = await self.store.select(Customer)
        events = await self.store.select(ExpansionEvent, order_by=ExpansionEvent.occurred_at)
        return customers, events

    async def calculate_mrr_movements(self, periods: Sequence[Tuple[datetime, datetime]]) -> List[MRRMovement]:
        """
        Calculate MRR movements for arbitrary periods.

        Args:
            periods: (start, end) pairs

        Returns:
            One MRRMovement per period, in the given order
        """
        customers, events = await self._load()
        return [compute_mrr_movement(customers, events, start, end) for start, end in periods]

    async def calculate_mrr_waterfall(self, months: int = 12, as_of: Optional[datetime] = None) -> List[MRRMovement]:
        """Monthly MRR bridge for the last ``months`` calendar months."""
        movements = await self.calculate_mrr_movements(waterfall_periods(as_of or datetime.utcnow(), months))
        logger.info("mrr_waterfall_calculated", months=months)
        return movements

    async def calculate_growth_metrics(self, as_of: Optional[datetime] = None) -> MRRGrowthMetrics:
        """
        Calculate MoM/YoY growth, quick ratio and revenue concentration.

        Args:
            as_of: Reference "now"

        Returns:
            MRRGrowthMetrics
        """
        as_of = as_of or datetime.utcnow()
        customers, events = await self._load()

        active = [c for c in customers if c.status == CustomerStatus.ACTIVE]
        mrr_values = [float(c.mrr or 0) for c in active]
        current_mrr = sum(mrr_values)

        month_ago = add_months(as_of, -1)
        year_ago = add_months(as_of, -12)
        previous = compute_mrr_movement(customers, events, month_start(month_ago), month_ago)
        year_earlier = compute_mrr_movement(customers, events, month_start(year_ago), year_ago)
        current = compute_mrr_movement(customers, events, month_start(as_of), as_of)

        previous_mrr = previous.ending_mrr or current_mrr
        year_ago_mrr = year_earlier.ending_mrr or current_mrr

        gains = current.new_mrr + current.expansion_mrr + current.reactivation_mrr
        losses = current.contraction_mrr + current.churned_mrr

        segment_mrr = await self.calculate_mrr_by_segment()

        metrics = MRRGrowthMetrics(
            current_mrr=current_mrr,
            previous_mrr=previous_mrr,
            mom_growth_rate=(current_mrr - previous_mrr) / previous_mrr if previous_mrr > 0 else 0.0,
            yoy_growth_rate=(current_mrr - year_ago_mrr) / year_ago_mrr if year_ago_mrr > 0 else 0.0,
            quick_ratio=quick_ratio(gains, losses),
            net_new_mrr=current.net_new_mrr,
            new_mrr=current.new_mrr,
            expansion_mrr=current.expansion_mrr,
            contraction_mrr=current.contraction_mrr,
            churned_mrr=current.churned_mrr,
            concentration=revenue_concentration(mrr_values),
            mrr_by_segment={name: data.mrr for name, data in segment_mrr.items()},
        )

        logger.info(
            "mrr_growth_calculated",
            current_mrr=round(current_mrr, 2),
            mom_growth_rate=round(metrics.mom_growth_rate, 4),
            quick_ratio=metrics.quick_ratio,
        )
        return metrics

    async def calculate_mrr_by_segment(self) -> Dict[str, SegmentMRR]:
        """Active MRR grouped by segment name ("Unknown" for unsegmented customers)."""
        segments = await self.store.select(Segment)
        names: Dict[UUID, str] = {s.id: s.name for s in segments}
        customers = await self.store.select(Customer, Customer.status == CustomerStatus.ACTIVE)

        result: Dict[str, SegmentMRR] = {}
        for customer in customers:
            name = names.get(customer.segment_id, "Unknown") if customer.segment_id else "Unknown"
            entry = result.setdefault(name, SegmentMRR())
            entry.mrr += float(customer.mrr or 0)
            entry.customer_count += 1

        for entry in result.values():
            entry.avg_mrr = entry.mrr / entry.customer_count if entry.customer_count else 0.0
        return result
