"""
RFM (recency, frequency, monetary) scoring.

Each dimension is scored 1-5 against quintile thresholds of the whole
population, and the three scores are mapped onto eleven named behavioral
segments.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from uuid import UUID

import structlog

from saas_ontology.config import settings
from saas_ontology.models import Customer, CustomerRfmScore, CustomerStatus, Transaction, TransactionType
from saas_ontology.schemas.segmentation import RFMRecommendation, RFMScore, RFMSegment, RFMSegmentSummary
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import add_months

logger = structlog.get_logger(__name__)

NO_TRANSACTION_RECENCY_DAYS = 365


@dataclass
class RFMInput:
    """Raw activity of one customer."""

    customer_id: UUID
    last_transaction_at: Optional[datetime]
    transaction_count: int
    total_revenue: float


def quintile_thresholds(values: Sequence[float]) -> List[float]:
    """Values at the 20/40/60/80/100th positions of the sorted population."""
    if not values:
        return [0.0] * 5
    ordered = sorted(values)
    n = len(ordered)
    return [ordered[int(n * q)] for q in (0.2, 0.4, 0.6, 0.8)] + [ordered[-1]]


def quintile(value: float, thresholds: Sequence[float]) -> int:
    """1-5 bucket of ``value``; a value equal to a threshold falls into the lower bucket."""
    for bucket, threshold in enumerate(thresholds[:4], start=1):
        if value <= threshold:
            return bucket
    return 5


def classify_rfm_segment(r: int, f: int, m: int) -> RFMSegment:
    """
    Map (R, F, M) scores onto a segment.

    Rules overlap; they are evaluated top to bottom and the first match wins.
    """
    if r >= 4 and f >= 4 and m >= 4:
        return RFMSegment.CHAMPIONS
    if f >= 4 and m >= 3:
        return RFMSegment.LOYAL_CUSTOMERS
    if r <= 2 and f >= 4 and m >= 4:
        return RFMSegment.CANT_LOSE_THEM
    if r <= 2 and f >= 2 and m >= 3:
        return RFMSegment.AT_RISK
    if r >= 4 and f >= 3 and m >= 2:
        return RFMSegment.POTENTIAL_LOYALISTS
    if r >= 4 and f <= 2:
        return RFMSegment.RECENT_CUSTOMERS
    if r >= 3 and f <= 2 and m <= 2:
        return RFMSegment.PROMISING
    if r >= 3 and f >= 3 and m >= 2:
        return RFMSegment.NEEDS_ATTENTION
    if r <= 2 and f <= 2 and m >= 2:
        return RFMSegment.ABOUT_TO_SLEEP
    if r <= 2 and f <= 2 and m <= 2:
        return RFMSegment.HIBERNATING
    if r <= 1:
        return RFMSegment.LOST
    return RFMSegment.NEEDS_ATTENTION


def score_rfm(inputs: Sequence[RFMInput], as_of: datetime) -> List[RFMScore]:
    """
    Score every customer against population quintiles.

    Args:
        inputs: Raw activity per customer
        as_of: Reference "now" for recency

    Returns:
        One RFMScore per input, in input order
    """
    if not inputs:
        return []

    recency = [
        (as_of - i.last_transaction_at).days if i.last_transaction_at is not None else NO_TRANSACTION_RECENCY_DAYS
        for i in inputs
    ]
    recency = [max(0, days) for days in recency]
    frequency = [i.transaction_count for i in inputs]
    monetary = [i.total_revenue for i in inputs]

    r_thresholds = quintile_thresholds(recency)
    f_thresholds = quintile_thresholds(frequency)
    m_thresholds = quintile_thresholds(monetary)

    scores = []
    for idx, item in enumerate(inputs):
        # Fewer days since the last transaction is better
        r = 6 - quintile(recency[idx], r_thresholds)
        f = quintile(frequency[idx], f_thresholds)
        m = quintile(monetary[idx], m_thresholds)
        scores.append(
            RFMScore(
                customer_id=item.customer_id,
                recency_days=recency[idx],
                frequency_count=frequency[idx],
                monetary_value=monetary[idx],
                recency_score=r,
                frequency_score=f,
                monetary_score=m,
                rfm_score=r * 100 + f * 10 + m,
                rfm_segment=classify_rfm_segment(r, f, m),
            )
        )
    return scores


def build_rfm_inputs(
    customers: Sequence[Customer],
    transactions: Sequence[Transaction],
    as_of: datetime,
) -> List[RFMInput]:
    """
    Aggregate transactions per active customer.

    Refunds reduce monetary value but do not count as purchases. When the
    organization has no transaction log at all, tenure stands in for frequency
    and ``MRR x tenure`` for monetary value.
    """
    if not transactions:
        return [
            RFMInput(
                customer_id=c.id,
                last_transaction_at=as_of,
                transaction_count=c.tenure_months or 0,
                total_revenue=float(c.mrr or 0) * (c.tenure_months or 0),
            )
            for c in customers
        ]

    by_customer: Dict[UUID, RFMInput] = {
        c.id: RFMInput(customer_id=c.id, last_transaction_at=None, transaction_count=0, total_revenue=0.0)
        for c in customers
    }
    for tx in transactions:
        entry = by_customer.get(tx.customer_id)
        if entry is None:
            continue
        entry.total_revenue += float(tx.amount or 0)
        if tx.transaction_type == TransactionType.REFUND:
            continue
        entry.transaction_count += 1
        if entry.last_transaction_at is None or tx.occurred_at > entry.last_transaction_at:
            entry.last_transaction_at = tx.occurred_at

    return list(by_customer.values())


def get_rfm_distribution(scores: Sequence[RFMScore]) -> List[RFMSegmentSummary]:
    """Count, share and average monetary value per RFM segment (every segment listed)."""
    total = len(scores)
    summary = []
    for segment in RFMSegment:
        members = [s for s in scores if s.rfm_segment == segment]
        summary.append(
            RFMSegmentSummary(
                segment=segment,
                count=len(members),
                percentage=len(members) / total * 100 if total else 0.0,
                avg_monetary_value=sum(s.monetary_value for s in members) / len(members) if members else 0.0,
            )
        )
    return summary


def get_rfm_recommendations(scores: Sequence[RFMScore]) -> List[RFMRecommendation]:
    """Prioritized actions for the RFM segments present in ``scores``."""
    counts = {item.segment: item.count for item in get_rfm_distribution(scores)}
    recommendations = []

    def add(segment: RFMSegment, action: str, priority: str, count: int) -> None:
        if count > 0:
            recommendations.append(RFMRecommendation(segment=segment, action=action, priority=priority, count=count))

    add(
        RFMSegment.CANT_LOSE_THEM,
        "Urgent outreach required. These are high-value customers showing churn signals.",
        "high",
        counts[RFMSegment.CANT_LOSE_THEM],
    )
    add(
        RFMSegment.AT_RISK,
        "Re-engagement campaign. Send win-back offers before they churn.",
        "high",
        counts[RFMSegment.AT_RISK],
    )
    add(
        RFMSegment.CHAMPIONS,
        "Nurture and reward. Excellent candidates for referral programs and case studies.",
        "medium",
        counts[RFMSegment.CHAMPIONS],
    )
    add(
        RFMSegment.POTENTIAL_LOYALISTS,
        "Offer loyalty incentives. These customers can become champions with the right push.",
        "medium",
        counts[RFMSegment.POTENTIAL_LOYALISTS],
    )
    add(
        RFMSegment.RECENT_CUSTOMERS,
        "Onboarding optimization. Ensure a strong first experience to drive repeat engagement.",
        "medium",
        counts[RFMSegment.RECENT_CUSTOMERS],
    )
    add(
        RFMSegment.HIBERNATING,
        "Consider removing from active campaigns. Focus resources on higher-potential segments.",
        "low",
        counts[RFMSegment.HIBERNATING] + counts[RFMSegment.LOST],
    )
    return recommendations


class RFMService:
    """Service for computing and persisting RFM scores."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def calculate_rfm_scores(
        self,
        as_of: Optional[datetime] = None,
        lookback_months: int = 12,
    ) -> List[RFMScore]:
        """
        Calculate RFM scores for all active customers.

        Args:
            as_of: Reference "now"
            lookback_months: Transaction window in months

        Returns:
            One score per active customer
        """
        as_of = as_of or datetime.utcnow()
        customers = await self.store.select(
            Customer, Customer.status == CustomerStatus.ACTIVE, order_by=Customer.created_at
        )
        transactions = await self.store.select(
            Transaction, Transaction.occurred_at >= add_months(as_of, -lookback_months)
        )

        scores = score_rfm(build_rfm_inputs(customers, transactions, as_of), as_of)
        logger.info(
            "rfm_scores_calculated",
            customers=len(scores),
            transactions=len(transactions),
            proxy_inputs=not transactions,
        )
        return scores

    async def store_rfm_scores(self, scores: Sequence[RFMScore], as_of: Optional[datetime] = None) -> int:
        """
        Upsert scores by customer and drop rows of customers no longer scored.

        Returns:
            Number of rows written
        """
        calculated_at = as_of or datetime.utcnow()
        scored_ids = [s.customer_id for s in scores]
        removed = await self.store.delete(CustomerRfmScore, CustomerRfmScore.customer_id.not_in(scored_ids))

        if not scores:
            return 0

        rows = [
            {**score.model_dump(), "rfm_segment": score.rfm_segment.value, "calculated_at": calculated_at}
            for score in scores
        ]
        written = await self.store.upsert(
            CustomerRfmScore,
            rows,
            conflict_keys=("customer_id",),
            batch_size=settings.rfm_batch_size,
        )
        logger.info("rfm_scores_stored", written=len(written), removed=removed)
        return len(written)
