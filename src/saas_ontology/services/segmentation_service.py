"""
Segment assignment.

Combines RFM scores and k-means clusters of active customers into named
segments with estimated economics, then persists the segments and every
customer's segment membership.
"""
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import structlog
from pydantic import TypeAdapter, ValidationError

from saas_ontology.config import settings
from saas_ontology.models import Customer, CustomerStatus, ExpansionEvent, Segment, company_size_ordinal
from saas_ontology.schemas.segmentation import (
    ClusteringFeatures,
    ClusteringResult,
    CompanySizeCriterion,
    MrrRangeCriterion,
    RFMScore,
    RfmSegmentCriterion,
    SegmentApplyResult,
    SegmentationAnalysisResult,
    SegmentCriterion,
    SegmentDefinition,
    SegmentQualityMetrics,
    TenureRangeCriterion,
    UnknownCriterion,
)
from saas_ontology.services.clustering import cluster_customers
from saas_ontology.services.rfm_service import RFMService, get_rfm_distribution, get_rfm_recommendations
from saas_ontology.store import AnalyticsStore, chunked
from saas_ontology.utils.dates import add_months

logger = structlog.get_logger(__name__)

SEGMENT_MIN_K = 3
SEGMENT_MAX_K = 6
GROWTH_WINDOW_MONTHS = 6
DEFAULT_USAGE_SCORE = 50.0
SEGMENT_GROSS_MARGIN = 0.7
RETENTION_CURVE_MONTHS = 12

_criterion_adapter = TypeAdapter(SegmentCriterion)

_LEGACY_CRITERIA_KEYS = {
    "mrrRange": lambda value: MrrRangeCriterion(**value),
    "tenureRange": lambda value: TenureRangeCriterion(min_months=value.get("min"), max_months=value.get("max")),
    "companySizes": lambda value: CompanySizeCriterion(sizes=value),
    "rfmSegments": lambda value: RfmSegmentCriterion(segments=value),
}


def parse_criteria(raw: Any) -> List[SegmentCriterion]:
    """
    Read stored segment criteria.

    Accepts the tagged list form and the older map form
    (``{"mrrRange": {...}, "companySizes": [...]}``). Entries that cannot be
    understood are preserved as ``UnknownCriterion``.
    """
    if not raw:
        return []

    if isinstance(raw, dict):
        criteria: List[SegmentCriterion] = []
        for key, value in raw.items():
            builder = _LEGACY_CRITERIA_KEYS.get(key)
            try:
                criteria.append(builder(value) if builder else UnknownCriterion(raw={key: value}))
            except (TypeError, AttributeError, ValidationError):
                criteria.append(UnknownCriterion(raw={key: value}))
        return criteria

    criteria = []
    for item in raw:
        try:
            criteria.append(_criterion_adapter.validate_python(item))
        except ValidationError:
            criteria.append(UnknownCriterion(raw=item if isinstance(item, dict) else {"value": item}))
    return criteria


def criterion_matches(criterion: SegmentCriterion, customer: Customer, rfm_segment: Optional[str] = None) -> bool:
    """
    Whether one criterion admits a customer.

    RFM criteria only restrict customers whose RFM segment is known; unknown
    criteria never restrict.
    """
    if isinstance(criterion, MrrRangeCriterion):
        mrr = float(customer.mrr or 0)
        return (criterion.min is None or mrr >= criterion.min) and (criterion.max is None or mrr <= criterion.max)
    if isinstance(criterion, TenureRangeCriterion):
        tenure = customer.tenure_months or 0
        return (criterion.min_months is None or tenure >= criterion.min_months) and (
            criterion.max_months is None or tenure <= criterion.max_months
        )
    if isinstance(criterion, CompanySizeCriterion):
        if not criterion.sizes:
            return True
        return customer.company_size is not None and customer.company_size.value in criterion.sizes
    if isinstance(criterion, RfmSegmentCriterion):
        if rfm_segment is None or not criterion.segments:
            return True
        return rfm_segment in {s.value for s in criterion.segments}
    return True


def segment_matches(criteria: Sequence[SegmentCriterion], customer: Customer, rfm_segment: Optional[str] = None) -> bool:
    """All criteria admit the customer."""
    return all(criterion_matches(c, customer, rfm_segment) for c in criteria)


def build_clustering_features(
    customers: Sequence[Customer],
    events: Sequence[ExpansionEvent],
    as_of: datetime,
) -> List[ClusteringFeatures]:
    """
    Feature vectors for active customers.

    Growth rate is the net expansion-event delta of the trailing six months
    relative to current MRR.
    """
    window_start = add_months(as_of, -GROWTH_WINDOW_MONTHS)
    deltas: Dict[Any, float] = {}
    for event in events:
        if event.occurred_at > window_start:
            deltas[event.customer_id] = deltas.get(event.customer_id, 0.0) + float(event.mrr_delta or 0)

    features = []
    for customer in customers:
        mrr = float(customer.mrr or 0)
        features.append(
            ClusteringFeatures(
                customer_id=customer.id,
                mrr=mrr,
                tenure_months=customer.tenure_months or 0,
                growth_rate=deltas.get(customer.id, 0.0) / mrr if mrr > 0 else 0.0,
                company_size=company_size_ordinal(customer.company_size),
                usage_score=DEFAULT_USAGE_SCORE,
            )
        )
    return features


def estimated_churn_rate(avg_tenure: float) -> float:
    """Monthly churn heuristic: established segments churn at 3%, younger ones at 8%."""
    return 0.03 if avg_tenure > 12 else 0.08


def geometric_retention_curve(churn_rate: float, months: int = RETENTION_CURVE_MONTHS) -> List[float]:
    return [(1 - churn_rate) ** month for month in range(months)]


def build_segment_definitions(
    clustering: ClusteringResult,
    customers: Sequence[Customer],
    rfm_scores: Sequence[RFMScore],
    features: Sequence[ClusteringFeatures] = (),
) -> List[SegmentDefinition]:
    """
    Turn clusters into segment definitions with economics and criteria.

    Duplicate cluster names get a numeric suffix so each segment stays
    addressable by name.
    """
    by_id = {c.id: c for c in customers}
    rfm_by_customer = {s.customer_id: s.rfm_segment.value for s in rfm_scores}
    growth_by_customer = {f.customer_id: f.growth_rate for f in features}
    name_counts: Counter = Counter()

    segments: List[SegmentDefinition] = []
    for cluster in clustering.clusters:
        members = [by_id[i] for i in cluster.member_ids if i in by_id]
        if not members:
            continue

        mrrs = [float(m.mrr or 0) for m in members]
        tenures = [m.tenure_months or 0 for m in members]
        total_mrr = sum(mrrs)
        avg_mrr = total_mrr / len(members)
        avg_tenure = cluster.characteristics.avg_tenure
        churn_rate = estimated_churn_rate(avg_tenure)

        rfm_counts = Counter(rfm_by_customer[m.id] for m in members if m.id in rfm_by_customer)
        sizes = sorted({m.company_size.value for m in members if m.company_size is not None})
        growing = sum(1 for m in members if growth_by_customer.get(m.id, 0.0) > 0)

        name_counts[cluster.name] += 1
        name = cluster.name if name_counts[cluster.name] == 1 else f"{cluster.name} {name_counts[cluster.name]}"

        segments.append(
            SegmentDefinition(
                name=name,
                description=cluster.description,
                criteria=[
                    MrrRangeCriterion(min=min(mrrs), max=max(mrrs)),
                    TenureRangeCriterion(min_months=min(tenures), max_months=max(tenures)),
                    CompanySizeCriterion(sizes=sizes),
                    RfmSegmentCriterion(segments=sorted(rfm_counts)),
                ],
                cluster_id=cluster.id,
                customer_ids=[m.id for m in members],
                customer_count=len(members),
                total_mrr=total_mrr,
                avg_mrr=avg_mrr,
                avg_tenure=avg_tenure,
                churn_rate=churn_rate,
                expansion_rate=growing / len(members),
                avg_ltv=avg_mrr * 12 * (1 / churn_rate) * SEGMENT_GROSS_MARGIN,
                retention_curve=geometric_retention_curve(churn_rate),
                rfm_distribution=dict(rfm_counts),
            )
        )

    total = sum(s.total_mrr for s in segments)
    for segment in segments:
        segment.revenue_share = segment.total_mrr / total if total > 0 else 1 / len(segments)

    return segments


def calculate_quality_metrics(
    segments: Sequence[SegmentDefinition], clustering: ClusteringResult
) -> SegmentQualityMetrics:
    """Silhouette, size and distinctiveness (CV of average MRR) of a segmentation."""
    if not segments:
        return SegmentQualityMetrics()

    avg_mrrs = np.asarray([s.avg_mrr for s in segments], dtype=float)
    mean = avg_mrrs.mean()
    return SegmentQualityMetrics(
        silhouette_score=clustering.silhouette_score,
        segment_count=len(segments),
        avg_segment_size=sum(s.customer_count for s in segments) / len(segments),
        economics_variance=float(avg_mrrs.std() / mean) if mean > 0 else 0.0,
    )


def get_segment_insights(segments: Sequence[SegmentDefinition]) -> List[str]:
    """Plain-language observations about a segmentation."""
    if not segments:
        return []

    insights = []
    total_customers = sum(s.customer_count for s in segments)
    total_mrr = sum(s.total_mrr for s in segments)

    highest = max(segments, key=lambda s: s.avg_mrr)
    insights.append(
        f"{highest.name} has the highest average MRR (€{highest.avg_mrr:.0f}/mo) "
        f"with {highest.customer_count} customers."
    )

    stickiest = min(segments, key=lambda s: s.churn_rate)
    insights.append(
        f"{stickiest.name} has the lowest churn ({stickiest.churn_rate * 100:.1f}%), focus expansion here."
    )

    largest = max(segments, key=lambda s: s.customer_count)
    if total_customers:
        insights.append(
            f"{largest.name} represents {largest.customer_count / total_customers * 100:.0f}% of customers "
            f"({largest.customer_count} accounts)."
        )

    if len(segments) >= 2 and total_mrr > 0:
        top = max(segments, key=lambda s: s.total_mrr)
        insights.append(f"Top segment ({top.name}) contributes {top.total_mrr / total_mrr * 100:.0f}% of total MRR.")

    return insights


class SegmentationService:
    """Service for building and applying customer segments."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def analyze_segmentation(
        self,
        as_of: Optional[datetime] = None,
        rng: Optional[np.random.Generator] = None,
        rfm_scores: Optional[List[RFMScore]] = None,
    ) -> SegmentationAnalysisResult:
        """
        Score, cluster and describe active customers.

        Args:
            as_of: Reference "now"
            rng: Random source for clustering (seeded from settings when omitted)
            rfm_scores: Precomputed RFM scores; calculated when omitted

        Returns:
            SegmentationAnalysisResult (nothing is persisted)
        """
        as_of = as_of or datetime.utcnow()
        if rng is None:
            rng = np.random.default_rng(settings.clustering_seed)
        if rfm_scores is None:
            rfm_scores = await RFMService(self.store).calculate_rfm_scores(as_of=as_of)

        customers = await self.store.select(
            Customer, Customer.status == CustomerStatus.ACTIVE, order_by=Customer.created_at
        )
        events = await self.store.select(
            ExpansionEvent, ExpansionEvent.occurred_at > add_months(as_of, -GROWTH_WINDOW_MONTHS)
        )

        features = build_clustering_features(customers, events, as_of)
        clustering = cluster_customers(
            features,
            min_k=SEGMENT_MIN_K,
            max_k=SEGMENT_MAX_K,
            rng=rng,
            n_init=settings.clustering_n_init,
        )
        segments = build_segment_definitions(clustering, customers, rfm_scores, features)

        result = SegmentationAnalysisResult(
            segments=segments,
            rfm_scores=rfm_scores,
            rfm_summary=get_rfm_distribution(rfm_scores),
            rfm_recommendations=get_rfm_recommendations(rfm_scores),
            clustering=clustering,
            quality=calculate_quality_metrics(segments, clustering),
            insights=get_segment_insights(segments),
        )

        logger.info(
            "segmentation_analyzed",
            customers=len(customers),
            segments=len(segments),
            silhouette=round(clustering.silhouette_score, 4),
        )
        return result

    async def apply_segmentation(self, analysis: SegmentationAnalysisResult) -> SegmentApplyResult:
        """
        Persist segments and customer memberships.

        Segments are upserted by name. System-generated segments that the
        current analysis no longer produces are deactivated. Clustered
        customers get their cluster's segment; at-risk customers (which are
        not clustered) get the first segment whose criteria admit them.

        Args:
            analysis: Result of ``analyze_segmentation``

        Returns:
            SegmentApplyResult with stored segment ids
        """
        rows = [
            {
                "name": segment.name,
                "description": segment.description,
                "criteria": [c.model_dump(mode="json") for c in segment.criteria],
                "customer_count": segment.customer_count,
                "total_revenue": segment.total_mrr,
                "revenue_share": segment.revenue_share,
                "avg_mrr": segment.avg_mrr,
                "avg_ltv": segment.avg_ltv,
                "churn_rate": segment.churn_rate,
                "retention_rate": 1 - segment.churn_rate,
                "expansion_rate": segment.expansion_rate,
                "retention_curve": segment.retention_curve,
                "is_system_generated": True,
                "is_active": True,
            }
            for segment in analysis.segments
        ]
        stored = await self.store.upsert(Segment, rows, conflict_keys=("name",))
        segment_ids = {segment.name: segment.id for segment in stored}

        deactivated = await self.store.update(
            Segment,
            {"is_active": False},
            Segment.is_system_generated.is_(True),
            Segment.name.not_in(list(segment_ids)),
        )

        # Nobody keeps pointing at a retired segment; active members are reassigned below
        inactive_ids = [s.id for s in await self.store.select(Segment, Segment.is_active.is_(False))]
        cleared = 0
        if inactive_ids:
            cleared = await self.store.update(Customer, {"segment_id": None}, Customer.segment_id.in_(inactive_ids))

        assigned = 0
        batch_size = settings.segment_membership_batch_size
        for segment in analysis.segments:
            for batch in chunked(segment.customer_ids, batch_size):
                assigned += await self.store.update(
                    Customer, {"segment_id": segment_ids[segment.name]}, Customer.id.in_(list(batch))
                )

        at_risk = await self.store.select(Customer, Customer.status == CustomerStatus.AT_RISK)
        for customer in at_risk:
            for segment in analysis.segments:
                if segment_matches(segment.criteria, customer):
                    customer.segment_id = segment_ids[segment.name]
                    assigned += 1
                    break
        await self.store.db.flush()

        logger.info(
            "segments_applied",
            segments=len(segment_ids),
            customers_assigned=assigned,
            segments_deactivated=deactivated,
            memberships_cleared=cleared,
        )
        return SegmentApplyResult(
            segment_ids=segment_ids,
            customers_assigned=assigned,
            segments_deactivated=deactivated,
            memberships_cleared=cleared,
        )
