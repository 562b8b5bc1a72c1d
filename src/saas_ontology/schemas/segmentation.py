"""Pydantic schemas for RFM scoring, clustering and segment definitions."""
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field


class RFMSegment(str, Enum):
    """Behavioral segments derived from RFM scores."""

    CHAMPIONS = "champions"
    LOYAL_CUSTOMERS = "loyal_customers"
    POTENTIAL_LOYALISTS = "potential_loyalists"
    RECENT_CUSTOMERS = "recent_customers"
    PROMISING = "promising"
    NEEDS_ATTENTION = "needs_attention"
    ABOUT_TO_SLEEP = "about_to_sleep"
    AT_RISK = "at_risk"
    CANT_LOSE_THEM = "cant_lose_them"
    HIBERNATING = "hibernating"
    LOST = "lost"


class RFMScore(BaseModel):
    """Recency, frequency and monetary scores of one customer."""

    customer_id: UUID
    recency_days: int = Field(..., ge=0)
    frequency_count: int = Field(..., ge=0)
    monetary_value: float
    recency_score: int = Field(..., ge=1, le=5)
    frequency_score: int = Field(..., ge=1, le=5)
    monetary_score: int = Field(..., ge=1, le=5)
    rfm_score: int = Field(..., description="r*100 + f*10 + m, 555 is best")
    rfm_segment: RFMSegment


class RFMSegmentSummary(BaseModel):
    """Population share of one RFM segment."""

    segment: RFMSegment
    count: int
    percentage: float
    avg_monetary_value: float


class RFMRecommendation(BaseModel):
    segment: RFMSegment
    action: str
    priority: Literal["high", "medium", "low"]
    count: int


class ClusteringFeatures(BaseModel):
    """Feature vector of one customer before normalization."""

    customer_id: UUID
    mrr: float
    tenure_months: float
    growth_rate: float
    company_size: int = Field(..., ge=1, le=4, description="Company size ordinal")
    usage_score: float = Field(default=50, ge=0, le=100)

    def vector(self) -> list[float]:
        return [self.mrr, self.tenure_months, self.growth_rate, float(self.company_size), self.usage_score]


class ClusterCharacteristics(BaseModel):
    avg_mrr: float
    avg_tenure: float
    avg_growth_rate: float
    avg_company_size: float
    avg_usage_score: float


class Cluster(BaseModel):
    """One fitted cluster, index 0 holding the highest average MRR."""

    id: int
    centroid: list[float] = Field(..., description="Normalized feature vector")
    member_ids: list[UUID]
    size: int
    characteristics: ClusterCharacteristics
    name: str
    description: str


class ClusteringResult(BaseModel):
    clusters: list[Cluster] = Field(default_factory=list)
    k: int = 0
    silhouette_score: float = 0
    inertia: float = 0
    iterations: int = 0
    converged: bool = True


class MrrRangeCriterion(BaseModel):
    kind: Literal["mrr_range"] = "mrr_range"
    min: float | None = None
    max: float | None = None


class TenureRangeCriterion(BaseModel):
    kind: Literal["tenure_range"] = "tenure_range"
    min_months: float | None = None
    max_months: float | None = None


class CompanySizeCriterion(BaseModel):
    kind: Literal["company_sizes"] = "company_sizes"
    sizes: list[str] = Field(default_factory=list)


class RfmSegmentCriterion(BaseModel):
    kind: Literal["rfm_segments"] = "rfm_segments"
    segments: list[RFMSegment] = Field(default_factory=list)


class UnknownCriterion(BaseModel):
    """Criterion of a kind this engine does not evaluate; kept verbatim."""

    kind: Literal["unknown"] = "unknown"
    raw: dict[str, Any] = Field(default_factory=dict)


SegmentCriterion = Annotated[
    Union[MrrRangeCriterion, TenureRangeCriterion, CompanySizeCriterion, RfmSegmentCriterion, UnknownCriterion],
    Field(discriminator="kind"),
]


class SegmentDefinition(BaseModel):
    """A segment produced by clustering, with its economics."""

    name: str
    description: str
    criteria: list[SegmentCriterion] = Field(default_factory=list)
    cluster_id: int
    customer_ids: list[UUID] = Field(default_factory=list)
    customer_count: int
    total_mrr: float
    avg_mrr: float
    revenue_share: float = 0
    avg_tenure: float
    churn_rate: float
    expansion_rate: float = Field(default=0, description="Share of members whose MRR grew")
    avg_ltv: float
    retention_curve: list[float] = Field(default_factory=list)
    rfm_distribution: dict[str, int] = Field(default_factory=dict)


class SegmentQualityMetrics(BaseModel):
    silhouette_score: float = 0
    segment_count: int = 0
    avg_segment_size: float = 0
    economics_variance: float = Field(default=0, description="Coefficient of variation of segment average MRR")


class SegmentationAnalysisResult(BaseModel):
    segments: list[SegmentDefinition] = Field(default_factory=list)
    rfm_scores: list[RFMScore] = Field(default_factory=list)
    rfm_summary: list[RFMSegmentSummary] = Field(default_factory=list)
    rfm_recommendations: list[RFMRecommendation] = Field(default_factory=list)
    clustering: ClusteringResult = Field(default_factory=ClusteringResult)
    quality: SegmentQualityMetrics = Field(default_factory=SegmentQualityMetrics)
    insights: list[str] = Field(default_factory=list)


class SegmentApplyResult(BaseModel):
    segment_ids: dict[str, UUID] = Field(default_factory=dict, description="Segment name to stored id")
    customers_assigned: int = 0
    segments_deactivated: int = 0
    memberships_cleared: int = Field(default=0, description="Customers detached from inactive segments")
