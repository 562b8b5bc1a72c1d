"""Pydantic schemas for cohort, LTV, retention and MRR movement results."""
from datetime import date, datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class CohortData(BaseModel):
    """Retention of one acquisition cohort at one month offset."""

    cohort_month: date = Field(..., description="First day of the acquisition month")
    month_offset: int = Field(..., ge=0)
    cohort_size: int = Field(..., ge=0)
    retained_customers: int = Field(..., ge=0)
    retention_rate: float = Field(..., ge=0, le=1)
    starting_mrr: float
    retained_mrr: float
    revenue_retention_rate: float = Field(..., ge=0)


class CohortRetentionCurve(BaseModel):
    """Retention rates of one cohort indexed by month offset."""

    cohort_month: date
    cohort_size: int
    starting_mrr: float
    retention_by_month: list[float] = Field(default_factory=list)
    revenue_retention_by_month: list[float] = Field(default_factory=list)


class AggregateRetention(BaseModel):
    """Retention-by-month aggregated across cohorts."""

    avg_retention_by_month: list[float] = Field(default_factory=list)
    avg_revenue_retention_by_month: list[float] = Field(default_factory=list)
    median_retention_by_month: list[float] = Field(default_factory=list)
    cohort_count: int = 0
    total_customers_analyzed: int = 0


class LTVMethod(str, Enum):
    """How an LTV figure was derived."""

    RETENTION_CURVE = "retention_curve"
    CHURN_BASED = "churn_based"
    SIMPLE = "simple"


class LTVMetrics(BaseModel):
    """Lifetime value of the customer base."""

    avg_ltv: float = 0
    median_ltv: float = 0
    ltv_p25: float = 0
    ltv_p75: float = 0
    ltv_p90: float = 0
    ltv_by_segment: dict[str, float] = Field(default_factory=dict, description="Segment name to LTV")
    avg_arpu: float = 0
    avg_lifetime_months: float = 0
    gross_margin: float
    monthly_churn_rate: float | None = Field(default=None, description="Set by the churn-based method")
    calculation_method: LTVMethod


class RetentionMetrics(BaseModel):
    """Revenue and logo retention over a period."""

    net_revenue_retention: float
    gross_revenue_retention: float
    logo_churn_rate: float
    logo_churn_count: int
    revenue_churn_rate: float
    revenue_churn_amount: float
    expansion_rate: float
    expansion_amount: float
    contraction_rate: float
    contraction_amount: float
    churned_in_period: list[UUID] = Field(default_factory=list)
    period_start: datetime
    period_end: datetime
    starting_mrr: float
    ending_mrr: float
    starting_customer_count: int
    ending_customer_count: int


class ChurnByTenure(BaseModel):
    """Churn rate per tenure bucket."""

    less_than_3_months: float = 0
    three_to_six_months: float = 0
    six_to_twelve_months: float = 0
    more_than_twelve_months: float = 0


class ChurnReason(BaseModel):
    reason: str
    count: int


class ChurnAnalysis(BaseModel):
    """Churn broken down by segment, tier and tenure."""

    overall_churn_rate: float = 0
    churn_by_segment: dict[str, float] = Field(default_factory=dict)
    churn_by_tier: dict[str, float] = Field(default_factory=dict)
    churn_by_tenure: ChurnByTenure = Field(default_factory=ChurnByTenure)
    avg_time_to_churn: float = Field(default=0, description="Months from signup to churn")
    top_churn_reasons: list[ChurnReason] = Field(default_factory=list)


class MRRMovement(BaseModel):
    """MRR bridge for one period."""

    period: str = Field(..., description="YYYY-MM")
    period_start: datetime
    period_end: datetime
    starting_mrr: float
    new_mrr: float
    expansion_mrr: float
    contraction_mrr: float
    churned_mrr: float
    reactivation_mrr: float
    net_new_mrr: float
    ending_mrr: float
    new_customers: int
    churned_customers: int
    expanded_customers: int
    contracted_customers: int


class RevenueConcentration(BaseModel):
    top_10_percent_share: float = 0
    top_20_percent_share: float = 0
    gini_coefficient: float = 0


class MRRGrowthMetrics(BaseModel):
    """Headline MRR growth, efficiency and concentration."""

    current_mrr: float
    previous_mrr: float
    mom_growth_rate: float
    yoy_growth_rate: float | None = None
    quick_ratio: float = Field(..., description="Gains over losses; infinite when nothing was lost")
    net_new_mrr: float
    new_mrr: float
    expansion_mrr: float
    contraction_mrr: float
    churned_mrr: float
    concentration: RevenueConcentration
    mrr_by_segment: dict[str, float] = Field(default_factory=dict)


class SegmentMRR(BaseModel):
    """MRR held by one segment's active customers."""

    mrr: float = 0
    customer_count: int = 0
    avg_mrr: float = 0
