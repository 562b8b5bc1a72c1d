"""Pydantic schemas for upgrade, churn and seasonal pattern detection."""
from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


class UpgradeSignalType(str, Enum):
    USAGE_LIMIT_APPROACHING = "usage_limit_approaching"
    RAPID_GROWTH = "rapid_growth"
    FEATURE_EXPLORATION = "feature_exploration"
    SUPPORT_INQUIRY = "support_inquiry"
    TENURE_MILESTONE = "tenure_milestone"


class UpgradeSignal(BaseModel):
    customer_id: UUID
    signal_type: UpgradeSignalType
    confidence: float = Field(..., ge=0, le=1)
    details: str
    detected_at: datetime


class UpgradeCandidate(BaseModel):
    """Active customer showing at least one qualifying upgrade signal."""

    customer_id: UUID
    customer_name: str
    current_tier: str
    current_mrr: float
    signals: list[UpgradeSignal]
    overall_score: int = Field(..., ge=0, le=100)
    recommended_action: str
    potential_mrr_increase: float = Field(..., ge=0)


class UpgradeAnalysisResult(BaseModel):
    candidates: list[UpgradeCandidate] = Field(default_factory=list)
    total_potential_mrr: float = 0
    signal_distribution: dict[str, int] = Field(default_factory=dict)
    insights: list[str] = Field(default_factory=list)


class ChurnSignalType(str, Enum):
    USAGE_DECLINE = "usage_decline"
    PAYMENT_ISSUES = "payment_issues"
    SUPPORT_SILENCE = "support_silence"
    DOWNGRADE_RECENT = "downgrade_recent"
    CONTRACT_ENDING = "contract_ending"
    COMPETITOR_MENTION = "competitor_mention"
    ENGAGEMENT_DROP = "engagement_drop"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChurnSignal(BaseModel):
    customer_id: UUID
    signal_type: ChurnSignalType
    severity: Severity
    confidence: float = Field(..., ge=0, le=1)
    details: str
    detected_at: datetime
    months_to_renewal: int | None = Field(default=None, description="Set on contract_ending signals")


class AtRiskCustomer(BaseModel):
    customer_id: UUID
    customer_name: str
    current_mrr: float
    tenure: int
    segment: str
    signals: list[ChurnSignal]
    risk_score: int = Field(..., ge=0, le=100)
    recommended_action: str
    days_until_likely: int | None = None


class SegmentRisk(BaseModel):
    count: int = 0
    mrr_at_risk: float = 0


class ChurnRiskResult(BaseModel):
    at_risk_customers: list[AtRiskCustomer] = Field(default_factory=list)
    total_mrr_at_risk: float = 0
    signal_distribution: dict[str, int] = Field(default_factory=dict)
    risk_by_segment: dict[str, SegmentRisk] = Field(default_factory=dict)
    insights: list[str] = Field(default_factory=list)


class SeasonalPattern(BaseModel):
    pattern_type: Literal["monthly", "quarterly", "annual"]
    peak_periods: list[str]
    trough_periods: list[str]
    amplitude: float = Field(..., description="Deviation from the mean in percent")
    confidence: float = Field(..., ge=0, le=1)
    description: str


class MonthlyTrend(BaseModel):
    month: int = Field(..., ge=1, le=12)
    avg_mrr: float
    avg_new_customers: float
    avg_churn: float
    seasonal_index: float = Field(default=1.0, description="1.0 is average, above 1 is above average")


class SeasonalAnalysisResult(BaseModel):
    has_seasonality: bool = False
    patterns: list[SeasonalPattern] = Field(default_factory=list)
    monthly_trends: list[MonthlyTrend] = Field(default_factory=list)
    best_months_for_acquisition: list[int] = Field(default_factory=list)
    worst_months_for_churn: list[int] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
