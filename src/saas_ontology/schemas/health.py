"""Pydantic schemas for customer health scoring."""
from datetime import date
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class HealthTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class HealthInputs(BaseModel):
    """Everything a customer's health score is derived from."""

    customer_id: UUID
    mrr: float
    tenure: int
    segment: str | None = None
    recent_expansion: float = 0
    recent_contraction: float = 0
    previous_health_score: int | None = None


class HealthScore(BaseModel):
    customer_id: UUID
    score_date: date
    usage_score: int = Field(..., ge=0, le=100)
    engagement_score: int = Field(..., ge=0, le=100)
    financial_score: int = Field(..., ge=0, le=100)
    health_score: int = Field(..., ge=0, le=100)
    trend: HealthTrend
    trend_velocity: int = 0
    upgrade_readiness: float = Field(..., ge=0, le=1)
    churn_risk: float = Field(..., ge=0, le=1)
    expansion_potential: float = Field(..., ge=0, le=1)
    detected_patterns: list[str] = Field(default_factory=list)


class HealthDistribution(BaseModel):
    """Customers per health bucket: healthy >= 70, at risk 40-69, critical < 40."""

    healthy: int = 0
    at_risk: int = 0
    critical: int = 0


class TrendBreakdown(BaseModel):
    improving: int = 0
    stable: int = 0
    declining: int = 0


class HealthScoreAnalysisResult(BaseModel):
    scores: list[HealthScore] = Field(default_factory=list)
    distribution: HealthDistribution = Field(default_factory=HealthDistribution)
    avg_health_score: float = 0
    trend_breakdown: TrendBreakdown = Field(default_factory=TrendBreakdown)
    insights: list[str] = Field(default_factory=list)
