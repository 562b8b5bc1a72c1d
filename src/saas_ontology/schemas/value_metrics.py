"""Pydantic schemas for value metric discovery."""
from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


class Outcome(str, Enum):
    RETENTION = "retention"
    EXPANSION = "expansion"
    CHURN = "churn"


Level = Literal["high", "medium", "low"]


class CustomerMetricSample(BaseModel):
    """Metric values of one customer and what happened to it after the cutoff."""

    customer_id: UUID
    metrics: dict[str, float]
    retained: bool
    churned: bool
    expansion_amount: float = 0


class MetricCorrelation(BaseModel):
    """Pearson correlation of one metric with each outcome."""

    metric_name: str
    metric_description: str
    correlation_to_retention: float = Field(..., ge=-1, le=1)
    correlation_to_expansion: float = Field(..., ge=-1, le=1)
    correlation_to_churn: float = Field(..., ge=-1, le=1)
    p_value_retention: float = Field(..., ge=0, le=1)
    p_value_expansion: float = Field(..., ge=0, le=1)
    p_value_churn: float = Field(..., ge=0, le=1)
    sample_size: int
    period_start: datetime
    period_end: datetime


class CorrelationAnalysisResult(BaseModel):
    correlations: list[MetricCorrelation] = Field(default_factory=list)
    top_retention_drivers: list[MetricCorrelation] = Field(default_factory=list)
    top_expansion_drivers: list[MetricCorrelation] = Field(default_factory=list)
    top_churn_predictors: list[MetricCorrelation] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)


class FeatureImportance(BaseModel):
    metric_name: str
    metric_description: str
    importance_score: float = Field(..., ge=0, le=1)
    rank: int = 0
    predictive_for: list[Outcome] = Field(default_factory=list)
    confidence: Level
    actionability: Level
    recommendation: str


class FeatureImportanceResult(BaseModel):
    rankings: list[FeatureImportance] = Field(default_factory=list)
    primary_value_metric: FeatureImportance | None = None
    secondary_value_metrics: list[FeatureImportance] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)


class ValueMetricDefinition(BaseModel):
    """A value metric proposed for the business ontology."""

    name: str
    display_name: str
    description: str
    metric_type: Literal["primary", "secondary"]
    correlation_to_retention: float = 0
    correlation_to_expansion: float = 0
    importance_rank: int
    measurement_method: str
