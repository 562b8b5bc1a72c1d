"""Pydantic schemas for analytics runs and the ontology summary."""
from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.economics import CohortData, LTVMetrics, MRRGrowthMetrics, MRRMovement, RetentionMetrics
from saas_ontology.schemas.health import HealthDistribution, HealthScoreAnalysisResult
from saas_ontology.schemas.patterns import ChurnRiskResult, SeasonalAnalysisResult, UpgradeAnalysisResult
from saas_ontology.schemas.segmentation import SegmentationAnalysisResult
from saas_ontology.schemas.value_metrics import (
    CorrelationAnalysisResult,
    FeatureImportanceResult,
    ValueMetricDefinition,
)

TOTAL_STEPS = 8


class OntologySummary(BaseModel):
    """Flat digest of a run, rendered by presentation layers."""

    generated_at: datetime
    customer_count: int = 0
    total_mrr: float = 0
    segment_count: int = 0
    key_insights: list[str] = Field(default_factory=list, max_length=5)
    health_distribution: HealthDistribution = Field(default_factory=HealthDistribution)
    primary_value_metric: str | None = None
    top_patterns: list[str] = Field(default_factory=list, max_length=5)


class EconomicsResult(BaseModel):
    cohort_retention: list[CohortData] = Field(default_factory=list)
    ltv: LTVMetrics
    retention: RetentionMetrics
    mrr_growth: MRRGrowthMetrics
    period_movement: MRRMovement | None = Field(default=None, description="MRR movement over the retention period")


class PatternResults(BaseModel):
    upgrades: UpgradeAnalysisResult
    churn_risk: ChurnRiskResult
    seasonality: SeasonalAnalysisResult | InsufficientData


class FullAnalyticsResult(BaseModel):
    run_id: UUID
    economics: EconomicsResult
    segmentation: SegmentationAnalysisResult
    patterns: PatternResults
    value_metrics: CorrelationAnalysisResult | InsufficientData
    feature_importance: FeatureImportanceResult
    value_metric_definitions: list[ValueMetricDefinition] = Field(default_factory=list)
    health: HealthScoreAnalysisResult
    summary: OntologySummary


class AnalyticsRunProgress(BaseModel):
    """Progress reported to the optional callback after every step."""

    run_id: UUID
    status: Literal["running", "completed", "failed"] = "running"
    current_step: str = "Initializing"
    total_steps: int = TOTAL_STEPS
    completed_steps: int = Field(default=0, ge=0, le=TOTAL_STEPS)
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


class RunProgress(BaseModel):
    current_step: str | None = None
    completed_steps: int = 0
    total_steps: int = TOTAL_STEPS


class LatestAnalytics(BaseModel):
    """Latest run of an organization, for polling."""

    last_run: datetime | None = None
    status: str = Field(..., description="running, completed, failed or never_run")
    completed_at: datetime | None = None
    progress: RunProgress | None = None
    summary: OntologySummary | None = None
    error_message: str | None = None
