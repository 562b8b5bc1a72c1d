"""Pydantic schemas for analytics results and API responses."""

from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.economics import (
    AggregateRetention,
    ChurnAnalysis,
    CohortData,
    LTVMetrics,
    MRRGrowthMetrics,
    MRRMovement,
    RetentionMetrics,
)
from saas_ontology.schemas.health import (
    HealthDistribution,
    HealthScore,
    HealthScoreAnalysisResult,
)
from saas_ontology.schemas.patterns import (
    ChurnRiskResult,
    SeasonalAnalysisResult,
    UpgradeAnalysisResult,
)
from saas_ontology.schemas.run import (
    AnalyticsRunProgress,
    FullAnalyticsResult,
    LatestAnalytics,
    OntologySummary,
)
from saas_ontology.schemas.segmentation import (
    ClusteringResult,
    RFMScore,
    SegmentationAnalysisResult,
    SegmentDefinition,
)
from saas_ontology.schemas.value_metrics import (
    CorrelationAnalysisResult,
    FeatureImportanceResult,
    MetricCorrelation,
)

__all__ = [
    "InsufficientData",
    "AggregateRetention",
    "ChurnAnalysis",
    "CohortData",
    "LTVMetrics",
    "MRRGrowthMetrics",
    "MRRMovement",
    "RetentionMetrics",
    "HealthDistribution",
    "HealthScore",
    "HealthScoreAnalysisResult",
    "ChurnRiskResult",
    "SeasonalAnalysisResult",
    "UpgradeAnalysisResult",
    "AnalyticsRunProgress",
    "FullAnalyticsResult",
    "LatestAnalytics",
    "OntologySummary",
    "ClusteringResult",
    "RFMScore",
    "SegmentationAnalysisResult",
    "SegmentDefinition",
    "CorrelationAnalysisResult",
    "FeatureImportanceResult",
    "MetricCorrelation",
]
