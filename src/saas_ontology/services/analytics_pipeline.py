"""
Full analytics pipeline.

Runs the eight analysis steps for one organization in order:

1. Cohort retention
2. LTV
3. Retention and MRR growth metrics
4. Segmentation (RFM, clustering, segment persistence)
5. Pattern detection (upgrade, churn, seasonality)
6. Value metric discovery (correlations, feature importance)
7. Health scoring
8. Ontology summary and economics snapshot

Progress is written to an ``analytics_run_log`` row and committed after every
step, so a failed run keeps whatever earlier steps persisted. Every step
recomputes from the current customer ledger, which makes reruns idempotent.

Usage (from a worker or endpoint):
    result = await run_full_analytics(db, organization_id)
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import UUID, uuid4

import numpy as np
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from saas_ontology.config import settings
from saas_ontology.metrics import analytics_runs_total, analytics_step_duration_seconds, analytics_total_mrr_dollars
from saas_ontology.models import AnalyticsRun, EconomicsSnapshot, RunStatus
from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.economics import MRRGrowthMetrics, RetentionMetrics
from saas_ontology.schemas.health import HealthScoreAnalysisResult
from saas_ontology.schemas.patterns import (
    ChurnRiskResult,
    SeasonalAnalysisResult,
    UpgradeAnalysisResult,
)
from saas_ontology.schemas.run import (
    TOTAL_STEPS,
    AnalyticsRunProgress,
    EconomicsResult,
    FullAnalyticsResult,
    LatestAnalytics,
    OntologySummary,
    PatternResults,
    RunProgress,
)
from saas_ontology.schemas.segmentation import SegmentationAnalysisResult
from saas_ontology.schemas.value_metrics import CorrelationAnalysisResult, FeatureImportanceResult
from saas_ontology.services.churn_detector import ChurnDetector
from saas_ontology.services.cohort_service import (
    CohortService,
    build_retention_curves,
    calculate_aggregate_retention,
)
from saas_ontology.services.correlation_service import CorrelationService
from saas_ontology.services.feature_importance import calculate_feature_importance, get_value_metric_definitions
from saas_ontology.services.health_service import HealthService
from saas_ontology.services.ltv_service import LTVService
from saas_ontology.services.mrr_service import MRRService
from saas_ontology.services.retention_service import RetentionService
from saas_ontology.services.rfm_service import RFMService
from saas_ontology.services.seasonality_service import SeasonalityService
from saas_ontology.services.segmentation_service import SegmentationService
from saas_ontology.services.upgrade_detector import UpgradeDetector
from saas_ontology.services.usage_signals import UsageSignalProvider
from saas_ontology.store import AnalyticsStore

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[AnalyticsRunProgress], None]

MAX_KEY_INSIGHTS = 5
MAX_TOP_PATTERNS = 5


@dataclass(frozen=True)
class PipelineStep:
    name: str
    started: str
    completed: str


STEPS = (
    PipelineStep("cohort_retention", "Analyzing cohort retention", "Cohort retention complete"),
    PipelineStep("ltv", "Calculating LTV metrics", "LTV calculation complete"),
    PipelineStep("retention", "Computing retention metrics", "Retention metrics complete"),
    PipelineStep("segmentation", "Running segmentation analysis", "Segmentation complete"),
    PipelineStep("patterns", "Detecting behavioral patterns", "Pattern detection complete"),
    PipelineStep("value_metrics", "Analyzing value metrics", "Value metrics complete"),
    PipelineStep("health", "Calculating health scores", "Health scores complete"),
    PipelineStep("summary", "Generating ontology summary", "Complete"),
)


@dataclass
class RunContext:
    """State of one run, passed explicitly to every step."""

    run_id: UUID
    organization_id: UUID
    started_at: datetime
    as_of: datetime
    rng: np.random.Generator
    on_progress: Optional[ProgressCallback] = None
    current_step: str = "Initializing"
    completed_steps: int = 0
    total_steps: int = TOTAL_STEPS
    errors: list = field(default_factory=list)

    def progress(self, status: str = "running", error: Optional[str] = None) -> AnalyticsRunProgress:
        return AnalyticsRunProgress(
            run_id=self.run_id,
            status=status,
            current_step=self.current_step,
            total_steps=self.total_steps,
            completed_steps=self.completed_steps,
            started_at=self.started_at,
            completed_at=datetime.utcnow() if status != "running" else None,
            error=error,
        )

    def report(self, status: str = "running", error: Optional[str] = None) -> None:
        if self.on_progress is not None:
            self.on_progress(self.progress(status, error))


def concentration_risk_level(top_10_share: float) -> str:
    """Risk level from the revenue share of the top 10% of customers."""
    if top_10_share > 0.7:
        return "critical"
    if top_10_share > 0.5:
        return "high"
    if top_10_share > 0.3:
        return "moderate"
    return "low"


def create_ontology_summary(
    segmentation: SegmentationAnalysisResult,
    upgrades: UpgradeAnalysisResult,
    churn_risk: ChurnRiskResult,
    seasonality: Union[SeasonalAnalysisResult, InsufficientData],
    importance: FeatureImportanceResult,
    health: HealthScoreAnalysisResult,
    generated_at: Optional[datetime] = None,
) -> OntologySummary:
    """
    Condense a run into the flat summary presentation layers render.

    Key insights take the first two health insights, then the lead insight of
    upgrades, churn risk and feature importance.
    """
    insights = list(health.insights[:2])
    for source in (upgrades.insights, churn_risk.insights, importance.insights):
        if source:
            insights.append(source[0])

    top_patterns = []
    if upgrades.candidates:
        top_patterns.append(f"{len(upgrades.candidates)} upgrade candidates identified")
    if churn_risk.at_risk_customers:
        top_patterns.append(f"{len(churn_risk.at_risk_customers)} customers at churn risk")
    if isinstance(seasonality, SeasonalAnalysisResult) and seasonality.has_seasonality:
        top_patterns.append(f"{len(seasonality.patterns)} seasonal revenue patterns")

    primary = importance.primary_value_metric
    return OntologySummary(
        generated_at=generated_at or datetime.utcnow(),
        customer_count=len(health.scores),
        total_mrr=sum(s.total_mrr for s in segmentation.segments),
        segment_count=len(segmentation.segments),
        key_insights=insights[:MAX_KEY_INSIGHTS],
        health_distribution=health.distribution,
        primary_value_metric=primary.metric_description if primary is not None else None,
        top_patterns=top_patterns[:MAX_TOP_PATTERNS],
    )


def economics_snapshot_row(
    as_of: datetime,
    retention: RetentionMetrics,
    growth: MRRGrowthMetrics,
    customer_count: int,
    arpu: float,
    new_customers: int,
    churned_customers: int,
) -> dict:
    top_10 = growth.concentration.top_10_percent_share
    return {
        "snapshot_date": as_of.date(),
        "total_mrr": growth.current_mrr,
        "total_arr": growth.current_mrr * 12,
        "total_customers": customer_count,
        "arpu": arpu,
        "new_customers": new_customers,
        "churned_customers": churned_customers,
        "net_revenue_retention": retention.net_revenue_retention * 100,
        "gross_revenue_retention": retention.gross_revenue_retention * 100,
        "top_10_pct_revenue_share": top_10,
        "hhi_index": round(growth.concentration.gini_coefficient * 10000),
        "concentration_risk_level": concentration_risk_level(top_10),
    }


class AnalyticsPipeline:
    """Orchestrates a full analytics refresh for one organization."""

    def __init__(self, store: AnalyticsStore, usage: Optional[UsageSignalProvider] = None):
        """
        Initialize the pipeline.

        Args:
            store: Organization-scoped data store
            usage: Usage telemetry for the pattern detectors
        """
        self.store = store
        self.usage = usage

    async def run(
        self,
        on_progress: Optional[ProgressCallback] = None,
        seed: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> FullAnalyticsResult:
        """
        Run all eight steps.

        Args:
            on_progress: Called with the run's progress before and after every step
            seed: Clustering seed (defaults to ``settings.clustering_seed``)
            as_of: Reference "now" for every step

        Returns:
            FullAnalyticsResult with every step's output and the summary

        Raises:
            Exception: Whatever a step raised, after the run was marked failed
        """
        started_at = datetime.utcnow()
        ctx = RunContext(
            run_id=uuid4(),
            organization_id=self.store.organization_id,
            started_at=started_at,
            as_of=as_of or started_at,
            rng=np.random.default_rng(seed if seed is not None else settings.clustering_seed),
            on_progress=on_progress,
        )

        with structlog.contextvars.bound_contextvars(
            run_id=str(ctx.run_id), organization_id=str(ctx.organization_id)
        ):
            await self._start_run(ctx)
            try:
                result = await self._execute(ctx)
            except Exception as exc:
                logger.exception("analytics_run_failed", step=ctx.current_step)
                await self._fail_run(ctx, exc)
                raise
            await self._complete_run(ctx, result)
            return result

    async def _execute(self, ctx: RunContext) -> FullAnalyticsResult:
        cohort_data, aggregate = await self._run_step(ctx, STEPS[0], self.analyze_cohorts)
        ltv = await self._run_step(ctx, STEPS[1], self.calculate_ltv, aggregate)
        retention, growth, movement = await self._run_step(ctx, STEPS[2], self.calculate_retention)
        segmentation = await self._run_step(ctx, STEPS[3], self.segment_customers)
        upgrades, churn_risk, seasonality = await self._run_step(ctx, STEPS[4], self.detect_patterns)
        correlations, importance = await self._run_step(ctx, STEPS[5], self.discover_value_metrics)
        health = await self._run_step(ctx, STEPS[6], self.score_health)

        economics = EconomicsResult(
            cohort_retention=cohort_data,
            ltv=ltv,
            retention=retention,
            mrr_growth=growth,
            period_movement=movement,
        )
        patterns = PatternResults(upgrades=upgrades, churn_risk=churn_risk, seasonality=seasonality)
        summary = await self._run_step(
            ctx, STEPS[7], self.summarize, economics, segmentation, patterns, importance, health
        )

        return FullAnalyticsResult(
            run_id=ctx.run_id,
            economics=economics,
            segmentation=segmentation,
            patterns=patterns,
            value_metrics=correlations,
            feature_importance=importance,
            value_metric_definitions=get_value_metric_definitions(
                importance,
                correlations.correlations if isinstance(correlations, CorrelationAnalysisResult) else (),
            ),
            health=health,
            summary=summary,
        )

    async def _run_step(
        self,
        ctx: RunContext,
        step: PipelineStep,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        await self._set_progress(ctx, step.started)
        with analytics_step_duration_seconds.labels(step=step.name).time():
            result = await func(ctx, *args)
        ctx.completed_steps += 1
        await self._set_progress(ctx, step.completed)
        logger.debug("analytics_step_completed", step=step.name, completed_steps=ctx.completed_steps)
        return result

    # Steps

    async def analyze_cohorts(self, ctx: RunContext):
        service = CohortService(self.store)
        cohort_data = await service.analyze_cohort_retention(as_of=ctx.as_of)
        await service.store_cohort_data(cohort_data)
        return cohort_data, calculate_aggregate_retention(build_retention_curves(cohort_data))

    async def calculate_ltv(self, ctx: RunContext, aggregate):
        return await LTVService(self.store).calculate_ltv(aggregate_retention=aggregate, as_of=ctx.as_of)

    async def calculate_retention(self, ctx: RunContext):
        retention = await RetentionService(self.store).calculate_retention_metrics(period_end=ctx.as_of)
        mrr = MRRService(self.store)
        growth = await mrr.calculate_growth_metrics(as_of=ctx.as_of)
        movements = await mrr.calculate_mrr_movements([(retention.period_start, retention.period_end)])
        return retention, growth, movements[0] if movements else None

    async def segment_customers(self, ctx: RunContext) -> SegmentationAnalysisResult:
        rfm = RFMService(self.store)
        rfm_scores = await rfm.calculate_rfm_scores(as_of=ctx.as_of)
        await rfm.store_rfm_scores(rfm_scores, as_of=ctx.as_of)

        service = SegmentationService(self.store)
        analysis = await service.analyze_segmentation(as_of=ctx.as_of, rng=ctx.rng, rfm_scores=rfm_scores)
        await service.apply_segmentation(analysis)
        return analysis

    async def detect_patterns(self, ctx: RunContext):
        upgrade_detector = UpgradeDetector(self.store, usage=self.usage)
        upgrades = await upgrade_detector.detect_upgrade_candidates(as_of=ctx.as_of)
        await upgrade_detector.store_upgrade_patterns(upgrades)

        churn_detector = ChurnDetector(self.store, usage=self.usage)
        churn_risk = await churn_detector.detect_churn_risk(as_of=ctx.as_of)
        await churn_detector.store_churn_patterns(churn_risk)

        seasonality_service = SeasonalityService(self.store)
        seasonality = await seasonality_service.analyze_seasonality(as_of=ctx.as_of)
        if isinstance(seasonality, SeasonalAnalysisResult):
            await seasonality_service.store_seasonal_patterns(seasonality)
        return upgrades, churn_risk, seasonality

    async def discover_value_metrics(self, ctx: RunContext):
        service = CorrelationService(self.store)
        correlations = await service.analyze_metric_correlations(as_of=ctx.as_of)
        if isinstance(correlations, CorrelationAnalysisResult):
            await service.store_correlations(correlations)
        return correlations, calculate_feature_importance(correlations)

    async def score_health(self, ctx: RunContext) -> HealthScoreAnalysisResult:
        service = HealthService(self.store)
        health = await service.calculate_health_scores(as_of=ctx.as_of)
        await service.store_health_scores(health.scores)
        return health

    async def summarize(
        self,
        ctx: RunContext,
        economics: EconomicsResult,
        segmentation: SegmentationAnalysisResult,
        patterns: PatternResults,
        importance: FeatureImportanceResult,
        health: HealthScoreAnalysisResult,
    ) -> OntologySummary:
        summary = create_ontology_summary(
            segmentation,
            patterns.upgrades,
            patterns.churn_risk,
            patterns.seasonality,
            importance,
            health,
        )

        movement = economics.period_movement
        row = economics_snapshot_row(
            ctx.as_of,
            economics.retention,
            economics.mrr_growth,
            customer_count=len(health.scores),
            arpu=economics.ltv.avg_arpu,
            new_customers=movement.new_customers if movement else 0,
            churned_customers=economics.retention.logo_churn_count,
        )
        # One snapshot per day; a rerun replaces the day's figures
        await self.store.upsert(EconomicsSnapshot, [row], conflict_keys=("snapshot_date",))

        analytics_total_mrr_dollars.set(summary.total_mrr)
        return summary

    # Run log

    async def _start_run(self, ctx: RunContext) -> None:
        await self.store.insert(
            AnalyticsRun,
            [
                {
                    "id": ctx.run_id,
                    "run_type": "full_refresh",
                    "status": RunStatus.RUNNING,
                    "started_at": ctx.started_at,
                    "total_steps": ctx.total_steps,
                    "completed_steps": 0,
                    "current_step": ctx.current_step,
                }
            ],
        )
        await self.store.commit()
        logger.info("analytics_run_started", as_of=ctx.as_of.isoformat())
        ctx.report()

    async def _set_progress(self, ctx: RunContext, step_label: str) -> None:
        ctx.current_step = step_label
        await self.store.update(
            AnalyticsRun,
            {"current_step": step_label, "completed_steps": ctx.completed_steps},
            AnalyticsRun.id == ctx.run_id,
        )
        await self.store.commit()
        ctx.report()

    async def _complete_run(self, ctx: RunContext, result: FullAnalyticsResult) -> None:
        await self.store.update(
            AnalyticsRun,
            {
                "status": RunStatus.COMPLETED,
                "completed_at": datetime.utcnow(),
                "completed_steps": ctx.total_steps,
                "current_step": "Complete",
                "records_processed": result.summary.customer_count,
                "result_summary": result.summary.model_dump(mode="json"),
            },
            AnalyticsRun.id == ctx.run_id,
        )
        await self.store.commit()

        analytics_runs_total.labels(status="completed").inc()
        logger.info(
            "analytics_run_completed",
            customers=result.summary.customer_count,
            segments=result.summary.segment_count,
            duration_seconds=round((datetime.utcnow() - ctx.started_at).total_seconds(), 2),
        )
        ctx.report(status="completed")

    async def _fail_run(self, ctx: RunContext, exc: Exception) -> None:
        await self.store.rollback()

        ctx.errors.append({"step": ctx.current_step, "error": str(exc), "type": type(exc).__name__})
        await self.store.update(
            AnalyticsRun,
            {
                "status": RunStatus.FAILED,
                "completed_at": datetime.utcnow(),
                "error_message": str(exc),
                "error_details": ctx.errors,
                "errors_count": len(ctx.errors),
            },
            AnalyticsRun.id == ctx.run_id,
        )
        await self.store.commit()

        analytics_runs_total.labels(status="failed").inc()
        ctx.report(status="failed", error=str(exc))


async def run_full_analytics(
    db: AsyncSession,
    organization_id: UUID,
    on_progress: Optional[ProgressCallback] = None,
    seed: Optional[int] = None,
    as_of: Optional[datetime] = None,
    usage: Optional[UsageSignalProvider] = None,
) -> FullAnalyticsResult:
    """
    Run the full analytics pipeline for an organization.

    Args:
        db: Async database session (committed after every step)
        organization_id: Organization to analyze
        on_progress: Optional progress callback
        seed: Clustering seed for reproducible segments
        as_of: Reference "now"
        usage: Usage telemetry for the pattern detectors

    Returns:
        FullAnalyticsResult
    """
    pipeline = AnalyticsPipeline(AnalyticsStore(db, organization_id), usage=usage)
    return await pipeline.run(on_progress=on_progress, seed=seed, as_of=as_of)


async def get_latest_analytics(db: AsyncSession, organization_id: UUID) -> LatestAnalytics:
    """Status, progress and summary of the organization's most recent run."""
    store = AnalyticsStore(db, organization_id)
    runs = await store.select(AnalyticsRun, order_by=AnalyticsRun.started_at.desc(), limit=1)
    if not runs:
        return LatestAnalytics(status="never_run")

    run = runs[0]
    return LatestAnalytics(
        last_run=run.started_at,
        status=run.status.value,
        completed_at=run.completed_at,
        progress=RunProgress(
            current_step=run.current_step,
            completed_steps=run.completed_steps,
            total_steps=run.total_steps,
        ),
        summary=OntologySummary.model_validate(run.result_summary) if run.result_summary else None,
        error_message=run.error_message,
    )
