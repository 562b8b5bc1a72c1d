"""
Seasonality analysis.

Builds a seasonal index per calendar month from economics snapshots
(average MRR of the month over the average across months) and looks for
monthly, quarterly and year-end/mid-year swings.
"""
import calendar
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import structlog

from saas_ontology.config import settings
from saas_ontology.models import Customer, EconomicsSnapshot, Pattern, PatternType
from saas_ontology.schemas.common import InsufficientData
from saas_ontology.schemas.patterns import MonthlyTrend, SeasonalAnalysisResult, SeasonalPattern
from saas_ontology.services.pattern_writer import replace_patterns
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import add_months, month_key

logger = structlog.get_logger(__name__)

DEVIATION_THRESHOLD = 0.15
ANNUAL_SPLIT_THRESHOLD = 0.2
INSIGHT_AMPLITUDE_THRESHOLD = 10

QUARTERS = {"Q1": (1, 2, 3), "Q2": (4, 5, 6), "Q3": (7, 8, 9), "Q4": (10, 11, 12)}
YEAR_END_MONTHS = (11, 12, 1)
MID_YEAR_MONTHS = (6, 7, 8)


class _MonthBucket:
    __slots__ = ("mrr", "new_customers", "churns")

    def __init__(self) -> None:
        self.mrr: List[float] = []
        self.new_customers = 0
        self.churns = 0


def build_monthly_trends(
    snapshots: Sequence[EconomicsSnapshot],
    customers: Sequence[Customer],
    as_of: datetime,
    lookback_months: int,
) -> List[MonthlyTrend]:
    """
    Per calendar month averages over the lookback window, January first.

    Calendar months without any snapshot get a neutral seasonal index of 1.0.
    """
    buckets: Dict[str, _MonthBucket] = {
        month_key(add_months(as_of, -back)): _MonthBucket() for back in range(lookback_months)
    }

    for snapshot in snapshots:
        bucket = buckets.get(month_key(snapshot.snapshot_date))
        if bucket is not None:
            bucket.mrr.append(float(snapshot.total_mrr or 0))

    for customer in customers:
        created = buckets.get(month_key(customer.created_at))
        if created is not None:
            created.new_customers += 1
        if customer.churned_at is not None:
            churned = buckets.get(month_key(customer.churned_at))
            if churned is not None:
                churned.churns += 1

    by_month: Dict[int, Dict[str, List[float]]] = {m: {"mrr": [], "new": [], "churn": []} for m in range(1, 13)}
    for key, bucket in buckets.items():
        month = int(key.split("-")[1])
        if bucket.mrr:
            by_month[month]["mrr"].append(float(np.mean(bucket.mrr)))
        by_month[month]["new"].append(bucket.new_customers)
        by_month[month]["churn"].append(bucket.churns)

    trends = [
        MonthlyTrend(
            month=month,
            avg_mrr=float(np.mean(values["mrr"])) if values["mrr"] else 0.0,
            avg_new_customers=float(np.mean(values["new"])) if values["new"] else 0.0,
            avg_churn=float(np.mean(values["churn"])) if values["churn"] else 0.0,
        )
        for month, values in by_month.items()
    ]

    observed = [t.avg_mrr for t in trends if t.avg_mrr > 0]
    overall = float(np.mean(observed)) if observed else 0.0
    for trend in trends:
        trend.seasonal_index = trend.avg_mrr / overall if overall > 0 and trend.avg_mrr > 0 else 1.0
    return trends


def detect_seasonal_patterns(trends: Sequence[MonthlyTrend]) -> List[SeasonalPattern]:
    """Monthly, quarterly and annual swings of the seasonal index around 1.0."""
    patterns: List[SeasonalPattern] = []
    indices = {t.month: t.seasonal_index for t in trends}
    values = np.asarray(list(indices.values()), dtype=float)

    peaks = [calendar.month_abbr[m] for m, i in indices.items() if i > 1 + DEVIATION_THRESHOLD]
    troughs = [calendar.month_abbr[m] for m, i in indices.items() if i < 1 - DEVIATION_THRESHOLD]
    if peaks or troughs:
        amplitude = float(np.sqrt(((values - 1.0) ** 2).mean())) * 100
        patterns.append(
            SeasonalPattern(
                pattern_type="monthly",
                peak_periods=peaks,
                trough_periods=troughs,
                amplitude=amplitude,
                confidence=min(0.5 + amplitude / 50, 0.95),
                description=(
                    f"Monthly variation detected. Peak months: {', '.join(peaks) or 'None'}. "
                    f"Low months: {', '.join(troughs) or 'None'}."
                ),
            )
        )

    quarterly = {name: float(np.mean([indices[m] for m in months])) for name, months in QUARTERS.items()}
    strong = [name for name, i in quarterly.items() if i > 1 + DEVIATION_THRESHOLD]
    weak = [name for name, i in quarterly.items() if i < 1 - DEVIATION_THRESHOLD]
    if strong or weak:
        q_values = np.asarray(list(quarterly.values()))
        patterns.append(
            SeasonalPattern(
                pattern_type="quarterly",
                peak_periods=strong,
                trough_periods=weak,
                amplitude=float(np.sqrt(((q_values - 1.0) ** 2).mean())) * 100,
                confidence=0.7,
                description=(
                    f"Quarterly pattern detected. Strong quarters: {', '.join(strong) or 'None'}. "
                    f"Weak quarters: {', '.join(weak) or 'None'}."
                ),
            )
        )

    year_end = float(np.mean([indices[m] for m in YEAR_END_MONTHS]))
    mid_year = float(np.mean([indices[m] for m in MID_YEAR_MONTHS]))
    if abs(year_end - mid_year) > ANNUAL_SPLIT_THRESHOLD:
        year_end_stronger = year_end > mid_year
        patterns.append(
            SeasonalPattern(
                pattern_type="annual",
                peak_periods=["Year-end (Nov-Jan)" if year_end_stronger else "Mid-year (Jun-Aug)"],
                trough_periods=["Mid-year (Jun-Aug)" if year_end_stronger else "Year-end (Nov-Jan)"],
                amplitude=abs(year_end - mid_year) * 100,
                confidence=0.6,
                description=(
                    f"Annual pattern: {'Year-end' if year_end_stronger else 'Mid-year'} "
                    "performance is typically stronger."
                ),
            )
        )

    return patterns


def get_seasonal_insights(
    patterns: Sequence[SeasonalPattern],
    best_months: Sequence[int],
    worst_months: Sequence[int],
) -> List[str]:
    if not patterns:
        return ["No significant seasonal patterns detected in the data."]

    insights = [p.description for p in patterns if p.amplitude > INSIGHT_AMPLITUDE_THRESHOLD]
    if best_months:
        names = " and ".join(calendar.month_name[m] for m in best_months[:2])
        insights.append(f"Best months for customer acquisition: {names}. Plan campaigns accordingly.")
    if worst_months:
        names = " and ".join(calendar.month_name[m] for m in worst_months[:2])
        insights.append(f"Highest churn typically in {names}. Increase retention efforts during these periods.")
    return insights


def analyze_monthly_trends(trends: Sequence[MonthlyTrend]) -> SeasonalAnalysisResult:
    patterns = detect_seasonal_patterns(trends)
    best = [t.month for t in sorted(trends, key=lambda t: t.avg_new_customers, reverse=True)[:3]]
    worst = [t.month for t in sorted(trends, key=lambda t: t.avg_churn, reverse=True)[:3]]
    return SeasonalAnalysisResult(
        has_seasonality=bool(patterns),
        patterns=patterns,
        monthly_trends=list(trends),
        best_months_for_acquisition=best,
        worst_months_for_churn=worst,
        insights=get_seasonal_insights(patterns, best, worst),
    )


class SeasonalityService:
    """Service for seasonal revenue analysis."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def analyze_seasonality(
        self,
        lookback_months: Optional[int] = None,
        min_data_points: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> Union[SeasonalAnalysisResult, InsufficientData]:
        """
        Analyze seasonality of MRR, acquisition and churn.

        Args:
            lookback_months: Months of history scanned
            min_data_points: Minimum months with snapshot data
            as_of: Reference "now"

        Returns:
            SeasonalAnalysisResult, or InsufficientData when too few months
            have snapshots
        """
        lookback_months = lookback_months or settings.seasonal_lookback_months
        min_data_points = min_data_points or settings.seasonal_min_data_points
        as_of = as_of or datetime.utcnow()
        cutoff = add_months(as_of, -lookback_months)

        snapshots = await self.store.select(
            EconomicsSnapshot,
            EconomicsSnapshot.snapshot_date >= cutoff.date(),
            order_by=EconomicsSnapshot.snapshot_date,
        )
        window_keys = {month_key(add_months(as_of, -back)) for back in range(lookback_months)}
        data_points = len({month_key(s.snapshot_date) for s in snapshots} & window_keys)
        if data_points < min_data_points:
            logger.info("seasonality_skipped", data_points=data_points, required=min_data_points)
            return InsufficientData(
                reason=f"Insufficient historical data for seasonal analysis. Need at least {min_data_points} months.",
                sample_size=data_points,
                required=min_data_points,
            )

        customers = await self.store.select(Customer, Customer.created_at >= cutoff)
        trends = build_monthly_trends(snapshots, customers, as_of, lookback_months)
        result = analyze_monthly_trends(trends)

        logger.info(
            "seasonality_analyzed",
            data_points=data_points,
            patterns=len(result.patterns),
            has_seasonality=result.has_seasonality,
        )
        return result

    async def store_seasonal_patterns(self, result: SeasonalAnalysisResult) -> List[Pattern]:
        """Persist detected swings as ``seasonal`` patterns."""
        trends = [t.model_dump() for t in result.monthly_trends]
        rows = [
            {
                "name": f"Seasonal: {pattern.pattern_type} pattern",
                "description": pattern.description,
                "frequency": pattern.amplitude / 100,
                "confidence": pattern.confidence,
                "sample_size": len(result.monthly_trends),
                "recommended_action": (
                    "Align marketing campaigns with peak periods"
                    if pattern.pattern_type == "monthly"
                    else "Plan resource allocation around seasonal trends"
                ),
                "pattern_definition": {
                    "pattern_type": pattern.pattern_type,
                    "peak_periods": pattern.peak_periods,
                    "trough_periods": pattern.trough_periods,
                    "amplitude": pattern.amplitude,
                    "monthly_trends": trends,
                },
            }
            for pattern in result.patterns
        ]
        return await replace_patterns(self.store, PatternType.SEASONAL, rows)
