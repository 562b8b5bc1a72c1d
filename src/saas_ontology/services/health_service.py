"""
Customer health scoring.

Usage, engagement and financial sub-scores start at 50 and move by fixed
points for MRR bracket, tenure bracket and recent expansion or contraction.
The composite is weighted 35/35/30. Scores are stored per day; the trend
compares today's score with yesterday's.
"""
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog

from saas_ontology.config import settings
from saas_ontology.metrics import analytics_customers_scored
from saas_ontology.models import Customer, CustomerHealthScore, CustomerStatus, ExpansionEvent, Segment
from saas_ontology.schemas.health import (
    HealthDistribution,
    HealthInputs,
    HealthScore,
    HealthScoreAnalysisResult,
    HealthTrend,
    TrendBreakdown,
)
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import add_months
from saas_ontology.utils.numbers import round_half_up

logger = structlog.get_logger(__name__)

RECENT_WINDOW_MONTHS = 3
TREND_THRESHOLD = 5
HEALTHY_THRESHOLD = 70
CRITICAL_THRESHOLD = 40
SIGNAL_PROBABILITY_THRESHOLD = 0.5


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def usage_score(data: HealthInputs) -> int:
    score = 50
    if data.mrr >= 1000:
        score += 15
    elif data.mrr >= 500:
        score += 10
    elif data.mrr >= 100:
        score += 5

    if data.tenure >= 24:
        score += 15
    elif data.tenure >= 12:
        score += 10
    elif data.tenure >= 6:
        score += 5

    if data.recent_expansion > 0:
        score += 10
    if data.recent_contraction > 0:
        score -= 15
    return int(_clamp(score, 0, 100))


def engagement_score(data: HealthInputs) -> int:
    score = 50
    if data.tenure >= 12:
        score += 20
    elif data.tenure >= 6:
        score += 10
    elif data.tenure < 2:
        # Still onboarding
        score -= 10

    if data.recent_expansion > 0:
        score += 15
    if data.recent_contraction > 0:
        score -= 20
    return int(_clamp(score, 0, 100))


def financial_score(data: HealthInputs) -> int:
    score = 50
    if data.mrr >= 5000:
        score += 25
    elif data.mrr >= 1000:
        score += 15
    elif data.mrr >= 500:
        score += 10
    elif data.mrr < 100:
        score -= 10

    net_change = data.recent_expansion - data.recent_contraction
    growth_rate = net_change / data.mrr if data.mrr > 0 else 0.0
    if growth_rate > 0.1:
        score += 15
    elif growth_rate > 0:
        score += 5
    elif growth_rate < -0.1:
        score -= 15
    elif growth_rate < 0:
        score -= 5
    return int(_clamp(score, 0, 100))


def health_trend(previous: Optional[int], current: int) -> Tuple[HealthTrend, int]:
    """``(trend, velocity)``; stable with velocity 0 when there is no previous score."""
    if previous is None:
        return HealthTrend.STABLE, 0
    delta = current - previous
    if delta > TREND_THRESHOLD:
        return HealthTrend.IMPROVING, delta
    if delta < -TREND_THRESHOLD:
        return HealthTrend.DECLINING, delta
    return HealthTrend.STABLE, delta


def upgrade_readiness(data: HealthInputs, health: int) -> float:
    readiness = 0.0
    if health >= 70:
        readiness += 0.3
    elif health >= 50:
        readiness += 0.1
    if data.recent_expansion > 0:
        readiness += 0.2
    if data.tenure >= 6:
        readiness += 0.2
    if data.mrr >= 500:
        readiness += 0.1
    return round(_clamp(readiness, 0, 1), 4)


def churn_risk(data: HealthInputs, health: int) -> float:
    risk = 0.0
    if health < 40:
        risk += 0.4
    elif health < 60:
        risk += 0.2
    if data.recent_contraction > 0:
        risk += 0.3
    if data.tenure < 3:
        risk += 0.15
    if data.mrr < 50:
        risk += 0.1
    return round(_clamp(risk, 0, 1), 4)


def expansion_potential(data: HealthInputs, health: int) -> float:
    potential = 0.0
    if health >= 70:
        potential += 0.3
    elif health >= 50:
        potential += 0.15
    if data.recent_expansion > 0:
        potential += 0.2
    if 6 <= data.tenure <= 18:
        potential += 0.2
    if data.mrr < 500:
        potential += 0.1
    return round(_clamp(potential, 0, 1), 4)


def detect_health_patterns(data: HealthInputs, health: int, risk: float, readiness: float) -> List[str]:
    patterns = []
    if risk >= SIGNAL_PROBABILITY_THRESHOLD:
        patterns.append("churn_signal")
    if readiness >= SIGNAL_PROBABILITY_THRESHOLD:
        patterns.append("expansion_ready")
    if data.tenure <= 3 and health < 50:
        patterns.append("onboarding_risk")
    if data.recent_contraction > 0:
        patterns.append("downgrade_recent")
    if health >= 80 and data.tenure >= 12:
        patterns.append("champion_customer")
    return patterns


def score_customer(data: HealthInputs, score_date: date) -> HealthScore:
    """Health score of one customer on ``score_date``."""
    usage = usage_score(data)
    engagement = engagement_score(data)
    financial = financial_score(data)
    health = int(_clamp(round_half_up(usage * 0.35 + engagement * 0.35 + financial * 0.30), 0, 100))

    trend, velocity = health_trend(data.previous_health_score, health)
    readiness = upgrade_readiness(data, health)
    risk = churn_risk(data, health)

    return HealthScore(
        customer_id=data.customer_id,
        score_date=score_date,
        usage_score=usage,
        engagement_score=engagement,
        financial_score=financial,
        health_score=health,
        trend=trend,
        trend_velocity=velocity,
        upgrade_readiness=readiness,
        churn_risk=risk,
        expansion_potential=expansion_potential(data, health),
        detected_patterns=detect_health_patterns(data, health, risk, readiness),
    )


def health_distribution(scores: Sequence[HealthScore]) -> HealthDistribution:
    return HealthDistribution(
        healthy=sum(1 for s in scores if s.health_score >= HEALTHY_THRESHOLD),
        at_risk=sum(1 for s in scores if CRITICAL_THRESHOLD <= s.health_score < HEALTHY_THRESHOLD),
        critical=sum(1 for s in scores if s.health_score < CRITICAL_THRESHOLD),
    )


def trend_breakdown(scores: Sequence[HealthScore]) -> TrendBreakdown:
    return TrendBreakdown(
        improving=sum(1 for s in scores if s.trend == HealthTrend.IMPROVING),
        stable=sum(1 for s in scores if s.trend == HealthTrend.STABLE),
        declining=sum(1 for s in scores if s.trend == HealthTrend.DECLINING),
    )


def get_health_insights(
    scores: Sequence[HealthScore],
    distribution: HealthDistribution,
    trends: TrendBreakdown,
    avg_health_score: float,
) -> List[str]:
    if not scores:
        return ["No active customers to analyze."]

    insights = [
        f"{distribution.healthy} customers ({distribution.healthy / len(scores) * 100:.0f}%) are healthy. "
        f"Average health score: {avg_health_score:.0f}/100."
    ]
    if distribution.critical:
        insights.append(
            f"{distribution.critical} customers in critical health (score < {CRITICAL_THRESHOLD}). "
            "Immediate intervention recommended."
        )

    if trends.declining > trends.improving:
        insights.append(f"Concerning trend: {trends.declining} customers declining vs {trends.improving} improving.")
    elif trends.improving > trends.declining:
        insights.append(f"Positive momentum: {trends.improving} customers improving vs {trends.declining} declining.")

    high_risk = sum(1 for s in scores if s.churn_risk >= SIGNAL_PROBABILITY_THRESHOLD)
    if high_risk:
        insights.append(f"{high_risk} customers flagged as high churn risk (probability >= 50%).")

    ready = sum(1 for s in scores if s.upgrade_readiness >= SIGNAL_PROBABILITY_THRESHOLD)
    if ready:
        insights.append(f"{ready} customers show high upgrade readiness, prime candidates for expansion.")
    return insights


class HealthService:
    """Service for calculating and storing customer health scores."""

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def calculate_health_scores(self, as_of: Optional[datetime] = None) -> HealthScoreAnalysisResult:
        """
        Score every active customer for the day of ``as_of``.

        Args:
            as_of: Reference "now"

        Returns:
            HealthScoreAnalysisResult with per-customer scores and population summary
        """
        as_of = as_of or datetime.utcnow()
        score_date = as_of.date()

        customers = await self.store.select(Customer, Customer.status == CustomerStatus.ACTIVE)
        if not customers:
            return HealthScoreAnalysisResult(insights=["No active customers to analyze."])

        events = await self.store.select(
            ExpansionEvent, ExpansionEvent.occurred_at >= add_months(as_of, -RECENT_WINDOW_MONTHS)
        )
        previous = await self.store.select(
            CustomerHealthScore, CustomerHealthScore.score_date == score_date - timedelta(days=1)
        )
        segments = await self.store.select(Segment)

        movement: Dict[UUID, Dict[str, float]] = {}
        for event in events:
            entry = movement.setdefault(event.customer_id, {"expansion": 0.0, "contraction": 0.0})
            delta = float(event.mrr_delta or 0)
            if delta > 0:
                entry["expansion"] += delta
            else:
                entry["contraction"] += abs(delta)

        previous_scores = {row.customer_id: row.health_score for row in previous}
        segment_names = {s.id: s.name for s in segments}

        scores = []
        for customer in customers:
            entry = movement.get(customer.id, {"expansion": 0.0, "contraction": 0.0})
            inputs = HealthInputs(
                customer_id=customer.id,
                mrr=float(customer.mrr or 0),
                tenure=customer.tenure_months or 0,
                segment=segment_names.get(customer.segment_id) if customer.segment_id else None,
                recent_expansion=entry["expansion"],
                recent_contraction=entry["contraction"],
                previous_health_score=previous_scores.get(customer.id),
            )
            scores.append(score_customer(inputs, score_date))

        distribution = health_distribution(scores)
        trends = trend_breakdown(scores)
        avg = sum(s.health_score for s in scores) / len(scores)

        analytics_customers_scored.set(len(scores))
        logger.info(
            "health_scores_calculated",
            customers=len(scores),
            avg_health_score=round(avg, 1),
            critical=distribution.critical,
        )
        return HealthScoreAnalysisResult(
            scores=scores,
            distribution=distribution,
            avg_health_score=avg,
            trend_breakdown=trends,
            insights=get_health_insights(scores, distribution, trends, avg),
        )

    async def store_health_scores(self, scores: Sequence[HealthScore]) -> int:
        """Upsert scores by customer and day; returns the number of rows written."""
        if not scores:
            return 0

        rows = [
            {
                "customer_id": s.customer_id,
                "score_date": s.score_date,
                "usage_score": s.usage_score,
                "engagement_score": s.engagement_score,
                "financial_score": s.financial_score,
                "health_score": s.health_score,
                "health_trend": s.trend.value,
                "trend_velocity": s.trend_velocity,
                "upgrade_readiness": s.upgrade_readiness,
                "churn_risk": s.churn_risk,
                "expansion_potential": s.expansion_potential,
                "detected_patterns": s.detected_patterns,
            }
            for s in scores
        ]
        written = await self.store.upsert(
            CustomerHealthScore,
            rows,
            conflict_keys=("customer_id", "score_date"),
            batch_size=settings.health_batch_size,
        )
        logger.info("health_scores_stored", written=len(written))
        return len(written)
