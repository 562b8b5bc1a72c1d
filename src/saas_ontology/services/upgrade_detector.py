"""
Upgrade readiness detection.

Scans active customers for expansion signals (rapid MRR growth, tenure
milestones, usage approaching tier limits, high spend on an entry tier),
scores and ranks them, and persists the top candidates as
``expansion_ready`` patterns.
"""
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from uuid import UUID

import structlog

from saas_ontology.config import settings
from saas_ontology.models import Customer, CustomerStatus, ExpansionEvent, Pattern, PatternType, PricingTier
from saas_ontology.schemas.patterns import UpgradeAnalysisResult, UpgradeCandidate, UpgradeSignal, UpgradeSignalType
from saas_ontology.services.pattern_writer import replace_patterns
from saas_ontology.services.usage_signals import NullUsageSignalProvider, UsageSignalProvider
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import add_months
from saas_ontology.utils.numbers import round_half_up

logger = structlog.get_logger(__name__)

GROWTH_WINDOW_MONTHS = 3
RAPID_GROWTH_THRESHOLD = 0.2
TENURE_MILESTONES = (6, 12, 18, 24)
USAGE_LIMIT_THRESHOLD = 0.8
ENTRY_TIER_MAX_POSITION = 2
HIGH_MRR_THRESHOLD = 500
HIGH_SCORE_THRESHOLD = 80

_ACTION_BY_SIGNAL = [
    (UpgradeSignalType.USAGE_LIMIT_APPROACHING, "Schedule call to discuss tier upgrade before limits are hit"),
    (UpgradeSignalType.RAPID_GROWTH, "Proactive outreach to discuss scaling needs and premium features"),
    (UpgradeSignalType.TENURE_MILESTONE, "Send anniversary message with upgrade incentive offer"),
    (UpgradeSignalType.FEATURE_EXPLORATION, "Demo advanced features and discuss value proposition"),
]


def upgrade_score(signals: Sequence[UpgradeSignal]) -> int:
    """``round(avg confidence x 70 + min(signal count x 10, 30))``."""
    if not signals:
        return 0
    avg_confidence = sum(s.confidence for s in signals) / len(signals)
    return round_half_up(avg_confidence * 70 + min(len(signals) * 10, 30))


def recommended_upgrade_action(signals: Sequence[UpgradeSignal]) -> str:
    present = {s.signal_type for s in signals}
    for signal_type, action in _ACTION_BY_SIGNAL:
        if signal_type in present:
            return action
    return "Review account and identify upgrade opportunity"


def next_tier(current: Optional[PricingTier], tiers: Sequence[PricingTier]) -> Optional[PricingTier]:
    """Cheapest tier above ``current``; the entry tier for customers without one."""
    ordered = sorted(tiers, key=lambda t: t.position)
    if current is None:
        return ordered[0] if ordered else None
    return next((t for t in ordered if t.position > current.position), None)


def potential_mrr_increase(mrr: float, current: Optional[PricingTier], tiers: Sequence[PricingTier]) -> float:
    """Next tier price minus current MRR, or half the current MRR on the top tier."""
    target = next_tier(current, tiers)
    increase = float(target.price_monthly or 0) - mrr if target is not None else mrr * 0.5
    return max(0.0, increase)


def detect_upgrade_signals(
    customer: Customer,
    growth: float,
    tier: Optional[PricingTier],
    tier_count: int,
    usage_ratio: Optional[float],
    now: datetime,
) -> List[UpgradeSignal]:
    """
    All upgrade signals of one customer, before confidence filtering.

    Args:
        customer: Active customer
        growth: Net MRR delta over the growth window
        tier: The customer's current tier, if known
        tier_count: Number of tiers in the price list
        usage_ratio: Usage relative to tier limits from telemetry, if known
        now: Detection timestamp
    """
    signals: List[UpgradeSignal] = []
    mrr = float(customer.mrr or 0)
    tenure = customer.tenure_months or 0

    growth_rate = growth / mrr if mrr > 0 else 0.0
    if growth_rate >= RAPID_GROWTH_THRESHOLD:
        signals.append(
            UpgradeSignal(
                customer_id=customer.id,
                signal_type=UpgradeSignalType.RAPID_GROWTH,
                confidence=min(growth_rate, 0.95),
                details=f"MRR grew by {growth_rate * 100:.0f}% in the last {GROWTH_WINDOW_MONTHS} months",
                detected_at=now,
            )
        )

    for milestone in TENURE_MILESTONES:
        if milestone <= tenure < milestone + 2:
            signals.append(
                UpgradeSignal(
                    customer_id=customer.id,
                    signal_type=UpgradeSignalType.TENURE_MILESTONE,
                    confidence=0.6,
                    details=f"{milestone}-month tenure milestone reached",
                    detected_at=now,
                )
            )
            break

    if tier is not None and tier.value_metric_limits and usage_ratio is not None and usage_ratio > USAGE_LIMIT_THRESHOLD:
        signals.append(
            UpgradeSignal(
                customer_id=customer.id,
                signal_type=UpgradeSignalType.USAGE_LIMIT_APPROACHING,
                confidence=min(usage_ratio, 1.0),
                details=f"Approaching {usage_ratio * 100:.0f}% of tier limits",
                detected_at=now,
            )
        )

    if tier is not None and tier_count > 1 and tier.position <= ENTRY_TIER_MAX_POSITION and mrr >= HIGH_MRR_THRESHOLD:
        signals.append(
            UpgradeSignal(
                customer_id=customer.id,
                signal_type=UpgradeSignalType.FEATURE_EXPLORATION,
                confidence=0.7,
                details=f"High-value customer (€{mrr:.0f}/mo) on entry-level tier",
                detected_at=now,
            )
        )

    return signals


def get_upgrade_insights(
    candidates: Sequence[UpgradeCandidate],
    signal_distribution: Dict[str, int],
    total_potential_mrr: float,
) -> List[str]:
    insights = []
    if candidates:
        insights.append(
            f"{len(candidates)} customers identified as upgrade candidates with "
            f"€{total_potential_mrr:.0f} potential MRR increase."
        )

    if signal_distribution:
        signal_type, count = max(signal_distribution.items(), key=lambda item: item[1])
        insights.append(f'Most common signal: "{signal_type.replace("_", " ")}" detected in {count} customers.')

    high_score = [c for c in candidates if c.overall_score >= HIGH_SCORE_THRESHOLD]
    if high_score:
        insights.append(
            f"{len(high_score)} high-confidence candidates (score >= {HIGH_SCORE_THRESHOLD}) should be prioritized."
        )
    return insights


class UpgradeDetector:
    """Service for finding customers ready to upgrade."""

    def __init__(self, store: AnalyticsStore, usage: Optional[UsageSignalProvider] = None):
        self.store = store
        self.usage = usage or NullUsageSignalProvider()

    async def detect_upgrade_candidates(
        self,
        min_confidence: Optional[float] = None,
        max_candidates: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> UpgradeAnalysisResult:
        """
        Detect active customers ready for an upgrade.

        Args:
            min_confidence: Signals below this confidence are ignored
            max_candidates: Maximum candidates returned
            as_of: Reference "now"

        Returns:
            UpgradeAnalysisResult with candidates ranked by score
        """
        min_confidence = settings.upgrade_min_confidence if min_confidence is None else min_confidence
        max_candidates = max_candidates or settings.upgrade_max_candidates
        as_of = as_of or datetime.utcnow()

        customers = await self.store.select(Customer, Customer.status == CustomerStatus.ACTIVE)
        if not customers:
            return UpgradeAnalysisResult()

        tiers = await self.store.select(PricingTier, order_by=PricingTier.position)
        tier_by_id = {t.id: t for t in tiers}
        events = await self.store.select(
            ExpansionEvent, ExpansionEvent.occurred_at >= add_months(as_of, -GROWTH_WINDOW_MONTHS)
        )

        growth: Dict[UUID, float] = {}
        for event in events:
            growth[event.customer_id] = growth.get(event.customer_id, 0.0) + float(event.mrr_delta or 0)

        candidates: List[UpgradeCandidate] = []
        for customer in customers:
            tier = tier_by_id.get(customer.current_tier_id) if customer.current_tier_id else None
            usage_ratio = await self.usage.usage_limit_ratio(customer, tier)
            signals = detect_upgrade_signals(
                customer, growth.get(customer.id, 0.0), tier, len(tiers), usage_ratio, as_of
            )
            qualifying = [s for s in signals if s.confidence >= min_confidence]
            if not qualifying:
                continue

            mrr = float(customer.mrr or 0)
            action = recommended_upgrade_action(qualifying)
            candidates.append(
                UpgradeCandidate(
                    customer_id=customer.id,
                    customer_name=customer.name or "Unknown",
                    current_tier=tier.name if tier is not None else "Unknown",
                    current_mrr=mrr,
                    signals=qualifying,
                    overall_score=upgrade_score(qualifying),
                    recommended_action=action,
                    potential_mrr_increase=potential_mrr_increase(mrr, tier, tiers),
                )
            )

        candidates.sort(key=lambda c: c.overall_score, reverse=True)
        candidates = candidates[:max_candidates]

        total_potential = sum(c.potential_mrr_increase for c in candidates)
        distribution = dict(Counter(s.signal_type.value for c in candidates for s in c.signals))

        logger.info(
            "upgrade_candidates_detected",
            candidates=len(candidates),
            total_potential_mrr=round(total_potential, 2),
        )
        return UpgradeAnalysisResult(
            candidates=candidates,
            total_potential_mrr=total_potential,
            signal_distribution=distribution,
            insights=get_upgrade_insights(candidates, distribution, total_potential),
        )

    async def store_upgrade_patterns(self, result: UpgradeAnalysisResult) -> List[Pattern]:
        """Persist candidates as ``expansion_ready`` patterns."""
        rows = [
            {
                "name": f"Upgrade candidate: {candidate.customer_name}",
                "description": candidate.recommended_action,
                "frequency": candidate.overall_score / 100,
                "confidence": candidate.overall_score / 100,
                "sample_size": len(candidate.signals),
                "recommended_action": candidate.recommended_action,
                "pattern_definition": {
                    "customer_id": str(candidate.customer_id),
                    "signals": [
                        {"type": s.signal_type.value, "confidence": s.confidence, "details": s.details}
                        for s in candidate.signals
                    ],
                    "potential_mrr_increase": candidate.potential_mrr_increase,
                },
            }
            for candidate in result.candidates
        ]
        return await replace_patterns(self.store, PatternType.EXPANSION_READY, rows)
