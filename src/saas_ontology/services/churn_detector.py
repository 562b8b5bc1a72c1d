"""
Churn risk detection.

Scans active customers for churn signals, scores each customer's risk from
the severity, count and confidence of its signals, and persists the
high-risk ones as ``churn_signal`` patterns.
"""
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from uuid import UUID

import structlog

from saas_ontology.config import settings
from saas_ontology.models import (
    BillingInterval,
    Customer,
    CustomerStatus,
    ExpansionEvent,
    ExpansionEventType,
    Pattern,
    PatternType,
    Segment,
)
from saas_ontology.schemas.patterns import (
    AtRiskCustomer,
    ChurnRiskResult,
    ChurnSignal,
    ChurnSignalType,
    SegmentRisk,
    Severity,
)
from saas_ontology.services.pattern_writer import replace_patterns
from saas_ontology.services.usage_signals import NullUsageSignalProvider, UsageSignalProvider
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import DAYS_PER_MONTH, add_months
from saas_ontology.utils.numbers import round_half_up

logger = structlog.get_logger(__name__)

CONTRACTION_WINDOW_MONTHS = 3
USAGE_DECLINE_THRESHOLD = 0.7
STORED_RISK_THRESHOLD = 50
CRITICAL_RISK_THRESHOLD = 70

SEVERITY_WEIGHTS = {
    Severity.LOW: 15,
    Severity.MEDIUM: 30,
    Severity.HIGH: 50,
    Severity.CRITICAL: 75,
}

# Expected days until churn for the most severe signal present
DAYS_BY_SEVERITY = [
    (Severity.CRITICAL, 30),
    (Severity.HIGH, 60),
    (Severity.MEDIUM, 90),
]


def risk_score(signals: Sequence[ChurnSignal]) -> int:
    """
    Risk score in [0, 100].

    ``(max severity weight + min((n - 1) x 8, 25)) x avg confidence``, rounded.
    """
    if not signals:
        return 0
    max_weight = max(SEVERITY_WEIGHTS[s.severity] for s in signals)
    count_bonus = min((len(signals) - 1) * 8, 25)
    avg_confidence = sum(s.confidence for s in signals) / len(signals)
    return min(round_half_up((max_weight + count_bonus) * avg_confidence), 100)


def recommended_churn_action(signals: Sequence[ChurnSignal]) -> str:
    present = {s.signal_type for s in signals}
    if any(s.severity == Severity.CRITICAL for s in signals):
        if ChurnSignalType.CONTRACT_ENDING in present:
            return "URGENT: Schedule executive-level renewal call immediately"
        return "URGENT: Immediate intervention required, assign success manager"
    if ChurnSignalType.USAGE_DECLINE in present:
        return "Schedule check-in call to understand usage drop and re-engage"
    if ChurnSignalType.DOWNGRADE_RECENT in present:
        return "Review downgrade reasons and offer tailored retention incentive"
    if ChurnSignalType.PAYMENT_ISSUES in present:
        return "Reach out about payment concerns, offer payment plan if needed"
    if ChurnSignalType.ENGAGEMENT_DROP in present:
        return "Trigger re-engagement campaign with product highlights"
    return "Monitor closely and prepare proactive outreach"


def estimate_days_until_churn(signals: Sequence[ChurnSignal]) -> Optional[int]:
    """Renewal date when a contract is ending, otherwise a guess from the worst severity."""
    for signal in signals:
        if signal.signal_type == ChurnSignalType.CONTRACT_ENDING and signal.months_to_renewal is not None:
            return signal.months_to_renewal * DAYS_PER_MONTH

    severities = {s.severity for s in signals}
    for severity, days in DAYS_BY_SEVERITY:
        if severity in severities:
            return days
    return None


def detect_churn_signals(
    customer: Customer,
    contraction: float,
    decline_ratio: Optional[float],
    now: datetime,
) -> List[ChurnSignal]:
    """
    All churn signals of one customer.

    Args:
        customer: Active customer
        contraction: Absolute MRR lost to downgrades/contractions in the window
        decline_ratio: Usage decline from telemetry, if known
        now: Detection timestamp
    """
    signals: List[ChurnSignal] = []
    mrr = float(customer.mrr or 0)
    tenure = customer.tenure_months or 0

    if contraction > 0:
        fraction = contraction / (mrr + contraction) if mrr > 0 else 0.0
        severity = Severity.HIGH if fraction > 0.5 else Severity.MEDIUM if fraction > 0.25 else Severity.LOW
        signals.append(
            ChurnSignal(
                customer_id=customer.id,
                signal_type=ChurnSignalType.DOWNGRADE_RECENT,
                severity=severity,
                confidence=min(0.3 + fraction, 0.9),
                details=f"MRR decreased by €{contraction:.0f} ({fraction * 100:.0f}%) recently",
                detected_at=now,
            )
        )

    if tenure <= 3:
        signals.append(
            ChurnSignal(
                customer_id=customer.id,
                signal_type=ChurnSignalType.ENGAGEMENT_DROP,
                severity=Severity.HIGH if tenure <= 1 else Severity.MEDIUM,
                confidence=0.6,
                details=f"New customer in onboarding period ({tenure} months)",
                detected_at=now,
            )
        )

    if customer.billing_interval == BillingInterval.ANNUAL:
        months_to_renewal = 12 - (tenure % 12)
        if months_to_renewal <= 2:
            signals.append(
                ChurnSignal(
                    customer_id=customer.id,
                    signal_type=ChurnSignalType.CONTRACT_ENDING,
                    severity=Severity.CRITICAL if months_to_renewal <= 1 else Severity.HIGH,
                    confidence=0.8,
                    details=f"Annual contract renews in {months_to_renewal} month(s)",
                    detected_at=now,
                    months_to_renewal=months_to_renewal,
                )
            )

    if decline_ratio is not None and decline_ratio > USAGE_DECLINE_THRESHOLD:
        severity = Severity.CRITICAL if decline_ratio > 0.9 else Severity.HIGH if decline_ratio > 0.8 else Severity.MEDIUM
        signals.append(
            ChurnSignal(
                customer_id=customer.id,
                signal_type=ChurnSignalType.USAGE_DECLINE,
                severity=severity,
                confidence=min(decline_ratio, 1.0),
                details=f"Usage dropped {decline_ratio * 100:.0f}% vs. average",
                detected_at=now,
            )
        )

    if tenure > 12 and mrr < 100:
        signals.append(
            ChurnSignal(
                customer_id=customer.id,
                signal_type=ChurnSignalType.ENGAGEMENT_DROP,
                severity=Severity.MEDIUM,
                confidence=0.5,
                details="Long-term customer on minimal plan, may not see value",
                detected_at=now,
            )
        )

    return signals


def get_churn_insights(
    at_risk: Sequence[AtRiskCustomer],
    signal_distribution: Dict[str, int],
    total_mrr_at_risk: float,
    risk_by_segment: Dict[str, SegmentRisk],
) -> List[str]:
    insights = []
    if at_risk:
        insights.append(f"{len(at_risk)} customers at risk representing €{total_mrr_at_risk:.0f}/mo MRR.")

    critical = sum(1 for c in at_risk if c.risk_score >= CRITICAL_RISK_THRESHOLD)
    if critical:
        insights.append(
            f"{critical} customers require immediate intervention (risk score >= {CRITICAL_RISK_THRESHOLD})."
        )

    if signal_distribution:
        signal_type, count = max(signal_distribution.items(), key=lambda item: item[1])
        insights.append(f'Primary risk indicator: "{signal_type.replace("_", " ")}" affecting {count} customers.')

    if risk_by_segment:
        segment, risk = max(risk_by_segment.items(), key=lambda item: item[1].mrr_at_risk)
        insights.append(
            f"{segment} segment has highest risk: {risk.count} customers, €{risk.mrr_at_risk:.0f}/mo at stake."
        )
    return insights


class ChurnDetector:
    """Service for finding customers at risk of churning."""

    def __init__(self, store: AnalyticsStore, usage: Optional[UsageSignalProvider] = None):
        self.store = store
        self.usage = usage or NullUsageSignalProvider()

    async def detect_churn_risk(
        self,
        min_risk_score: Optional[int] = None,
        max_results: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> ChurnRiskResult:
        """
        Detect active customers at risk of churning.

        Args:
            min_risk_score: Customers scoring below this are not reported
            max_results: Maximum customers returned
            as_of: Reference "now"

        Returns:
            ChurnRiskResult ranked by risk score
        """
        min_risk_score = settings.churn_min_risk_score if min_risk_score is None else min_risk_score
        max_results = max_results or settings.churn_max_results
        as_of = as_of or datetime.utcnow()

        customers = await self.store.select(Customer, Customer.status == CustomerStatus.ACTIVE)
        if not customers:
            return ChurnRiskResult()

        segments = await self.store.select(Segment)
        segment_names = {s.id: s.name for s in segments}
        events = await self.store.select(
            ExpansionEvent,
            ExpansionEvent.event_type.in_([ExpansionEventType.DOWNGRADE, ExpansionEventType.CONTRACTION]),
            ExpansionEvent.occurred_at >= add_months(as_of, -CONTRACTION_WINDOW_MONTHS),
        )

        contractions: Dict[UUID, float] = {}
        for event in events:
            contractions[event.customer_id] = contractions.get(event.customer_id, 0.0) + abs(float(event.mrr_delta or 0))

        at_risk: List[AtRiskCustomer] = []
        for customer in customers:
            decline = await self.usage.usage_decline_ratio(customer)
            signals = detect_churn_signals(customer, contractions.get(customer.id, 0.0), decline, as_of)
            if not signals:
                continue

            score = risk_score(signals)
            if score < min_risk_score:
                continue

            at_risk.append(
                AtRiskCustomer(
                    customer_id=customer.id,
                    customer_name=customer.name or "Unknown",
                    current_mrr=float(customer.mrr or 0),
                    tenure=customer.tenure_months or 0,
                    segment=segment_names.get(customer.segment_id, "Unknown") if customer.segment_id else "Unknown",
                    signals=signals,
                    risk_score=score,
                    recommended_action=recommended_churn_action(signals),
                    days_until_likely=estimate_days_until_churn(signals),
                )
            )

        at_risk.sort(key=lambda c: c.risk_score, reverse=True)
        at_risk = at_risk[:max_results]

        total_mrr_at_risk = sum(c.current_mrr for c in at_risk)
        distribution = dict(Counter(s.signal_type.value for c in at_risk for s in c.signals))
        by_segment: Dict[str, SegmentRisk] = {}
        for customer in at_risk:
            entry = by_segment.setdefault(customer.segment, SegmentRisk())
            entry.count += 1
            entry.mrr_at_risk += customer.current_mrr

        logger.info(
            "churn_risk_detected",
            at_risk=len(at_risk),
            total_mrr_at_risk=round(total_mrr_at_risk, 2),
        )
        return ChurnRiskResult(
            at_risk_customers=at_risk,
            total_mrr_at_risk=total_mrr_at_risk,
            signal_distribution=distribution,
            risk_by_segment=by_segment,
            insights=get_churn_insights(at_risk, distribution, total_mrr_at_risk, by_segment),
        )

    async def store_churn_patterns(self, result: ChurnRiskResult) -> List[Pattern]:
        """Persist customers with risk >= 50 as ``churn_signal`` patterns."""
        rows = [
            {
                "name": f"Churn risk: {customer.customer_name}",
                "description": customer.recommended_action,
                "frequency": customer.risk_score / 100,
                "confidence": customer.risk_score / 100,
                "sample_size": len(customer.signals),
                "recommended_action": customer.recommended_action,
                "pattern_definition": {
                    "customer_id": str(customer.customer_id),
                    "signals": [
                        {
                            "type": s.signal_type.value,
                            "severity": s.severity.value,
                            "confidence": s.confidence,
                            "details": s.details,
                        }
                        for s in customer.signals
                    ],
                    "days_until_likely": customer.days_until_likely,
                    "mrr_at_risk": customer.current_mrr,
                },
            }
            for customer in result.at_risk_customers
            if customer.risk_score >= STORED_RISK_THRESHOLD
        ]
        return await replace_patterns(self.store, PatternType.CHURN_SIGNAL, rows)
