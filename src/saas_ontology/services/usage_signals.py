"""
Usage telemetry inputs for pattern detection.

The customer ledger carries no product usage data. Detectors that need it ask a
``UsageSignalProvider``; the default provider knows nothing, so usage-based
signals stay silent until a real telemetry source is plugged in.
"""
from typing import Dict, Optional, Protocol
from uuid import UUID

from saas_ontology.models import Customer, PricingTier


class UsageSignalProvider(Protocol):
    """Source of per-customer usage ratios."""

    async def usage_limit_ratio(self, customer: Customer, tier: Optional[PricingTier]) -> Optional[float]:
        """Current usage divided by the tier's limit, or None when unknown."""
        ...

    async def usage_decline_ratio(self, customer: Customer) -> Optional[float]:
        """0-1 decline of recent usage against the customer's average, or None when unknown."""
        ...


class NullUsageSignalProvider:
    """Provider used when no telemetry is connected."""

    async def usage_limit_ratio(self, customer: Customer, tier: Optional[PricingTier]) -> Optional[float]:
        return None

    async def usage_decline_ratio(self, customer: Customer) -> Optional[float]:
        return None


class StaticUsageSignalProvider:
    """Provider backed by precomputed ratios, keyed by customer id."""

    def __init__(
        self,
        limit_ratios: Optional[Dict[UUID, float]] = None,
        decline_ratios: Optional[Dict[UUID, float]] = None,
    ):
        self.limit_ratios = limit_ratios or {}
        self.decline_ratios = decline_ratios or {}

    async def usage_limit_ratio(self, customer: Customer, tier: Optional[PricingTier]) -> Optional[float]:
        return self.limit_ratios.get(customer.id)

    async def usage_decline_ratio(self, customer: Customer) -> Optional[float]:
        return self.decline_ratios.get(customer.id)
