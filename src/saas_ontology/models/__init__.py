"""SQLAlchemy ORM models for the analytics engine."""
# Import all models here so they are registered on the metadata

from saas_ontology.models.base import Base
from saas_ontology.models.customer import (
    BillingInterval,
    CompanySize,
    Customer,
    CustomerStatus,
    ExpansionEvent,
    ExpansionEventType,
    Transaction,
    TransactionType,
    company_size_ordinal,
)
from saas_ontology.models.pricing_tier import PricingTier
from saas_ontology.models.segment import Segment
from saas_ontology.models.pattern import Pattern, PatternType
from saas_ontology.models.analytics import (
    AnalyticsRun,
    CohortRetention,
    CustomerHealthScore,
    CustomerRfmScore,
    EconomicsSnapshot,
    RunStatus,
    ValueMetricCorrelation,
)

__all__ = [
    "Base",
    "BillingInterval",
    "CompanySize",
    "Customer",
    "CustomerStatus",
    "ExpansionEvent",
    "ExpansionEventType",
    "Transaction",
    "TransactionType",
    "company_size_ordinal",
    "PricingTier",
    "Segment",
    "Pattern",
    "PatternType",
    "AnalyticsRun",
    "CohortRetention",
    "CustomerHealthScore",
    "CustomerRfmScore",
    "EconomicsSnapshot",
    "RunStatus",
    "ValueMetricCorrelation",
]
