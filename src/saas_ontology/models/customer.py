"""Customer ledger models: customers, expansion events and transactions."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Uuid, Enum as SQLEnum
import enum

from saas_ontology.models.base import Base, JSONType, OrganizationScoped


class CustomerStatus(enum.Enum):
    """Lifecycle status of a customer."""

    ACTIVE = "active"
    CHURNED = "churned"
    AT_RISK = "at_risk"


class BillingInterval(enum.Enum):
    """Billing cadence of the customer's subscription."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class CompanySize(enum.Enum):
    """Company size category, ordered from smallest to largest."""

    STARTUP = "startup"
    SMB = "smb"
    MID_MARKET = "mid_market"
    ENTERPRISE = "enterprise"

    @property
    def ordinal(self) -> int:
        """1-4 ordinal used as a clustering dimension."""
        return COMPANY_SIZE_ORDINALS[self]


COMPANY_SIZE_ORDINALS = {
    CompanySize.STARTUP: 1,
    CompanySize.SMB: 2,
    CompanySize.MID_MARKET: 3,
    CompanySize.ENTERPRISE: 4,
}


def company_size_ordinal(size: Optional[CompanySize]) -> int:
    """Ordinal for a company size; unknown sizes count as SMB."""
    return size.ordinal if size is not None else COMPANY_SIZE_ORDINALS[CompanySize.SMB]


class Customer(Base, OrganizationScoped):
    """
    Unified customer record.

    Owned by the ingestion layer. The analytics engine only reads customers,
    except for segment assignment which writes ``segment_id``.
    """

    __tablename__ = "unified_customers"

    name = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    company_name = Column(String, nullable=True)
    segment_id = Column(Uuid, ForeignKey("segments.id", ondelete="SET NULL"), nullable=True, index=True)

    mrr = Column(Numeric(15, 2, asdecimal=False), nullable=False, default=0)
    ltv = Column(Numeric(15, 2, asdecimal=False), nullable=True)
    tenure_months = Column(Integer, nullable=False, default=0)
    current_tier_id = Column(Uuid, ForeignKey("pricing_tiers.id", ondelete="SET NULL"), nullable=True)
    billing_interval = Column(SQLEnum(BillingInterval), nullable=True, default=BillingInterval.MONTHLY)

    industry = Column(String, nullable=True)
    company_size = Column(SQLEnum(CompanySize), nullable=True)
    country = Column(String, nullable=True)
    employee_count = Column(Integer, nullable=True)

    status = Column(SQLEnum(CustomerStatus), nullable=False, default=CustomerStatus.ACTIVE, index=True)
    churned_at = Column(DateTime, nullable=True)
    extra_metadata = Column("metadata", JSONType, nullable=False, default=dict)

    def was_active_at(self, when: datetime) -> bool:
        """True if the customer existed at ``when`` and had not churned yet."""
        if self.created_at > when:
            return False
        if self.churned_at is not None:
            return self.churned_at > when
        return self.status != CustomerStatus.CHURNED

    def __repr__(self) -> str:
        """String representation."""
        return f"<Customer(id={self.id}, mrr={self.mrr}, status={self.status.value})>"


class ExpansionEventType(enum.Enum):
    """Kind of MRR change recorded for a customer."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    EXPANSION = "expansion"
    CONTRACTION = "contraction"


class ExpansionEvent(Base, OrganizationScoped):
    """Append-only MRR change event. ``mrr_delta`` is signed."""

    __tablename__ = "customer_expansion_events"

    customer_id = Column(Uuid, ForeignKey("unified_customers.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(SQLEnum(ExpansionEventType), nullable=False)
    from_mrr = Column(Numeric(15, 2, asdecimal=False), nullable=True)
    to_mrr = Column(Numeric(15, 2, asdecimal=False), nullable=True)
    mrr_delta = Column(Numeric(15, 2, asdecimal=False), nullable=False)
    from_tier_id = Column(Uuid, nullable=True)
    to_tier_id = Column(Uuid, nullable=True)
    reason = Column(String, nullable=True)
    occurred_at = Column(DateTime, nullable=False, index=True)

    @property
    def is_gain(self) -> bool:
        return self.event_type in (ExpansionEventType.UPGRADE, ExpansionEventType.EXPANSION)


class TransactionType(enum.Enum):
    """Kind of billed transaction."""

    SUBSCRIPTION = "subscription"
    USAGE = "usage"
    ONE_TIME = "one_time"
    REFUND = "refund"


class Transaction(Base, OrganizationScoped):
    """Billed transaction, used for RFM scoring."""

    __tablename__ = "transactions"

    customer_id = Column(Uuid, ForeignKey("unified_customers.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False, default=TransactionType.SUBSCRIPTION)
    amount = Column(Numeric(15, 2, asdecimal=False), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    occurred_at = Column(DateTime, nullable=False, index=True)
