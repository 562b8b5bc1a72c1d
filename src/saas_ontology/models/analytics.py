"""
Computed analytics result tables.

Each table is rewritten by the analytics pipeline from the current customer
ledger; none of them is a source of truth.
"""
from datetime import datetime
import enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    Enum as SQLEnum,
)

from saas_ontology.models.base import Base, JSONType, OrganizationScoped


class CohortRetention(Base, OrganizationScoped):
    """Retention of one acquisition cohort at one month offset."""

    __tablename__ = "cohort_retention_data"

    cohort_month = Column(Date, nullable=False)
    month_offset = Column(Integer, nullable=False)
    cohort_size = Column(Integer, nullable=False)
    retained_customers = Column(Integer, nullable=False)
    retention_rate = Column(Float, nullable=False)
    starting_mrr = Column(Numeric(15, 2, asdecimal=False), nullable=False)
    retained_mrr = Column(Numeric(15, 2, asdecimal=False), nullable=False)
    revenue_retention_rate = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "cohort_month", "month_offset", name="uq_cohort_retention_month_offset"),
    )


class CustomerRfmScore(Base, OrganizationScoped):
    """Latest RFM score of a customer."""

    __tablename__ = "customer_rfm_scores"

    customer_id = Column(Uuid, ForeignKey("unified_customers.id", ondelete="CASCADE"), nullable=False)
    recency_days = Column(Integer, nullable=False)
    frequency_count = Column(Integer, nullable=False)
    monetary_value = Column(Numeric(15, 2, asdecimal=False), nullable=False)
    recency_score = Column(Integer, nullable=False)
    frequency_score = Column(Integer, nullable=False)
    monetary_score = Column(Integer, nullable=False)
    rfm_score = Column(Integer, nullable=False)
    rfm_segment = Column(String, nullable=False)
    calculated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("organization_id", "customer_id", name="uq_rfm_customer"),)


class ValueMetricCorrelation(Base, OrganizationScoped):
    """Correlation of one usage metric with retention, expansion and churn."""

    __tablename__ = "value_metric_correlations"

    metric_name = Column(String, nullable=False)
    retention_correlation = Column(Float, nullable=False)
    expansion_correlation = Column(Float, nullable=False)
    churn_correlation = Column(Float, nullable=False)
    retention_p_value = Column(Float, nullable=False)
    expansion_p_value = Column(Float, nullable=False)
    churn_p_value = Column(Float, nullable=False)
    sample_size = Column(Integer, nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    __table_args__ = (UniqueConstraint("organization_id", "metric_name", name="uq_correlation_metric"),)


class CustomerHealthScore(Base, OrganizationScoped):
    """Daily health score of a customer."""

    __tablename__ = "customer_health_scores"

    customer_id = Column(Uuid, ForeignKey("unified_customers.id", ondelete="CASCADE"), nullable=False, index=True)
    score_date = Column(Date, nullable=False, index=True)
    usage_score = Column(Integer, nullable=False)
    engagement_score = Column(Integer, nullable=False)
    financial_score = Column(Integer, nullable=False)
    health_score = Column(Integer, nullable=False)
    health_trend = Column(String, nullable=False)
    trend_velocity = Column(Integer, nullable=False, default=0)
    upgrade_readiness = Column(Float, nullable=False)
    churn_risk = Column(Float, nullable=False)
    expansion_potential = Column(Float, nullable=False)
    detected_patterns = Column(JSONType, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("organization_id", "customer_id", "score_date", name="uq_health_customer_date"),
    )


class EconomicsSnapshot(Base, OrganizationScoped):
    """Point-in-time unit economics of an organization."""

    __tablename__ = "economics_snapshots"

    snapshot_date = Column(Date, nullable=False, index=True)
    total_mrr = Column(Numeric(15, 2, asdecimal=False), nullable=False, default=0)
    total_arr = Column(Numeric(15, 2, asdecimal=False), nullable=False, default=0)
    total_customers = Column(Integer, nullable=False, default=0)
    arpu = Column(Numeric(15, 2, asdecimal=False), nullable=False, default=0)
    new_customers = Column(Integer, nullable=False, default=0)
    churned_customers = Column(Integer, nullable=False, default=0)
    net_revenue_retention = Column(Float, nullable=True)
    gross_revenue_retention = Column(Float, nullable=True)
    top_10_pct_revenue_share = Column(Float, nullable=True)
    hhi_index = Column(Integer, nullable=True)
    concentration_risk_level = Column(String, nullable=True)


class RunStatus(enum.Enum):
    """Status of an analytics run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalyticsRun(Base, OrganizationScoped):
    """Progress and outcome of one analytics pipeline run."""

    __tablename__ = "analytics_run_log"

    run_type = Column(String, nullable=False, default="full_refresh")
    status = Column(SQLEnum(RunStatus), nullable=False, default=RunStatus.RUNNING)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    total_steps = Column(Integer, nullable=False, default=0)
    completed_steps = Column(Integer, nullable=False, default=0)
    current_step = Column(String, nullable=True)
    records_processed = Column(Integer, nullable=False, default=0)
    errors_count = Column(Integer, nullable=False, default=0)
    error_details = Column(JSONType, nullable=False, default=list)
    result_summary = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
