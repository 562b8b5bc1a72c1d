"""Detected behavioral pattern model."""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, Enum as SQLEnum
import enum

from saas_ontology.models.base import Base, JSONType, OrganizationScoped


class PatternType(enum.Enum):
    """Kinds of behavioral pattern rows."""

    UPGRADE_TRIGGER = "upgrade_trigger"
    CHURN_SIGNAL = "churn_signal"
    EXPANSION_READY = "expansion_ready"
    SEASONAL = "seasonal"
    DISCOUNT_SENSITIVE = "discount_sensitive"
    PRICE_ANCHOR = "price_anchor"


class Pattern(Base, OrganizationScoped):
    """Append-only pattern finding. Older rows may be deactivated, never deleted."""

    __tablename__ = "patterns"

    pattern_type = Column(SQLEnum(PatternType), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    pattern_definition = Column(JSONType, nullable=False, default=dict)
    frequency = Column(Float, nullable=True)
    confidence = Column(Float, nullable=True)
    sample_size = Column(Integer, nullable=True)
    recommended_action = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    detected_at = Column(DateTime, nullable=False, default=datetime.utcnow)
