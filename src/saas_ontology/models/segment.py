"""Customer segment model."""
from sqlalchemy import Boolean, Column, Float, Integer, Numeric, String, Text

from saas_ontology.models.base import Base, JSONType, OrganizationScoped


class Segment(Base, OrganizationScoped):
    """
    Named group of customers with its economics.

    ``criteria`` holds a list of tagged criterion objects (see
    ``saas_ontology.schemas.segmentation.SegmentCriterion``).
    """

    __tablename__ = "segments"

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    criteria = Column(JSONType, nullable=False, default=list)

    customer_count = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Numeric(15, 2, asdecimal=False), nullable=False, default=0)
    revenue_share = Column(Float, nullable=False, default=0)
    avg_mrr = Column(Numeric(15, 2, asdecimal=False), nullable=False, default=0)
    avg_ltv = Column(Numeric(15, 2, asdecimal=False), nullable=False, default=0)
    median_ltv = Column(Numeric(15, 2, asdecimal=False), nullable=True)

    retention_rate = Column(Float, nullable=True)
    churn_rate = Column(Float, nullable=True)
    expansion_rate = Column(Float, nullable=True)
    retention_curve = Column(JSONType, nullable=False, default=list)
    value_drivers = Column(JSONType, nullable=False, default=list)

    is_system_generated = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Segment(name={self.name}, customers={self.customer_count})>"
