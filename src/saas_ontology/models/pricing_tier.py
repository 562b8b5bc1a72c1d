"""Pricing tier model."""
from sqlalchemy import Boolean, Column, Integer, Numeric, String

from saas_ontology.models.base import Base, JSONType, OrganizationScoped


class PricingTier(Base, OrganizationScoped):
    """
    A tier of the organization's price list.

    ``position`` orders tiers from cheapest (1) upwards. ``value_metric_limits``
    maps usage metric names to the tier's allowance.
    """

    __tablename__ = "pricing_tiers"

    name = Column(String, nullable=False)
    price_monthly = Column(Numeric(15, 2, asdecimal=False), nullable=True)
    price_annual = Column(Numeric(15, 2, asdecimal=False), nullable=True)
    features = Column(JSONType, nullable=False, default=list)
    value_metric_limits = Column(JSONType, nullable=False, default=dict)
    position = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<PricingTier(name={self.name}, position={self.position})>"
