"""
Cohort retention analysis.

Customers are grouped by the calendar month they were acquired; every cohort is
then checked month by month to see how many customers (and how much of the
cohort's MRR) are still retained.
"""
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np
import structlog

from saas_ontology.config import settings
from saas_ontology.models import CohortRetention, Customer, CustomerStatus
from saas_ontology.schemas.economics import AggregateRetention, CohortData, CohortRetentionCurve
from saas_ontology.store import AnalyticsStore
from saas_ontology.utils.dates import DAYS_PER_MONTH, add_months, month_start

logger = structlog.get_logger(__name__)


def is_retained_at(customer: Customer, check_date: datetime) -> bool:
    """
    Whether a cohort member was still a customer at ``check_date``.

    Args:
        customer: Cohort member
        check_date: Point in time to check

    Returns:
        True if the customer existed and had not churned at ``check_date``
    """
    if customer.created_at > check_date:
        return False
    if customer.status == CustomerStatus.ACTIVE and customer.churned_at is None:
        return True
    if customer.churned_at is not None:
        return customer.churned_at > check_date
    return customer.status == CustomerStatus.ACTIVE


def compute_cohort_retention(
    customers: Sequence[Customer],
    as_of: datetime,
    lookback_months: int = 24,
    max_months_to_track: int = 12,
) -> List[CohortData]:
    """
    Compute retention of every acquisition cohort at every month offset.

    Offset 0 is the acquisition month itself and counts every member as
    retained. Later offsets check membership on the cohort's start date shifted
    by that many calendar months.

    Args:
        customers: Customers of the organization
        as_of: Reference "now"
        lookback_months: Only cohorts acquired within this many months are analyzed
        max_months_to_track: Highest month offset computed

    Returns:
        One row per (cohort, offset), cohorts in chronological order
    """
    cutoff = add_months(as_of, -lookback_months)

    cohorts: Dict[datetime, List[Customer]] = OrderedDict()
    for customer in sorted(customers, key=lambda c: c.created_at):
        if customer.created_at < cutoff:
            continue
        cohorts.setdefault(month_start(customer.created_at), []).append(customer)

    results: List[CohortData] = []
    for cohort_start, members in cohorts.items():
        cohort_size = len(members)
        starting_mrr = sum(float(m.mrr or 0) for m in members)
        months_since = (as_of - cohort_start).days // DAYS_PER_MONTH

        for offset in range(0, min(months_since, max_months_to_track) + 1):
            if offset == 0:
                retained = list(members)
            else:
                check_date = add_months(cohort_start, offset)
                retained = [m for m in members if is_retained_at(m, check_date)]

            retained_mrr = sum(float(m.mrr or 0) for m in retained)
            results.append(
                CohortData(
                    cohort_month=cohort_start.date(),
                    month_offset=offset,
                    cohort_size=cohort_size,
                    retained_customers=len(retained),
                    retention_rate=len(retained) / cohort_size if cohort_size > 0 else 0.0,
                    starting_mrr=starting_mrr,
                    retained_mrr=retained_mrr,
                    revenue_retention_rate=retained_mrr / starting_mrr if starting_mrr > 0 else 0.0,
                )
            )

    return results


def build_retention_curves(cohort_data: Sequence[CohortData]) -> List[CohortRetentionCurve]:
    """Reshape per-(cohort, offset) rows into one curve per cohort, padding gaps with 0."""
    curves: Dict[str, CohortRetentionCurve] = {}

    for row in cohort_data:
        key = row.cohort_month.isoformat()
        curve = curves.get(key)
        if curve is None:
            curve = CohortRetentionCurve(
                cohort_month=row.cohort_month,
                cohort_size=row.cohort_size,
                starting_mrr=row.starting_mrr,
            )
            curves[key] = curve

        while len(curve.retention_by_month) <= row.month_offset:
            curve.retention_by_month.append(0.0)
            curve.revenue_retention_by_month.append(0.0)

        curve.retention_by_month[row.month_offset] = row.retention_rate
        curve.revenue_retention_by_month[row.month_offset] = row.revenue_retention_rate

    return [curves[key] for key in sorted(curves)]


def calculate_aggregate_retention(curves: Sequence[CohortRetentionCurve]) -> AggregateRetention:
    """
    Average and median retention across cohorts at each month offset.

    Only cohorts old enough to have reached an offset contribute to it.
    """
    if not curves:
        return AggregateRetention()

    max_offset = max(len(c.retention_by_month) for c in curves)
    avg_retention: List[float] = []
    avg_revenue_retention: List[float] = []
    median_retention: List[float] = []

    for offset in range(max_offset):
        values = [c.retention_by_month[offset] for c in curves if offset < len(c.retention_by_month)]
        revenue_values = [
            c.revenue_retention_by_month[offset] for c in curves if offset < len(c.retention_by_month)
        ]

        avg_retention.append(float(np.mean(values)) if values else 0.0)
        avg_revenue_retention.append(float(np.mean(revenue_values)) if revenue_values else 0.0)
        median_retention.append(float(np.median(values)) if values else 0.0)

    return AggregateRetention(
        avg_retention_by_month=avg_retention,
        avg_revenue_retention_by_month=avg_revenue_retention,
        median_retention_by_month=median_retention,
        cohort_count=len(curves),
        total_customers_analyzed=sum(c.cohort_size for c in curves),
    )


class CohortService:
    """Service for computing and persisting cohort retention."""

    def __init__(self, store: AnalyticsStore):
        """
        Initialize cohort service.

        Args:
            store: Organization-scoped data store
        """
        self.store = store

    async def analyze_cohort_retention(
        self,
        as_of: Optional[datetime] = None,
        lookback_months: Optional[int] = None,
        max_months_to_track: Optional[int] = None,
    ) -> List[CohortData]:
        """
        Load customers and compute cohort retention rows.

        Args:
            as_of: Reference "now" (defaults to current UTC time)
            lookback_months: Cohort window (defaults to settings)
            max_months_to_track: Offset cap (defaults to settings)

        Returns:
            Cohort retention rows
        """
        as_of = as_of or datetime.utcnow()
        customers = await self.store.select(Customer, order_by=Customer.created_at)

        cohort_data = compute_cohort_retention(
            customers,
            as_of,
            lookback_months=lookback_months or settings.cohort_lookback_months,
            max_months_to_track=(
                max_months_to_track if max_months_to_track is not None else settings.cohort_max_months_to_track
            ),
        )

        logger.info(
            "cohort_retention_analyzed",
            customers=len(customers),
            cohorts=len({row.cohort_month for row in cohort_data}),
            rows=len(cohort_data),
        )
        return cohort_data

    async def store_cohort_data(self, cohort_data: Sequence[CohortData]) -> int:
        """
        Upsert cohort rows keyed by (organization, cohort_month, month_offset).

        Returns:
            Number of rows written
        """
        if not cohort_data:
            return 0

        rows = [row.model_dump() for row in cohort_data]
        written = await self.store.upsert(
            CohortRetention,
            rows,
            conflict_keys=("cohort_month", "month_offset"),
            batch_size=settings.cohort_batch_size,
        )
        return len(written)
