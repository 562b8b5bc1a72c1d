"""Persistence of detected pattern rows."""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog

from saas_ontology.config import settings
from saas_ontology.metrics import analytics_patterns_detected_total
from saas_ontology.models import Pattern, PatternType
from saas_ontology.store import AnalyticsStore

logger = structlog.get_logger(__name__)


async def replace_patterns(
    store: AnalyticsStore,
    pattern_type: PatternType,
    rows: Sequence[Dict[str, Any]],
    detected_at: Optional[datetime] = None,
) -> List[Pattern]:
    """
    Insert a fresh set of findings of one pattern type.

    Previously active rows of the same type are deactivated first, so the
    active set always reflects the latest detection run. Rows are inserted in
    batches of ``settings.pattern_batch_size``.

    Args:
        store: Organization-scoped store
        pattern_type: Type tag for every row
        rows: Pattern column values (without type, activity flag and timestamp)
        detected_at: Detection timestamp (defaults to now)

    Returns:
        Inserted Pattern instances
    """
    detected_at = detected_at or datetime.utcnow()
    deactivated = await store.update(
        Pattern,
        {"is_active": False},
        Pattern.pattern_type == pattern_type,
        Pattern.is_active.is_(True),
    )

    if not rows:
        logger.info("patterns_replaced", pattern_type=pattern_type.value, inserted=0, deactivated=deactivated)
        return []

    inserted = await store.insert(
        Pattern,
        [{**row, "pattern_type": pattern_type, "is_active": True, "detected_at": detected_at} for row in rows],
        batch_size=settings.pattern_batch_size,
    )
    analytics_patterns_detected_total.labels(pattern_type=pattern_type.value).inc(len(inserted))
    logger.info(
        "patterns_replaced",
        pattern_type=pattern_type.value,
        inserted=len(inserted),
        deactivated=deactivated,
    )
    return inserted
