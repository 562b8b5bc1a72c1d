"""
Background worker for analytics refreshes.

Runs the full analytics pipeline for an organization outside the request
cycle. The run log row tracks progress, so callers poll
``GET /v1/analytics/{organization_id}/latest`` for the outcome.

Usage (with ARQ):
    arq saas_ontology.workers.analytics.WorkerSettings
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from saas_ontology.database import get_async_session
from saas_ontology.schemas.run import AnalyticsRunProgress
from saas_ontology.services.analytics_pipeline import run_full_analytics

logger = structlog.get_logger(__name__)


def _log_progress(progress: AnalyticsRunProgress) -> None:
    logger.debug(
        "analytics_worker_progress",
        step=progress.current_step,
        completed_steps=progress.completed_steps,
        total_steps=progress.total_steps,
    )


async def refresh_organization_analytics(
    ctx: dict,
    organization_id: str,
    seed: Optional[int] = None,
) -> dict:
    """
    Refresh all analytics of one organization.

    Args:
        ctx: ARQ context (contains job info)
        organization_id: Organization to refresh
        seed: Optional clustering seed

    Returns:
        Dict with the run outcome
    """
    logger.info("analytics_worker_started", organization_id=organization_id, job_id=ctx.get("job_id"))

    try:
        async with get_async_session() as db:
            result = await run_full_analytics(db, UUID(organization_id), on_progress=_log_progress, seed=seed)
    except Exception as e:
        # The pipeline has already marked the run failed
        logger.exception("analytics_worker_failed", organization_id=organization_id, error=str(e))
        return {
            "organization_id": organization_id,
            "status": "failed",
            "error": str(e),
        }

    logger.info(
        "analytics_worker_completed",
        organization_id=organization_id,
        run_id=str(result.run_id),
        customers=result.summary.customer_count,
    )
    return {
        "organization_id": organization_id,
        "run_id": str(result.run_id),
        "status": "success",
        "customer_count": result.summary.customer_count,
        "segment_count": result.summary.segment_count,
        "completed_at": datetime.utcnow().isoformat(),
    }


async def refresh_many_organizations(ctx: dict, organization_ids: list[str]) -> dict:
    """
    Refresh several organizations one after another.

    Runs are serialized so two refreshes never reassign the same segments
    concurrently.

    Args:
        ctx: ARQ context
        organization_ids: Organizations to refresh

    Returns:
        Dict with per-organization results and a success/failure summary
    """
    results = {}
    for organization_id in organization_ids:
        results[organization_id] = await refresh_organization_analytics(ctx, organization_id)

    successes = sum(1 for r in results.values() if r["status"] == "success")
    logger.info("analytics_batch_completed", successful=successes, failed=len(results) - successes)
    return {
        "results": results,
        "summary": {
            "total": len(results),
            "successful": successes,
            "failed": len(results) - successes,
        },
    }


class WorkerSettings:
    """
    ARQ worker settings for analytics refreshes.

    Usage:
        arq saas_ontology.workers.analytics.WorkerSettings
    """

    functions = [
        refresh_organization_analytics,
        refresh_many_organizations,
    ]

    # One refresh at a time; concurrent runs for an organization are not excluded by the pipeline
    max_jobs = 1
    job_timeout = 1800
    keep_result = 86400
