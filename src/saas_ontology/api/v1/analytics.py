"""
Analytics API endpoints.

Provides endpoints for:
- POST /v1/analytics/{organization_id}/refresh - Run the full analytics pipeline
- GET /v1/analytics/{organization_id}/latest - Latest run status and summary
"""
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from saas_ontology.api.deps import get_db
from saas_ontology.schemas.error import ErrorCode, ErrorResponse
from saas_ontology.schemas.run import LatestAnalytics, OntologySummary
from saas_ontology.services.analytics_pipeline import get_latest_analytics, run_full_analytics

logger = structlog.get_logger(__name__)

router = APIRouter()


# Response Models

class RefreshStats(BaseModel):
    customers_analyzed: int = Field(..., description="Customers health-scored")
    segments_identified: int = Field(..., description="Segments produced by clustering")
    patterns_detected: int = Field(..., description="Upgrade candidates plus at-risk customers")


class RefreshResponse(BaseModel):
    """Result of a full analytics refresh."""

    success: bool = True
    run_id: UUID
    summary: OntologySummary
    stats: RefreshStats

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "run_id": "5b0f4b8e-3c4f-4b7e-9a51-2f1d0f0f6c3a",
                "summary": {
                    "generated_at": "2025-11-21T08:00:00Z",
                    "customer_count": 412,
                    "total_mrr": 61850.0,
                    "segment_count": 4,
                    "key_insights": ["298 customers (72%) are healthy. Average health score: 71/100."],
                    "health_distribution": {"healthy": 298, "at_risk": 92, "critical": 22},
                    "primary_value_metric": "Monthly recurring revenue",
                    "top_patterns": ["37 upgrade candidates identified", "22 customers at churn risk"],
                },
                "stats": {"customers_analyzed": 412, "segments_identified": 4, "patterns_detected": 59},
            }
        }
    }


# Endpoints

@router.post(
    "/analytics/{organization_id}/refresh",
    response_model=RefreshResponse,
    responses={500: {"model": ErrorResponse}},
    summary="Refresh analytics",
    description="""
    Run the full analytics pipeline for an organization.

    **Steps:** cohort retention, LTV, retention and MRR growth, segmentation,
    pattern detection, value metric discovery, health scoring, summary.

    Progress is recorded in the run log and can be polled with
    `GET /v1/analytics/{organization_id}/latest`.
    """,
)
async def refresh_analytics(
    organization_id: UUID,
    seed: int | None = Query(None, description="Clustering seed for reproducible segments"),
    db: AsyncSession = Depends(get_db),
) -> RefreshResponse:
    """
    Run all analytics for an organization.

    Args:
        organization_id: Organization to analyze
        seed: Optional clustering seed
        db: Database session

    Returns:
        Ontology summary and run statistics

    Raises:
        HTTPException 500: If any pipeline step fails
    """
    try:
        result = await run_full_analytics(db, organization_id, seed=seed)
    except Exception as e:
        logger.exception("analytics_refresh_error", organization_id=str(organization_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": ErrorCode.ANALYTICS_REFRESH_FAILED, "message": str(e)},
        )

    stats = RefreshStats(
        customers_analyzed=len(result.health.scores),
        segments_identified=len(result.segmentation.segments),
        patterns_detected=(
            len(result.patterns.upgrades.candidates) + len(result.patterns.churn_risk.at_risk_customers)
        ),
    )
    logger.info("analytics_refresh_endpoint_called", run_id=str(result.run_id), **stats.model_dump())
    return RefreshResponse(run_id=result.run_id, summary=result.summary, stats=stats)


@router.get(
    "/analytics/{organization_id}/latest",
    response_model=LatestAnalytics,
    summary="Get latest analytics run",
    description="Status, progress and ontology summary of the most recent run. `status` is `never_run` when none exists.",
)
async def get_latest(
    organization_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> LatestAnalytics:
    return await get_latest_analytics(db, organization_id)
