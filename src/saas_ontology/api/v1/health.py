"""Liveness and readiness probes."""
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from saas_ontology.api.deps import get_db
from saas_ontology.models import AnalyticsRun, RunStatus

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> dict[str, str]:
    """Process is up. Touches nothing external."""
    return {
        "status": "healthy",
        "service": "saas-ontology-analytics",
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """
    Ready when the run log is queryable.

    Counting in-flight runs exercises both the connection and the schema, and
    the count is reported so operators can see refreshes still in progress.
    """
    try:
        running = await db.scalar(
            select(func.count()).select_from(AnalyticsRun).where(AnalyticsRun.status == RunStatus.RUNNING)
        )
    except SQLAlchemyError as exc:
        logger.error("readiness_check_failed", error_type=type(exc).__name__, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ready": False, "database": "unavailable", "timestamp": datetime.utcnow().isoformat()},
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "ready": True,
            "database": "connected",
            "running_analytics_runs": running or 0,
            "timestamp": datetime.utcnow().isoformat(),
        },
    )
