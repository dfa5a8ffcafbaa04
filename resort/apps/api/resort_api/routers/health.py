"""Health check endpoints."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from resort_api import __version__
from resort_api.db.session import engine

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error("DATABASE_HEALTH_CHECK_FAILED", extra={"error_type": type(e).__name__})
        return f"down: {type(e).__name__}"


@router.get("/health", response_model=HealthResponse)
async def health_check(response: Response) -> HealthResponse:
    """Liveness + database connectivity. 503 when the database is down."""
    database = check_database()
    healthy = database == "up"
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        services={"database": database},
    )
