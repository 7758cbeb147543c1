"""
Prometheus metrics endpoint.

Exposes /metrics endpoint for Prometheus scraping.
"""

import logging

from fastapi import APIRouter, Response
from sqlalchemy import text

from ...monitoring.metrics import get_metrics_collector
from ..dependencies import RuntimeDep

router = APIRouter(tags=["monitoring"])
logger = logging.getLogger(__name__)


@router.get("/metrics")
async def get_metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    collector = get_metrics_collector()

    return Response(
        content=collector.generate_metrics(),
        media_type=collector.content_type,
    )


@router.get("/health/detailed")
async def detailed_health_check(runtime: RuntimeDep):
    """
    Detailed health check with component status.
    """
    db_ok = False
    try:
        async with runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
            db_ok = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    active = runtime.runs.active_run_ids
    return {
        "status": "healthy" if db_ok else "degraded",
        "components": {
            "database": "up" if db_ok else "down",
            "event_subscribers": runtime.broadcaster.subscriber_count,
        },
        "active_runs": [str(r) for r in active],
    }
