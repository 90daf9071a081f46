"""Router for per-variant test analytics."""

import ibis
import structlog
from fastapi import APIRouter, Depends, HTTPException

from uxprobe.db import get_db_connection
from uxprobe.schemas import TestAnalytics
from uxprobe.server.analytics import compute_analytics

log = structlog.get_logger()
router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/{test_id}", response_model=TestAnalytics)
def get_analytics(
    test_id: str,
    conn: ibis.BaseBackend = Depends(get_db_connection),
):
    """Computes analytics for every variant of a test."""
    try:
        analytics = compute_analytics(conn, test_id)
    except Exception as e:
        log.error("analytics.compute.failed", test_id=test_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to compute analytics: {e}")

    if analytics is None:
        raise HTTPException(status_code=404, detail=f"Test '{test_id}' not found.")
    return analytics
