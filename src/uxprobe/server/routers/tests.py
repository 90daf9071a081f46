"""Router for registering usability tests and serving them to the widget."""

from typing import Optional

import duckdb
import ibis
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from uxprobe.db import get_db_connection
from uxprobe.schemas import TestDefinition
from uxprobe.server import registry
from uxprobe.server.analytics import summarise_tests

log = structlog.get_logger()
router = APIRouter(prefix="/tests", tags=["tests"])


@router.get("")
def list_tests(
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    conn: ibis.BaseBackend = Depends(get_db_connection),
):
    """List tests with their session totals and completion rate."""
    return summarise_tests(conn, project_id=project_id)


@router.post("", response_model=TestDefinition, status_code=201)
def create_test(
    payload: TestDefinition,
    conn: ibis.BaseBackend = Depends(get_db_connection),
):
    """Register a test and its ordered tasks."""
    if not payload.variants:
        raise HTTPException(status_code=400, detail="At least one variant is required.")
    try:
        created = registry.create_test(conn, payload)
    except duckdb.ConstraintException:
        raise HTTPException(
            status_code=409, detail=f"Test '{payload.id}' already exists."
        ) from None
    log.info("test.created", test_id=created.id, variants=created.variants)
    return created


@router.get("/{test_id}", response_model=TestDefinition)
def get_test(
    test_id: str,
    conn: ibis.BaseBackend = Depends(get_db_connection),
):
    """Get a test with its tasks."""
    test = registry.get_test(conn, test_id)
    if test is None:
        raise HTTPException(status_code=404, detail=f"Test '{test_id}' not found.")
    return test
