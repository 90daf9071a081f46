"""Router for batch event ingestion and the per-session event log."""

from typing import Any, List

import ibis
import structlog
from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError

from uxprobe.db import get_db_connection
from uxprobe.schemas import BatchResult, EventBatch, StoredEvent
from uxprobe.server.ingestion import IngestionService

log = structlog.get_logger()
router = APIRouter(prefix="/events", tags=["events"])


@router.post("", response_model=BatchResult)
def upload_events(
    body: Any = Body(...),
    conn: ibis.BaseBackend = Depends(get_db_connection),
):
    """
    Ingest a batch of events.

    The whole batch is validated before anything is written; a single
    malformed event rejects the batch. Storage faults are reported per event.
    """
    if not isinstance(body, dict) or not isinstance(body.get("events"), list):
        raise HTTPException(
            status_code=400,
            detail="Invalid request body. Expected { events: [...] }",
        )
    if not body["events"]:
        return BatchResult()

    try:
        batch = EventBatch.model_validate(body)
    except ValidationError as e:
        log.warning(
            "event.batch.rejected",
            events=len(body["events"]),
            errors=e.error_count(),
        )
        raise HTTPException(
            status_code=400,
            detail="Invalid event structure. Required: sessionId, testId, type, "
            "timestamp; payload values must be scalars.",
        ) from None

    result = IngestionService(conn).process_batch(batch.events)
    log.info(
        "event.batch.processed",
        events=len(batch.events),
        processed=result.processed,
        errors=len(result.errors),
    )
    return result


@router.get("/session/{session_id}", response_model=List[StoredEvent])
def get_session_events(
    session_id: str,
    conn: ibis.BaseBackend = Depends(get_db_connection),
):
    """Get all events for a session, in client-timestamp order (for debugging)."""
    try:
        return IngestionService(conn).session_events(session_id)
    except Exception as e:
        log.error(
            "event.session_log.failed",
            session_id=session_id,
            error=str(e),
            exc_info=True,
        )
        raise HTTPException(
            status_code=500,
            detail="An unexpected error occurred while reading session events.",
        )
