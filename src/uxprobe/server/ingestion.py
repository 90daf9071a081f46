"""Batch ingestion: append events and derive session state."""

from typing import List

import duckdb
import ibis
import structlog

from uxprobe.schemas import (
    SESSION_OPENING_TYPES,
    TERMINAL_OUTCOMES,
    BatchResult,
    Event,
    EventError,
)
from uxprobe.server import store
from uxprobe.server.projection import DEFAULT_VARIANT

log = structlog.get_logger()


class IngestionService:
    """
    Applies a batch of events in arrival order.

    Each event runs in its own transaction: a storage fault on one event is
    reported in the result and processing moves on to the next one. Events
    that were already applied stay applied.
    """

    def __init__(self, conn: ibis.BaseBackend):
        self.conn = conn

    def process_batch(self, events: List[Event]) -> BatchResult:
        result = BatchResult()
        for event in events:
            try:
                self._apply(event)
                result.processed += 1
            except duckdb.Error as e:
                log.warning(
                    "event.process.failed",
                    session_id=event.session_id,
                    type=event.type,
                    error=str(e),
                )
                result.errors.append(
                    EventError(session_id=event.session_id, type=event.type, error=str(e))
                )
        return result

    def _apply(self, event: Event) -> None:
        variant = event.variant or DEFAULT_VARIANT
        opening = event.type in SESSION_OPENING_TYPES

        with store.transaction(self.conn) as cur:
            # Non-opening events for an unknown session still get a bare row
            # so that every stored event has a session.
            created = store.insert_session_if_absent(
                cur,
                session_id=event.session_id,
                test_id=event.test_id,
                variant=variant,
                started_at_ms=event.timestamp,
                context=store.session_context(event.payload) if opening else None,
            )
            if created:
                log.info(
                    "session.created",
                    session_id=event.session_id,
                    test_id=event.test_id,
                    variant=variant,
                    implicit=not opening,
                )

            store.append_event(
                cur,
                session_id=event.session_id,
                test_id=event.test_id,
                variant=variant,
                event_type=event.type,
                payload=event.payload,
                timestamp_ms=event.timestamp,
                duration_ms=event.duration,
            )

            outcome = TERMINAL_OUTCOMES.get(event.type)
            if outcome is None:
                return
            closed = store.close_session_if_open(
                cur,
                session_id=event.session_id,
                outcome=outcome.value,
                ended_at_ms=event.timestamp,
                duration_ms=event.duration,
            )
            if closed:
                log.info(
                    "session.closed",
                    session_id=event.session_id,
                    outcome=outcome.value,
                    duration_ms=event.duration,
                )
            else:
                log.info(
                    "session.already_terminal",
                    session_id=event.session_id,
                    ignored_outcome=outcome.value,
                )

    def session_events(self, session_id: str) -> list:
        return store.session_events(self.conn, session_id)
