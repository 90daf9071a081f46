"""Session projection over the event log.

The sessions table is a materialised view of the events table. Folding the
log in client-timestamp order with :func:`fold_event` yields the same rules
the ingestion service applies row by row:

* the first event seen for a session id creates it; later opening events
  are no-ops,
* the first terminal event sets the outcome; later terminal events are
  ignored.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Optional

import ibis
import structlog

from uxprobe.schemas import SESSION_OPENING_TYPES, TERMINAL_OUTCOMES
from uxprobe.server import store

log = structlog.get_logger()

DEFAULT_VARIANT = "A"


@dataclass
class SessionState:
    """One row of the session projection. Times are epoch milliseconds."""

    id: str
    test_id: str
    variant: str
    started_at: int
    ended_at: Optional[int] = None
    outcome: Optional[str] = None
    duration_ms: Optional[int] = None
    url: Optional[str] = None
    user_agent: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    language: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not None


def fold_event(
    sessions: Dict[str, SessionState], event: Dict[str, Any]
) -> Dict[str, SessionState]:
    """Applies one event to the projection (in place) and returns it."""
    session_id = event["session_id"]
    state = sessions.get(session_id)
    if state is None:
        context = (
            store.session_context(event.get("payload"))
            if event["type"] in SESSION_OPENING_TYPES
            else {}
        )
        state = SessionState(
            id=session_id,
            test_id=event["test_id"],
            variant=event.get("variant") or DEFAULT_VARIANT,
            started_at=event["timestamp"],
            **context,
        )
        sessions[session_id] = state

    outcome = TERMINAL_OUTCOMES.get(event["type"])
    if outcome is not None and not state.is_terminal:
        state.outcome = outcome.value
        state.ended_at = event["timestamp"]
        state.duration_ms = event.get("duration_ms")
    return sessions


def replay(events: Iterable[Dict[str, Any]]) -> Dict[str, SessionState]:
    """Folds events into a fresh projection, in the order given."""
    sessions: Dict[str, SessionState] = {}
    for event in events:
        fold_event(sessions, event)
    return sessions


def rebuild_sessions(conn: ibis.BaseBackend) -> int:
    """Recomputes the sessions table from the event log. Returns the row count."""
    events = store.all_events(conn)
    sessions = replay(events)
    count = store.replace_sessions(conn, (asdict(s) for s in sessions.values()))
    log.info("sessions.rebuild.completed", events=len(events), sessions=count)
    return count
