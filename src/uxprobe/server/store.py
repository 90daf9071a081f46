"""Event log and session table access.

Writes go through parameterised SQL on a DuckDB cursor so that session
creation and terminal transitions are single conditional statements.
Reads go through ibis expressions.
"""

import json
import math
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

import duckdb
import ibis
import pandas as pd

INSERT_SESSION_IF_ABSENT = """
    INSERT INTO sessions (
        id, test_id, variant, started_at,
        url, user_agent, screen_width, screen_height, language
    )
    VALUES (?, ?, ?, epoch_ms(CAST(? AS BIGINT)), ?, ?, ?, ?, ?)
    ON CONFLICT (id) DO NOTHING
"""

CLOSE_SESSION_IF_OPEN = """
    UPDATE sessions
    SET ended_at = epoch_ms(CAST(? AS BIGINT)), outcome = ?, duration_ms = ?
    WHERE id = ? AND outcome IS NULL
"""

APPEND_EVENT = """
    INSERT INTO events (
        session_id, test_id, variant, type, payload, client_timestamp, duration_ms
    )
    VALUES (?, ?, ?, ?, ?, ?, ?)
"""

CONTEXT_FIELDS = {
    "url": "url",
    "userAgent": "user_agent",
    "screenWidth": "screen_width",
    "screenHeight": "screen_height",
    "language": "language",
}


INTEGER_CONTEXT_COLUMNS = frozenset({"screen_width", "screen_height"})
INT32_MAX = 2**31 - 1


def _context_int(value: Any) -> Optional[int]:
    """Whole pixel counts only; anything else ("1920px", NaN, huge) is unknown."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number != int(number):
        return None
    number = int(number)
    return number if 0 <= number <= INT32_MAX else None


def session_context(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Picks the device/context metadata out of a session-opening payload,
    coerced to the session columns' types. Values that do not fit are
    stored as NULL rather than failing the event.
    """
    payload = payload or {}
    context = {}
    for key, column in CONTEXT_FIELDS.items():
        value = payload.get(key)
        if column in INTEGER_CONTEXT_COLUMNS:
            context[column] = _context_int(value)
        else:
            context[column] = None if value is None else str(value)
    return context


@contextmanager
def transaction(conn: ibis.BaseBackend) -> Iterator[duckdb.DuckDBPyConnection]:
    """Yields a cursor inside its own transaction; rolls back on any error."""
    cur = conn.con.cursor()
    try:
        cur.execute("BEGIN TRANSACTION;")
        try:
            yield cur
            cur.execute("COMMIT;")
        except Exception:
            cur.execute("ROLLBACK;")
            raise
    finally:
        cur.close()


def _affected(cur: duckdb.DuckDBPyConnection) -> int:
    # DuckDB reports DML results as a single "Count" row.
    row = cur.fetchone()
    return int(row[0]) if row else 0


def insert_session_if_absent(
    cur: duckdb.DuckDBPyConnection,
    session_id: str,
    test_id: str,
    variant: str,
    started_at_ms: int,
    context: Optional[Dict[str, Any]] = None,
) -> bool:
    """Creates the session row unless it exists. Returns True when created."""
    context = context or {}
    cur.execute(
        INSERT_SESSION_IF_ABSENT,
        [
            session_id,
            test_id,
            variant,
            started_at_ms,
            context.get("url"),
            context.get("user_agent"),
            context.get("screen_width"),
            context.get("screen_height"),
            context.get("language"),
        ],
    )
    return _affected(cur) > 0


def close_session_if_open(
    cur: duckdb.DuckDBPyConnection,
    session_id: str,
    outcome: str,
    ended_at_ms: int,
    duration_ms: Optional[int],
) -> bool:
    """Sets the terminal outcome only if none is set. Returns True when applied."""
    cur.execute(CLOSE_SESSION_IF_OPEN, [ended_at_ms, outcome, duration_ms, session_id])
    return _affected(cur) > 0


def append_event(
    cur: duckdb.DuckDBPyConnection,
    session_id: str,
    test_id: str,
    variant: str,
    event_type: str,
    payload: Optional[Dict[str, Any]],
    timestamp_ms: int,
    duration_ms: Optional[int],
) -> None:
    cur.execute(
        APPEND_EVENT,
        [
            session_id,
            test_id,
            variant,
            event_type,
            json.dumps(payload) if payload is not None else None,
            timestamp_ms,
            duration_ms,
        ],
    )


def replace_sessions(conn: ibis.BaseBackend, rows: Iterable[Dict[str, Any]]) -> int:
    """Swaps the whole session table for the given rows in one transaction."""
    rows = list(rows)
    with transaction(conn) as cur:
        cur.execute("DELETE FROM sessions;")
        for row in rows:
            cur.execute(
                """
                INSERT INTO sessions (
                    id, test_id, variant, started_at, ended_at, outcome, duration_ms,
                    url, user_agent, screen_width, screen_height, language
                )
                VALUES (
                    ?, ?, ?,
                    epoch_ms(CAST(? AS BIGINT)), epoch_ms(CAST(? AS BIGINT)),
                    ?, ?, ?, ?, ?, ?, ?
                )
                """,
                [
                    row["id"],
                    row["test_id"],
                    row["variant"],
                    row["started_at"],
                    row["ended_at"],
                    row["outcome"],
                    row["duration_ms"],
                    row.get("url"),
                    row.get("user_agent"),
                    row.get("screen_width"),
                    row.get("screen_height"),
                    row.get("language"),
                ],
            )
    return len(rows)


def nullable(value: Any) -> Any:
    """Maps pandas missing markers (NaN, NaT, pd.NA) to None."""
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def nullable_int(value: Any) -> Optional[int]:
    value = nullable(value)
    return None if value is None else int(value)


def _iso(value: Any) -> Optional[str]:
    value = nullable(value)
    return None if value is None else pd.Timestamp(value).isoformat()


def session_events(conn: ibis.BaseBackend, session_id: str) -> List[Dict[str, Any]]:
    """All events of a session, ordered by client time, then arrival."""
    events = conn.table("events")
    rows = (
        events.filter(events.session_id == session_id)
        .order_by([events.client_timestamp, events["id"]])
        .execute()
        .to_dict("records")
    )
    return [
        {
            "id": int(row["id"]),
            "session_id": row["session_id"],
            "type": row["type"],
            "payload": json.loads(row["payload"]) if nullable(row["payload"]) else None,
            "timestamp": int(row["client_timestamp"]),
            "duration_ms": nullable_int(row["duration_ms"]),
            "received_at": _iso(row["received_at"]),
        }
        for row in rows
    ]


def all_events(conn: ibis.BaseBackend) -> List[Dict[str, Any]]:
    """The full event log in replay order."""
    events = conn.table("events")
    rows = events.order_by([events.client_timestamp, events["id"]]).execute()
    return [
        {
            "session_id": row["session_id"],
            "test_id": row["test_id"],
            "variant": row["variant"],
            "type": row["type"],
            "payload": json.loads(row["payload"]) if nullable(row["payload"]) else None,
            "timestamp": int(row["client_timestamp"]),
            "duration_ms": nullable_int(row["duration_ms"]),
        }
        for row in rows.to_dict("records")
    ]


def get_session(conn: ibis.BaseBackend, session_id: str) -> Optional[Dict[str, Any]]:
    """A single session row, or None."""
    sessions = conn.table("sessions")
    rows = sessions.filter(sessions["id"] == session_id).limit(1).execute()
    if rows.empty:
        return None
    row = rows.to_dict("records")[0]
    return {
        "id": row["id"],
        "test_id": row["test_id"],
        "variant": row["variant"],
        "started_at": _iso(row["started_at"]),
        "ended_at": _iso(row["ended_at"]),
        "outcome": nullable(row["outcome"]),
        "duration_ms": nullable_int(row["duration_ms"]),
        "url": nullable(row["url"]),
        "user_agent": nullable(row["user_agent"]),
        "screen_width": nullable_int(row["screen_width"]),
        "screen_height": nullable_int(row["screen_height"]),
        "language": nullable(row["language"]),
    }


def count_sessions(conn: ibis.BaseBackend, session_id: str) -> int:
    sessions = conn.table("sessions")
    return int(sessions.filter(sessions["id"] == session_id).count().execute())
