"""Database connection and schema management."""

import os
from typing import Optional

import ibis

# In a real deployment, this would point at a mounted volume.
DEFAULT_DB_PATH = "uxprobe.duckdb"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS tests (
        id VARCHAR PRIMARY KEY,
        project_id VARCHAR NOT NULL,
        name VARCHAR NOT NULL,
        description VARCHAR,
        instructions VARCHAR,
        target_url VARCHAR,
        variants VARCHAR NOT NULL,
        is_active BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT current_timestamp
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id VARCHAR PRIMARY KEY,
        test_id VARCHAR NOT NULL,
        title VARCHAR NOT NULL,
        description VARCHAR,
        order_index INTEGER DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id VARCHAR PRIMARY KEY,
        test_id VARCHAR NOT NULL,
        variant VARCHAR NOT NULL,
        started_at TIMESTAMP NOT NULL,
        ended_at TIMESTAMP,
        outcome VARCHAR,
        duration_ms BIGINT,
        url VARCHAR,
        user_agent VARCHAR,
        screen_width INTEGER,
        screen_height INTEGER,
        language VARCHAR
    );
    """,
    "CREATE SEQUENCE IF NOT EXISTS events_id_seq START 1;",
    """
    CREATE TABLE IF NOT EXISTS events (
        id BIGINT PRIMARY KEY DEFAULT nextval('events_id_seq'),
        session_id VARCHAR NOT NULL,
        test_id VARCHAR NOT NULL,
        variant VARCHAR NOT NULL,
        type VARCHAR NOT NULL,
        payload VARCHAR,
        client_timestamp BIGINT NOT NULL,
        duration_ms BIGINT,
        received_at TIMESTAMP DEFAULT current_timestamp
    );
    """,
]

_connection: Optional[ibis.BaseBackend] = None


def connect(database: Optional[str] = None) -> ibis.BaseBackend:
    """
    Returns an Ibis connection to the DuckDB database.

    The path defaults to the UXPROBE_DB_PATH environment variable; pass
    ":memory:" for a throwaway database.
    """
    path = database or os.getenv("UXPROBE_DB_PATH", DEFAULT_DB_PATH)
    return ibis.duckdb.connect(database=path)


def initialize_schema(conn: ibis.BaseBackend) -> None:
    """
    Creates the application tables if they do not exist.
    This is idempotent and safe to call on every application startup.
    """
    for statement in SCHEMA:
        conn.raw_sql(statement)


def init_db_connection(database: Optional[str] = None) -> ibis.BaseBackend:
    """Opens the process-wide connection and makes sure the schema exists."""
    global _connection
    _connection = connect(database)
    initialize_schema(_connection)
    return _connection


def get_db_connection() -> ibis.BaseBackend:
    """FastAPI dependency that provides the process-wide connection."""
    if _connection is None:
        raise RuntimeError("Database connection not initialised")
    return _connection
