"""Database subcommands for the CLI."""

import json
from typing import Optional

import click

from uxprobe.db import connect, initialize_schema
from uxprobe.server.projection import rebuild_sessions


@click.group(name="db")
def db_cli():
    """Commands for database schema management."""
    pass


def _db_option(f):
    return click.option(
        "--database",
        envvar="UXPROBE_DB_PATH",
        default=None,
        help="Path to the DuckDB file (defaults to $UXPROBE_DB_PATH).",
    )(f)


@db_cli.command(name="init")
@_db_option
def init_db(database: Optional[str]):
    """Create the application tables and print the resulting schema."""
    conn = connect(database)
    initialize_schema(conn)

    # dump the existing schema to stdout
    schema_info = {}
    for table_name in conn.list_tables():
        schema = conn.table(table_name).schema()
        schema_info[table_name] = [
            {
                "column_name": name,
                "column_type": str(dtype),
                "nullable": dtype.nullable,
            }
            for name, dtype in schema.items()
        ]

    click.echo(json.dumps(schema_info, indent=2))


@db_cli.command(name="list-tables")
@_db_option
def list_tables(database: Optional[str]):
    """List the tables in the database."""
    conn = connect(database)
    click.echo(json.dumps(conn.list_tables(), indent=2))


@db_cli.command(name="rebuild-sessions")
@_db_option
def rebuild_sessions_cmd(database: Optional[str]):
    """Recompute the sessions table by replaying the event log."""
    conn = connect(database)
    initialize_schema(conn)
    count = rebuild_sessions(conn)
    click.echo(json.dumps({"sessions": count}, indent=2))
