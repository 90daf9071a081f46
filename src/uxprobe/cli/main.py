"""Main CLI command group."""

import logging
import os
import sys

import click
import structlog

from uxprobe.cli.analytics import analytics_cli
from uxprobe.cli.db import db_cli
from uxprobe.cli.events import events_cli
from uxprobe.cli.generate import generate_cli
from uxprobe.cli.tests import tests_cli

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def _stderr_logger(*args):
    # Looked up per call so the logger follows whatever sys.stderr is now.
    return structlog.PrintLogger(sys.stderr)


def configure_logging() -> None:
    """Same settings as the server, but logs go to stderr; stdout is for JSON."""
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    json_logs = os.getenv("LOG_JSON", "false").lower() == "true"

    logging.basicConfig(level=log_level, stream=sys.stderr)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )


@click.group(context_settings=CONTEXT_SETTINGS)
def cli():
    """uxprobe command line interface."""
    configure_logging()


cli.add_command(db_cli)
cli.add_command(events_cli)
cli.add_command(analytics_cli)
cli.add_command(tests_cli)
cli.add_command(generate_cli)


def main():
    """CLI entrypoint."""
    cli()


if __name__ == "__main__":
    main()
