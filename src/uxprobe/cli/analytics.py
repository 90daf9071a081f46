"""CLI commands for test analytics."""

import json
import sys

import click
import httpx

from uxprobe.cli.client import APIClient, echo_api_error


@click.group("analytics")
def analytics_cli():
    """Per-variant test statistics."""
    pass


@analytics_cli.command("show")
@click.argument("test_id")
@click.option(
    "--variant", default=None, help="Only print the statistics of this variant."
)
def show_analytics(test_id: str, variant: str):
    """Print analytics for a test as JSON."""
    client = APIClient()
    try:
        analytics = client.get_analytics(test_id).json()
    except httpx.HTTPError as e:
        echo_api_error(e)
        sys.exit(1)

    if variant:
        stats = analytics.get("variants", {}).get(variant)
        if stats is None:
            raise click.UsageError(f"Test '{test_id}' has no variant '{variant}'.")
        analytics = stats
    click.echo(json.dumps(analytics, indent=2))
