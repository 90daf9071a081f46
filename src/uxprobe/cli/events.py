"""CLI commands for managing events."""

import json
import sys

import click
import httpx

from uxprobe.cli.client import APIClient, echo_api_error


@click.group("events")
def events_cli():
    """Upload events and inspect session event logs."""
    pass


@events_cli.command("upload")
@click.argument("event_data", type=click.File("r"), default="-")
def upload_events(event_data):
    """
    Upload a batch of events from a file or stdin.

    EVENT_DATA should be a JSON array of event objects, or an object with
    an "events" array.
    """
    try:
        data = json.load(event_data)
        if isinstance(data, dict):
            data = data.get("events")
        if not isinstance(data, list):
            raise ValueError("Input must be a JSON array of event objects.")
    except (json.JSONDecodeError, ValueError) as e:
        error_message = {"error": "Invalid event data provided", "details": str(e)}
        click.echo(json.dumps(error_message, indent=2), err=True)
        sys.exit(1)

    client = APIClient()
    try:
        response = client.upload_events(data)
        click.echo(json.dumps(response.json(), indent=2))
    except httpx.HTTPError as e:
        echo_api_error(e)
        sys.exit(1)


@events_cli.command("log")
@click.argument("session_id")
def session_log(session_id: str):
    """Print the ordered event log of a session."""
    client = APIClient()
    try:
        response = client.session_events(session_id)
        click.echo(json.dumps(response.json(), indent=2))
    except httpx.HTTPError as e:
        echo_api_error(e)
        sys.exit(1)
