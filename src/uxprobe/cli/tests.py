"""CLI commands for registering usability tests."""

import json
import sys
from typing import Optional

import click
import httpx

from uxprobe.cli.client import APIClient, echo_api_error


@click.group("tests")
def tests_cli():
    """Create, list, and inspect usability tests."""
    pass


@tests_cli.command("list")
@click.option("--project-id", default=None, help="Only list tests of this project.")
def list_tests(project_id: Optional[str]):
    """List tests with their session totals as JSON."""
    client = APIClient()
    try:
        response = client.list_tests(project_id)
        click.echo(json.dumps(response.json(), indent=2))
    except httpx.HTTPError as e:
        echo_api_error(e)
        sys.exit(1)


@tests_cli.command("get")
@click.argument("test_id")
def get_test(test_id: str):
    """Print one test with its tasks."""
    client = APIClient()
    try:
        response = client.get_test(test_id)
        click.echo(json.dumps(response.json(), indent=2))
    except httpx.HTTPError as e:
        echo_api_error(e)
        sys.exit(1)


@tests_cli.command("create")
@click.option(
    "--definition-file",
    default="-",
    type=click.File("r"),
    help="Path to the JSON test definition. Defaults to stdin.",
)
def create_test(definition_file):
    """
    Register a test from a JSON definition.

    The definition holds name, description, instructions, targetUrl,
    variants and an ordered list of tasks ({title, description}).
    """
    client = APIClient()
    try:
        response = client.create_test(definition_file)
        click.echo(json.dumps(response.json(), indent=2))
    except json.JSONDecodeError as e:
        raise click.UsageError(f"Failed to parse test definition: {e}")
    except httpx.HTTPError as e:
        echo_api_error(e)
        sys.exit(1)
