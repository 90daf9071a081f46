"""CLI API client for interacting with the uxprobe server."""

import json
import os
from typing import IO, Any, Dict, List, Optional

import click
import httpx

# The base URL can be configured via an environment variable
API_BASE_URL = os.getenv("UXPROBE_API_URL", "http://127.0.0.1:8000")


class APIClient:
    """A client for making requests to the uxprobe API."""

    def __init__(self, base_url: str = API_BASE_URL, transport=None):
        self.base_url = base_url
        self.client = httpx.Client(base_url=self.base_url, transport=transport)

    def upload_events(self, events: List[Dict[str, Any]]) -> httpx.Response:
        """Uploads a batch of events."""
        response = self.client.post("/events", json={"events": events})
        response.raise_for_status()
        return response

    def session_events(self, session_id: str) -> httpx.Response:
        """Fetches the ordered event log of one session."""
        response = self.client.get(f"/events/session/{session_id}")
        response.raise_for_status()
        return response

    def get_analytics(self, test_id: str) -> httpx.Response:
        """Fetches per-variant analytics for a test."""
        response = self.client.get(f"/analytics/{test_id}")
        response.raise_for_status()
        return response

    def list_tests(self, project_id: Optional[str] = None) -> httpx.Response:
        """Lists registered tests with their session totals."""
        params = {"projectId": project_id} if project_id else None
        response = self.client.get("/tests", params=params)
        response.raise_for_status()
        return response

    def get_test(self, test_id: str) -> httpx.Response:
        """Fetches one test with its tasks."""
        response = self.client.get(f"/tests/{test_id}")
        response.raise_for_status()
        return response

    def create_test(self, definition_file: IO) -> httpx.Response:
        """Registers a test from a JSON definition file."""
        payload = json.load(definition_file)
        response = self.client.post("/tests", json=payload)
        response.raise_for_status()
        return response


def echo_api_error(e: httpx.HTTPError) -> None:
    """Prints an HTTP or connection error as JSON on stderr."""
    if isinstance(e, httpx.HTTPStatusError):
        try:
            error_details = e.response.json()
        except json.JSONDecodeError:
            error_details = {
                "error": "Failed to decode server error response",
                "status_code": e.response.status_code,
                "response_text": e.response.text,
            }
    else:
        error_details = {"error": "Failed to connect to API", "details": str(e)}
    click.echo(json.dumps(error_details, indent=2), err=True)
