"""Shared fixtures: an in-memory database, an API client bound to it, and SDK fakes."""

import asyncio
import json
import random

import httpx
import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from uxprobe.db import connect, get_db_connection, initialize_schema
from uxprobe.schemas import Event, EventBatch
from uxprobe.sdk.config import EmitterConfig
from uxprobe.sdk.emitter import DurableEmitter
from uxprobe.sdk.storage import MemoryStorage
from uxprobe.server.ingestion import IngestionService

T0 = 1_700_000_000_000


@pytest.fixture
def conn():
    conn = connect(":memory:")
    initialize_schema(conn)
    yield conn
    conn.disconnect()


@pytest.fixture
def ingest(conn):
    """Feeds wire-format event dicts through the ingestion service."""
    service = IngestionService(conn)

    def _ingest(*events):
        return service.process_batch([Event.model_validate(e) for e in events])

    return _ingest


@pytest.fixture
def client(conn, monkeypatch):
    from uxprobe.server.main import app

    monkeypatch.setenv("UXPROBE_DB_PATH", ":memory:")
    app.dependency_overrides[get_db_connection] = lambda: conn
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_event(session_id, event_type, timestamp=T0, test_id="t1", variant="A", **extra):
    event = {
        "sessionId": session_id,
        "testId": test_id,
        "variant": variant,
        "type": event_type,
        "timestamp": timestamp,
    }
    event.update(extra)
    return event


class FakeServer:
    """
    In-process stand-in for the ingestion service, mounted on an
    httpx.MockTransport. Fails the next ``failures`` batch posts with
    ``failure_status`` and, like ``POST /events``, answers 400 to a batch
    that does not validate.
    """

    def __init__(self, failures=0, test=None, failure_status=503):
        self.failures = failures
        self.failure_status = failure_status
        self.test = test
        self.batches = []
        self.rejected = []
        self.attempts = 0
        self.on_request = None

    @property
    def events(self):
        return [e for batch in self.batches for e in batch]

    async def handler(self, request):
        if request.url.path.startswith("/tests/"):
            if self.test is None:
                return httpx.Response(404, json={"detail": "Test not found."})
            return httpx.Response(200, json=self.test)

        self.attempts += 1
        if self.on_request is not None:
            await self.on_request(request)
        if self.failures:
            self.failures -= 1
            return httpx.Response(self.failure_status, json={"detail": "unavailable"})
        body = json.loads(request.content)
        try:
            EventBatch.model_validate(body)
        except ValidationError:
            self.rejected.append(body["events"])
            return httpx.Response(400, json={"detail": "Invalid event structure."})
        batch = body["events"]
        self.batches.append(batch)
        return httpx.Response(200, json={"processed": len(batch), "errors": []})

    def client(self):
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handler), base_url="http://uxprobe.test"
        )


class FakeTime:
    """Deterministic clock and sleep. Waits of a minute or more park until cancelled."""

    def __init__(self, wall_ms=T0):
        self.now = 0.0
        self.wall_ms = wall_ms
        self.delays = []

    def clock(self):
        return self.now

    def now_ms(self):
        return self.wall_ms

    def advance(self, ms):
        self.wall_ms += ms

    async def sleep(self, delay):
        if delay >= 60:
            await asyncio.Event().wait()
        self.delays.append(delay)
        self.now += delay
        await asyncio.sleep(0)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def make_emitter(server, fake_time, storage):
    def _make(**config):
        config.setdefault("project_id", "p1")
        config.setdefault("test_id", "t1")
        config.setdefault("flush_interval", 600.0)
        return DurableEmitter(
            EmitterConfig(**config),
            storage=storage,
            client=server.client(),
            rng=random.Random(7),
            clock=fake_time.clock,
            sleep=fake_time.sleep,
            now_ms=fake_time.now_ms,
        )

    return _make
