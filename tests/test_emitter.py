"""Tests for the durable emitter."""

import asyncio
import json
import random
from datetime import datetime

import httpx
import pytest

from uxprobe.sdk.config import QUEUE_KEY, SESSION_KEY, EmitterConfig
from uxprobe.sdk.state import FlushMode, TransportPhase
from uxprobe.sdk.storage import FileStorage, MemoryStorage
from uxprobe.sdk.transport import RetryPolicy
from tests.conftest import T0


def types_of(events):
    return [e["type"] for e in events]


def stored_queue(storage):
    raw = storage.get(QUEUE_KEY)
    return json.loads(raw) if raw else []


class Gate:
    """Holds a request open until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, request):
        self.entered.set()
        await self.release.wait()


class TestConfig:
    def test_requires_ids(self):
        with pytest.raises(ValueError):
            EmitterConfig(project_id="", test_id="t1")
        with pytest.raises(ValueError):
            EmitterConfig(project_id="p1", test_id="")

    def test_endpoint_trailing_slash(self):
        config = EmitterConfig(project_id="p1", test_id="t1", endpoint="http://x/")
        assert config.endpoint == "http://x"


class TestRetryPolicy:
    def test_delay_bounds(self):
        policy = RetryPolicy()
        rng = random.Random(0)
        for attempt in range(1, 4):
            raw = policy.base_delay * 2 ** attempt
            for _ in range(50):
                delay = policy.delay(attempt, rng)
                assert raw * 0.8 <= delay <= raw * 1.2

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_delay=30.0)
        assert policy.delay(10, random.Random(0)) == 30.0

    def test_seeded_rng_is_reproducible(self):
        policy = RetryPolicy()
        first = [policy.delay(a, random.Random(42)) for a in (1, 2, 3)]
        second = [policy.delay(a, random.Random(42)) for a in (1, 2, 3)]
        assert first == second


class TestBuffering:
    def test_enqueue_requires_session(self, make_emitter):
        emitter = make_emitter()
        with pytest.raises(RuntimeError):
            emitter.enqueue("custom")

    def test_new_session_emits_test_started(self, make_emitter, storage):
        emitter = make_emitter(context={"url": "https://example.com"})
        session, resumed = emitter.start_session()

        assert resumed is False
        [event] = stored_queue(storage)
        assert event["type"] == "test_started"
        assert event["sessionId"] == session.session_id
        assert event["projectId"] == "p1"
        assert event["payload"] == {"url": "https://example.com"}
        assert event["timestamp"] == T0
        assert json.loads(storage.get(SESSION_KEY))["sessionId"] == session.session_id

    def test_every_enqueue_is_persisted(self, make_emitter, storage):
        emitter = make_emitter(batch_size=100)
        emitter.start_session()
        emitter.enqueue("custom", {"n": 1})
        emitter.enqueue("test_completed", None, duration=1234)

        queue = stored_queue(storage)
        assert [e["type"] for e in queue] == ["test_started", "custom", "test_completed"]
        assert queue[2]["duration"] == 1234
        assert "duration" not in queue[1]

    def test_corrupt_stored_queue_is_ignored(self, make_emitter, storage):
        storage.set(QUEUE_KEY, "{not json")
        assert make_emitter().recover_on_startup() == 0


class TestFlush:
    @pytest.mark.asyncio
    async def test_flush_delivers_and_clears_storage(self, make_emitter, server, storage):
        emitter = make_emitter(batch_size=100)
        emitter.start_session()
        emitter.enqueue("custom")

        assert await emitter.flush() is True

        assert [e["type"] for e in server.events] == ["test_started", "custom"]
        assert storage.get(QUEUE_KEY) is None
        assert emitter.stats["sent"] == 2
        assert emitter.stats["batches_sent"] == 1

    @pytest.mark.asyncio
    async def test_empty_flush_is_noop(self, make_emitter, server):
        assert await make_emitter().flush() is True
        assert server.attempts == 0

    @pytest.mark.asyncio
    async def test_batch_size_triggers_flush(self, make_emitter, server):
        emitter = make_emitter(batch_size=2)
        emitter.start_session()
        emitter.enqueue("custom")
        await emitter.drain()

        assert len(server.batches) == 1
        assert emitter.buffer_size == 0

    @pytest.mark.asyncio
    async def test_concurrent_flush_is_suppressed(self, make_emitter, server, storage):
        gate = Gate()
        server.on_request = gate
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        first = asyncio.create_task(emitter.flush())
        await gate.entered.wait()

        emitter.enqueue("custom")
        assert await emitter.flush() is False
        assert emitter.stats["suppressed_flushes"] == 1
        # in-flight events stay persisted alongside the new one
        assert [e["type"] for e in stored_queue(storage)] == ["test_started", "custom"]

        gate.release.set()
        assert await first is True
        assert [e["type"] for e in stored_queue(storage)] == ["custom"]
        assert [e["type"] for e in server.events] == ["test_started"]

    @pytest.mark.asyncio
    async def test_cancelled_flush_restores_queue(self, make_emitter, server, storage):
        gate = Gate()
        server.on_request = gate
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        task = asyncio.create_task(emitter.flush())
        await gate.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert emitter.buffer_size == 1
        assert emitter.state.in_flight is False
        assert len(stored_queue(storage)) == 1


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_succeeds(self, make_emitter, server, fake_time):
        server.failures = 2
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        assert await emitter.flush() is True

        assert server.attempts == 3
        assert len(fake_time.delays) == 2
        assert 1.6 <= fake_time.delays[0] <= 2.4
        assert 3.2 <= fake_time.delays[1] <= 4.8
        assert emitter.stats["send_failures"] == 2
        assert emitter.state.phase is TransportPhase.IDLE
        assert emitter.state.retry_attempt == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, make_emitter, server, storage):
        server.failures = 100
        emitter = make_emitter(batch_size=100)
        emitter.start_session()
        emitter.enqueue("custom")

        assert await emitter.flush() is False

        assert server.attempts == 4
        assert emitter.buffer_size == 2
        assert len(stored_queue(storage)) == 2
        assert emitter.state.phase is TransportPhase.IDLE

    @pytest.mark.asyncio
    async def test_phase_while_waiting_for_retry(self, make_emitter, server, fake_time):
        server.failures = 1
        emitter = make_emitter(batch_size=100)
        emitter.start_session()
        phases = []

        async def observing_sleep(delay):
            phases.append((emitter.state.phase, emitter.state.retry_attempt))
            await fake_time.sleep(delay)

        emitter._sleep = observing_sleep
        assert await emitter.flush() is True
        assert phases == [(TransportPhase.AWAITING_RETRY, 1)]

    @pytest.mark.asyncio
    async def test_connection_error_counts_as_failure(self, make_emitter, server):
        async def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        server.on_request = refuse
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        assert await emitter.flush() is False
        assert emitter.buffer_size == 1


class TestDurability:
    @pytest.mark.asyncio
    async def test_events_survive_reload(self, make_emitter, server, storage):
        server.failures = 100
        first = make_emitter(batch_size=100)
        session, _ = first.start_session()
        first.enqueue("custom", {"n": 1})
        await first.flush()
        await first.aclose()

        server.failures = 0
        second = make_emitter(batch_size=100)
        assert second.recover_on_startup() == 2
        _, resumed = second.start_session()
        second.enqueue("custom", {"n": 2})
        assert await second.flush() is True

        assert resumed is True
        assert [e["type"] for e in server.events] == ["test_started", "custom", "custom"]
        assert [e.get("payload") for e in server.events][1:] == [{"n": 1}, {"n": 2}]
        assert {e["sessionId"] for e in server.events} == {session.session_id}
        assert storage.get(QUEUE_KEY) is None

    @pytest.mark.asyncio
    async def test_in_flight_batch_is_persisted_during_send(
        self, make_emitter, server, storage
    ):
        seen = []

        async def inspect(request):
            seen.append(len(stored_queue(storage)))

        server.on_request = inspect
        emitter = make_emitter(batch_size=100)
        emitter.start_session()
        emitter.enqueue("custom")
        await emitter.flush()

        assert seen == [2]

    def test_file_storage_survives_new_instance(self, tmp_path):
        storage = FileStorage(tmp_path / "store")
        storage.set(QUEUE_KEY, json.dumps([{"type": "custom"}]))
        assert FileStorage(tmp_path / "store").get(QUEUE_KEY) == '[{"type": "custom"}]'
        storage.remove(QUEUE_KEY)
        storage.remove(QUEUE_KEY)
        assert storage.get(QUEUE_KEY) is None


class TestUnload:
    @pytest.mark.asyncio
    async def test_best_effort_success_clears_storage(self, make_emitter, server, storage):
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        assert await emitter.on_unload() is True
        assert len(server.batches) == 1
        assert storage.get(QUEUE_KEY) is None

    @pytest.mark.asyncio
    async def test_best_effort_failure_is_not_retried(
        self, make_emitter, server, storage, fake_time
    ):
        server.failures = 100
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        assert await emitter.flush(FlushMode.BEST_EFFORT) is False
        assert server.attempts == 1
        assert fake_time.delays == []
        # left for the next page load
        assert len(stored_queue(storage)) == 1

    @pytest.mark.asyncio
    async def test_unload_stops_timer(self, make_emitter):
        emitter = make_emitter(batch_size=100)
        emitter.start_session()
        emitter.start()
        await emitter.on_unload()
        assert emitter._timer is None


class TestSessionResume:
    def test_resume_within_an_hour(self, make_emitter, fake_time, storage):
        first, _ = make_emitter().start_session()
        storage.remove(QUEUE_KEY)
        fake_time.advance(59 * 60 * 1000)

        emitter = make_emitter()
        session, resumed = emitter.start_session()

        assert resumed is True
        assert session.session_id == first.session_id
        assert emitter.buffer_size == 0

    def test_stale_session_is_replaced(self, make_emitter, fake_time):
        first, _ = make_emitter().start_session()
        fake_time.advance(60 * 60 * 1000)

        session, resumed = make_emitter().start_session()

        assert resumed is False
        assert session.session_id != first.session_id

    def test_other_test_is_not_resumed(self, make_emitter):
        first, _ = make_emitter(test_id="t1").start_session()
        session, resumed = make_emitter(test_id="t2").start_session()
        assert resumed is False
        assert session.session_id != first.session_id

    def test_resume_can_be_disabled(self, make_emitter):
        make_emitter().start_session()
        _, resumed = make_emitter(resume=False).start_session()
        assert resumed is False


def test_memory_storage_contains():
    storage = MemoryStorage()
    storage.set("k", "v")
    assert "k" in storage
    storage.remove("k")
    assert "k" not in storage


async def settle(predicate, turns=200):
    """Yields to the loop until predicate() holds or the turns run out."""
    for _ in range(turns):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


class TestRejection:
    @pytest.mark.asyncio
    async def test_rejected_batch_is_dropped_not_retried(
        self, make_emitter, server, storage, fake_time
    ):
        # written by a page that predates payload flattening
        storage.set(
            QUEUE_KEY,
            json.dumps(
                [
                    {
                        "sessionId": "old",
                        "testId": "t1",
                        "type": "click",
                        "payload": {"nested": {"a": 1}},
                        "timestamp": T0,
                    }
                ]
            ),
        )
        emitter = make_emitter(batch_size=100)
        emitter.recover_on_startup()
        emitter.start_session()

        assert await emitter.flush() is False

        assert server.attempts == 1
        assert fake_time.delays == []
        assert emitter.buffer_size == 0
        assert storage.get(QUEUE_KEY) is None
        assert emitter.stats["rejected"] == 2
        assert emitter.state.phase is TransportPhase.IDLE

        emitter.enqueue("test_completed", None, duration=5000)
        assert await emitter.flush() is True
        assert types_of(server.events) == ["test_completed"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 429, 500])
    async def test_transient_statuses_are_retried(self, make_emitter, server, status):
        server.failures = 1
        server.failure_status = status
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        assert await emitter.flush() is True
        assert server.attempts == 2
        assert emitter.stats["rejected"] == 0

    @pytest.mark.asyncio
    async def test_best_effort_rejection_is_dropped(self, make_emitter, server, storage):
        server.failures = 1
        server.failure_status = 422
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        assert await emitter.on_unload() is False
        assert storage.get(QUEUE_KEY) is None
        assert emitter.stats["rejected"] == 1

        # nothing left for the next page to resend
        assert make_emitter().recover_on_startup() == 0


class TestPayloadHygiene:
    @pytest.mark.asyncio
    async def test_non_scalar_values_are_flattened(self, make_emitter, server, storage):
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        event = emitter.enqueue(
            "click",
            {
                "at": datetime(2024, 1, 1, 12, 30),
                "nested": {"a": 1},
                "tags": ["x", "y"],
                "ratio": float("nan"),
                "ok": True,
                7: "numeric key",
            },
        )

        assert event["payload"] == {
            "at": "2024-01-01T12:30:00",
            "nested": '{"a": 1}',
            "tags": '["x", "y"]',
            "ratio": None,
            "ok": True,
            "7": "numeric key",
        }
        assert stored_queue(storage)[-1]["payload"] == event["payload"]
        assert await emitter.flush() is True
        assert server.rejected == []

    def test_unusable_event_is_dropped_without_raising(self, make_emitter, storage):
        emitter = make_emitter(batch_size=100)
        emitter.start_session()

        assert emitter.enqueue("click", ["not", "a", "mapping"]) is None
        assert emitter.enqueue("", {"a": 1}) is None

        assert emitter.stats["dropped"] == 2
        assert types_of(stored_queue(storage)) == ["test_started"]

    def test_negative_duration_is_sent_as_unknown(self, make_emitter):
        emitter = make_emitter(batch_size=100)
        emitter.start_session()
        event = emitter.enqueue("test_abandoned", {"reason": "x"}, duration=-5)
        assert "duration" not in event

    def test_storage_failure_does_not_reach_caller(self, make_emitter):
        class FullStorage(MemoryStorage):
            def set(self, key, value):
                raise OSError("quota exceeded")

        emitter = make_emitter(batch_size=100)
        emitter.storage = FullStorage()
        emitter.start_session()

        assert emitter.enqueue("click", {"a": 1}) is not None
        assert emitter.buffer_size == 2


class TestPeriodicFlush:
    @pytest.mark.asyncio
    async def test_timer_flushes_buffered_events(self, make_emitter, server, fake_time):
        emitter = make_emitter(batch_size=100, flush_interval=5.0)
        emitter.start_session()
        emitter.enqueue("click", {"a": 1})

        emitter.start()
        assert await settle(lambda: len(server.events) == 2)
        await emitter.stop()

        assert 5.0 in fake_time.delays
        assert types_of(server.events) == ["test_started", "click"]

    @pytest.mark.asyncio
    async def test_exhausted_batch_goes_out_on_next_tick(
        self, make_emitter, server, storage
    ):
        server.failures = 4
        emitter = make_emitter(batch_size=100, flush_interval=5.0)
        emitter.start_session()

        assert await emitter.flush() is False
        assert server.attempts == 4
        assert emitter.buffer_size == 1

        emitter.start()
        assert await settle(lambda: len(server.batches) == 1)
        await emitter.stop()

        assert types_of(server.events) == ["test_started"]
        assert storage.get(QUEUE_KEY) is None
