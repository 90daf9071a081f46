"""Durable event emitter.

Buffers events in memory, mirrors every not-yet-acknowledged event to
client-local storage, and flushes batches through the transport. Events
survive a reload because the next emitter over the same storage picks up
the persisted queue in :meth:`DurableEmitter.recover_on_startup`.

All methods are meant to run on a single asyncio event loop. The only
guard against overlapping flushes is the ``in_flight`` flag on the state.
"""

from __future__ import annotations

import asyncio
import json
import math
import random
import time
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

import httpx
import structlog

from uxprobe.sdk.config import QUEUE_KEY, SESSION_KEY, SESSION_MAX_AGE_MS, EmitterConfig
from uxprobe.sdk.state import (
    EmitterState,
    FlushMode,
    SendOutcome,
    SessionInfo,
    TransportPhase,
)
from uxprobe.sdk.storage import MemoryStorage, Storage
from uxprobe.sdk.transport import RetryPolicy, Transport

log = structlog.get_logger()


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _scalar(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Enum):
        return _scalar(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Mapping, list, tuple, set)):
        # The server only stores flat payloads; nested data travels as JSON text.
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def flat_payload(payload: Any) -> dict[str, Any] | None:
    """
    Coerces a host-supplied payload into a flat map of JSON scalars.

    Raises TypeError when the payload is not a mapping.
    """
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        raise TypeError(f"payload must be a mapping, got {type(payload).__name__}")
    return {str(key): _scalar(value) for key, value in payload.items()}


def _duration_ms(duration: Any) -> int | None:
    # The server rejects negative durations; an unusable one is sent as unknown.
    try:
        value = None if duration is None else int(duration)
    except (TypeError, ValueError, OverflowError):
        return None
    return value if value is not None and value >= 0 else None


class DurableEmitter:
    """
    At-least-once event emitter for one page context.

    ``clock``/``sleep`` drive retry scheduling and ``now_ms`` stamps events;
    all three can be replaced in tests so no real timers are involved.
    """

    def __init__(
        self,
        config: EmitterConfig,
        storage: Storage | None = None,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now_ms: Callable[[], int] = _epoch_ms,
    ):
        self.state = EmitterState(config=config)
        self.storage = storage if storage is not None else MemoryStorage()
        self.transport = Transport(self.state, client=client, policy=policy, rng=rng)
        self._clock = clock
        self._sleep = sleep
        self._now_ms = now_ms
        self._timer: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def config(self) -> EmitterConfig:
        return self.state.config

    @property
    def session(self) -> SessionInfo | None:
        return self.state.session

    def now_ms(self) -> int:
        return self._now_ms()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist_queue(self) -> None:
        """Overwrite the stored queue with every unacknowledged event."""
        pending = self.state.unacknowledged()
        try:
            if pending:
                self.storage.set(QUEUE_KEY, json.dumps(pending))
            else:
                self.storage.remove(QUEUE_KEY)
        except (OSError, TypeError, ValueError) as e:
            log.warning("emitter.persist.failed", events=len(pending), error=str(e))

    def recover_on_startup(self) -> int:
        """Prepend events a previous page persisted but never got acknowledged."""
        try:
            raw = self.storage.get(QUEUE_KEY)
        except OSError as e:
            log.warning("emitter.recover.failed", error=str(e))
            return 0
        if not raw:
            return 0
        try:
            stored = json.loads(raw)
        except ValueError:
            log.warning("emitter.recover.corrupt", key=QUEUE_KEY)
            return 0
        if not isinstance(stored, list):
            return 0

        self.state.queue = stored + self.state.queue
        log.info("emitter.recovered", events=len(stored))
        return len(stored)

    def persist_session(self) -> None:
        if self.state.session is None:
            return
        try:
            self.storage.set(SESSION_KEY, json.dumps(self.state.session.to_dict()))
        except (OSError, TypeError, ValueError) as e:
            log.warning("emitter.session.persist_failed", error=str(e))

    def clear_session(self) -> None:
        try:
            self.storage.remove(SESSION_KEY)
        except OSError as e:
            log.warning("emitter.session.clear_failed", error=str(e))

    def _load_resumable_session(self) -> SessionInfo | None:
        try:
            raw = self.storage.get(SESSION_KEY)
            if not raw:
                return None
            stored = SessionInfo.from_dict(json.loads(raw))
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("emitter.session.unreadable", error=str(e))
            return None

        if stored.test_id != self.config.test_id:
            return None
        if self.now_ms() - stored.start_time >= SESSION_MAX_AGE_MS:
            log.info("emitter.session.stale", session_id=stored.session_id)
            return None
        return stored

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self) -> tuple[SessionInfo, bool]:
        """
        Resume the persisted session or start a new one.

        Returns the session and whether it was resumed. Only a new session
        emits test_started.
        """
        resumed = self._load_resumable_session() if self.config.resume else None
        if resumed is not None:
            self.state.session = resumed
            log.info(
                "emitter.session.resumed",
                session_id=resumed.session_id,
                task_index=resumed.current_task_index,
            )
            return resumed, True

        now = self.now_ms()
        self.state.session = SessionInfo(
            session_id=str(uuid.uuid4()),
            test_id=self.config.test_id,
            variant=self.config.variant,
            start_time=now,
            current_task_index=0,
            task_start_time=now,
        )
        self.persist_session()
        self.enqueue("test_started", dict(self.config.context))
        return self.state.session, False

    # ------------------------------------------------------------------
    # Buffering
    # ------------------------------------------------------------------

    def enqueue(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        duration: int | None = None,
    ) -> dict[str, Any] | None:
        """
        Buffer and persist an event; flush once the batch size is reached.

        The payload is flattened to JSON scalars first. An event the server
        could never accept (empty type, non-mapping payload) is dropped with
        a warning and None is returned.
        """
        if self.state.session is None:
            raise RuntimeError("No active session; call start_session() first")

        try:
            if not isinstance(event_type, str) or not event_type:
                raise TypeError("event type must be a non-empty string")
            payload = flat_payload(payload)
        except TypeError as e:
            self.state.stats["dropped"] += 1
            log.warning("emitter.event.dropped", type=str(event_type), error=str(e))
            return None

        event: dict[str, Any] = {
            "sessionId": self.state.session.session_id,
            "projectId": self.config.project_id,
            "testId": self.config.test_id,
            "variant": self.state.session.variant,
            "type": event_type,
            "payload": payload,
            "timestamp": self.now_ms(),
        }
        duration = _duration_ms(duration)
        if duration is not None:
            event["duration"] = duration

        self.state.queue.append(event)
        self.state.stats["enqueued"] += 1
        self.persist_queue()

        if len(self.state.queue) >= self.config.batch_size:
            self._spawn_flush(FlushMode.NORMAL)
        return event

    @property
    def buffer_size(self) -> int:
        return len(self.state.queue)

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush(self, mode: FlushMode = FlushMode.NORMAL) -> bool:
        """
        Send everything buffered.

        Returns True when the buffer was acknowledged (or was empty). A flush
        requested while another is in flight is suppressed and returns False.
        A batch the server rejects with a non-retryable 4xx is dropped, not
        retried, and also returns False.
        """
        if self.state.in_flight:
            self.state.stats["suppressed_flushes"] += 1
            return False
        if not self.state.queue:
            return True

        self.state.in_flight = True
        try:
            if mode is FlushMode.BEST_EFFORT:
                return await self._flush_best_effort()
            return await self._flush_with_retry()
        finally:
            self.state.in_flight = False

    def _take_snapshot(self) -> list[dict[str, Any]]:
        batch = self.state.queue
        self.state.queue = []
        self.state.in_flight_batch = batch
        return batch

    def _restore_snapshot(self) -> None:
        self.state.queue = self.state.in_flight_batch + self.state.queue
        self.state.in_flight_batch = []
        self.persist_queue()

    def _acknowledge(self, batch: list[dict[str, Any]]) -> None:
        self.state.in_flight_batch = []
        self.state.stats["sent"] += len(batch)
        self.state.stats["batches_sent"] += 1
        self.persist_queue()

    def _discard(self, batch: list[dict[str, Any]]) -> None:
        """Forget a batch the server refused; resending it can never succeed."""
        self.state.in_flight_batch = []
        self.state.stats["rejected"] += len(batch)
        self.persist_queue()
        log.warning(
            "emitter.flush.rejected",
            events=len(batch),
            types=sorted({e.get("type") for e in batch if isinstance(e, dict)}, key=str),
        )

    async def _flush_with_retry(self) -> bool:
        attempt = 0
        try:
            while True:
                batch = self._take_snapshot()
                self.state.phase = TransportPhase.SENDING
                outcome = await self.transport.send(batch)
                if outcome is SendOutcome.ACKED:
                    self._acknowledge(batch)
                    self.state.reset_retry()
                    log.debug("emitter.flush.ok", events=len(batch), attempt=attempt)
                    return True
                if outcome is SendOutcome.REJECTED:
                    self._discard(batch)
                    self.state.reset_retry()
                    return False

                self.state.stats["send_failures"] += 1
                self._restore_snapshot()
                attempt += 1
                if attempt > self.transport.policy.max_attempts:
                    # The events stay queued for the next periodic flush.
                    self.state.reset_retry()
                    log.warning(
                        "emitter.flush.gave_up",
                        queued=len(self.state.queue),
                        attempts=attempt,
                    )
                    return False
                await self._wait_for_retry(attempt)
        except asyncio.CancelledError:
            if self.state.in_flight_batch:
                self._restore_snapshot()
            self.state.reset_retry()
            raise

    async def _wait_for_retry(self, attempt: int) -> None:
        """The single place a retry is scheduled."""
        delay = self.transport.policy.delay(attempt, self.transport.rng)
        self.state.phase = TransportPhase.AWAITING_RETRY
        self.state.retry_attempt = attempt
        self.state.retry_deadline = self._clock() + delay
        log.info("emitter.flush.retry_scheduled", attempt=attempt, delay=round(delay, 3))
        await self._sleep(delay)

    async def _flush_best_effort(self) -> bool:
        batch = self._take_snapshot()
        self.state.phase = TransportPhase.SENDING
        try:
            outcome = await self.transport.send_best_effort(batch)
        except asyncio.CancelledError:
            self._restore_snapshot()
            raise
        finally:
            self.state.reset_retry()

        if outcome is SendOutcome.ACKED:
            self._acknowledge(batch)
            return True
        if outcome is SendOutcome.REJECTED:
            self._discard(batch)
        else:
            # Left in storage for the next page load to recover.
            self._restore_snapshot()
        return False

    def _spawn_flush(self, mode: FlushMode) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (synchronous caller): the periodic flush picks it up.
            return
        task = loop.create_task(self._guarded(self.flush(mode)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _guarded(self, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("emitter.background_flush.failed", error=str(e), exc_info=True)

    # ------------------------------------------------------------------
    # Timers and teardown
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic flush timer (requires a running event loop)."""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._timer_loop())

    async def _timer_loop(self) -> None:
        log.debug("emitter.timer.started", interval=self.config.flush_interval)
        while True:
            await self._sleep(self.config.flush_interval)
            try:
                await self.flush(FlushMode.NORMAL)
            except Exception as e:
                log.error("emitter.timer.flush_failed", error=str(e), exc_info=True)

    async def stop(self) -> None:
        """Tear down the periodic timer. Buffered events stay persisted."""
        if self._timer is not None:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
            self._timer = None

    async def drain(self) -> None:
        """Wait for flushes started by enqueue() to settle."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _cancel_pending(self) -> None:
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def on_unload(self) -> bool:
        """
        Page hide / unload.

        Stops the timer, truncates any in-flight normal flush (its events
        are still in storage), then makes one best-effort delivery.
        """
        await self.stop()
        await self._cancel_pending()
        return await self.flush(FlushMode.BEST_EFFORT)

    async def aclose(self) -> None:
        await self.stop()
        await self._cancel_pending()
        await self.transport.aclose()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self.state.stats,
            "buffer_size": self.buffer_size,
            "in_flight": self.state.in_flight,
            "phase": self.state.phase.value,
        }
