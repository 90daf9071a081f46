"""Task-progression controller for a usability test session.

Drives the task list a tester works through and reports progress through the
emitter. Rendering is left to the host page; this class only tracks state.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from uxprobe.sdk.config import EmitterConfig
from uxprobe.sdk.emitter import DurableEmitter
from uxprobe.sdk.state import FlushMode

log = structlog.get_logger()

FALLBACK_TASK = {"title": "Complete the task", "description": ""}


class SessionWidget:
    """
    Public API used by host pages:
    init, log_event, complete_task, skip_task, success, abandon,
    get_session_id, flush and on_unload.

    Extra keyword arguments are handed to :class:`DurableEmitter`
    (storage, client, clock, sleep, now_ms, ...).
    """

    def __init__(self, **emitter_options: Any):
        self._emitter_options = emitter_options
        self.emitter: DurableEmitter | None = None
        self.tasks: list[dict[str, Any]] = []
        self.test: dict[str, Any] | None = None
        self.resumed = False

    @property
    def initialized(self) -> bool:
        return self.emitter is not None

    @property
    def terminated(self) -> bool:
        return self.emitter is not None and self.emitter.state.terminated

    async def init(self, config: EmitterConfig | dict[str, Any]) -> None:
        """Start or resume a session and load the test's tasks. Idempotent."""
        if self.initialized:
            return
        if not isinstance(config, EmitterConfig):
            config = EmitterConfig(**config)

        emitter = DurableEmitter(config, **self._emitter_options)
        emitter.recover_on_startup()
        session, self.resumed = emitter.start_session()
        self.emitter = emitter

        self.tasks = await self._load_tasks()
        if not self.resumed:
            self._emit_task_started()
        emitter.start()
        log.info(
            "widget.ready",
            session_id=session.session_id,
            tasks=len(self.tasks),
            resumed=self.resumed,
        )

    async def _load_tasks(self) -> list[dict[str, Any]]:
        try:
            test = await self.emitter.transport.fetch_test(self.emitter.config.test_id)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("widget.test_fetch.failed", error=str(e))
            return [dict(FALLBACK_TASK)]

        self.test = test
        tasks = test.get("tasks") or []
        if not tasks:
            tasks = [
                {
                    "title": test.get("name") or FALLBACK_TASK["title"],
                    "description": test.get("instructions")
                    or test.get("description")
                    or "",
                }
            ]
        return tasks

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @property
    def current_task_index(self) -> int:
        return self.emitter.session.current_task_index if self.initialized else 0

    @property
    def current_task(self) -> dict[str, Any] | None:
        if not self.tasks or self.current_task_index >= len(self.tasks):
            return None
        return self.tasks[self.current_task_index]

    @property
    def progress(self) -> tuple[int, int]:
        """(1-based current task number, total tasks)."""
        return self.current_task_index + 1, len(self.tasks)

    def _task_payload(self) -> dict[str, Any]:
        task = self.current_task or {}
        return {"taskIndex": self.current_task_index, "taskTitle": task.get("title")}

    def _emit_task_started(self) -> None:
        self.emitter.enqueue("task_started", self._task_payload())

    def _advance(self) -> bool:
        """Move to the next task. False when the current task was the last one."""
        session = self.emitter.session
        if session.current_task_index >= len(self.tasks) - 1:
            return False
        session.current_task_index += 1
        session.task_start_time = self.emitter.now_ms()
        self.emitter.persist_session()
        self._emit_task_started()
        return True

    # ------------------------------------------------------------------
    # Calls from the host page
    # ------------------------------------------------------------------

    def log_event(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        if not self.initialized:
            return
        self.emitter.enqueue(event_type, payload)

    async def complete_task(self) -> None:
        if not self.initialized or self.terminated:
            return
        session = self.emitter.session
        duration = self.emitter.now_ms() - (session.task_start_time or session.start_time)
        self.emitter.enqueue("task_completed", self._task_payload(), duration)
        if not self._advance():
            await self.success()

    async def skip_task(self) -> None:
        if not self.initialized or self.terminated:
            return
        self.emitter.enqueue("task_skipped", self._task_payload())
        if not self._advance():
            await self.abandon("all_tasks_skipped")

    async def success(self, metadata: dict[str, Any] | None = None) -> None:
        """Mark the session completed. Terminal."""
        if not self.initialized or self.terminated:
            return
        await self._finish("test_completed", metadata)

    async def abandon(self, reason: str) -> None:
        """Mark the session abandoned. Terminal."""
        if not self.initialized or self.terminated:
            return
        payload = {"reason": reason, "lastTaskIndex": self.current_task_index}
        await self._finish("test_abandoned", payload)

    async def _finish(self, event_type: str, payload: dict[str, Any] | None) -> None:
        emitter = self.emitter
        duration = emitter.now_ms() - emitter.session.start_time
        emitter.enqueue(event_type, payload, duration)
        emitter.state.terminated = True
        await emitter.stop()
        await emitter.drain()
        emitter.clear_session()
        await emitter.flush(FlushMode.NORMAL)
        log.info(
            "widget.finished",
            session_id=emitter.session.session_id,
            outcome=event_type,
            duration_ms=duration,
        )

    def get_session_id(self) -> str | None:
        if not self.initialized:
            return None
        return self.emitter.session.session_id

    async def flush(self) -> bool:
        if not self.initialized:
            return True
        return await self.emitter.flush(FlushMode.NORMAL)

    async def on_unload(self) -> bool:
        if not self.initialized:
            return True
        return await self.emitter.on_unload()

    async def aclose(self) -> None:
        if self.initialized:
            await self.emitter.aclose()
