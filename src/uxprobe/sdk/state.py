"""Mutable emitter state, shared by reference with the transport and widget."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from uxprobe.sdk.config import EmitterConfig


class FlushMode(str, Enum):
    NORMAL = "normal"
    BEST_EFFORT = "best_effort"


class TransportPhase(str, Enum):
    """Delivery state machine: IDLE -> SENDING -> IDLE | AWAITING_RETRY."""
    IDLE = "idle"
    SENDING = "sending"
    AWAITING_RETRY = "awaiting_retry"


class SendOutcome(str, Enum):
    """Result of one delivery attempt."""
    ACKED = "acked"
    # Network error, timeout, 5xx, 408 or 429: worth sending again
    RETRYABLE = "retryable"
    # Any other 4xx: the server will never accept this batch
    REJECTED = "rejected"


@dataclass
class SessionInfo:
    """The resumable part of a session. Times are epoch milliseconds."""
    session_id: str
    test_id: str
    variant: str
    start_time: int
    current_task_index: int = 0
    task_start_time: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "testId": self.test_id,
            "variant": self.variant,
            "startTime": self.start_time,
            "currentTaskIndex": self.current_task_index,
            "taskStartTime": self.task_start_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionInfo:
        return cls(
            session_id=data["sessionId"],
            test_id=data["testId"],
            variant=data.get("variant") or "A",
            start_time=int(data["startTime"]),
            current_task_index=int(data.get("currentTaskIndex") or 0),
            task_start_time=data.get("taskStartTime"),
        )


@dataclass
class EmitterState:
    """
    Everything the emitter knows about one page context.

    Constructed once per emitter; the transport and widget hold the same
    instance rather than reading module globals.
    """
    config: EmitterConfig
    session: SessionInfo | None = None

    # Buffered events not yet handed to the transport
    queue: list[dict[str, Any]] = field(default_factory=list)

    # Events handed to the transport and not yet acknowledged
    in_flight_batch: list[dict[str, Any]] = field(default_factory=list)
    in_flight: bool = False

    # Delivery state machine
    phase: TransportPhase = TransportPhase.IDLE
    retry_attempt: int = 0
    retry_deadline: float | None = None

    # Set by success()/abandon()
    terminated: bool = False

    stats: dict[str, int] = field(default_factory=lambda: {
        "enqueued": 0,
        "sent": 0,
        "batches_sent": 0,
        "send_failures": 0,
        "suppressed_flushes": 0,
        "rejected": 0,
        "dropped": 0,
    })

    def unacknowledged(self) -> list[dict[str, Any]]:
        """In-flight events followed by buffered ones, oldest first."""
        return self.in_flight_batch + self.queue

    def reset_retry(self) -> None:
        self.phase = TransportPhase.IDLE
        self.retry_attempt = 0
        self.retry_deadline = None
