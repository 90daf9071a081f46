"""SDK configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

DEFAULT_ENDPOINT = os.getenv("UXPROBE_API_URL", "http://127.0.0.1:8000")

# Storage keys, kept apart so the queue and the session can be cleared
# independently.
QUEUE_KEY = "uxprobe_offline_queue"
SESSION_KEY = "uxprobe_session"

# A persisted session older than this is not resumed.
SESSION_MAX_AGE_MS = 60 * 60 * 1000


@dataclass
class EmitterConfig:
    """Per-page configuration for the emitter and the widget."""
    project_id: str
    test_id: str
    variant: str = "A"
    endpoint: str = DEFAULT_ENDPOINT

    # Flush as soon as this many events are buffered
    batch_size: int = 5

    # Periodic flush interval (seconds)
    flush_interval: float = 10.0

    # Per-request timeouts (seconds); the best-effort path must be short
    request_timeout: float = 10.0
    best_effort_timeout: float = 2.0

    # Resume a persisted session after a full-page navigation
    resume: bool = True

    # Page context sent with test_started (url, userAgent, screenWidth, ...)
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.project_id or not self.test_id:
            raise ValueError("project_id and test_id required")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.endpoint = self.endpoint.rstrip("/")
