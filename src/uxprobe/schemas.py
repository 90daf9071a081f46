"""Pydantic models shared by the server, the SDK and the CLI."""

from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool

# A payload value must be a scalar; nested objects and arrays are rejected.
Scalar = Union[StrictBool, int, float, str, None]


class EventType(str, Enum):
    """Event types the ingestion service and the aggregator recognise."""

    TEST_STARTED = "test_started"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_SKIPPED = "task_skipped"
    TASK_ABANDONED = "task_abandoned"
    TEST_COMPLETED = "test_completed"
    TEST_ABANDONED = "test_abandoned"
    CUSTOM = "custom"
    VALIDATION_ERROR = "validation_error"
    API_ERROR = "api_error"
    ERROR = "error"


class Outcome(str, Enum):
    """Terminal outcome of a session. An open session has no outcome."""

    COMPLETED = "completed"
    ABANDONED = "abandoned"


SESSION_OPENING_TYPES = frozenset({EventType.TEST_STARTED.value})

TERMINAL_OUTCOMES = {
    EventType.TEST_COMPLETED.value: Outcome.COMPLETED,
    EventType.TEST_ABANDONED.value: Outcome.ABANDONED,
}

ERROR_TYPES = (
    EventType.VALIDATION_ERROR.value,
    EventType.API_ERROR.value,
    EventType.ERROR.value,
)


class Event(BaseModel):
    """A single interaction event as sent by the SDK."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    test_id: str = Field(alias="testId", min_length=1)
    variant: Optional[str] = None
    type: str = Field(min_length=1)
    payload: Optional[Dict[str, Scalar]] = None
    timestamp: int = Field(gt=0, description="Client clock, epoch milliseconds.")
    duration: Optional[int] = Field(default=None, ge=0)
    project_id: Optional[str] = Field(default=None, alias="projectId")


class EventBatch(BaseModel):
    """Request body of the batch ingestion endpoint."""

    events: List[Event]


class EventError(BaseModel):
    """A per-event failure reported back to the client."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    type: str
    error: str


class BatchResult(BaseModel):
    """Outcome of processing a batch."""

    processed: int = 0
    errors: List[EventError] = []


class StoredEvent(BaseModel):
    """An event row as returned by the session event log."""

    id: int
    session_id: str
    type: str
    payload: Optional[Dict[str, Scalar]] = None
    timestamp: int
    duration_ms: Optional[int] = None
    received_at: Optional[str] = None


class TimeBucket(BaseModel):
    bucket: str
    count: int = 0


class VariantStats(BaseModel):
    """Per-variant statistics. Computed on demand, never stored."""

    model_config = ConfigDict(populate_by_name=True)

    sessions: int = 0
    completed: int = 0
    abandoned: int = 0
    completion_rate: float = Field(0, alias="completionRate")
    abandon_rate: float = Field(0, alias="abandonRate")
    avg_completion_time_ms: int = Field(0, alias="avgCompletionTimeMs")
    median_completion_time_ms: int = Field(0, alias="medianCompletionTimeMs")
    min_completion_time_ms: int = Field(0, alias="minCompletionTimeMs")
    max_completion_time_ms: int = Field(0, alias="maxCompletionTimeMs")
    errors_by_type: Dict[str, int] = Field(default_factory=dict, alias="errorsByType")
    time_distribution: List[TimeBucket] = Field(
        default_factory=list, alias="timeDistribution"
    )


class TestAnalytics(BaseModel):
    """Analytics for one test, keyed by variant."""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(populate_by_name=True)

    test_id: str = Field(alias="testId")
    test_name: Optional[str] = Field(default=None, alias="testName")
    description: Optional[str] = None
    sample_size: int = Field(0, alias="sampleSize")
    variants: Dict[str, VariantStats] = {}
    computed_at: str = Field(alias="computedAt")


class TaskDefinition(BaseModel):
    """One step of a usability test."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    title: str
    description: Optional[str] = None
    order_index: int = Field(0, alias="orderIndex")


class TestDefinition(BaseModel):
    """A usability test as served to the widget."""

    __test__ = False

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    project_id: str = Field("default", alias="projectId")
    name: str
    description: Optional[str] = None
    instructions: Optional[str] = None
    target_url: Optional[str] = Field(default=None, alias="targetUrl")
    variants: List[str] = ["A"]
    is_active: bool = Field(True, alias="isActive")
    tasks: List[TaskDefinition] = []
