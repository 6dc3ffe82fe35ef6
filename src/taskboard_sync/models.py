"""Pydantic models for the task state the dashboard mirrors.

Beginner terms used in this file:
- Snapshot: a full Task (or list of Tasks) as returned by the backend.
- Envelope: the small `{event, task_id, payload}` wrapper around an incremental update.
- Rank: the position of a status in the forward lifecycle, used to detect regressions.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Lifecycle states shared by tasks and plan steps."""

    CREATED = "CREATED"
    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        return _STATUS_RANKS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.FAILED)

    @classmethod
    def parse(cls, value: Any) -> TaskStatus:
        """Normalize backend spellings (PENDING, SUCCESS, lower case) to the enum."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"status must be a string, got {type(value).__name__}")
        key = value.strip().upper()
        key = _STATUS_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError as exc:
            raise ValueError(f"Unknown status: {value!r}") from exc


_STATUS_RANKS: dict[TaskStatus, int] = {
    TaskStatus.CREATED: 0,
    TaskStatus.PLANNED: 1,
    TaskStatus.RUNNING: 2,
    # Both terminal states share a rank: DONE -> FAILED is never a regression.
    TaskStatus.DONE: 3,
    TaskStatus.FAILED: 3,
}

# Status names the agent backend emits on the wire.
_STATUS_ALIASES = {
    "PENDING": "CREATED",
    "SUCCESS": "DONE",
}


def _normalize_status(value: Any) -> TaskStatus:
    return TaskStatus.parse(value)


# Status fields accept every backend spelling and store the canonical enum.
Status = Annotated[TaskStatus, BeforeValidator(_normalize_status)]


class Step(BaseModel):
    """One planned unit of work. Identity (id, tool, description) never changes."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    description: str = ""
    tool: str = ""
    status: Status = TaskStatus.CREATED
    # Carried through for display; the client never interprets them.
    deps: list[str] = Field(default_factory=list)
    inputs: dict[str, Any] | None = None

    @field_validator("deps", mode="before")
    @classmethod
    def _deps_default(cls, value: Any) -> Any:
        return value or []


class Plan(BaseModel):
    """Ordered steps. Replaced wholesale on re-plan; only step status mutates in place."""

    model_config = ConfigDict(extra="ignore")

    steps: list[Step] = Field(default_factory=list)

    @field_validator("steps", mode="before")
    @classmethod
    def _steps_default(cls, value: Any) -> Any:
        return value or []

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]


class Result(BaseModel):
    """Output recorded for one step execution. Results are append-only per task."""

    model_config = ConfigDict(extra="ignore")

    step_id: str = Field(min_length=1)
    output: Any = None
    logs: str | None = None
    verified: bool = False
    error: str | None = None
    retries: int = 0


class Task(BaseModel):
    """Full task detail; list summaries use the same shape with fewer fields set."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    query: str = ""
    status: Status = TaskStatus.CREATED
    context: dict[str, Any] | None = None
    plan: Plan | None = None
    results: list[Result] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("results", mode="before")
    @classmethod
    def _results_default(cls, value: Any) -> Any:
        return value or []

    def sort_key(self) -> tuple[int, float, str]:
        """Newest-first key: created_at, else the timestamp prefix of the id, else the id."""
        timestamp = _timestamp_of(self.created_at)
        if timestamp is None:
            timestamp = _timestamp_from_id(self.id)
        if timestamp is None:
            return (0, 0.0, self.id)
        return (1, timestamp, self.id)


def _timestamp_of(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    try:
        return value.timestamp()
    except (OverflowError, OSError, ValueError):
        return None


def _timestamp_from_id(task_id: str) -> float | None:
    # Backend ids look like "20240131120000-k".
    prefix = task_id.split("-", 1)[0]
    if not prefix.isdigit():
        return None
    if len(prefix) == 14:
        try:
            return datetime.strptime(prefix, "%Y%m%d%H%M%S").replace(tzinfo=UTC).timestamp()
        except ValueError:
            pass
    return float(prefix)


class TaskContext(BaseModel):
    """Attachment sent along with a new task (an already-encoded PDF)."""

    pdf_data_base64: str = Field(min_length=1)
    filename: str | None = None


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    query: str = ""
    context: TaskContext | None = None

    @field_validator("query", mode="before")
    @classmethod
    def _strip_query(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _require_query_or_context(self) -> CreateTaskRequest:
        if not self.query and self.context is None:
            raise ValueError("query must be non-empty unless context is supplied")
        return self


UpdateEventName = Literal["task_status", "plan", "step_status", "result", "token"]


class UpdateEnvelope(BaseModel):
    """Incremental update pushed on the `update` SSE event."""

    model_config = ConfigDict(extra="ignore")

    event: UpdateEventName
    task_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_default(cls, value: Any) -> Any:
        return {} if value is None else value


class TaskStatusPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: Status


class StepStatusPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: Status


class TokenPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Empty values are legal on the wire; the reconciler ignores such tokens.
    step_id: str = ""
    chunk: str = ""


class LLMInfo(BaseModel):
    """Informational provider health from GET /debug/llm."""

    model_config = ConfigDict(extra="ignore")

    provider: str
    model: str | None = None
    ok: bool = False
    error: str | None = None


def tasks_from_payload(raw: Any) -> list[Task]:
    """Validate a list snapshot entry by entry, dropping malformed entries."""
    if not isinstance(raw, list):
        raise ValueError(f"task list must be a JSON array, got {type(raw).__name__}")
    tasks: list[Task] = []
    for index, item in enumerate(raw):
        if isinstance(item, Task):
            tasks.append(item)
            continue
        try:
            tasks.append(Task.model_validate(item))
        except ValidationError as exc:
            logger.debug("task_list event=entry_dropped index=%d reason=%s", index, exc)
    return tasks
