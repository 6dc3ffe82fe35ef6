"""Merge engine for snapshots and incremental events.

Beginner terms used in this file:
- List view: every task summary the dashboard shows, keyed by task id.
- Detail view: the full Task for the one selected task (may be absent).
- Stickiness: a status never moves back to an earlier rank once a later one was seen.
- Scope: the task id a subscription was opened for; units from any other scope are stale.

All methods are synchronous, so one merge can never interleave with another on the
event loop. Both refresh sources (poller and subscription) call into the same instance.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from taskboard_sync.models import (
    Plan,
    Result,
    StepStatusPayload,
    Task,
    TaskStatus,
    TaskStatusPayload,
    TokenPayload,
    UpdateEnvelope,
    tasks_from_payload,
)
from taskboard_sync.sync.buffer import StreamingTokenBuffer

logger = logging.getLogger(__name__)


class StateReconciler:
    """Sole owner and writer of the list view and the selected-task detail view."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._selected_id: str | None = None
        self._detail: Task | None = None
        self._detail_error: str | None = None
        # Highest-rank status ever observed per task, in any view.
        self._highest_status: dict[str, TaskStatus] = {}
        # Newest versioned detail snapshot applied, per task. Its updated_at only moves forward.
        self._newest_snapshots: dict[str, Task] = {}
        self._buffer = StreamingTokenBuffer()
        self._event_handlers: dict[str, Callable[[UpdateEnvelope], bool]] = {
            "task_status": self._on_task_status,
            "plan": self._on_plan,
            "step_status": self._on_step_status,
            "result": self._on_result,
            "token": self._on_token,
        }

    @property
    def tasks(self) -> list[Task]:
        """List view, newest first."""
        return sorted(self._tasks.values(), key=Task.sort_key, reverse=True)

    @property
    def selected_id(self) -> str | None:
        return self._selected_id

    @property
    def detail(self) -> Task | None:
        return self._detail

    @property
    def detail_error(self) -> str | None:
        return self._detail_error

    @property
    def streaming(self) -> Mapping[str, str]:
        return self._buffer.entries

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def select(self, task_id: str | None) -> bool:
        """Switch the observed task. Returns False when the selection did not change."""
        if task_id == self._selected_id:
            return False
        self._selected_id = task_id
        self._buffer.clear_all()
        self._detail_error = None
        # Show the list summary until the first detail snapshot arrives.
        self._detail = self._tasks.get(task_id) if task_id is not None else None
        logger.debug("sync event=selected task_id=%s", task_id)
        return True

    def add_created_task(self, task: Task) -> None:
        status = self._merge_status(task.id, task.status)
        task = _with_status(task, status)
        self._tasks[task.id] = task

    def apply_task_list(self, tasks: Iterable[Task | Mapping[str, Any]]) -> None:
        """Replace the list view; per-entry status never regresses."""
        merged: dict[str, Task] = {}
        for task in tasks_from_payload(list(tasks)):
            status = self._merge_status(task.id, task.status)
            merged[task.id] = _with_status(task, status)
        self._tasks = merged
        logger.debug("sync event=task_list_applied count=%d", len(merged))

    def apply_task_snapshot(self, task: Task | Mapping[str, Any]) -> bool:
        """Replace the detail view when the snapshot targets the selected task."""
        if not isinstance(task, Task):
            try:
                task = Task.model_validate(task)
            except ValidationError as exc:
                logger.debug("sync event=snapshot_dropped reason=%s", exc)
                return False

        if task.id != self._selected_id:
            logger.debug(
                "sync event=snapshot_discarded task_id=%s selected=%s", task.id, self._selected_id
            )
            return False

        status = self._merge_status(task.id, task.status)
        if self._is_older_snapshot(task):
            # Plan and results stay as they are; only the sticky status can move.
            # An empty detail view falls back to the newest snapshot seen.
            base = self._detail if self._detail is not None else self._newest_snapshots[task.id]
            self._detail = _with_status(base, status)
            self._detail_error = None
            logger.debug("sync event=snapshot_outdated task_id=%s", task.id)
            return True

        if task.updated_at is not None:
            self._newest_snapshots[task.id] = task
        self._detail = _with_status(task, status)
        self._detail_error = None
        # A result present in the authoritative snapshot finalizes its stream.
        for result in task.results:
            self._buffer.clear(result.step_id)
        logger.debug("sync event=snapshot_applied task_id=%s status=%s", task.id, status.value)
        return True

    def apply_not_found(self, task_id: str) -> bool:
        """Backend no longer knows the selected task: show an error, not stale data."""
        if task_id != self._selected_id:
            return False
        self._detail = None
        self._detail_error = f"Task {task_id} not found"
        logger.info("sync event=detail_not_found task_id=%s", task_id)
        return True

    def apply_event(self, envelope: UpdateEnvelope) -> bool:
        if envelope.task_id != self._selected_id:
            logger.debug(
                "sync event=update_discarded kind=%s task_id=%s selected=%s",
                envelope.event,
                envelope.task_id,
                self._selected_id,
            )
            return False
        try:
            return self._event_handlers[envelope.event](envelope)
        except ValidationError as exc:
            logger.debug(
                "sync event=update_dropped kind=%s task_id=%s reason=%s",
                envelope.event,
                envelope.task_id,
                exc,
            )
            return False

    def apply_stream_message(self, event_name: str, data: str, *, scope: str | None) -> bool:
        """Decode one raw SSE unit and merge it; malformed units are dropped."""
        if scope != self._selected_id:
            logger.debug(
                "sync event=stream_unit_stale scope=%s selected=%s", scope, self._selected_id
            )
            return False
        if event_name not in ("snapshot", "update"):
            return False
        try:
            raw = json.loads(data)
        except ValueError:
            logger.debug("sync event=stream_unit_dropped kind=%s reason=invalid_json", event_name)
            return False

        if event_name == "snapshot":
            return self.apply_task_snapshot(raw) if isinstance(raw, dict) else False
        try:
            envelope = UpdateEnvelope.model_validate(raw)
        except ValidationError as exc:
            logger.debug("sync event=stream_unit_dropped kind=update reason=%s", exc)
            return False
        return self.apply_event(envelope)

    def _on_task_status(self, envelope: UpdateEnvelope) -> bool:
        payload = TaskStatusPayload.model_validate(envelope.payload)
        status = self._merge_status(envelope.task_id, payload.status)
        entry = self._tasks.get(envelope.task_id)
        if entry is not None:
            self._tasks[envelope.task_id] = _with_status(entry, status)
        if self._detail is not None and self._detail.id == envelope.task_id:
            self._detail = _with_status(self._detail, status)
        return True

    def _on_plan(self, envelope: UpdateEnvelope) -> bool:
        plan = Plan.model_validate(envelope.payload)
        if self._detail is None:
            return False
        self._detail = self._detail.model_copy(update={"plan": plan})
        return True

    def _on_step_status(self, envelope: UpdateEnvelope) -> bool:
        payload = StepStatusPayload.model_validate(envelope.payload)
        if self._detail is None or self._detail.plan is None:
            return False
        steps = list(self._detail.plan.steps)
        for index, step in enumerate(steps):
            if step.id == payload.id:
                steps[index] = step.model_copy(update={"status": payload.status})
                break
        else:
            logger.debug(
                "sync event=unknown_step task_id=%s step_id=%s", envelope.task_id, payload.id
            )
            return False
        plan = self._detail.plan.model_copy(update={"steps": steps})
        self._detail = self._detail.model_copy(update={"plan": plan})
        return True

    def _on_result(self, envelope: UpdateEnvelope) -> bool:
        result = Result.model_validate(envelope.payload)
        self._buffer.clear(result.step_id)
        if self._detail is None:
            return False
        results = [*self._detail.results, result]
        self._detail = self._detail.model_copy(update={"results": results})
        return True

    def _on_token(self, envelope: UpdateEnvelope) -> bool:
        payload = TokenPayload.model_validate(envelope.payload)
        if not payload.step_id or not payload.chunk:
            return False
        self._buffer.append(payload.step_id, payload.chunk)
        return True

    def _merge_status(self, task_id: str, incoming: TaskStatus) -> TaskStatus:
        held = self._highest_status.get(task_id)
        if held is not None and incoming.rank < held.rank:
            logger.debug(
                "sync event=status_regression_ignored task_id=%s held=%s incoming=%s",
                task_id,
                held.value,
                incoming.value,
            )
            return held
        self._highest_status[task_id] = incoming
        return incoming

    def _is_older_snapshot(self, task: Task) -> bool:
        newest = self._newest_snapshots.get(task.id)
        if task.updated_at is None or newest is None or newest.updated_at is None:
            return False
        return _as_utc(task.updated_at) < _as_utc(newest.updated_at)


def _with_status(task: Task, status: TaskStatus) -> Task:
    if task.status is status:
        return task
    return task.model_copy(update={"status": status})


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
