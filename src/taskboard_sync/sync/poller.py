"""Fixed-cadence snapshot refresh, the consistency backstop for the event stream."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Protocol

from taskboard_sync.errors import TaskNotFoundError, TaskSyncError
from taskboard_sync.models import Task
from taskboard_sync.sync.reconciler import StateReconciler

logger = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    async def list_tasks(self) -> list[Task]: ...

    async def get_task(self, task_id: str) -> Task: ...


class PollScheduler:
    """Requests list and selected-detail snapshots every `interval_s` while enabled."""

    def __init__(
        self,
        source: SnapshotSource,
        reconciler: StateReconciler,
        *,
        interval_s: float = 1.5,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._source = source
        self._reconciler = reconciler
        self.interval_s = interval_s
        self._enabled = False
        self._runner: asyncio.Task[None] | None = None
        self.ticks = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run(), name="poll-scheduler")

    def disable(self) -> None:
        """Stop scheduling new ticks; a tick already in flight still commits."""
        self._enabled = False

    async def stop(self) -> None:
        """Teardown: disable and cancel the loop, including any in-flight tick."""
        self._enabled = False
        runner, self._runner = self._runner, None
        if runner is None:
            return
        if not runner.done():
            runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await runner

    async def tick(self) -> None:
        self.ticks += 1
        try:
            tasks = await self._source.list_tasks()
        except TaskSyncError as exc:
            logger.warning("poll event=list_failed reason=%s", exc)
        else:
            self._reconciler.apply_task_list(tasks)

        task_id = self._reconciler.selected_id
        if task_id is None:
            return
        try:
            task = await self._source.get_task(task_id)
        except TaskNotFoundError:
            self._reconciler.apply_not_found(task_id)
        except TaskSyncError as exc:
            logger.warning("poll event=detail_failed task_id=%s reason=%s", task_id, exc)
        else:
            # The selection may have changed while the request was in flight;
            # the reconciler discards the snapshot in that case.
            self._reconciler.apply_task_snapshot(task)

    async def _run(self) -> None:
        logger.debug("poll event=loop_started interval_s=%s", self.interval_s)
        while self._enabled:
            await self.tick()
            await asyncio.sleep(self.interval_s)
        logger.debug("poll event=loop_stopped")
