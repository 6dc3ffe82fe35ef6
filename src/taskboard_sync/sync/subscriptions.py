"""Lifecycle of the single push subscription bound to the selected task."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Protocol

from taskboard_sync.errors import TaskSyncError
from taskboard_sync.sync.reconciler import StateReconciler
from taskboard_sync.transport.sse import ServerSentEvent

logger = logging.getLogger(__name__)


class SubscriptionSource(Protocol):
    def subscribe(self, task_id: str) -> AsyncIterator[ServerSentEvent]: ...


class SubscriptionController:
    """Keeps at most one open subscription, scoped to exactly the selected task."""

    def __init__(self, source: SubscriptionSource, reconciler: StateReconciler) -> None:
        self._source = source
        self._reconciler = reconciler
        self._task_id: str | None = None
        self._runner: asyncio.Task[None] | None = None
        # Serializes select/close so two rebinds can never overlap.
        self._lock = asyncio.Lock()

    @property
    def task_id(self) -> str | None:
        """Task the current subscription was opened for (None when unbound)."""
        return self._task_id

    @property
    def is_open(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def select(self, task_id: str | None) -> None:
        async with self._lock:
            if task_id is not None and task_id == self._task_id and self.is_open:
                return
            # Release the prior channel before looking at the new selection.
            await self._close_current()
            if task_id is None:
                return
            self._task_id = task_id
            self._runner = asyncio.create_task(
                self._consume(task_id), name=f"subscription:{task_id}"
            )
            logger.debug("subscription event=bound task_id=%s", task_id)

    async def close(self) -> None:
        async with self._lock:
            await self._close_current()

    async def _close_current(self) -> None:
        runner, self._runner = self._runner, None
        task_id, self._task_id = self._task_id, None
        if runner is None:
            return
        if not runner.done():
            runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await runner
        logger.debug("subscription event=released task_id=%s", task_id)

    async def _consume(self, task_id: str) -> None:
        stream = self._source.subscribe(task_id)
        try:
            async for message in stream:
                self._reconciler.apply_stream_message(message.event, message.data, scope=task_id)
        except TaskSyncError as exc:
            # Recovery belongs to the poll loop; the subscription just ends.
            logger.warning("subscription event=failed task_id=%s reason=%s", task_id, exc)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
