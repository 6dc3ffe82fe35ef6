"""Dashboard session wiring transport, reconciler, subscription and poller together."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from taskboard_sync.config.settings import Settings, get_settings
from taskboard_sync.errors import InvalidTaskInputError, TaskSyncError
from taskboard_sync.models import LLMInfo, Task, TaskContext
from taskboard_sync.sync.poller import PollScheduler
from taskboard_sync.sync.reconciler import StateReconciler
from taskboard_sync.sync.subscriptions import SubscriptionController
from taskboard_sync.transport.client import TaskApiClient

logger = logging.getLogger(__name__)


class DashboardSession:
    """One observer of the backend: a task list plus at most one selected task.

    Use as `async with DashboardSession(...) as session:` so the subscription,
    the poll loop and (when owned) the HTTP client are released on exit.
    """

    def __init__(
        self,
        client: TaskApiClient,
        *,
        poll_interval_s: float = 1.5,
        auto_refresh: bool = True,
        owns_client: bool = False,
    ) -> None:
        self.client = client
        self.reconciler = StateReconciler()
        self.subscriptions = SubscriptionController(client, self.reconciler)
        self.poller = PollScheduler(client, self.reconciler, interval_s=poll_interval_s)
        self._auto_refresh = auto_refresh
        self._owns_client = owns_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> DashboardSession:
        settings = settings or get_settings()
        return cls(
            TaskApiClient.from_settings(settings, http_client=http_client),
            poll_interval_s=settings.poll_interval_s,
            auto_refresh=settings.auto_refresh,
            owns_client=True,
        )

    async def __aenter__(self) -> DashboardSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def auto_refresh(self) -> bool:
        return self._auto_refresh

    async def start(self) -> None:
        await self.refresh()
        if self._auto_refresh:
            self.poller.enable()

    async def aclose(self) -> None:
        await self.subscriptions.close()
        await self.poller.stop()
        if self._owns_client:
            await self.client.aclose()

    async def select_task(self, task_id: str | None) -> None:
        self.reconciler.select(task_id)
        await self.subscriptions.select(task_id)

    async def create_task(
        self,
        query: str,
        context: TaskContext | dict[str, Any] | None = None,
    ) -> Task | None:
        """Create, list and select a new task.

        Invalid input raises InvalidTaskInputError before any request is sent;
        transport failures are logged and yield None.
        """
        try:
            task = await self.client.create_task(query, context)
        except InvalidTaskInputError:
            raise
        except TaskSyncError as exc:
            logger.warning("session event=create_failed reason=%s", exc)
            return None
        self.reconciler.add_created_task(task)
        await self.select_task(task.id)
        return task

    async def request_plan(self, task_id: str) -> bool:
        return await self._trigger("plan", task_id)

    async def request_execute(self, task_id: str) -> bool:
        return await self._trigger("execute", task_id)

    async def request_start(self, task_id: str) -> bool:
        return await self._trigger("start", task_id)

    async def refresh(self) -> None:
        await self.poller.tick()

    def set_auto_refresh(self, enabled: bool) -> None:
        self._auto_refresh = enabled
        if enabled:
            self.poller.enable()
        else:
            self.poller.disable()

    async def llm_info(self) -> LLMInfo | None:
        try:
            return await self.client.llm_info()
        except TaskSyncError as exc:
            logger.info("session event=llm_info_unavailable reason=%s", exc)
            return None

    async def _trigger(self, action: str, task_id: str) -> bool:
        send = {
            "plan": self.client.request_plan,
            "execute": self.client.request_execute,
            "start": self.client.request_start,
        }[action]
        try:
            await send(task_id)
        except TaskSyncError as exc:
            logger.warning(
                "session event=trigger_failed action=%s task_id=%s reason=%s", action, task_id, exc
            )
            return False
        await self.refresh()
        return True
