"""Async HTTP adapter for the agent backend.

Beginner terms used in this file:
- Trigger: a POST that only asks the backend to start work; completion shows up later
  through polling or the event stream.
- Subscription: one long-lived GET on /tasks/{id}/events read line by line.
- Retry: idempotent GETs are re-sent after a transport failure; POSTs never are.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from taskboard_sync.config.settings import Settings
from taskboard_sync.errors import (
    InvalidTaskInputError,
    MalformedPayloadError,
    TaskNotFoundError,
    TransportError,
)
from taskboard_sync.models import (
    CreateTaskRequest,
    LLMInfo,
    Task,
    TaskContext,
    tasks_from_payload,
)
from taskboard_sync.transport.sse import ServerSentEvent, SSEDecoder

logger = logging.getLogger(__name__)


class TaskApiClient:
    """Request/response calls plus the per-task push subscription."""

    def __init__(
        self,
        *,
        base_url: str = "http://localhost:8080",
        timeout_s: float = 10.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        # Only close clients this adapter created itself.
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_s, transport=transport)

    @classmethod
    def from_settings(
        cls, settings: Settings, *, http_client: httpx.AsyncClient | None = None
    ) -> TaskApiClient:
        return cls(
            base_url=settings.resolved_api_base_url(),
            timeout_s=settings.request_timeout_s,
            max_retries=settings.request_max_retries,
            backoff_s=settings.request_backoff_s,
            http_client=http_client,
        )

    async def __aenter__(self) -> TaskApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def list_tasks(self) -> list[Task]:
        payload = await self._get_json("/tasks")
        try:
            return tasks_from_payload(payload)
        except ValueError as exc:
            raise MalformedPayloadError(str(exc)) from exc

    async def get_task(self, task_id: str) -> Task:
        payload = await self._get_json(f"/tasks/{_quote(task_id)}", task_id=task_id)
        return _validate(Task, payload)

    async def create_task(
        self,
        query: str,
        context: TaskContext | dict[str, Any] | None = None,
    ) -> Task:
        try:
            body = CreateTaskRequest.model_validate({"query": query, "context": context})
        except ValidationError as exc:
            raise InvalidTaskInputError(_first_error(exc)) from exc

        payload = await self._request_json(
            "POST", "/tasks", json=body.model_dump(mode="json", exclude_none=True)
        )
        task = _validate(Task, payload)
        logger.info("backend event=task_created task_id=%s status=%s", task.id, task.status.value)
        return task

    async def request_plan(self, task_id: str) -> None:
        await self._trigger("plan", task_id)

    async def request_execute(self, task_id: str) -> None:
        await self._trigger("execute", task_id)

    async def request_start(self, task_id: str) -> None:
        await self._trigger("start", task_id)

    async def llm_info(self) -> LLMInfo:
        payload = await self._get_json("/debug/llm")
        return _validate(LLMInfo, payload)

    async def subscribe(self, task_id: str) -> AsyncIterator[ServerSentEvent]:
        """Yield events for one task until closed or the connection fails.

        Transport failures end the iteration without raising; the poll loop is what
        recovers from a lost stream.
        """
        url = self._url(f"/tasks/{_quote(task_id)}/events")
        decoder = SSEDecoder()
        # The stream is open-ended, so only connecting is bounded by the timeout.
        timeout = httpx.Timeout(self.timeout_s, read=None)
        try:
            async with self._http.stream(
                "GET", url, headers={"Accept": "text/event-stream"}, timeout=timeout
            ) as response:
                if response.is_error:
                    logger.warning(
                        "subscription event=rejected task_id=%s status_code=%d",
                        task_id,
                        response.status_code,
                    )
                    return
                logger.info("subscription event=open task_id=%s", task_id)
                async for line in response.aiter_lines():
                    sse = decoder.decode(line)
                    if sse is not None:
                        yield sse
        except httpx.HTTPError as exc:
            logger.warning("subscription event=dropped task_id=%s reason=%s", task_id, exc)
        finally:
            logger.info("subscription event=closed task_id=%s", task_id)

    async def _trigger(self, action: str, task_id: str) -> None:
        await self._request_json(
            "POST",
            f"/tasks/{action}/{_quote(task_id)}",
            task_id=task_id,
            expect_body=False,
        )
        logger.info("backend event=trigger_accepted action=%s task_id=%s", action, task_id)

    async def _get_json(self, path: str, *, task_id: str | None = None) -> Any:
        last_error: TransportError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return await self._request_json("GET", path, task_id=task_id)
            except TransportError as exc:
                last_error = exc
                logger.warning(
                    "backend request failed attempt=%d/%d path=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    path,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    await asyncio.sleep(self.backoff_s)
        if last_error is None:
            raise TransportError(f"GET {path} failed with unknown error")
        raise last_error

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        task_id: str | None = None,
        expect_body: bool = True,
    ) -> Any:
        try:
            response = await self._http.request(method, self._url(path), json=json)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404 and task_id is not None:
            raise TaskNotFoundError(task_id)
        if response.is_error:
            raise TransportError(f"{method} {path} returned HTTP {response.status_code}")
        if not expect_body:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedPayloadError(f"{method} {path} returned invalid JSON") from exc

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"


def _quote(task_id: str) -> str:
    return quote(task_id, safe="")


def _validate(model: Any, payload: Any) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedPayloadError(
            f"{model.__name__} payload invalid: {_first_error(exc)}"
        ) from exc


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    return str(errors[0].get("msg", exc))
