from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from taskboard_sync.errors import TaskNotFoundError, TransportError
from taskboard_sync.models import Task
from taskboard_sync.transport.client import TaskApiClient
from taskboard_sync.transport.sse import ServerSentEvent


class InMemoryBackend:
    """Test-only stand-in for the agent backend: task store plus queued SSE frames."""

    def __init__(self) -> None:
        self.tasks: dict[str, dict[str, Any]] = {}
        self.frames: dict[str, list[str]] = {}
        self.triggers: list[tuple[str, str]] = []
        self.create_requests: list[dict[str, Any]] = []
        self.llm: dict[str, Any] = {"provider": "mock", "model": "mock-1", "ok": True}
        # Number of upcoming GET requests to answer with HTTP 503.
        self.failing_gets = 0
        self._sequence = 0

    def add_task(self, query: str, *, status: str = "PENDING", **extra: Any) -> dict[str, Any]:
        self._sequence += 1
        now = datetime(2024, 1, 1, 12, 0, self._sequence, tzinfo=UTC)
        task_id = extra.pop("id", f"{now:%Y%m%d%H%M%S}-{chr(ord('a') + self._sequence % 26)}")
        task = {
            "id": task_id,
            "query": query,
            "status": status,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            **extra,
        }
        self.tasks[task_id] = task
        return task

    def push_update(self, task_id: str, event: str, payload: dict[str, Any]) -> None:
        envelope = {"event": event, "task_id": task_id, "payload": payload}
        self.push_raw(task_id, f"event: update\ndata: {json.dumps(envelope)}\n\n")

    def push_snapshot(self, task_id: str) -> None:
        self.push_raw(task_id, f"event: snapshot\ndata: {json.dumps(self.tasks[task_id])}\n\n")

    def push_raw(self, task_id: str, frame: str) -> None:
        self.frames.setdefault(task_id, []).append(frame)

    def consume_failure(self) -> bool:
        if self.failing_gets <= 0:
            return False
        self.failing_gets -= 1
        return True


class CreateBody(BaseModel):
    query: str = ""
    context: dict[str, Any] | None = None


def create_fake_backend(backend: InMemoryBackend) -> FastAPI:
    app = FastAPI(title="fake-agent-backend")

    @app.get("/tasks")
    def list_tasks() -> list[dict[str, Any]]:
        if backend.consume_failure():
            raise HTTPException(status_code=503, detail="unavailable")
        return list(backend.tasks.values())

    @app.post("/tasks")
    def create_task(payload: CreateBody) -> dict[str, Any]:
        backend.create_requests.append(payload.model_dump(exclude_none=True))
        extra = {"context": payload.context} if payload.context else {}
        return backend.add_task(payload.query, **extra)

    @app.post("/tasks/{action}/{task_id}")
    def trigger(action: str, task_id: str) -> Response:
        if action not in {"start", "plan", "execute"} or task_id not in backend.tasks:
            raise HTTPException(status_code=404, detail="not found")
        backend.triggers.append((action, task_id))
        return Response(status_code=202)

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str) -> dict[str, Any]:
        if backend.consume_failure():
            raise HTTPException(status_code=503, detail="unavailable")
        if task_id not in backend.tasks:
            raise HTTPException(status_code=404, detail="not found")
        return backend.tasks[task_id]

    @app.get("/tasks/{task_id}/events")
    def events(task_id: str) -> StreamingResponse:
        frames = list(backend.frames.pop(task_id, []))

        async def stream():
            yield ": connected\n\n"
            for frame in frames:
                yield frame

        return StreamingResponse(stream(), media_type="text/event-stream")

    @app.get("/debug/llm")
    def debug_llm() -> dict[str, Any]:
        return backend.llm

    return app


class ScriptedSource:
    """Transport double with controllable snapshots and queue-driven subscriptions."""

    def __init__(self) -> None:
        self.tasks: dict[str, Task] = {}
        self.queues: dict[str, asyncio.Queue[ServerSentEvent | None]] = {}
        self.open_streams: list[str] = []
        self.opened: list[str] = []
        self.closed: list[str] = []
        self.max_open = 0
        self.list_calls = 0
        self.get_calls = 0
        self.fail_list = False
        # When set, get_task blocks until the event is released.
        self.get_gate: asyncio.Event | None = None
        self.get_started: asyncio.Event | None = None

    async def list_tasks(self) -> list[Task]:
        self.list_calls += 1
        if self.fail_list:
            raise TransportError("GET /tasks failed: connection refused")
        return list(self.tasks.values())

    async def get_task(self, task_id: str) -> Task:
        self.get_calls += 1
        snapshot = self.tasks.get(task_id)
        if self.get_started is not None:
            self.get_started.set()
        if self.get_gate is not None:
            await self.get_gate.wait()
        if snapshot is None:
            raise TaskNotFoundError(task_id)
        return snapshot

    async def subscribe(self, task_id: str):
        self.opened.append(task_id)
        self.open_streams.append(task_id)
        self.max_open = max(self.max_open, len(self.open_streams))
        queue = self._queue(task_id)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            self.open_streams.remove(task_id)
            self.closed.append(task_id)

    def emit(self, task_id: str, event: str, data: str) -> None:
        self._queue(task_id).put_nowait(ServerSentEvent(event=event, data=data))

    def emit_update(self, task_id: str, event: str, payload: dict[str, Any]) -> None:
        self.emit(task_id, "update", update_json(task_id, event, payload))

    def end_stream(self, task_id: str) -> None:
        self._queue(task_id).put_nowait(None)

    def _queue(self, task_id: str) -> asyncio.Queue[ServerSentEvent | None]:
        return self.queues.setdefault(task_id, asyncio.Queue())


def update_json(task_id: str, event: str, payload: dict[str, Any]) -> str:
    return json.dumps({"event": event, "task_id": task_id, "payload": payload})


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def run(coro_factory: Callable[[], Awaitable[Any]]) -> Any:
    return asyncio.run(coro_factory())


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def backend_app(backend: InMemoryBackend) -> FastAPI:
    return create_fake_backend(backend)


@pytest.fixture
def make_api_client(backend_app: FastAPI) -> Callable[..., TaskApiClient]:
    def _make(**kwargs: Any) -> TaskApiClient:
        kwargs.setdefault("backoff_s", 0.0)
        return TaskApiClient(
            base_url="http://backend.test",
            transport=httpx.ASGITransport(app=backend_app),
            **kwargs,
        )

    return _make
