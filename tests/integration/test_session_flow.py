from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest
from fastapi import FastAPI

from conftest import InMemoryBackend, run, wait_until
from taskboard_sync.config.settings import Settings
from taskboard_sync.errors import InvalidTaskInputError
from taskboard_sync.models import TaskStatus
from taskboard_sync.sync.session import DashboardSession
from taskboard_sync.transport.client import TaskApiClient

ClientFactory = Callable[..., TaskApiClient]


async def _drain_stream(session: DashboardSession, task_id: str) -> None:
    # The fake backend ends each stream once its queued frames are sent.
    await session.select_task(task_id)
    await wait_until(lambda: not session.subscriptions.is_open)


def test_created_task_is_listed_and_selected(
    backend: InMemoryBackend, make_api_client: ClientFactory
) -> None:
    async def scenario() -> None:
        async with DashboardSession(make_api_client(), auto_refresh=False) as session:
            task = await session.create_task("hello")

            assert task is not None
            assert [(item.id, item.status) for item in session.reconciler.tasks] == [
                (task.id, TaskStatus.CREATED)
            ]
            assert session.reconciler.selected_id == task.id
            assert session.reconciler.detail.query == "hello"

    run(scenario)
    assert backend.create_requests == [{"query": "hello"}]


def test_empty_query_is_rejected_without_a_request(
    backend: InMemoryBackend, make_api_client: ClientFactory
) -> None:
    async def scenario() -> None:
        async with DashboardSession(make_api_client(), auto_refresh=False) as session:
            with pytest.raises(InvalidTaskInputError):
                await session.create_task("   ")
            assert session.reconciler.tasks == []
            assert session.reconciler.selected_id is None

    run(scenario)
    assert backend.create_requests == []


def test_streamed_updates_drive_the_selected_detail(
    backend: InMemoryBackend, make_api_client: ClientFactory
) -> None:
    task_id = backend.add_task(
        "summarize report",
        status="RUNNING",
        plan={"steps": [{"id": "s1", "description": "draft", "tool": "llm", "status": "PENDING"}]},
    )["id"]

    async def scenario() -> None:
        async with DashboardSession(make_api_client(), auto_refresh=False) as session:
            backend.push_snapshot(task_id)
            backend.push_update(task_id, "step_status", {"id": "s1", "status": "RUNNING"})
            backend.push_update(task_id, "token", {"step_id": "s1", "chunk": "hel"})
            backend.push_update(task_id, "token", {"step_id": "s1", "chunk": "lo"})
            await _drain_stream(session, task_id)

            detail = session.reconciler.detail
            assert detail.plan.steps[0].status is TaskStatus.RUNNING
            assert session.reconciler.streaming == {"s1": "hello"}

            backend.push_update(
                task_id, "result", {"step_id": "s1", "output": "hello", "verified": True}
            )
            backend.push_update(task_id, "task_status", {"status": "DONE"})
            await _drain_stream(session, task_id)

            detail = session.reconciler.detail
            assert detail.status is TaskStatus.DONE
            assert [result.output for result in detail.results] == ["hello"]
            assert dict(session.reconciler.streaming) == {}
            assert session.reconciler.get_task(task_id).status is TaskStatus.DONE

    run(scenario)


def test_lagging_poll_does_not_regress_finished_task(
    backend: InMemoryBackend, make_api_client: ClientFactory
) -> None:
    task_id = backend.add_task("lagging", status="RUNNING")["id"]

    async def scenario() -> None:
        async with DashboardSession(make_api_client(), auto_refresh=False) as session:
            backend.push_update(task_id, "task_status", {"status": "DONE"})
            await _drain_stream(session, task_id)
            assert session.reconciler.detail.status is TaskStatus.DONE

            # The backend store still reports RUNNING.
            await session.refresh()

            assert session.reconciler.get_task(task_id).status is TaskStatus.DONE
            assert session.reconciler.detail.status is TaskStatus.DONE

    run(scenario)


def test_deleted_selected_task_shows_not_found(
    backend: InMemoryBackend, make_api_client: ClientFactory
) -> None:
    task_id = backend.add_task("short lived")["id"]

    async def scenario() -> None:
        async with DashboardSession(make_api_client(), auto_refresh=False) as session:
            await _drain_stream(session, task_id)
            del backend.tasks[task_id]
            await session.refresh()

            assert session.reconciler.tasks == []
            assert session.reconciler.detail is None
            assert session.reconciler.detail_error == f"Task {task_id} not found"

    run(scenario)


def test_triggers_refresh_state_and_report_failures(
    backend: InMemoryBackend, make_api_client: ClientFactory
) -> None:
    task_id = backend.add_task("plan me")["id"]

    async def scenario() -> None:
        async with DashboardSession(make_api_client(), auto_refresh=False) as session:
            await _drain_stream(session, task_id)
            backend.tasks[task_id]["status"] = "PLANNED"

            assert await session.request_plan(task_id) is True
            assert session.reconciler.detail.status is TaskStatus.PLANNED
            assert await session.request_execute("missing") is False

    run(scenario)
    assert backend.triggers == [("plan", task_id)]


def test_unreachable_backend_degrades_quietly() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = TaskApiClient(
        base_url="http://backend.test",
        transport=httpx.MockTransport(handler),
        max_retries=0,
    )

    async def scenario() -> None:
        async with DashboardSession(client, auto_refresh=False, owns_client=True) as session:
            assert session.reconciler.tasks == []
            assert await session.llm_info() is None
            assert await session.create_task("offline") is None

    run(scenario)


def test_auto_refresh_polls_until_switched_off(
    backend: InMemoryBackend, make_api_client: ClientFactory
) -> None:
    async def scenario() -> None:
        session = DashboardSession(make_api_client(), poll_interval_s=0.01)
        async with session:
            assert session.poller.enabled
            backend.add_task("appears later")
            await wait_until(lambda: len(session.reconciler.tasks) == 1)

            session.set_auto_refresh(False)
            assert not session.auto_refresh
            assert not session.poller.enabled

        assert not session.subscriptions.is_open

    run(scenario)


def test_session_from_settings_uses_shared_http_client(
    backend: InMemoryBackend, backend_app: FastAPI
) -> None:
    backend.add_task("from settings")
    settings = Settings(
        api_base_url="http://backend.test/", poll_interval_s=0.5, auto_refresh=False
    )

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=backend_app)) as http:
            async with DashboardSession.from_settings(settings, http_client=http) as session:
                assert session.poller.interval_s == 0.5
                assert [task.query for task in session.reconciler.tasks] == ["from settings"]
                info = await session.llm_info()
                assert info is not None
                assert info.ok
            # The caller's client stays usable after the session closes.
            assert not http.is_closed

    run(scenario)
