from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from taskboard_sync.config.settings import Settings, get_settings
from taskboard_sync.errors import InvalidTaskInputError, TaskSyncError
from taskboard_sync.models import Task
from taskboard_sync.sync.session import DashboardSession
from taskboard_sync.transport.client import TaskApiClient


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Observe and drive tasks on the agent backend.")
    parser.add_argument("--base-url", default=None, help="Backend base URL override.")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON output instead of human-readable output.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="Print the task list, newest first.")
    subparsers.add_parser("llm", help="Print backend LLM provider status.")

    create = subparsers.add_parser("create", help="Create a task.")
    create.add_argument("query", help="Query text for the new task.")

    for action in ("plan", "execute", "start"):
        trigger = subparsers.add_parser(action, help=f"Ask the backend to {action} a task.")
        trigger.add_argument("task_id")

    watch = subparsers.add_parser("watch", help="Follow one task until it finishes.")
    watch.add_argument("task_id")
    watch.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds even if the task is still running.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    if args.base_url:
        settings = settings.model_copy(update={"api_base_url": args.base_url})
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        return asyncio.run(_run(args, settings))
    except InvalidTaskInputError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except TaskSyncError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "watch":
        return await _watch(args, settings)

    async with TaskApiClient.from_settings(settings) as client:
        if args.command == "list":
            tasks = sorted(await client.list_tasks(), key=Task.sort_key, reverse=True)
            if args.json:
                _print_json([task.model_dump(mode="json") for task in tasks])
            else:
                for task in tasks:
                    print(f"{task.id}  {task.status.value:<8} {task.query or '(no query)'}")
        elif args.command == "create":
            task = await client.create_task(args.query)
            if args.json:
                _print_json(task.model_dump(mode="json"))
            else:
                print(task.id)
        elif args.command == "llm":
            info = await client.llm_info()
            if args.json:
                _print_json(info.model_dump(mode="json"))
            else:
                state = "OK" if info.ok else f"ERROR {info.error or ''}".strip()
                print(f"provider={info.provider} model={info.model or 'n/a'} status={state}")
        else:
            trigger = {
                "plan": client.request_plan,
                "execute": client.request_execute,
                "start": client.request_start,
            }[args.command]
            await trigger(args.task_id)
            print(f"{args.command} accepted for {args.task_id}")
    return 0


async def _watch(args: argparse.Namespace, settings: Settings) -> int:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + args.duration if args.duration else None
    async with DashboardSession.from_settings(settings) as session:
        await session.select_task(args.task_id)
        await session.refresh()
        last_seen: Any = None
        while True:
            detail = session.reconciler.detail
            summary = _summarize(
                detail, session.reconciler.detail_error, session.reconciler.streaming
            )
            if summary != last_seen:
                if args.json:
                    _print_json(summary)
                else:
                    print(_render(summary))
                last_seen = summary
            if detail is not None and detail.status.is_terminal:
                return 0
            if session.reconciler.detail_error is not None:
                return 1
            if deadline is not None and loop.time() >= deadline:
                return 0
            await asyncio.sleep(0.25)


def _summarize(detail: Task | None, error: str | None, streaming: Any) -> dict[str, Any]:
    if detail is None:
        return {"error": error, "status": None, "steps": [], "results": 0, "streaming": []}
    steps = detail.plan.steps if detail.plan is not None else []
    return {
        "task_id": detail.id,
        "status": detail.status.value,
        "steps": [
            {"id": step.id, "tool": step.tool, "status": step.status.value} for step in steps
        ],
        "results": len(detail.results),
        "streaming": sorted(streaming),
    }


def _render(summary: dict[str, Any]) -> str:
    if summary["status"] is None:
        return f"[--] {summary['error'] or 'waiting for task detail'}"
    steps = " ".join(f"{step['id']}:{step['status']}" for step in summary["steps"]) or "no plan"
    live = f" live={','.join(summary['streaming'])}" if summary["streaming"] else ""
    return f"[{summary['status']}] {steps} results={summary['results']}{live}"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True))


if __name__ == "__main__":
    raise SystemExit(main())
