"""
Submit a single requirement to a local engine and print the outcome.

Usage:
    python -m task_engine --title "Analyze repo" --description "structure scan" \\
        --type analysis --priority medium --project-path .

    python -m task_engine --title "Write config" --description "..." \\
        --type development --constraints '{"fileOperations": [{"type": "write", "path": "out.txt", "content": "hi"}]}'

Exit status is 0 when the task completes, 1 when it fails or is cancelled,
2 on invalid input.
"""

import argparse
import asyncio
import json
import sys
import uuid
from typing import Any, Dict, List, Optional

from .errors import TaskEngineError
from .events import EngineEvent
from .logging_setup import close_logging, setup_logging
from .manager import TaskExecutionManager
from .scheduler import SchedulerConfig

TERMINAL_EVENTS = (EngineEvent.TASK_COMPLETED, EngineEvent.TASK_FAILED, EngineEvent.TASK_CANCELLED)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="task_engine", description="Plan, schedule and run one task.")
    p.add_argument("--id", default=None, help="requirement id (default: random)")
    p.add_argument("--title", required=True)
    p.add_argument("--description", required=True)
    p.add_argument("--type", default="analysis", choices=["development", "testing", "deployment", "analysis"])
    p.add_argument("--priority", default="medium", choices=["low", "medium", "high", "critical"])
    p.add_argument("--duration", type=float, default=0, help="estimated duration in minutes")
    p.add_argument("--resource", action="append", default=[], dest="resources")
    p.add_argument("--constraints", default=None, help="JSON object of requirement constraints")
    p.add_argument("--constraints-file", default=None, help="path to a JSON file of constraints")
    p.add_argument("--project-path", default=".")
    p.add_argument("--environment", default="development", choices=["development", "staging", "production"])
    p.add_argument("--max-retries", type=int, default=None)
    p.add_argument("--retry-delay-ms", type=int, default=None)
    p.add_argument("--step-timeout", type=float, default=None, help="per-step timeout in seconds")
    p.add_argument("--log-level", default=None)
    return p


def load_constraints(args: argparse.Namespace) -> Dict[str, Any]:
    constraints: Dict[str, Any] = {}
    if args.constraints_file:
        with open(args.constraints_file, "r", encoding="utf-8") as f:
            constraints.update(json.load(f))
    if args.constraints:
        constraints.update(json.loads(args.constraints))
    return constraints


async def run(args: argparse.Namespace) -> Dict[str, Any]:
    overrides = {}
    if args.retry_delay_ms is not None:
        overrides["retry_delay_ms"] = args.retry_delay_ms
    manager = TaskExecutionManager(
        config=SchedulerConfig.from_settings(**overrides),
        step_timeout=args.step_timeout,
    )
    requirement = {
        "id": args.id or f"req_{uuid.uuid4().hex[:8]}",
        "title": args.title,
        "description": args.description,
        "type": args.type,
        "priority": args.priority,
        "estimatedDuration": args.duration,
        "resources": args.resources,
        "constraints": load_constraints(args),
    }
    context = {"projectPath": args.project_path, "environment": args.environment}

    done = asyncio.Event()
    outcome: Dict[str, Any] = {}
    task_ids: List[str] = []
    execution_ids: List[str] = []

    def on_started(payload):
        if payload["task_id"] in task_ids:
            execution_ids.append(payload["execution_id"])

    def on_terminal(event: EngineEvent):
        def listener(payload):
            if payload["task_id"] in task_ids:
                outcome.update(payload)
                outcome["event"] = event.value
                done.set()
        return listener

    manager.events.on(EngineEvent.TASK_STARTED, on_started)
    for event in TERMINAL_EVENTS:
        manager.events.on(event, on_terminal(event))

    await manager.initialize()
    try:
        scheduler = manager.get_task_scheduler()
        task_id = await scheduler.submit_task(requirement, context, max_retries=args.max_retries)
        task_ids.append(task_id)
        if not outcome:
            await done.wait()
        execution = None
        if execution_ids:
            found = manager.get_task_executor().get_execution_status(execution_ids[-1])
            execution = found.to_dict() if found else None
        return {
            "task_id": task_id,
            "outcome": outcome.get("event"),
            "error": outcome.get("error"),
            "retries": outcome.get("retry_count", 0),
            "execution": execution,
            "stats": scheduler.get_scheduler_stats(),
        }
    finally:
        await manager.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)
    try:
        summary = asyncio.run(run(args))
    except (TaskEngineError, ValueError, OSError) as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        return 2
    finally:
        close_logging()
    print(json.dumps(summary, indent=2, default=str))
    return 0 if summary["outcome"] == EngineEvent.TASK_COMPLETED.value else 1
