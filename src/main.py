"""
Task Planner — Entry Point
==========================
Version 1.0 — November 2025

Command line entry point: run the server, or plan and work through a
feature's tasks directly against the local database.
"""

import argparse
import sys
import os
import asyncio
import logging

# Add src to path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

# Disable LangSmith tracing by default to prevent warnings
if "LANGCHAIN_TRACING_V2" not in os.environ:
    os.environ["LANGCHAIN_TRACING_V2"] = "false"

from config import PlannerConfig
from planner_types import PlanningError
from planning.state_machine import InvalidTransitionError, TaskNotFoundError

logger = logging.getLogger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Task Planner")
    parser.add_argument("--env-file", type=str, default=None, help="Path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the API and websocket server")

    plan = sub.add_parser("plan", help="Plan a new feature")
    plan.add_argument("description", type=str, help="What to build")
    plan.add_argument("--project-path", type=str, default=None, help="Project the feature belongs to")

    adjust = sub.add_parser("adjust", help="Revise a feature's plan")
    adjust.add_argument("feature_id", type=str)
    adjust.add_argument("request", type=str, help="Requested change")

    nxt = sub.add_parser("next", help="Show the next pending task")
    nxt.add_argument("feature_id", type=str)

    complete = sub.add_parser("complete", help="Mark a task complete")
    complete.add_argument("feature_id", type=str)
    complete.add_argument("task_id", type=str)

    return parser


def _print_tasks(tasks):
    by_parent = {}
    for t in tasks:
        by_parent.setdefault(t.parent_task_id, []).append(t)

    def show(task, indent=""):
        icon = "[OK]" if task.completed else "[ ]"
        print(f"{indent}{icon} {task.id} ({task.effort.value}, {task.status.value}) {task.description}")
        for child in by_parent.get(task.id, []):
            show(child, indent + "    ")

    ids = {t.id for t in tasks}
    for task in tasks:
        if task.parent_task_id not in ids:
            show(task)


async def run_command(args, config: PlannerConfig) -> int:
    """Run one planning or task command against the configured database."""
    from api.state import build_context

    context = await build_context(config)
    pipeline = context.pipeline

    try:
        if args.command == "plan":
            outcome = await pipeline.plan_feature(args.description, args.project_path)
        elif args.command == "adjust":
            outcome = await pipeline.adjust_plan(args.feature_id, args.request)
        elif args.command == "next":
            result = await pipeline.get_next_task(args.feature_id)
            print(result.message)
            return 1 if result.is_error else 0
        elif args.command == "complete":
            outcome = await pipeline.mark_task_complete(args.feature_id, args.task_id)
            print(outcome.message)
            return 0
        else:
            raise ValueError(f"Unknown command: {args.command}")
    except PlanningError as e:
        logger.error(f"❌ {e.code}: {e.message}")
        return 1
    except (TaskNotFoundError, InvalidTransitionError) as e:
        logger.error(f"❌ {e}")
        return 1

    print(f"\n{'='*60}")
    print(f"Feature: {outcome.feature_id}")
    print(outcome.message)
    print(f"{'='*60}")
    if outcome.question:
        print(f"Question ({outcome.question['questionId']}): {outcome.question['question']}")
        for option in outcome.question.get("options") or []:
            print(f"  - {option}")
        print("Answer it from the UI to continue planning.")
    else:
        _print_tasks(outcome.tasks)
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = PlannerConfig.from_env(args.env_file)

    # Configure basic logging
    logging.basicConfig(level=config.log_level)

    if args.command == "serve":
        import uvicorn
        from server import create_app

        logger.info(f"🚀 Starting server on {config.ws_host}:{config.ws_port}")
        uvicorn.run(create_app(config), host=config.ws_host, port=config.ws_port)
        return 0

    return asyncio.run(run_command(args, config))


if __name__ == "__main__":
    sys.exit(main())
