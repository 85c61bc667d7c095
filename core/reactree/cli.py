"""
Command-line interface for the ReAcTree engine.

Usage:
    reactree start plan.json --goal "Add user auth" --executors my_project.executors:REGISTRY
    reactree resume 20250101T120000_ab12cd34 --executors my_project.executors:REGISTRY
    reactree status 20250101T120000_ab12cd34
    reactree runs

``--executors`` names a module attribute holding an ExecutorRegistry, a
capability -> executor mapping, or a callable returning either.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from reactree.config import load_run_config
from reactree.errors import ReActreeError
from reactree.observability import configure_logging
from reactree.runner.executor_registry import ExecutorRegistry
from reactree.runtime.engine import TreeRuntime
from reactree.schemas.report import RunReport
from reactree.tree.planner import StaticPlanner

logger = logging.getLogger(__name__)


def _runtime(args: argparse.Namespace, with_executors: bool = True) -> TreeRuntime:
    config = load_run_config(
        config_file=Path(args.config) if args.config else None,
        storage_path=args.storage,
    )
    registry = ExecutorRegistry.from_import_path(args.executors) if with_executors else ExecutorRegistry()
    planner = StaticPlanner.from_file(Path(args.tree)) if getattr(args, "tree", None) else None
    return TreeRuntime(config, registry, planner=planner)


def _print_report(report: RunReport) -> int:
    print(report.model_dump_json(indent=2))
    return 0 if report.success else 1


def cmd_start(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    report = asyncio.run(runtime.start(args.goal or "", run_id=args.run_id))
    return _print_report(report)


def cmd_resume(args: argparse.Namespace) -> int:
    runtime = _runtime(args)
    report = asyncio.run(runtime.resume(args.run_id))
    return _print_report(report)


def cmd_status(args: argparse.Namespace) -> int:
    runtime = _runtime(args, with_executors=False)
    status = asyncio.run(runtime.status(args.run_id))
    print(status.model_dump_json(indent=2))
    return 0


def cmd_runs(args: argparse.Namespace) -> int:
    runtime = _runtime(args, with_executors=False)
    reports = asyncio.run(runtime.store.list_runs(limit=args.limit))
    for report in reports:
        print(json.dumps({"run_id": report.run_id, "status": report.status, "goal": report.goal}))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reactree",
        description="ReAcTree - run hierarchical task trees",
    )
    parser.add_argument("--storage", default=None, help="Storage root (default: .reactree)")
    parser.add_argument("--config", default=None, help="Configuration file (default: ~/.reactree/configuration.json)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument(
        "--log-format",
        choices=["auto", "json", "human"],
        default="auto",
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a new run from a task tree JSON file")
    start.add_argument("tree", help="Path to the task tree JSON")
    start.add_argument("--goal", default="", help="Goal description recorded with the run")
    start.add_argument("--executors", required=True, help="MODULE:ATTR providing the executors")
    start.add_argument("--run-id", default=None, help="Explicit run id (default: generated)")
    start.set_defaults(func=cmd_start)

    resume = subparsers.add_parser("resume", help="Resume an interrupted run")
    resume.add_argument("run_id")
    resume.add_argument("--executors", required=True, help="MODULE:ATTR providing the executors")
    resume.set_defaults(func=cmd_resume)

    status = subparsers.add_parser("status", help="Show the state of a run")
    status.add_argument("run_id")
    status.set_defaults(func=cmd_status)

    runs = subparsers.add_parser("runs", help="List recent runs")
    runs.add_argument("--limit", type=int, default=20)
    runs.set_defaults(func=cmd_runs)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level.upper(), format=args.log_format)

    try:
        return args.func(args)
    except (ReActreeError, ImportError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
