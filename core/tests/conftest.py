"""Shared fixtures: scripted executors and an in-memory scheduler harness."""

import asyncio
import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from reactree.conditions.evaluator import ConditionEvaluator
from reactree.config import RunConfig
from reactree.feedback.router import FeedbackRouter
from reactree.memory.working import WorkingMemoryStore
from reactree.runner.executor_registry import ExecutorRegistry
from reactree.scheduler.executor import TreeScheduler
from reactree.storage.state_log import ResumeState, StateLog
from reactree.tree.node import TaskTree
from reactree.tree.task import TaskResult


class ScriptedExecutor:
    """Returns its scripted results in order, repeating the last one."""

    def __init__(
        self,
        *results: TaskResult,
        delay: float = 0.0,
        error: Exception | None = None,
        events: list | None = None,
        name: str = "",
    ):
        self.results = list(results) or [TaskResult.succeeded()]
        self.delay = delay
        self.error = error
        self.events = events
        self.name = name
        self.calls = 0
        self.specs: list[dict[str, Any]] = []

    async def execute_task(self, spec: dict[str, Any], memory) -> TaskResult:
        self.calls += 1
        self.specs.append(spec)
        if self.events is not None:
            self.events.append(("start", self.name))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.events is not None:
            self.events.append(("end", self.name))
        if self.error is not None:
            raise self.error
        result = self.results[min(self.calls - 1, len(self.results) - 1)]
        # The scheduler annotates results in place; hand out a fresh copy per call
        return dataclasses.replace(
            result,
            facts_to_write=list(result.facts_to_write),
            facts_written=[],
            failure_path=[],
        )


@dataclass
class Harness:
    tree: TaskTree
    config: RunConfig
    memory: WorkingMemoryStore
    evaluator: ConditionEvaluator
    state_log: StateLog
    registry: ExecutorRegistry
    router: FeedbackRouter
    scheduler: TreeScheduler

    async def run(self) -> TaskResult:
        return await self.scheduler.run()


def leaf(node_id: str, capability: str | None = None, **extra: Any) -> dict[str, Any]:
    return {"id": node_id, "type": "leaf", "capability": capability or node_id, **extra}


@pytest.fixture
def make_harness(tmp_path: Path):
    def _make(
        tree: dict[str, Any] | TaskTree,
        executors: dict[str, Any],
        resume: ResumeState | None = None,
        state_log: StateLog | None = None,
        memory: WorkingMemoryStore | None = None,
        test_runner=None,
        **config_overrides: Any,
    ) -> Harness:
        config = RunConfig(
            storage_path=tmp_path / "store",
            workspace_root=tmp_path,
            persist=False,
            **config_overrides,
        )
        task_tree = tree if isinstance(tree, TaskTree) else TaskTree.from_dict(tree)
        registry = ExecutorRegistry()
        registry.update(executors)
        memory = memory or WorkingMemoryStore()
        state_log = state_log or StateLog()
        evaluator = ConditionEvaluator(config, memory, test_runner=test_runner)
        router = FeedbackRouter(task_tree, config, state_log, registry=registry)
        scheduler = TreeScheduler(
            task_tree,
            config,
            memory,
            evaluator,
            state_log,
            executors=registry.compile(task_tree),
            router=router,
            resume=resume,
        )
        return Harness(task_tree, config, memory, evaluator, state_log, registry, router, scheduler)

    return _make
