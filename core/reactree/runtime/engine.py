"""
Tree Runtime - top-level orchestrator for one task tree run.

Wires the stores, evaluator, router and scheduler from a single RunConfig and
exposes the run lifecycle: ``start`` a new run, ``resume`` an interrupted one,
and read the ``status`` of any run.
"""

import logging
import time
from datetime import datetime
from typing import Any

from reactree.conditions.evaluator import ConditionEvaluator, TestRunner
from reactree.config import RunConfig
from reactree.errors import ConfigError, RunNotFound
from reactree.feedback.router import FeedbackRouter
from reactree.memory.episodic import EpisodicMemoryStore
from reactree.memory.working import WorkingMemoryStore
from reactree.observability.logging import clear_trace_context, set_trace_context
from reactree.runner.executor_registry import ExecutorRegistry
from reactree.scheduler.executor import TreeScheduler
from reactree.schemas.report import RunReport, RunStatus
from reactree.storage.run_store import WORKING_MEMORY_FILE, RunStore, new_run_id
from reactree.storage.state_log import ResumeState, StateLog
from reactree.tree.node import NodeStatus, TaskTree
from reactree.tree.planner import Planner
from reactree.tree.task import TaskExecutor, TaskResult

logger = logging.getLogger(__name__)

RUNTIME_WRITER = "runtime"


class TreeRuntime:
    """
    Run task trees against a registry of Task Executors.

    Example:
        registry = ExecutorRegistry()
        registry.register_function("rails.model", generate_model)

        runtime = TreeRuntime(load_run_config(), registry)
        report = await runtime.start("Add user auth", tree=tree_dict)
        if not report.success:
            print(report.failure_path, report.error)

        # Later, after a crash:
        report = await runtime.resume(report.run_id)
    """

    def __init__(
        self,
        config: RunConfig,
        registry: ExecutorRegistry,
        planner: Planner | None = None,
        test_runner: TestRunner | None = None,
    ):
        self.config = config
        self.registry = registry
        self.planner = planner
        self.test_runner = test_runner
        self.store = RunStore(config)
        self.episodic = EpisodicMemoryStore(config.episodic_memory_path if config.persist else None)

    # === LIFECYCLE ===

    async def start(
        self,
        goal: str,
        tree: TaskTree | dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> RunReport:
        """Plan (unless a tree is given), validate and execute a new run."""
        run_id = run_id or new_run_id()
        set_trace_context(run_id=run_id)
        try:
            if tree is None:
                if self.planner is None:
                    raise ConfigError("start() needs a tree or a planner")
                episodes = self.episodic.query_similar(goal, outcome="success")
                tree = await self.planner.plan(goal, episodes)
            elif isinstance(tree, dict):
                tree = TaskTree.from_dict(tree, goal=goal)
            tree.goal = goal or tree.goal

            # Unknown capabilities and malformed trees fail here, before any node runs
            executors = self.registry.compile(tree)
            logger.info(f"🚀 Starting run {run_id}: {tree.goal}")
            return await self._execute(run_id, tree, executors, resume=None)
        finally:
            clear_trace_context()

    async def resume(self, run_id: str) -> RunReport:
        """Continue a run from its persisted state; succeeded nodes are not re-executed."""
        if not self.config.persist:
            raise ConfigError("resume() needs persist=True")
        if not self.store.exists(run_id):
            raise RunNotFound(run_id)
        tree = self.store.load_tree(run_id)
        if tree is None:
            raise RunNotFound(run_id)

        set_trace_context(run_id=run_id)
        try:
            executors = self.registry.compile(tree)
            state_log = StateLog(self.store.run_dir(run_id))
            state_log.load()
            resume = state_log.replay()
            logger.info(f"🔄 Resuming run {run_id} ({len(resume.latest)} nodes with recorded state)")
            return await self._execute(run_id, tree, executors, resume=resume, state_log=state_log)
        finally:
            clear_trace_context()

    async def status(self, run_id: str) -> RunStatus:
        if not self.store.exists(run_id):
            raise RunNotFound(run_id)
        summary = await self.store.load_summary(run_id)
        state_log = StateLog(self.store.run_dir(run_id))
        state_log.load()
        replay = state_log.replay()

        node_states = {node_id: state.status for node_id, state in replay.latest.items()}
        if summary is not None:
            status = summary.status
        else:
            status = "in_progress"
        return RunStatus(
            run_id=run_id,
            status=status,
            summary=summary,
            node_states=node_states,
            open_feedback=summary.open_feedback if summary is not None else replay.open_messages,
        )

    # === EXECUTION ===

    async def _execute(
        self,
        run_id: str,
        tree: TaskTree,
        executors: dict[str, TaskExecutor],
        resume: ResumeState | None,
        state_log: StateLog | None = None,
    ) -> RunReport:
        started_at = datetime.now()
        start = time.perf_counter()
        persist = self.config.persist

        run_dir = self.store.ensure_run_dir(run_id) if persist else None
        if persist:
            self.store.save_tree(run_id, tree)

        memory = WorkingMemoryStore(run_dir / WORKING_MEMORY_FILE if run_dir else None)
        if resume is not None:
            memory.load()
        else:
            memory.put(
                "session.start",
                {"run_id": run_id, "goal": tree.goal, "started_at": started_at.isoformat()},
                writer=RUNTIME_WRITER,
                knowledge_type="session",
            )

        state_log = state_log or StateLog(run_dir)
        evaluator = ConditionEvaluator(self.config, memory, test_runner=self.test_runner)
        router = FeedbackRouter(
            tree,
            self.config,
            state_log,
            registry=self.registry,
            planner=self.planner,
            on_tree_changed=(lambda t: self.store.save_tree(run_id, t)) if persist else None,
        )
        if resume is not None:
            router.restore(resume)

        scheduler = TreeScheduler(
            tree,
            self.config,
            memory,
            evaluator,
            state_log,
            executors=executors,
            router=router,
            resume=resume,
        )
        result = await scheduler.run()

        report = self._report(run_id, tree, result, router, scheduler.nodes_executed, started_at, start)
        report.resumed = resume is not None
        self._record_episode(tree, result, memory)
        if persist:
            await self.store.save_summary(report)

        if report.success:
            logger.info(f"✓ Run {run_id} succeeded in {report.duration_ms}ms")
        else:
            logger.error(f"✗ Run {run_id} failed at {' > '.join(report.failure_path)}: {report.error}")
        return report

    def _report(
        self,
        run_id: str,
        tree: TaskTree,
        result: TaskResult,
        router: FeedbackRouter,
        nodes_executed: int,
        started_at: datetime,
        start: float,
    ) -> RunReport:
        failed = result.status != NodeStatus.SUCCEEDED
        return RunReport(
            run_id=run_id,
            goal=tree.goal,
            status=str(result.status),
            output=result.output,
            error=result.error,
            error_type=result.error_type,
            failure_path=result.failure_path if failed else [],
            open_feedback=router.open_messages() if failed else [],
            nodes_executed=nodes_executed,
            started_at=started_at,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    def _record_episode(self, tree: TaskTree, result: TaskResult, memory: WorkingMemoryStore) -> None:
        patterns = sorted({n.capability for n in tree.walk() if n.capability})
        learnings = [str(v) for v in memory.snapshot("learnings").values()]
        if not result.success:
            learnings.append(f"{result.error_type}: {result.error}")
        self.episodic.record(
            subgoal=tree.goal or tree.root.label,
            patterns=patterns,
            learnings=learnings,
            outcome="success" if result.success else "failure",
        )
