"""
Tree Scheduler - walks a TaskTree and applies the semantics of each node type.

Control nodes (sequence, parallel, fallback, loop, conditional) decide which
children run and how their results combine; leaves are delegated to the Task
Executor compiled for their capability. Every transition is appended to the
StateLog so an interrupted run can be resumed: nodes that already succeeded
return their recorded output without running again, and interrupted loops
and conditionals pick up their iteration count and chosen branch.

Failures never raise out of ``execute``: they come back as failed TaskResults
whose ``failure_path`` grows by one node id per control level.
"""

import asyncio
import logging
import time
from collections import defaultdict
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from reactree.conditions.evaluator import ConditionEvaluator, ConditionResult
from reactree.config import ParallelFailurePolicy, RunConfig
from reactree.errors import (
    EmptyFallback,
    FeedbackError,
    LeafExecutionError,
    LeafTimeoutError,
    LoopLimitExceeded,
    OutputValidationError,
    error_type_name,
)
from reactree.feedback.message import FeedbackMessage
from reactree.feedback.router import FeedbackRouter
from reactree.memory.working import WorkingMemoryStore
from reactree.observability.logging import trace_context
from reactree.schemas.state import ControlFlowState, NodeMetric
from reactree.storage.state_log import ResumeState, StateLog
from reactree.tree.node import NodeStatus, NodeType, TaskNode, TaskTree
from reactree.tree.task import TaskExecutor, TaskResult
from reactree.tree.validator import validate_output

if TYPE_CHECKING:
    from reactree.conditions.spec import ConditionSpec

logger = logging.getLogger(__name__)

# Feedback being resolved by the subtree currently executing; leaves see it as spec["feedback"]
_active_feedback: ContextVar[dict[str, Any] | None] = ContextVar("reactree_active_feedback", default=None)

CANCELLED = "cancelled"


class TreeScheduler:
    """
    Execute a TaskTree node by node.

    Example:
        scheduler = TreeScheduler(tree, config, memory, evaluator, state_log,
                                  executors=registry.compile(tree))
        result = await scheduler.run()
    """

    def __init__(
        self,
        tree: TaskTree,
        config: RunConfig,
        memory: WorkingMemoryStore,
        evaluator: ConditionEvaluator,
        state_log: StateLog,
        executors: dict[str, TaskExecutor],
        router: FeedbackRouter | None = None,
        resume: ResumeState | None = None,
    ):
        self.tree = tree
        self.config = config
        self.memory = memory
        self.evaluator = evaluator
        self.state_log = state_log
        self._executors = dict(executors)
        self.router = router or FeedbackRouter(tree, config, state_log)
        self.router.bind(self)
        self._resume = resume or ResumeState()

        self._retries: dict[str, int] = defaultdict(int)
        self.nodes_executed = 0
        self.nodes_skipped = 0

    # === PUBLIC API ===

    async def run(self) -> TaskResult:
        return await self.execute(self.tree.root_id)

    async def execute(self, node_id: str, feedback: dict[str, Any] | None = None) -> TaskResult:
        """Execute one node (and its subtree). ``feedback`` is shown to every leaf below it."""
        node = self.tree.get(node_id)

        recorded = self._resume.completed(node_id)
        if recorded is not None:
            node.status = NodeStatus.SUCCEEDED
            self.nodes_skipped += 1
            logger.info(f"↷ Skipping {node_id}: already succeeded in a previous attempt")
            return TaskResult(status=NodeStatus.SUCCEEDED, output=recorded.output)

        trace_token = trace_context.set({**(trace_context.get() or {}), "node_id": node_id})
        feedback_token = _active_feedback.set(feedback) if feedback is not None else None
        start = time.perf_counter()
        try:
            node.status = NodeStatus.RUNNING
            self._log_state(node, NodeStatus.RUNNING)
            logger.debug(f"▶ {node.type} {node_id}", extra={"event": "node.start", "node_type": str(node.type)})
            self.nodes_executed += 1

            result = await self._dispatch(node)

            node.status = result.status
            latency_ms = int((time.perf_counter() - start) * 1000)
            self._log_state(
                node,
                result.status,
                output=result.output,
                error=result.error,
                error_type=result.error_type,
                failure_path=result.failure_path,
            )
            self.state_log.append_metric(
                NodeMetric(
                    node_id=node_id,
                    type=str(node.type),
                    status=str(result.status),
                    duration_ms=latency_ms,
                    retry_count=self._retries.get(node_id, 0),
                )
            )
            if result.success:
                logger.info(
                    f"✓ {node.label} succeeded",
                    extra={"event": "node.end", "node_type": str(node.type), "latency_ms": latency_ms},
                )
            else:
                logger.warning(
                    f"✗ {node.label} {result.status}: {result.error}",
                    extra={"event": "node.end", "node_type": str(node.type), "latency_ms": latency_ms},
                )
            return result
        finally:
            if feedback_token is not None:
                _active_feedback.reset(feedback_token)
            trace_context.reset(trace_token)

    def reset_subtree(self, node_id: str) -> None:
        """Return every node under ``node_id`` to pending for a loop iteration or feedback re-run."""
        for node in self.tree.walk(node_id):
            node.status = NodeStatus.PENDING
            self._resume.latest.pop(node.id, None)
            self._log_state(node, NodeStatus.PENDING)

    def add_executors(self, executors: dict[str, TaskExecutor]) -> None:
        self._executors.update(executors)

    async def invoke_owner(self, node: TaskNode, feedback: dict[str, Any]) -> TaskResult:
        """Send a feedback fix request to the executor owning a control node."""
        executor = self._executors.get(node.id)
        if executor is None:
            return TaskResult.failed(f"No executor compiled for owner node {node.id}", error_type="LeafExecutionError")
        self._retries[node.id] += 1
        spec = {**node.spec, "feedback": feedback}
        logger.info(f"Sending {feedback['type']} from {feedback['from_node']} to owner of {node.id}")
        return await self._call_executor(node, executor, spec)

    # === DISPATCH ===

    async def _dispatch(self, node: TaskNode) -> TaskResult:
        match node.type:
            case NodeType.LEAF:
                return await self._execute_leaf(node)
            case NodeType.SEQUENCE:
                return await self._execute_sequence(node)
            case NodeType.PARALLEL:
                return await self._execute_parallel(node)
            case NodeType.FALLBACK:
                return await self._execute_fallback(node)
            case NodeType.LOOP:
                return await self._execute_loop(node)
            case NodeType.CONDITIONAL:
                return await self._execute_conditional(node)
        raise ValueError(f"Unknown node type: {node.type}")

    # === LEAF ===

    async def _execute_leaf(self, node: TaskNode) -> TaskResult:
        executor = self._executors.get(node.id)
        if executor is None:
            err = LeafExecutionError(node.id, f"no executor compiled for capability {node.capability!r}")
            return self._leaf_failure(node, TaskResult.failed(str(err), error_type_name(err)))

        spec = dict(node.spec)
        feedback = _active_feedback.get()
        if feedback is not None:
            spec["feedback"] = feedback

        result = await self._call_executor(node, executor, spec)
        if result.success and node.output_schema is not None:
            violations = validate_output(result.output, node.output_schema)
            if violations:
                err = OutputValidationError(node.id, violations)
                result = TaskResult.failed(str(err), error_type_name(err), output=result.output)
        if result.success:
            return result

        result = self._leaf_failure(node, result)
        if result.feedback is not None:
            return await self._handle_feedback(node, result)
        return result

    async def _call_executor(self, node: TaskNode, executor: TaskExecutor, spec: dict[str, Any]) -> TaskResult:
        """Invoke a Task Executor; exceptions and timeouts become failed results."""
        timeout = node.timeout_seconds or self.config.leaf_timeout_seconds
        try:
            call = executor.execute_task(spec, self.memory.view(node.id))
            result = await asyncio.wait_for(call, timeout) if timeout else await call
        except TimeoutError as e:
            if timeout is None:
                err = LeafExecutionError(node.id, f"TimeoutError: {e}")
            else:
                err = LeafTimeoutError(node.id, timeout)
            return TaskResult.failed(str(err), error_type_name(err))
        except Exception as e:
            logger.exception(f"Executor for {node.id} raised")
            err = LeafExecutionError(node.id, f"{type(e).__name__}: {e}")
            return TaskResult.failed(str(err), error_type_name(err))

        if not isinstance(result, TaskResult):
            err = LeafExecutionError(node.id, f"executor returned {type(result).__name__}, not TaskResult")
            return TaskResult.failed(str(err), error_type_name(err))

        for fact in result.facts_to_write:
            self.memory.put(
                fact.key,
                fact.value,
                writer=node.id,
                confidence=fact.confidence,
                knowledge_type=fact.knowledge_type,
            )
            result.facts_written.append(fact.key)
        return result

    def _leaf_failure(self, node: TaskNode, result: TaskResult) -> TaskResult:
        if result.status == NodeStatus.SUCCEEDED:
            return result
        result.status = NodeStatus.FAILED
        result.error = result.error or "leaf failed"
        result.error_type = result.error_type or LeafExecutionError.__name__
        result.failure_path = [node.id]
        return result

    async def _handle_feedback(self, node: TaskNode, result: TaskResult) -> TaskResult:
        """Route the feedback request attached to a failed leaf and return the verify result."""
        request = result.feedback
        to_node = request.to_node or node.parent_id or ""
        message = FeedbackMessage.from_request(node.id, to_node, request)
        try:
            accepted = await self.router.submit(message)
        except FeedbackError as e:
            result.error = f"{result.error}; feedback rejected: {e}"
            return result

        self._retries[node.id] += 1
        verify = await self.router.resolve(accepted)
        if not verify.failure_path:
            verify.failure_path = [node.id]
        return verify

    # === CONTROL NODES ===

    def _live_children(self, node: TaskNode) -> list[str]:
        # Snapshot taken on entry; nodes a feedback revision inserts mid-pass already ran as fixes
        return [c for c in node.children if self.tree.get(c).parent_id == node.id]

    def _take_interrupted(self, node_id: str) -> ControlFlowState | None:
        state = self._resume.interrupted(node_id)
        if state is not None:
            del self._resume.latest[node_id]
        return state

    async def _execute_sequence(self, node: TaskNode) -> TaskResult:
        last: TaskResult | None = None
        for child_id in self._live_children(node):
            if self.tree.get(child_id).parent_id != node.id:
                continue  # detached by a replacing revision
            last = await self.execute(child_id)
            if not last.success:
                return _propagate(node, last)
        return TaskResult.succeeded(output=last.output if last else None)

    async def _execute_fallback(self, node: TaskNode) -> TaskResult:
        last: TaskResult | None = None
        for child_id in self._live_children(node):
            if self.tree.get(child_id).parent_id != node.id:
                continue
            last = await self.execute(child_id)
            if last.success:
                return TaskResult.succeeded(output=last.output)
        if last is None:
            err = EmptyFallback(node.id)
            result = TaskResult.failed(str(err), error_type_name(err))
            result.failure_path = [node.id]
            return result
        return _propagate(node, last)

    async def _execute_parallel(self, node: TaskNode) -> TaskResult:
        children = self._live_children(node)
        if not children:
            return TaskResult.succeeded(output=[])

        limit = node.max_concurrency or self.config.parallel_max_concurrency
        policy = self.config.parallel_failure_policy
        semaphore = asyncio.Semaphore(limit)
        results: list[TaskResult | None] = [None] * len(children)
        tasks: list[asyncio.Task] = []
        failed = False

        async def run_child(index: int, child_id: str) -> None:
            nonlocal failed
            async with semaphore:
                if failed and policy == ParallelFailurePolicy.LET_FINISH:
                    results[index] = self._block(child_id)
                    return
                child_result = await self.execute(child_id)
                results[index] = child_result
                if not child_result.success:
                    failed = True
                    if policy == ParallelFailurePolicy.CANCEL:
                        for i, task in enumerate(tasks):
                            if i != index and not task.done():
                                task.cancel()

        tasks.extend(asyncio.create_task(run_child(i, c)) for i, c in enumerate(children))
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                results[index] = self._mark_cancelled(children[index])
            elif isinstance(outcome, BaseException):
                raise outcome

        final = [r for r in results if r is not None]
        outputs = [r.output for r in final]
        if all(r.success for r in final):
            return TaskResult.succeeded(output=outputs)

        failures = [r for r in final if r.status == NodeStatus.FAILED]
        origin = next((r for r in failures if r.error != CANCELLED), failures[0])
        result = _propagate(node, origin)
        result.output = outputs
        return result

    def _block(self, node_id: str) -> TaskResult:
        node = self.tree.get(node_id)
        node.status = NodeStatus.BLOCKED
        self._log_state(node, NodeStatus.BLOCKED, error="not dispatched after sibling failure")
        return TaskResult.blocked("not dispatched after sibling failure")

    def _mark_cancelled(self, node_id: str) -> TaskResult:
        result = TaskResult.failed(CANCELLED, error_type="CancelledError")
        result.failure_path = [node_id]
        for sub in self.tree.walk(node_id):
            if sub.status == NodeStatus.RUNNING:
                sub.status = NodeStatus.FAILED
                self._log_state(sub, NodeStatus.FAILED, error=CANCELLED, error_type="CancelledError")
        return result

    async def _execute_loop(self, node: TaskNode) -> TaskResult:
        max_iterations = node.max_iterations or self.config.default_max_iterations
        body_id = node.children[0]

        iteration = 0
        reset_body = False
        resumed = self._take_interrupted(node.id)
        if resumed is not None and resumed.iteration_count:
            # Re-enter the interrupted iteration. Body records older than its
            # start record belong to the previous iteration and are discarded.
            iteration = resumed.iteration_count - 1
            reset_body = resumed.condition_result is None and self._resume.recorded_before(body_id, node.id)
            logger.info(f"Resuming loop {node.id} at iteration {resumed.iteration_count}")

        last: TaskResult | None = None
        while iteration < max_iterations:
            iteration += 1
            self._retries[node.id] = iteration - 1
            self._log_state(node, NodeStatus.RUNNING, iteration_count=iteration)
            if reset_body:
                self.reset_subtree(body_id)
            reset_body = True
            logger.info(f"↻ {node.label} iteration {iteration}/{max_iterations}", extra={"iteration": iteration})

            last = await self.execute(body_id)

            if node.condition is None:
                if last.success:
                    return TaskResult.succeeded(output=last.output)
                continue

            condition = await self._evaluate(node, node.condition, {"iteration": iteration, "output": last.output})
            self._log_state(
                node,
                NodeStatus.RUNNING,
                iteration_count=iteration,
                condition_result=str(condition.outcome),
                cache_expires_at=condition.expires_at,
            )
            if condition.is_true:
                return TaskResult.succeeded(output=last.output)

        err = LoopLimitExceeded(node.id, max_iterations)
        result = TaskResult.failed(str(err), error_type_name(err), output=last.output if last else None)
        result.failure_path = [node.id]
        return result

    async def _execute_conditional(self, node: TaskNode) -> TaskResult:
        resumed = self._take_interrupted(node.id)
        if resumed is not None and resumed.branch_taken:
            branch = resumed.branch_taken
            logger.info(f"Resuming conditional {node.id} on recorded branch '{branch}'")
        else:
            condition = await self._evaluate(node, node.condition, {})
            if condition.is_error:
                logger.warning(f"Condition for {node.id} failed ({condition.error}); taking else-branch")
            branch = "then" if condition.is_true else "else"
            self._log_state(
                node,
                NodeStatus.RUNNING,
                branch_taken=branch,
                condition_result=str(condition.outcome),
                cache_expires_at=condition.expires_at,
            )

        children = node.children
        if branch == "then":
            child_id = children[0]
        elif len(children) > 1:
            child_id = children[1]
        else:
            return TaskResult.succeeded(output=None)

        result = await self.execute(child_id)
        return result if result.success else _propagate(node, result)

    async def _evaluate(self, node: TaskNode, spec: "ConditionSpec", context: dict[str, Any]) -> ConditionResult:
        return await self.evaluator.evaluate(spec, {"node_id": node.id, **context})

    # === STATE LOG ===

    def _log_state(self, node: TaskNode, status: NodeStatus, **fields: Any) -> None:
        self.state_log.append_control(
            ControlFlowState(node_id=node.id, type=str(node.type), status=str(status), **fields)
        )


def _propagate(node: TaskNode, child: TaskResult) -> TaskResult:
    """Mirror a failed child's result one level up."""
    return TaskResult(
        status=NodeStatus.FAILED,
        output=child.output,
        error=child.error,
        error_type=child.error_type,
        failure_path=[node.id] + list(child.failure_path),
    )
