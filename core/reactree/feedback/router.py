"""
Feedback Router - validates, bounds and resolves backward messages.

A node that cannot finish on its own sends a FeedbackMessage to one of its
ancestors. ``submit`` decides whether the message may enter the tree:

1. CycleDetected           - the new edge would close a loop among in-flight edges
2. StructuralViolation     - ``to_node`` is not a strict ancestor of ``from_node``
3. FeedbackBudgetExhausted - the (from, to) pair has used all its rounds
4. FeedbackDepthExceeded   - too many messages are already being resolved

``resolve`` then runs the fix-verify cycle for an accepted message: apply any
structural revision, let the target fix the problem, then re-run the sender's
subtree and close the message with the verify result.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from reactree.config import RunConfig
from reactree.errors import (
    CycleDetected,
    FeedbackBudgetExhausted,
    FeedbackDepthExceeded,
    FeedbackError,
    PlanValidationError,
    StructuralViolation,
)
from reactree.feedback.message import FeedbackMessage, FeedbackType
from reactree.schemas.state import FeedbackStateRecord
from reactree.storage.state_log import ResumeState, StateLog
from reactree.tree.node import NodeStatus, NodeType, TaskTree
from reactree.tree.task import TaskResult

if TYPE_CHECKING:
    from reactree.runner.executor_registry import ExecutorRegistry
    from reactree.scheduler.executor import TreeScheduler
    from reactree.tree.planner import Planner

logger = logging.getLogger(__name__)

_STRUCTURAL_TYPES = (FeedbackType.ARCHITECTURE_ISSUE, FeedbackType.DEPENDENCY_MISSING)


class FeedbackRouter:
    def __init__(
        self,
        tree: TaskTree,
        config: RunConfig,
        state_log: StateLog,
        scheduler: "TreeScheduler | None" = None,
        registry: "ExecutorRegistry | None" = None,
        planner: "Planner | None" = None,
        on_tree_changed: Callable[[TaskTree], None] | None = None,
    ):
        self._tree = tree
        self._config = config
        self._state_log = state_log
        self._scheduler = scheduler
        self._registry = registry
        self._planner = planner
        self._on_tree_changed = on_tree_changed

        self._lock = asyncio.Lock()
        self._rounds: dict[tuple[str, str], int] = defaultdict(int)
        self._active: dict[str, FeedbackMessage] = {}
        self._closed: list[FeedbackMessage] = []

    def bind(self, scheduler: "TreeScheduler") -> None:
        self._scheduler = scheduler

    # === SUBMISSION ===

    async def submit(self, message: FeedbackMessage) -> FeedbackMessage:
        """Accept ``message`` into the active feedback graph or raise a FeedbackError."""
        async with self._lock:
            try:
                self._check(message)
            except FeedbackError as e:
                logger.warning(f"Feedback {message.from_node} -> {message.to_node} rejected: {e}")
                self._record(message, "rejected", reason=str(e))
                raise

            pair = message.edge
            self._rounds[pair] += 1
            message.round = self._rounds[pair]
            self._active[message.id] = message
            self._record(message, "accepted")
            logger.info(
                f"Feedback {message.type} {message.from_node} -> {message.to_node} accepted",
                extra={"event": "feedback.accepted", "round": message.round},
            )
            return message

    def _check(self, message: FeedbackMessage) -> None:
        cycle = self._find_cycle(message.from_node, message.to_node)
        if cycle:
            raise CycleDetected(message.from_node, message.to_node, cycle)

        tree = self._tree
        if message.from_node not in tree or message.to_node not in tree:
            raise StructuralViolation(f"Unknown node in feedback {message.from_node} -> {message.to_node}")
        if not tree.is_strict_ancestor(message.to_node, message.from_node):
            raise StructuralViolation(
                f"{message.to_node} is not an ancestor of {message.from_node}; feedback must flow upward"
            )

        limit = self._config.max_rounds_per_pair
        if self._rounds[message.edge] + 1 > limit:
            raise FeedbackBudgetExhausted(message.from_node, message.to_node, limit)

        depth_limit = self._config.max_feedback_depth
        if len(self._active) + 1 > depth_limit:
            raise FeedbackDepthExceeded(message.from_node, message.to_node, depth_limit)

    def _find_cycle(self, from_node: str, to_node: str) -> list[str]:
        """Path closing a cycle if edge from_node -> to_node were added, else []."""
        if from_node == to_node:
            return [from_node, to_node]
        graph: dict[str, set[str]] = defaultdict(set)
        for msg in self._active.values():
            graph[msg.from_node].add(msg.to_node)

        # DFS from to_node looking for a way back to from_node
        stack: list[tuple[str, list[str]]] = [(to_node, [from_node, to_node])]
        visited = set()
        while stack:
            current, path = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            for nxt in graph.get(current, ()):
                if nxt == from_node:
                    return path + [nxt]
                stack.append((nxt, path + [nxt]))
        return []

    # === RESOLUTION ===

    async def resolve(self, message: FeedbackMessage) -> TaskResult:
        """Run the fix-verify cycle and close the message with the verify result."""
        if self._scheduler is None:
            raise RuntimeError("FeedbackRouter.resolve needs a bound scheduler")
        if message.id not in self._active:
            raise ValueError(f"Feedback message {message.id} is not active")
        scheduler = self._scheduler

        scheduler.memory.put(
            f"feedback.{message.id}",
            {"type": str(message.type), "from_node": message.from_node, "payload": message.payload},
            writer=message.from_node,
            knowledge_type="feedback",
        )

        try:
            inserted = await self._apply_revision(message)
        except (FeedbackError, PlanValidationError, ValueError) as e:
            logger.warning(f"Revision for feedback {message.id} failed: {e}")
            await self._close(message, resolved=False, reason=str(e))
            result = TaskResult.failed(f"feedback revision failed: {e}", error_type=type(e).__name__)
            result.failure_path = [message.from_node]
            return result

        fix = await self._fix(message, inserted)
        if fix is not None and not fix.success:
            await self._close(message, resolved=False, reason=f"fix failed: {fix.error}")
            result = TaskResult.failed(
                f"feedback fix for {message.from_node} failed: {fix.error}",
                error_type=fix.error_type,
                output=fix.output,
            )
            result.failure_path = [message.from_node]
            return result

        if message.from_node not in self._tree.reachable_ids():
            # Replaced along with its branch; the inserted nodes are the new work
            verify = fix or TaskResult.succeeded()
            await self._close(message, resolved=verify.success, reason="sender replaced by revision")
            return verify

        scheduler.reset_subtree(message.from_node)
        # With no fix step the sender itself gets the payload on its re-run
        verify = await scheduler.execute(
            message.from_node, feedback=_feedback_context(message) if fix is None else None
        )
        await self._close(message, resolved=verify.success, reason="" if verify.success else (verify.error or ""))
        return verify

    async def _apply_revision(self, message: FeedbackMessage) -> list[str]:
        """Insert nodes carried by (or planned for) a structural message. Returns new child ids."""
        if message.type not in _STRUCTURAL_TYPES:
            return []
        payload = message.payload
        index: int | None = None
        replace = False

        if message.type == FeedbackType.DEPENDENCY_MISSING:
            subtrees = [payload["prerequisite"]] if payload.get("prerequisite") else []
            branch = self._tree.child_containing(message.to_node, message.from_node)
            index = self._tree.get(message.to_node).children.index(branch) if branch else 0
        else:
            subtrees = list(payload.get("children") or [])
            index = payload.get("index")
            replace = bool(payload.get("replace", False))

        if not subtrees and self._planner is not None:
            subtrees = await self._planner.revise(self._tree, message.to_node, message)
        if not subtrees:
            return []

        target = self._tree.get(message.to_node)
        if target.type in (NodeType.LEAF, NodeType.LOOP, NodeType.CONDITIONAL):
            raise StructuralViolation(f"Cannot insert children under {target.type} node {target.id}")

        before_children = list(target.children)
        before_ids = set(self._tree.nodes)
        new_ids = self._tree.insert_children(message.to_node, subtrees, index=index, replace=replace)
        added = [nid for nid in self._tree.nodes if nid not in before_ids]
        try:
            errors = self._tree.validate_structure()
            if errors:
                raise PlanValidationError(errors)
            if self._registry is not None:
                self._scheduler.add_executors(self._registry.compile(self._tree, node_ids=added))
        except PlanValidationError:
            target.children = before_children
            for nid in before_children:
                self._tree.nodes[nid].parent_id = target.id
            for nid in added:
                del self._tree.nodes[nid]
            raise

        logger.info(f"Inserted {new_ids} under {message.to_node} for feedback {message.id}")
        if self._on_tree_changed is not None:
            self._on_tree_changed(self._tree)
        return new_ids

    async def _fix(self, message: FeedbackMessage, inserted: list[str]) -> TaskResult | None:
        """Run the fix step. Returns None when there was nothing to run."""
        scheduler = self._scheduler
        target = self._tree.get(message.to_node)
        feedback = _feedback_context(message)

        if target.capability:
            return await scheduler.invoke_owner(target, feedback)

        targets = inserted or self._fix_targets(message)
        recheck = not inserted and target.type == NodeType.PARALLEL
        result: TaskResult | None = None
        for node_id in targets:
            if recheck and self._tree.get(node_id).status != NodeStatus.SUCCEEDED:
                continue  # picked up again by the pool or by another fix since the targets were chosen
            scheduler.reset_subtree(node_id)
            result = await scheduler.execute(node_id, feedback=feedback)
            if not result.success:
                return result
        return result

    def _fix_targets(self, message: FeedbackMessage) -> list[str]:
        """
        Siblings of the sender's branch to re-run as the fix.

        Sequence: the siblings before the branch, never the ones after it.
        Parallel: siblings that already succeeded; running ones are left to the pool.
        Fallback: none, the other children are alternatives rather than prerequisites.
        """
        target = self._tree.get(message.to_node)
        branch = self._tree.child_containing(message.to_node, message.from_node)
        if branch is None:
            return []
        if target.type == NodeType.PARALLEL:
            return [
                c for c in target.children if c != branch and self._tree.get(c).status == NodeStatus.SUCCEEDED
            ]
        if target.type == NodeType.SEQUENCE:
            return target.children[: target.children.index(branch)]
        return []

    async def _close(self, message: FeedbackMessage, resolved: bool, reason: str = "") -> None:
        async with self._lock:
            message.resolved = resolved
            self._active.pop(message.id, None)
            self._closed.append(message)
            self._record(message, "resolved", reason=reason)
        logger.info(
            f"Feedback {message.id} closed ({'resolved' if resolved else 'unresolved'})",
            extra={"event": "feedback.resolved", "round": message.round},
        )

    # === STATE ===

    def open_messages(self) -> list[FeedbackMessage]:
        """Accepted messages whose fix-verify cycle has not finished, plus closed unresolved ones."""
        return list(self._active.values()) + [m for m in self._closed if not m.resolved]

    def active_messages(self) -> list[FeedbackMessage]:
        return list(self._active.values())

    def rounds(self, from_node: str, to_node: str) -> int:
        return self._rounds.get((from_node, to_node), 0)

    def restore(self, resume: ResumeState) -> None:
        """Rebuild round counters from a previous attempt and close its abandoned messages."""
        self._rounds.clear()
        self._rounds.update(resume.feedback_rounds)
        for message in resume.open_messages:
            message.resolved = False
            self._record(message, "resolved", reason="abandoned on resume")
            self._closed.append(message)
        if resume.open_messages:
            logger.info(f"Closed {len(resume.open_messages)} feedback message(s) abandoned by the previous attempt")

    def _record(self, message: FeedbackMessage, event: str, reason: str = "") -> None:
        self._state_log.append_feedback(
            FeedbackStateRecord(
                message_id=message.id,
                from_node=message.from_node,
                to_node=message.to_node,
                type=str(message.type),
                round=message.round,
                resolved=message.resolved,
                event=event,
                reason=reason,
                payload=message.payload,
            )
        )


def _feedback_context(message: FeedbackMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "type": str(message.type),
        "from_node": message.from_node,
        "round": message.round,
        "payload": message.payload,
    }
