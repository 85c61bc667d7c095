"""
Tests for FeedbackRouter bounds and the fix-verify cycle.

Covers:
- Mutual submissions A->B then B->A rejected with CycleDetected
- Non-ancestor targets rejected with StructuralViolation
- Round counters never exceed max_rounds_per_pair
- Global in-flight depth bound
- Rejections recorded in the feedback log
- FixRequest re-runs preceding siblings then verifies the sender
- Later Sequence siblings, Fallback alternatives and running Parallel siblings are never fix targets
- DependencyMissing inserts and runs a prerequisite
- ArchitectureIssue inserts children / asks an owner executor
- Restoring round counters on resume
"""

import asyncio

import pytest
from conftest import ScriptedExecutor, leaf

from reactree.config import RunConfig
from reactree.errors import (
    CycleDetected,
    FeedbackBudgetExhausted,
    FeedbackDepthExceeded,
    StructuralViolation,
)
from reactree.feedback.message import FeedbackMessage, FeedbackRequest, FeedbackType
from reactree.feedback.router import FeedbackRouter
from reactree.storage.state_log import ResumeState, StateLog
from reactree.tree.node import NodeStatus, TaskTree
from reactree.tree.task import TaskResult


def _tree() -> TaskTree:
    """root -> mid -> (a, b); root -> c"""
    return TaskTree.from_dict(
        {
            "id": "root",
            "type": "sequence",
            "children": [
                {"id": "mid", "type": "sequence", "children": [leaf("a"), leaf("b")]},
                leaf("c"),
            ],
        }
    )


def _router(tmp_path, **overrides) -> tuple[FeedbackRouter, StateLog]:
    config = RunConfig(storage_path=tmp_path, workspace_root=tmp_path, persist=False, **overrides)
    state_log = StateLog()
    return FeedbackRouter(_tree(), config, state_log), state_log


def _msg(from_node: str, to_node: str, kind: FeedbackType = FeedbackType.FIX_REQUEST) -> FeedbackMessage:
    return FeedbackMessage(from_node=from_node, to_node=to_node, type=kind, payload={"why": "test"})


# ---------------------------------------------------------------------------
# Submission bounds
# ---------------------------------------------------------------------------


class TestSubmit:
    @pytest.mark.asyncio
    async def test_accepts_ancestor_target_and_assigns_round(self, tmp_path):
        router, state_log = _router(tmp_path)

        accepted = await router.submit(_msg("a", "mid"))

        assert accepted.round == 1
        assert router.active_messages() == [accepted]
        assert state_log.feedback_records()[-1].event == "accepted"

    @pytest.mark.asyncio
    async def test_mutual_submission_is_a_cycle(self, tmp_path):
        router, _ = _router(tmp_path)
        await router.submit(_msg("a", "mid"))

        with pytest.raises(CycleDetected) as exc_info:
            await router.submit(_msg("mid", "a"))

        assert exc_info.value.cycle == ["mid", "a", "mid"]

    @pytest.mark.asyncio
    async def test_longer_cycles_are_detected(self, tmp_path):
        router, _ = _router(tmp_path, max_feedback_depth=5)
        await router.submit(_msg("a", "mid"))
        await router.submit(_msg("mid", "root"))

        with pytest.raises(CycleDetected):
            await router.submit(_msg("root", "a"))

    @pytest.mark.asyncio
    async def test_same_edge_again_is_not_a_cycle(self, tmp_path):
        router, _ = _router(tmp_path)
        await router.submit(_msg("a", "mid"))
        second = await router.submit(_msg("a", "mid"))
        assert second.round == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "from_node,to_node",
        [
            ("mid", "a"),  # downward
            ("a", "b"),  # sibling
            ("a", "c"),  # cousin
            ("a", "a"),  # self
            ("a", "ghost"),  # unknown
        ],
    )
    async def test_non_ancestor_targets_rejected(self, tmp_path, from_node, to_node):
        router, state_log = _router(tmp_path)

        with pytest.raises((StructuralViolation, CycleDetected)):
            await router.submit(_msg(from_node, to_node))

        assert router.active_messages() == []
        assert state_log.feedback_records()[-1].event == "rejected"

    @pytest.mark.asyncio
    async def test_downward_target_is_structural_violation(self, tmp_path):
        router, _ = _router(tmp_path)
        with pytest.raises(StructuralViolation):
            await router.submit(_msg("mid", "a"))

    @pytest.mark.asyncio
    async def test_rounds_never_exceed_limit(self, tmp_path):
        router, state_log = _router(tmp_path, max_rounds_per_pair=2, max_feedback_depth=10)
        await router.submit(_msg("a", "mid"))
        await router.submit(_msg("a", "mid"))

        with pytest.raises(FeedbackBudgetExhausted) as exc_info:
            await router.submit(_msg("a", "mid"))

        assert not isinstance(exc_info.value, FeedbackDepthExceeded)
        assert router.rounds("a", "mid") == 2
        rejected = [r for r in state_log.feedback_records() if r.event == "rejected"]
        assert len(rejected) == 1
        assert "budget" in rejected[0].reason.lower()

    @pytest.mark.asyncio
    async def test_rounds_are_per_pair(self, tmp_path):
        router, _ = _router(tmp_path, max_rounds_per_pair=1, max_feedback_depth=10)
        await router.submit(_msg("a", "mid"))
        accepted = await router.submit(_msg("a", "root"))
        assert accepted.round == 1

    @pytest.mark.asyncio
    async def test_depth_bound(self, tmp_path):
        router, _ = _router(tmp_path, max_feedback_depth=2, max_rounds_per_pair=5)
        await router.submit(_msg("a", "mid"))
        await router.submit(_msg("b", "mid"))

        with pytest.raises(FeedbackDepthExceeded):
            await router.submit(_msg("c", "root"))

        assert router.rounds("c", "root") == 0


# ---------------------------------------------------------------------------
# Fix-verify cycle
# ---------------------------------------------------------------------------


def _fix_request(**payload) -> TaskResult:
    return TaskResult.failed(
        "needs a fix",
        feedback=FeedbackRequest(type=FeedbackType.FIX_REQUEST, payload=payload),
    )


class TrackingExecutor:
    """Succeeds after ``delay``, recording how many calls overlapped."""

    def __init__(self, delay: float):
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def execute_task(self, spec, memory) -> TaskResult:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return TaskResult.succeeded("slow")


class TestFixVerify:
    @pytest.mark.asyncio
    async def test_fix_reruns_preceding_sibling_then_verifies(self, make_harness):
        prep = ScriptedExecutor(TaskResult.succeeded("prepared"))
        impl = ScriptedExecutor(_fix_request(hint="add index"), TaskResult.succeeded("done"))
        tree = {"id": "root", "type": "sequence", "children": [leaf("prep"), leaf("impl")]}
        h = make_harness(tree, {"prep": prep, "impl": impl})

        result = await h.run()

        assert result.success
        assert result.output == "done"
        assert prep.calls == 2
        assert impl.calls == 2
        assert "feedback" not in prep.specs[0]
        assert prep.specs[1]["feedback"]["payload"] == {"hint": "add index"}
        assert prep.specs[1]["feedback"]["from_node"] == "impl"

        resolved = [r for r in h.state_log.feedback_records() if r.event == "resolved"]
        assert len(resolved) == 1
        assert resolved[0].resolved is True
        assert h.router.open_messages() == []
        assert h.memory.get(f"feedback.{resolved[0].message_id}")["payload"] == {"hint": "add index"}

    @pytest.mark.asyncio
    async def test_first_child_never_starts_later_siblings(self, make_harness):
        first = ScriptedExecutor(_fix_request(hint="retry"))
        later = ScriptedExecutor()
        tree = {"id": "root", "type": "sequence", "children": [leaf("first"), leaf("later")]}
        h = make_harness(tree, {"first": first, "later": later}, max_rounds_per_pair=2)

        result = await h.run()

        assert result.status == NodeStatus.FAILED
        assert later.calls == 0
        assert first.calls == 3
        assert "feedback" not in first.specs[0]
        assert first.specs[1]["feedback"]["payload"] == {"hint": "retry"}

    @pytest.mark.asyncio
    async def test_fallback_alternatives_are_not_fixes(self, make_harness):
        rejected = ScriptedExecutor(TaskResult.failed("not applicable"))
        primary = ScriptedExecutor(_fix_request(hint="x"), TaskResult.succeeded("primary"))
        backup = ScriptedExecutor(TaskResult.succeeded("backup"))
        tree = {"id": "root", "type": "fallback", "children": [leaf("rejected"), leaf("primary"), leaf("backup")]}
        h = make_harness(tree, {"rejected": rejected, "primary": primary, "backup": backup})

        result = await h.run()

        assert result.success
        assert result.output == "primary"
        assert rejected.calls == 1
        assert primary.calls == 2
        assert backup.calls == 0

    @pytest.mark.asyncio
    async def test_parallel_fix_leaves_running_siblings_alone(self, make_harness):
        slow = TrackingExecutor(delay=0.2)
        done = ScriptedExecutor(TaskResult.succeeded("done"))
        impl = ScriptedExecutor(_fix_request(hint="y"), TaskResult.succeeded("impl"), delay=0.05)
        tree = {"id": "root", "type": "parallel", "children": [leaf("slow"), leaf("done"), leaf("impl")]}
        h = make_harness(tree, {"slow": slow, "done": done, "impl": impl})

        result = await h.run()

        assert result.success
        assert result.output == ["slow", "done", "impl"]
        assert slow.calls == 1
        assert slow.max_active == 1
        assert done.calls == 2
        assert done.specs[1]["feedback"]["from_node"] == "impl"
        assert impl.calls == 2

    @pytest.mark.asyncio
    async def test_persistent_failure_exhausts_budget(self, make_harness):
        prep = ScriptedExecutor()
        impl = ScriptedExecutor(_fix_request(attempt="again"))
        tree = {"id": "root", "type": "sequence", "children": [leaf("prep"), leaf("impl")]}
        h = make_harness(tree, {"prep": prep, "impl": impl}, max_rounds_per_pair=2)

        result = await h.run()

        assert result.status == NodeStatus.FAILED
        assert result.failure_path == ["root", "impl"]
        assert "feedback rejected" in result.error
        assert impl.calls == 3
        assert h.router.rounds("impl", "root") == 2
        events = [r.event for r in h.state_log.feedback_records()]
        assert events.count("accepted") == 2
        assert events.count("rejected") == 1
        assert all(not m.resolved for m in h.router.open_messages())
        assert len(h.router.open_messages()) == 2

    @pytest.mark.asyncio
    async def test_explicit_target_is_respected(self, make_harness):
        setup = ScriptedExecutor()
        impl = ScriptedExecutor(
            TaskResult.failed(
                "schema drift",
                feedback=FeedbackRequest(type=FeedbackType.CONTEXT_REQUEST, payload={}, to_node="root"),
            ),
            TaskResult.succeeded("ok"),
        )
        tree = {
            "id": "root",
            "type": "sequence",
            "children": [leaf("setup"), {"id": "mid", "type": "sequence", "children": [leaf("impl")]}],
        }
        h = make_harness(tree, {"setup": setup, "impl": impl})

        result = await h.run()

        assert result.success
        assert setup.calls == 2
        accepted = next(r for r in h.state_log.feedback_records() if r.event == "accepted")
        assert (accepted.from_node, accepted.to_node) == ("impl", "root")

    @pytest.mark.asyncio
    async def test_dependency_missing_inserts_prerequisite(self, make_harness):
        installer = ScriptedExecutor(TaskResult.succeeded("installed"))
        impl = ScriptedExecutor(
            TaskResult.failed(
                "gem missing",
                feedback=FeedbackRequest(
                    type=FeedbackType.DEPENDENCY_MISSING,
                    payload={"prerequisite": leaf("install_devise", "installer", spec={"gem": "devise"})},
                ),
            ),
            TaskResult.succeeded("auth ready"),
        )
        tree = {"id": "root", "type": "sequence", "children": [leaf("impl")]}
        h = make_harness(tree, {"impl": impl, "installer": installer})

        result = await h.run()

        assert result.success
        assert h.tree.get("root").children == ["install_devise", "impl"]
        assert h.tree.get("install_devise").parent_id == "root"
        assert installer.calls == 1
        assert installer.specs[0]["gem"] == "devise"
        assert impl.calls == 2

    @pytest.mark.asyncio
    async def test_revision_with_unknown_capability_is_rolled_back(self, make_harness):
        impl = ScriptedExecutor(
            TaskResult.failed(
                "gem missing",
                feedback=FeedbackRequest(
                    type=FeedbackType.DEPENDENCY_MISSING,
                    payload={"prerequisite": leaf("install", "no_such_capability")},
                ),
            )
        )
        tree = {"id": "root", "type": "sequence", "children": [leaf("impl")]}
        h = make_harness(tree, {"impl": impl})

        result = await h.run()

        assert result.status == NodeStatus.FAILED
        assert result.error_type == "PlanValidationError"
        assert h.tree.get("root").children == ["impl"]
        assert "install" not in h.tree

    @pytest.mark.asyncio
    async def test_architecture_issue_inserts_children(self, make_harness):
        adapter = ScriptedExecutor(TaskResult.succeeded("adapter"))
        impl = ScriptedExecutor(
            TaskResult.failed(
                "wrong layering",
                feedback=FeedbackRequest(
                    type=FeedbackType.ARCHITECTURE_ISSUE,
                    payload={"children": [leaf("service_adapter", "adapter")], "index": 1},
                ),
            ),
            TaskResult.succeeded("layered"),
        )
        prep = ScriptedExecutor()
        tree = {"id": "root", "type": "sequence", "children": [leaf("prep"), leaf("impl")]}
        h = make_harness(tree, {"prep": prep, "impl": impl, "adapter": adapter})

        result = await h.run()

        assert result.success
        assert h.tree.get("root").children == ["prep", "service_adapter", "impl"]
        assert adapter.calls == 1
        assert prep.calls == 1  # inserted nodes are the fix targets

    @pytest.mark.asyncio
    async def test_owner_executor_handles_fix(self, make_harness):
        architect = ScriptedExecutor(TaskResult.succeeded("replanned"))
        impl = ScriptedExecutor(_fix_request(detail="x"), TaskResult.succeeded("ok"))
        tree = {"id": "root", "type": "sequence", "capability": "architect", "spec": {"role": "lead"}, "children": [leaf("impl")]}
        h = make_harness(tree, {"architect": architect, "impl": impl})

        result = await h.run()

        assert result.success
        assert architect.calls == 1
        assert architect.specs[0]["role"] == "lead"
        assert architect.specs[0]["feedback"]["payload"] == {"detail": "x"}

    @pytest.mark.asyncio
    async def test_rejected_feedback_leaves_leaf_failed(self, make_harness):
        impl = ScriptedExecutor(
            TaskResult.failed(
                "bad target",
                feedback=FeedbackRequest(type=FeedbackType.FIX_REQUEST, to_node="sibling"),
            )
        )
        tree = {"id": "root", "type": "sequence", "children": [leaf("sibling"), leaf("impl")]}
        h = make_harness(tree, {"impl": impl, "sibling": ScriptedExecutor()})

        result = await h.run()

        assert result.status == NodeStatus.FAILED
        assert "feedback rejected" in result.error
        assert impl.calls == 1


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_restore_rebuilds_rounds_and_closes_abandoned(tmp_path):
    router, state_log = _router(tmp_path, max_rounds_per_pair=2)
    abandoned = FeedbackMessage(from_node="a", to_node="mid", type=FeedbackType.FIX_REQUEST, round=2)

    router.restore(ResumeState(feedback_rounds={("a", "mid"): 2}, open_messages=[abandoned]))

    assert router.rounds("a", "mid") == 2
    with pytest.raises(FeedbackBudgetExhausted):
        await router.submit(_msg("a", "mid"))
    closed = [r for r in state_log.feedback_records() if r.event == "resolved"]
    assert closed[0].message_id == abandoned.id
    assert closed[0].reason == "abandoned on resume"
