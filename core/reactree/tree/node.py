"""
Task tree - the plan the scheduler walks.

A TaskTree is a node arena: ``nodes`` maps id -> TaskNode and every node points
to its parent by id (``parent_id``), never by reference. Children are ordered
id lists. Planners usually hand over a nested dict which ``TaskTree.from_dict``
flattens into the arena:

    {
        "id": "implement",
        "type": "sequence",
        "children": [
            {"id": "model", "type": "leaf", "capability": "rails.model", "spec": {...}},
            {"id": "tests", "type": "loop", "max_iterations": 3,
             "condition": {"kind": "test_result"},
             "children": [{"id": "run_tests", "type": "leaf", "capability": "rspec"}]},
        ],
    }

Node types:
- leaf: delegated to the Task Executor registered for ``capability``
- sequence / parallel / fallback: any number of children
- loop: exactly one body child, optional stop ``condition``
- conditional: ``[then]`` or ``[then, else]`` plus a required ``condition``
"""

from collections.abc import Iterator
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from reactree.conditions.spec import ConditionSpec


class NodeType(StrEnum):
    LEAF = "leaf"
    SEQUENCE = "sequence"
    PARALLEL = "parallel"
    FALLBACK = "fallback"
    LOOP = "loop"
    CONDITIONAL = "conditional"


class NodeStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED)


class TaskNode(BaseModel):
    """One unit of the execution tree."""

    id: str
    type: NodeType
    name: str = ""
    description: str = ""
    children: list[str] = Field(default_factory=list)
    parent_id: str | None = None
    status: NodeStatus = NodeStatus.PENDING

    # Executor tag. Required on leaves; on control nodes it names an "owner"
    # executor that feedback fix requests are sent to.
    capability: str | None = None
    spec: dict[str, Any] = Field(default_factory=dict)

    # Node-specific metadata
    max_iterations: int | None = Field(default=None, ge=1)
    condition: ConditionSpec | None = None
    max_concurrency: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)
    output_schema: dict[str, Any] | None = None  # JSON Schema the leaf output must match

    model_config = {"extra": "allow"}

    @property
    def is_leaf(self) -> bool:
        return self.type == NodeType.LEAF

    @property
    def label(self) -> str:
        return self.name or self.id


class TaskTree(BaseModel):
    """Node arena plus the id of the root node."""

    root_id: str
    nodes: dict[str, TaskNode] = Field(default_factory=dict)
    goal: str = ""

    model_config = {"extra": "allow"}

    # ------------------------------------------------------------------
    # Construction / serialization
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any], goal: str = "") -> "TaskTree":
        """Build a tree from a nested planner dict (or a flat ``to_dict()`` snapshot)."""
        if "root_id" in data and "nodes" in data:
            return cls.model_validate(data)
        nodes: dict[str, TaskNode] = {}
        root = _flatten(data, None, nodes)
        return cls(root_id=root, nodes=nodes, goal=goal or data.get("goal", ""))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_nested(self, node_id: str | None = None) -> dict[str, Any]:
        """Nested planner-style dict for a subtree (used when reporting)."""
        node = self.get(node_id or self.root_id)
        data = node.model_dump(mode="json", exclude={"children", "parent_id"}, exclude_none=True)
        data["children"] = [self.to_nested(c) for c in node.children]
        return data

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def root(self) -> TaskNode:
        return self.get(self.root_id)

    def get(self, node_id: str) -> TaskNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise KeyError(f"Unknown node: {node_id}") from None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def children_of(self, node_id: str) -> list[TaskNode]:
        return [self.nodes[c] for c in self.get(node_id).children]

    def parent_of(self, node_id: str) -> TaskNode | None:
        parent_id = self.get(node_id).parent_id
        return self.nodes.get(parent_id) if parent_id else None

    def ancestors(self, node_id: str) -> list[str]:
        """Ids from the parent of ``node_id`` up to the root."""
        out = []
        seen = {node_id}
        current = self.get(node_id).parent_id
        while current is not None:
            if current in seen:
                raise ValueError(f"Parent links form a cycle at {current}")
            seen.add(current)
            out.append(current)
            current = self.nodes[current].parent_id if current in self.nodes else None
        return out

    def is_strict_ancestor(self, ancestor_id: str, node_id: str) -> bool:
        if ancestor_id == node_id or ancestor_id not in self.nodes or node_id not in self.nodes:
            return False
        return ancestor_id in self.ancestors(node_id)

    def path_to(self, node_id: str) -> list[str]:
        """Root-to-node id path."""
        return list(reversed(self.ancestors(node_id))) + [node_id]

    def child_containing(self, ancestor_id: str, node_id: str) -> str | None:
        """The direct child of ``ancestor_id`` whose subtree contains ``node_id``."""
        if node_id == ancestor_id:
            return None
        path = self.path_to(node_id)
        if ancestor_id not in path:
            return None
        idx = path.index(ancestor_id)
        return path[idx + 1] if idx + 1 < len(path) else None

    def walk(self, node_id: str | None = None) -> Iterator[TaskNode]:
        """Pre-order depth-first traversal of a subtree. Dangling child ids are skipped."""
        stack = [node_id or self.root_id]
        while stack:
            node = self.nodes[stack.pop()]
            yield node
            stack.extend(c for c in reversed(node.children) if c in self.nodes)

    def leaves(self, node_id: str | None = None) -> list[TaskNode]:
        return [n for n in self.walk(node_id) if n.is_leaf]

    # ------------------------------------------------------------------
    # Structural edits (planner revisions during feedback resolution)
    # ------------------------------------------------------------------

    def insert_children(
        self,
        parent_id: str,
        subtrees: list[dict[str, Any]],
        index: int | None = None,
        replace: bool = False,
    ) -> list[str]:
        """Flatten ``subtrees`` into the arena under ``parent_id``.

        Returns the ids of the new direct children. ``replace`` detaches the
        existing children first (they stay in the arena for audit but are no
        longer reachable).
        """
        parent = self.get(parent_id)
        new_nodes: dict[str, TaskNode] = {}
        new_ids = [_flatten(sub, parent_id, new_nodes) for sub in subtrees]
        clash = sorted(set(new_nodes) & set(self.nodes))
        if clash:
            raise ValueError(f"Inserted nodes reuse existing ids: {clash}")
        self.nodes.update(new_nodes)

        if replace:
            for old in parent.children:
                self.nodes[old].parent_id = None
            parent.children = list(new_ids)
        elif index is None:
            parent.children.extend(new_ids)
        else:
            parent.children[index:index] = new_ids
        return new_ids

    def reachable_ids(self) -> set[str]:
        return {n.id for n in self.walk()}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_structure(self) -> list[str]:
        """Return a list of structural problems (empty when the tree is sound)."""
        errors: list[str] = []
        if self.root_id not in self.nodes:
            return [f"Root node '{self.root_id}' not found"]
        if self.root.parent_id is not None:
            errors.append(f"Root node '{self.root_id}' must not have a parent")

        seen: set[str] = set()
        stack = [self.root_id]
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                errors.append(f"Node '{node_id}' is reachable more than once")
                continue
            seen.add(node_id)
            node = self.nodes[node_id]
            for child_id in node.children:
                if child_id not in self.nodes:
                    errors.append(f"Node '{node_id}' references missing child '{child_id}'")
                    continue
                if self.nodes[child_id].parent_id != node_id:
                    errors.append(f"Child '{child_id}' does not point back to parent '{node_id}'")
                stack.append(child_id)
            errors.extend(_node_shape_errors(node))
        return errors


def _node_shape_errors(node: TaskNode) -> list[str]:
    errors = []
    n_children = len(node.children)
    if node.type == NodeType.LEAF:
        if n_children:
            errors.append(f"Leaf '{node.id}' must not have children")
        if not node.capability:
            errors.append(f"Leaf '{node.id}' has no capability")
    elif node.type == NodeType.LOOP and n_children != 1:
        errors.append(f"Loop '{node.id}' needs exactly one body child, has {n_children}")
    elif node.type == NodeType.CONDITIONAL:
        if n_children not in (1, 2):
            errors.append(f"Conditional '{node.id}' needs a then-branch and optional else-branch")
        if node.condition is None:
            errors.append(f"Conditional '{node.id}' has no condition")
    return errors


def _flatten(data: dict[str, Any], parent_id: str | None, out: dict[str, TaskNode]) -> str:
    raw = dict(data)
    children = raw.pop("children", None) or []
    raw.pop("parent_id", None)
    if "id" not in raw:
        raise ValueError(f"Task node without id: {data!r}")
    node_id = str(raw["id"])
    if node_id in out:
        raise ValueError(f"Duplicate node id: {node_id}")
    node = TaskNode.model_validate({**raw, "parent_id": parent_id})
    out[node_id] = node
    node.children = [_flatten(child, node_id, out) for child in children]
    return node_id
