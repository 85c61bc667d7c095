"""Task tree model, the Task Executor contract and planners."""

from reactree.tree.node import NodeStatus, NodeType, TaskNode, TaskTree
from reactree.tree.planner import Planner, StaticPlanner
from reactree.tree.task import FactWrite, FunctionExecutor, TaskExecutor, TaskResult

__all__ = [
    "FactWrite",
    "FunctionExecutor",
    "NodeStatus",
    "NodeType",
    "Planner",
    "StaticPlanner",
    "TaskExecutor",
    "TaskNode",
    "TaskResult",
    "TaskTree",
]
