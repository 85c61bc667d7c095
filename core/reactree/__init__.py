"""
ReAcTree - hierarchical task-tree execution engine.

A scheduler walks a tree of sequence / parallel / fallback / loop / conditional
nodes, hands leaves to Task Executors registered by capability, lets nodes send
bounded feedback to their ancestors, and persists every transition so runs can
be resumed and audited.
"""

from reactree.conditions import ConditionEvaluator, ConditionSpec
from reactree.config import ParallelFailurePolicy, RunConfig, load_run_config
from reactree.feedback import FeedbackMessage, FeedbackRequest, FeedbackType
from reactree.memory import EpisodicMemoryStore, WorkingMemoryStore
from reactree.runner import ExecutorRegistry
from reactree.runtime import TreeRuntime
from reactree.schemas import RunReport
from reactree.tree import FactWrite, NodeStatus, NodeType, StaticPlanner, TaskResult, TaskTree

__version__ = "0.1.0"

__all__ = [
    "ConditionEvaluator",
    "ConditionSpec",
    "EpisodicMemoryStore",
    "ExecutorRegistry",
    "FactWrite",
    "FeedbackMessage",
    "FeedbackRequest",
    "FeedbackType",
    "NodeStatus",
    "NodeType",
    "ParallelFailurePolicy",
    "RunConfig",
    "RunReport",
    "StaticPlanner",
    "TaskResult",
    "TaskTree",
    "TreeRuntime",
    "WorkingMemoryStore",
    "load_run_config",
]
