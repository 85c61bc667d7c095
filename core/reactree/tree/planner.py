"""Planner interface: turns a goal into a TaskTree and revises it on request."""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from reactree.tree.node import TaskTree

if TYPE_CHECKING:
    from reactree.feedback.message import FeedbackMessage
    from reactree.memory.episodic import EpisodicRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class Planner(Protocol):
    async def plan(self, goal: str, episodes: list["EpisodicRecord"]) -> TaskTree:
        """Produce a task tree for ``goal``; ``episodes`` are similar past outcomes."""
        ...

    async def revise(self, tree: TaskTree, node_id: str, message: "FeedbackMessage") -> list[dict[str, Any]]:
        """Node dicts to insert under ``node_id`` in response to ``message``."""
        ...


class StaticPlanner:
    """Serves a fixed tree. Never proposes revisions."""

    def __init__(self, tree: TaskTree | dict[str, Any]):
        self._data = tree.to_dict() if isinstance(tree, TaskTree) else dict(tree)

    @classmethod
    def from_file(cls, path: Path) -> "StaticPlanner":
        with open(path, encoding="utf-8") as f:
            return cls(json.load(f))

    async def plan(self, goal: str, episodes: list["EpisodicRecord"]) -> TaskTree:
        if episodes:
            logger.info(f"Static plan ignores {len(episodes)} similar episode(s)")
        return TaskTree.from_dict(self._data, goal=goal)

    async def revise(self, tree: TaskTree, node_id: str, message: "FeedbackMessage") -> list[dict[str, Any]]:
        return []
