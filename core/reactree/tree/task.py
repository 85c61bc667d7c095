"""
Task Executor contract and the TaskResult every node execution produces.

A Task Executor is any object with ``async execute_task(spec, memory_view)``.
Plain functions (sync or async) are wrapped by ``FunctionExecutor``:

    async def migrate(spec, memory):
        ...
        return TaskResult.succeeded(output={"tables": 3},
                                    facts=[FactWrite(key="db.migrated", value=True)])

    registry.register_function("rails.migrate", migrate)
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel

from reactree.feedback.message import FeedbackRequest
from reactree.tree.node import NodeStatus

if TYPE_CHECKING:
    from reactree.memory.working import MemoryView


class FactWrite(BaseModel):
    """A fact an executor wants appended to Working Memory."""

    key: str
    value: Any = None
    confidence: str = "verified"
    knowledge_type: str | None = None


@dataclass
class TaskResult:
    status: NodeStatus
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    facts_to_write: list[FactWrite] = field(default_factory=list)
    facts_written: list[str] = field(default_factory=list)
    feedback: FeedbackRequest | None = None
    failure_path: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == NodeStatus.SUCCEEDED

    @classmethod
    def succeeded(cls, output: Any = None, facts: list[FactWrite] | None = None) -> "TaskResult":
        return cls(status=NodeStatus.SUCCEEDED, output=output, facts_to_write=list(facts or []))

    @classmethod
    def failed(
        cls,
        error: str,
        error_type: str | None = None,
        output: Any = None,
        feedback: FeedbackRequest | None = None,
        facts: list[FactWrite] | None = None,
    ) -> "TaskResult":
        return cls(
            status=NodeStatus.FAILED,
            output=output,
            error=error,
            error_type=error_type,
            feedback=feedback,
            facts_to_write=list(facts or []),
        )

    @classmethod
    def blocked(cls, reason: str = "not dispatched") -> "TaskResult":
        return cls(status=NodeStatus.BLOCKED, error=reason)


@runtime_checkable
class TaskExecutor(Protocol):
    async def execute_task(self, spec: dict[str, Any], memory: "MemoryView") -> TaskResult: ...


TaskFunction = Callable[[dict[str, Any], "MemoryView"], TaskResult | Awaitable[TaskResult]]


class FunctionExecutor:
    """Adapt a sync or async callable to the TaskExecutor protocol.

    Sync callables run in a worker thread so they do not block the scheduler.
    """

    def __init__(self, func: TaskFunction, name: str | None = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "function")

    async def execute_task(self, spec: dict[str, Any], memory: "MemoryView") -> TaskResult:
        if inspect.iscoroutinefunction(self.func):
            result = await self.func(spec, memory)
        else:
            result = await asyncio.to_thread(self.func, spec, memory)
            if inspect.isawaitable(result):
                result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionExecutor({self.name})"
